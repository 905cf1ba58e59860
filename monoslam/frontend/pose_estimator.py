import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from monoslam.config import CameraIntrinsics, PoseConfig
from monoslam.core.features import FeatureSet, Match
from monoslam.core.pose import Pose
from monoslam.errors import (GeometricDegeneracyError, InsufficientDataError,
                             NumericInvalidError)
from monoslam.utils.geometry import (count_in_front, decompose_essential,
                                     eight_point_essential, normalize_pixels,
                                     sampson_distance)

logger = logging.getLogger(__name__)


@dataclass
class PoseEstimate:
    """Relative motion from the first frame to the second.

    ``pose.translation`` has unit norm: monocular geometry fixes the
    direction of travel only.
    """
    pose: Pose
    essential: np.ndarray
    inliers: List[Match]
    num_in_front: int

    @property
    def num_inliers(self):
        return len(self.inliers)


class PoseEstimator:
    def __init__(self, intrinsics: CameraIntrinsics = None, config: PoseConfig = None):
        """
        Initializes the pose estimator.

        Args:
            intrinsics: Camera intrinsics used to normalize pixel coordinates.
            config: PoseConfig with RANSAC parameters.
        """
        self.intrinsics = intrinsics or CameraIntrinsics()
        self.config = config or PoseConfig()
        self.rng = np.random.default_rng(self.config.seed)

    def estimate(self, features1: FeatureSet, features2: FeatureSet,
                 matches: List[Match]) -> Optional[PoseEstimate]:
        """Like :meth:`estimate_pose`, but returns None instead of raising."""
        try:
            return self.estimate_pose(features1, features2, matches)
        except (InsufficientDataError, GeometricDegeneracyError, NumericInvalidError) as e:
            logger.debug("Pose estimation failed: %s", e)
            return None

    def estimate_pose(self, features1: FeatureSet, features2: FeatureSet,
                      matches: List[Match]) -> PoseEstimate:
        """
        Estimates the relative pose from the essential matrix.

        Args:
            features1: Features of the first frame.
            features2: Features of the second frame.
            matches: Correspondences (query = first frame).

        Returns:
            PoseEstimate with the chirality-selected motion.

        Raises:
            InsufficientDataError: Fewer than ``min_inliers`` matches.
            GeometricDegeneracyError: Too few inliers, or no motion puts
                any point in front of both cameras.
        """
        if len(matches) < self.config.min_inliers:
            raise InsufficientDataError(
                f"{len(matches)} correspondences, need {self.config.min_inliers}")

        pts1 = features1.points[[m.query_idx for m in matches]]
        pts2 = features2.points[[m.train_idx for m in matches]]
        x1 = normalize_pixels(pts1, self.intrinsics)
        x2 = normalize_pixels(pts2, self.intrinsics)

        E, inlier_mask = self._ransac(x1, x2)
        num_inliers = int(inlier_mask.sum())
        if num_inliers < self.config.min_inliers:
            raise GeometricDegeneracyError(
                f"Only {num_inliers} inliers, need {self.config.min_inliers}")

        R, t, num_in_front = self._select_motion(E, x1[inlier_mask], x2[inlier_mask])
        if num_in_front == 0:
            raise GeometricDegeneracyError("No motion hypothesis has points in front of both cameras")
        if not np.isclose(np.linalg.det(R), 1.0, atol=1e-6):
            raise NumericInvalidError("Invalid rotation matrix computed")

        inliers = [m for m, ok in zip(matches, inlier_mask) if ok]
        logger.debug("Pose: %d/%d inliers, %d in front", num_inliers, len(matches), num_in_front)
        return PoseEstimate(Pose(R, t), E, inliers, num_in_front)

    def _ransac(self, x1, x2):
        """Best essential matrix over random 8-point subsets.

        Every sample that beats the best support so far is polished by
        :meth:`_local_optimization` before it is compared. The number of
        iterations shrinks with the inlier ratio found so far, bounded by
        ``ransac_iterations``.

        Returns:
            (E, inlier mask).
        """
        n = len(x1)
        threshold = self.config.threshold_px / self.intrinsics.focal_length
        best_E, best_mask = None, np.zeros(n, dtype=bool)

        max_iterations = self.config.ransac_iterations
        iteration = 0
        while iteration < max_iterations:
            iteration += 1
            sample = self.rng.choice(n, 8, replace=False)
            try:
                E = eight_point_essential(x1[sample], x2[sample])
            except (GeometricDegeneracyError, NumericInvalidError):
                continue
            distances = sampson_distance(E, x1, x2)
            mask = distances < threshold
            if mask.sum() > best_mask.sum():
                E, mask = self._local_optimization(E, distances, x1, x2, threshold)
                best_E, best_mask = E, mask
                max_iterations = min(max_iterations,
                                     self._required_iterations(best_mask.sum() / n))
            if n == 8:
                break

        if best_E is None:
            raise GeometricDegeneracyError("No sample produced an essential matrix")
        logger.debug("RANSAC: %d/%d inliers after %d iterations", best_mask.sum(), n, iteration)
        return best_E, best_mask

    def _local_optimization(self, E, distances, x1, x2, threshold):
        """
        Re-fit a promising model on its inliers until the support stops
        growing.

        The first re-fit uses the correspondences within
        ``lo_threshold_factor * threshold`` of the sample model, since a
        minimal sample on noisy points often fits only a few of them tightly.
        Later re-fits use the inliers of the previous model.
        """
        mask = distances < threshold
        fit_set = distances < self.config.lo_threshold_factor * threshold
        for _ in range(self.config.lo_iterations):
            if fit_set.sum() < 8:
                break
            try:
                refit = eight_point_essential(x1[fit_set], x2[fit_set])
            except (GeometricDegeneracyError, NumericInvalidError) as e:
                logger.debug("Local optimization stopped, re-fit failed: %s", e)
                break
            refit_mask = sampson_distance(refit, x1, x2) < threshold
            if refit_mask.sum() <= mask.sum():
                break
            E, mask = refit, refit_mask
            fit_set = mask
        return E, mask

    def _required_iterations(self, inlier_ratio):
        """Samples needed to draw one all-inlier subset with ``confidence``."""
        p_good = inlier_ratio ** 8
        if p_good <= 0.0:
            return self.config.ransac_iterations
        if p_good >= 1.0:
            return 1
        return int(np.ceil(np.log(1.0 - self.config.confidence) / np.log(1.0 - p_good)))

    def _select_motion(self, E, x1, x2):
        """Chirality test over the four decompositions of E."""
        n = len(x1)
        if n > self.config.chirality_samples:
            idx = np.linspace(0, n - 1, self.config.chirality_samples).astype(int)
            x1, x2 = x1[idx], x2[idx]

        best = (None, None, -1)
        for R, t in decompose_essential(E):
            in_front = count_in_front(R, t, x1, x2)
            if in_front > best[2]:
                best = (R, t, in_front)
        return best
