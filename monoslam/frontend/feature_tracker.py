import logging
from typing import List

import cv2
import numpy as np
from scipy.spatial import cKDTree

from monoslam.config import TrackerConfig
from monoslam.core.features import FeatureSet, Match

logger = logging.getLogger(__name__)


class FeatureTracker:
    def __init__(self, config: TrackerConfig = None):
        """
        Matches features between consecutive frames and rejects outliers.

        :param config: TrackerConfig with the search radius, descriptor
            thresholds and RANSAC parameters.
        """
        self.config = config or TrackerConfig()
        self.bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        self.rng = np.random.default_rng(self.config.seed)

    def track(self, features1: FeatureSet, features2: FeatureSet) -> List[Match]:
        """Descriptor matching followed by motion-consistency filtering."""
        return self.filter_matches(features1, features2, self.match(features1, features2))

    def match(self, features1: FeatureSet, features2: FeatureSet) -> List[Match]:
        """
        For each keypoint of the first set, search the keypoints of the
        second set within ``max_pixel_distance`` and keep the best
        descriptor match if it passes the absolute and ratio tests.

        :return: List of Match objects (query = first set, train = second set).
        """
        if len(features1) == 0 or len(features2) == 0:
            return []

        tree = cKDTree(features2.points)
        candidates = tree.query_ball_point(features1.points, self.config.max_pixel_distance)

        matches = []
        for query_idx, candidate_indices in enumerate(candidates):
            if not candidate_indices:
                continue
            candidate_indices = np.asarray(candidate_indices, dtype=np.int64)
            knn = self.bf.knnMatch(features1.descriptors[query_idx:query_idx + 1],
                                   features2.descriptors[candidate_indices], k=2)
            if not knn or not knn[0]:
                continue
            best = knn[0][0]
            if best.distance >= self.config.max_descriptor_distance:
                continue
            # Ratio test; a lone candidate has no competitor
            if len(knn[0]) > 1 and not best.distance < self.config.ratio * knn[0][1].distance:
                continue
            matches.append(Match(query_idx, int(candidate_indices[best.trainIdx]), float(best.distance)))

        logger.debug("Matched %d of %d keypoints", len(matches), len(features1))
        return matches

    def filter_matches(self, features1: FeatureSet, features2: FeatureSet,
                       matches: List[Match]) -> List[Match]:
        """
        RANSAC over a 2D translation model.

        Each hypothesis is the mean displacement of ``sample_size`` random
        matches; matches whose displacement lies within
        ``outlier_threshold`` pixels of it are inliers. All hypotheses are
        scored at once and the one with the most inliers wins.

        With fewer than ``min_matches`` matches the input is returned as is.
        """
        n = len(matches)
        if n < self.config.min_matches:
            return list(matches)

        query = np.array([m.query_idx for m in matches])
        train = np.array([m.train_idx for m in matches])
        displacement = features2.points[train] - features1.points[query]

        k = min(self.config.sample_size, n)
        samples = np.argsort(self.rng.random((self.config.ransac_iterations, n)), axis=1)[:, :k]
        models = displacement[samples].mean(axis=1)  # (iterations, 2)
        errors = np.linalg.norm(displacement[None, :, :] - models[:, None, :], axis=2)
        inliers = errors < self.config.outlier_threshold
        best = int(np.argmax(inliers.sum(axis=1)))

        kept = [m for m, ok in zip(matches, inliers[best]) if ok]
        logger.debug("Translation RANSAC kept %d of %d matches", len(kept), n)
        return kept
