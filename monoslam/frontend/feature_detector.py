import functools
import logging
from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np
from scipy.spatial import cKDTree

from monoslam.config import DetectorConfig
from monoslam.core.features import FeatureSet, Keypoint
from monoslam.utils.image import to_grayscale

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=None)
def brief_pattern(n_bits=256, patch_size=31, seed=42):
    """
    Sampling pattern for BRIEF descriptors.

    Each row is ``(dx1, dy1, dx2, dy2)``: two offsets inside the patch drawn
    from an isotropic Gaussian (sigma = patch_size / 5). The pattern is
    generated once per parameter set and returned read-only, so every
    detector in the process produces comparable descriptors.
    """
    rng = np.random.default_rng(seed)
    half = patch_size // 2
    pattern = np.rint(rng.normal(0.0, patch_size / 5.0, size=(n_bits, 4)))
    pattern = np.clip(pattern, -half, half).astype(np.int32)
    pattern.setflags(write=False)
    return pattern


class FeatureDetector:
    def __init__(self, config: DetectorConfig = None):
        """
        Multi-scale Harris corner detector with BRIEF descriptors.

        Args:
            config: DetectorConfig with the corner and descriptor parameters.
        """
        self.config = config or DetectorConfig()
        if self.config.descriptor_bits % 8 != 0:
            raise ValueError("descriptor_bits must be a multiple of 8")
        self.pattern = brief_pattern(self.config.descriptor_bits,
                                     self.config.patch_size,
                                     self.config.pattern_seed)

    @property
    def descriptor_bytes(self):
        return self.config.descriptor_bits // 8

    def detect(self, image) -> FeatureSet:
        """
        Detects corners and computes their descriptors.

        Steps:
          1. Convert the frame to grayscale.
          2. Compute the Harris response on every scale level and keep the
             local maxima above the response threshold.
          3. Suppress weaker corners within ``nms_radius`` pixels, across
             all scales.
          4. Keep the strongest ``max_features`` and describe them.

        Args:
            image: Grayscale, RGB or RGBA frame.

        Returns:
            FeatureSet with keypoints ordered by descending score. Empty when
            the frame has no corner above threshold.
        """
        gray = to_grayscale(image)
        h, w = gray.shape
        img = gray.astype(np.float32) / 255.0
        scales = tuple(self.config.scales) or (1.0,)

        if self.config.num_threads > 1 and len(scales) > 1:
            with ThreadPoolExecutor(max_workers=min(self.config.num_threads, len(scales))) as pool:
                levels = list(pool.map(lambda s: self._harris_candidates(img, s), scales))
        else:
            levels = [self._harris_candidates(img, s) for s in scales]

        points = np.concatenate([lvl[0] for lvl in levels])
        scores = np.concatenate([lvl[1] for lvl in levels])
        level_scales = np.concatenate([lvl[2] for lvl in levels])
        if scores.size == 0:
            return FeatureSet.empty((w, h), self.descriptor_bytes)

        threshold = max(self.config.min_response, self.config.quality_level * float(scores.max()))
        strong = scores > threshold
        points, scores, level_scales = points[strong], scores[strong], level_scales[strong]
        if scores.size == 0:
            return FeatureSet.empty((w, h), self.descriptor_bytes)
        # before suppression, so tied maxima of one corner collapse together
        points = self._refine_subpixel(img, points)

        order = np.argsort(-scores, kind='stable')
        selected = order[self._non_max_suppression(points[order])]
        selected = selected[:self.config.max_features]

        keypoints = [Keypoint(float(points[i, 0]), float(points[i, 1]),
                              float(scores[i]), float(level_scales[i]))
                     for i in selected]
        descriptors = self.compute_descriptors(gray, points[selected])
        logger.debug("Detected %d keypoints (%d candidates)", len(keypoints), len(scores))
        return FeatureSet(keypoints, descriptors, (w, h))

    def _harris_candidates(self, img, scale):
        """Local maxima of the Harris response on one scale level, in
        full-resolution coordinates."""
        h, w = img.shape
        if scale != 1.0:
            level_w = max(1, int(round(w * scale)))
            level_h = max(1, int(round(h * scale)))
            level = cv2.resize(img, (level_w, level_h), interpolation=cv2.INTER_LINEAR)
        else:
            level_w, level_h = w, h
            level = img

        response = cv2.cornerHarris(level, self.config.block_size, 3, self.config.harris_k)
        # Gradients grow as 1/scale when shrinking, the response as 1/scale^4
        response *= scale ** 4

        dilated = cv2.dilate(response, np.ones((3, 3), np.uint8))
        rows, cols = np.nonzero((response >= dilated) & (response > self.config.min_response))
        scores = response[rows, cols].astype(np.float64)

        sx, sy = level_w / w, level_h / h
        xs = (cols + 0.5) / sx - 0.5
        ys = (rows + 0.5) / sy - 0.5
        return np.column_stack([xs, ys]), scores, np.full(len(scores), scale)

    def _refine_subpixel(self, img, points):
        """
        Moves corners to the sub-pixel saddle of the intensity surface with
        ``cv2.cornerSubPix``.

        A corner that does not converge inside its search window keeps its
        integer position.
        """
        if self.config.subpix_window <= 0 or len(points) == 0:
            return points
        h, w = img.shape
        win = self.config.subpix_window
        corners = np.ascontiguousarray(points, dtype=np.float32).reshape(-1, 1, 2)
        criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 20, 0.01)
        refined = cv2.cornerSubPix(img, corners, (win, win), (-1, -1), criteria)
        refined = refined.reshape(-1, 2).astype(np.float64)

        moved = np.abs(refined - points).max(axis=1)
        inside = ((refined[:, 0] >= 0) & (refined[:, 0] <= w - 1)
                  & (refined[:, 1] >= 0) & (refined[:, 1] <= h - 1))
        ok = np.all(np.isfinite(refined), axis=1) & (moved <= win) & inside
        return np.where(ok[:, None], refined, points)

    def _non_max_suppression(self, points):
        """Greedy suppression; ``points`` must be sorted by descending score.

        Returns:
            Indices into ``points`` of the kept corners.
        """
        tree = cKDTree(points)
        suppressed = np.zeros(len(points), dtype=bool)
        keep = []
        for i in range(len(points)):
            if suppressed[i]:
                continue
            keep.append(i)
            if len(keep) >= self.config.max_features:
                break
            suppressed[tree.query_ball_point(points[i], self.config.nms_radius)] = True
        return np.array(keep, dtype=np.int64)

    def compute_descriptors(self, gray, points):
        """
        BRIEF descriptors at the given pixel positions.

        Bit ``i`` is set when the first sample of pair ``i`` is darker than
        the second on the smoothed frame. Samples falling outside the image
        are clamped to the border.

        Returns:
            (N, descriptor_bits / 8) uint8 array of packed bits.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if len(points) == 0:
            return np.zeros((0, self.descriptor_bytes), dtype=np.uint8)
        gray = to_grayscale(gray)
        h, w = gray.shape
        smoothed = cv2.GaussianBlur(gray.astype(np.float32), (0, 0), self.config.blur_sigma)

        px = np.rint(points[:, 0]).astype(np.int64)[:, None]
        py = np.rint(points[:, 1]).astype(np.int64)[:, None]
        x1 = np.clip(px + self.pattern[:, 0], 0, w - 1)
        y1 = np.clip(py + self.pattern[:, 1], 0, h - 1)
        x2 = np.clip(px + self.pattern[:, 2], 0, w - 1)
        y2 = np.clip(py + self.pattern[:, 3], 0, h - 1)

        bits = smoothed[y1, x1] < smoothed[y2, x2]
        return np.packbits(bits, axis=1)
