"""
Renderable point cloud built from the map points.

The accumulator keeps parallel arrays (arena id, position, color,
confidence, depth) for every accepted map point and provides the filters
applied before the cloud is handed to a renderer or exporter.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from matplotlib.colors import hsv_to_rgb
from sklearn.neighbors import NearestNeighbors

from monoslam.config import PointCloudConfig

logger = logging.getLogger(__name__)

UNLINKED = -1


@dataclass
class PointCloudSnapshot:
    """Copy of the point cloud at one instant.

    ``positions`` and ``colors`` are flat float32 arrays of xyz / rgb triples,
    ``confidences`` and ``depths`` hold one value per point.
    """
    positions: np.ndarray
    colors: np.ndarray
    count: int
    confidences: np.ndarray
    depths: np.ndarray

    def as_dict(self):
        return {
            'positions': self.positions,
            'colors': self.colors,
            'count': self.count,
            'confidences': self.confidences,
            'depths': self.depths,
        }

    def points(self):
        """Positions reshaped to (N, 3)."""
        return self.positions.reshape(-1, 3)


class PointCloudSource(Protocol):
    """Anything a renderer or exporter can pull a snapshot from."""

    def get_point_cloud_data(self, color_by_depth: bool = False) -> PointCloudSnapshot:
        ...


def depth_to_colors(depths):
    """
    Map depths to RGB: nearest points blue (hue 240), farthest red (hue 0).

    Args:
        depths: (N,) array of depths.

    Returns:
        (N, 3) float array of RGB values in [0, 1].
    """
    depths = np.asarray(depths, dtype=np.float64)
    if depths.size == 0:
        return np.zeros((0, 3))
    d_min, d_max = depths.min(), depths.max()
    span = d_max - d_min
    n = (depths - d_min) / span if span > 0 else np.zeros_like(depths)
    hsv = np.stack([(1.0 - n) * 240.0 / 360.0,
                    np.full_like(n, 0.9),
                    0.8 + 0.2 * n], axis=1)
    return hsv_to_rgb(hsv)


class PointCloudAccumulator:
    def __init__(self, config: PointCloudConfig = None):
        self.config = config or PointCloudConfig()
        self._lock = threading.Lock()
        self._clear_arrays()

    def _clear_arrays(self):
        self.ids = np.empty(0, dtype=np.int64)
        self.positions = np.empty((0, 3))
        self.colors = np.empty((0, 3))
        self.confidences = np.empty(0)
        self.depths = np.empty(0)

    def __len__(self):
        return len(self.ids)

    def add_points(self, map_points):
        """
        Ingest map points, skipping those below the confidence minimum or
        with non-finite positions.

        Returns:
            Number of points accepted.
        """
        rows = [mp for mp in map_points
                if mp.confidence >= self.config.min_confidence and mp.is_valid()]
        if not rows:
            return 0
        ids = np.array([UNLINKED if mp.id is None else mp.id for mp in rows], dtype=np.int64)
        positions = np.array([mp.position for mp in rows])
        colors = np.array([mp.color for mp in rows])
        confidences = np.array([mp.confidence for mp in rows])
        depths = np.array([mp.depth if mp.depth > 0 else np.linalg.norm(mp.position)
                           for mp in rows])
        with self._lock:
            self.ids = np.concatenate([self.ids, ids])
            self.positions = np.vstack([self.positions, positions])
            self.colors = np.vstack([self.colors, colors])
            self.confidences = np.concatenate([self.confidences, confidences])
            self.depths = np.concatenate([self.depths, depths])
        return len(rows)

    def refresh(self, slam_map):
        """Pull refined positions and confidences back from the map.

        Rows whose point no longer exists in the map are dropped. Merged rows
        are not linked to a single point and keep their values.
        """
        with slam_map.lock:
            with self._lock:
                keep = np.ones(len(self.ids), dtype=bool)
                for row, mp_id in enumerate(self.ids):
                    if mp_id == UNLINKED:
                        continue
                    map_point = slam_map.get_map_point(int(mp_id))
                    if map_point is None:
                        keep[row] = False
                        continue
                    self.positions[row] = map_point.position
                    self.confidences[row] = map_point.confidence
                self._keep_rows(keep)

    def _keep_rows(self, keep):
        self.ids = self.ids[keep]
        self.positions = self.positions[keep]
        self.colors = self.colors[keep]
        self.confidences = self.confidences[keep]
        self.depths = self.depths[keep]

    def _removed_ids(self, keep):
        removed = self.ids[~keep]
        return [int(i) for i in removed if i != UNLINKED]

    def filter_by_confidence(self, min_confidence=None):
        """
        Drop points whose confidence is below the threshold.

        Returns:
            Map point IDs of the removed rows.
        """
        threshold = self.config.min_confidence if min_confidence is None else min_confidence
        with self._lock:
            keep = self.confidences >= threshold
            removed = self._removed_ids(keep)
            self._keep_rows(keep)
        return removed

    def filter_statistical_outliers(self, neighbor_radius=None, k=None):
        """
        Remove points whose mean distance to neighbours within
        ``neighbor_radius`` exceeds ``mean + k * std`` over the cloud.

        Points without neighbours count as infinitely far. The filter is a
        no-op on clouds smaller than ``min_points_for_outlier`` and when no
        point has any neighbour.

        Returns:
            Map point IDs of the removed rows.
        """
        radius = self.config.neighbor_radius if neighbor_radius is None else neighbor_radius
        k = self.config.outlier_k if k is None else k
        with self._lock:
            n = len(self.ids)
            if n < self.config.min_points_for_outlier:
                return []
            nn = NearestNeighbors(radius=radius).fit(self.positions)
            distances, indices = nn.radius_neighbors(self.positions)

            mean_dist = np.full(n, np.inf)
            for i in range(n):
                others = indices[i] != i
                if np.any(others):
                    mean_dist[i] = distances[i][others].mean()

            finite = np.isfinite(mean_dist)
            if not np.any(finite):
                logger.debug("No point has neighbours within %.3f, skipping outlier filter", radius)
                return []
            threshold = mean_dist[finite].mean() + k * mean_dist[finite].std()
            keep = (mean_dist <= threshold) | np.isclose(mean_dist, threshold)
            removed = self._removed_ids(keep)
            self._keep_rows(keep)
        logger.debug("Statistical filter removed %d of %d points", n - int(keep.sum()), n)
        return removed

    def merge_voxels(self, voxel_size=None):
        """
        Replace all points sharing a voxel by one point with the averaged
        position, color, confidence and depth.

        Merging an already merged cloud changes nothing.

        Returns:
            Number of rows removed by merging.
        """
        voxel_size = self.config.voxel_size if voxel_size is None else voxel_size
        with self._lock:
            n = len(self.ids)
            if n == 0:
                return 0
            keys = np.floor(self.positions / voxel_size).astype(np.int64)
            _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
            inverse = inverse.reshape(-1)
            m = len(counts)
            if m == n:
                return 0

            def average(values):
                sums = np.zeros((m,) + values.shape[1:])
                np.add.at(sums, inverse, values)
                return sums / counts.reshape((-1,) + (1,) * (values.ndim - 1))

            # single-member voxels keep their link to the map
            row_of_voxel = np.zeros(m, dtype=np.int64)
            row_of_voxel[inverse] = np.arange(n)
            ids = np.where(counts == 1, self.ids[row_of_voxel], UNLINKED)

            self.positions = average(self.positions)
            self.colors = average(self.colors)
            self.confidences = average(self.confidences)
            self.depths = average(self.depths)
            self.ids = ids.astype(np.int64)
        logger.debug("Voxel merge: %d -> %d points", n, m)
        return n - m

    def get_point_cloud_data(self, color_by_depth=False) -> PointCloudSnapshot:
        """Copy of the current cloud; colors optionally replaced by depth colors."""
        with self._lock:
            colors = depth_to_colors(self.depths) if color_by_depth else self.colors
            return PointCloudSnapshot(
                positions=self.positions.astype(np.float32).reshape(-1),
                colors=np.asarray(colors, dtype=np.float32).reshape(-1),
                count=len(self.ids),
                confidences=self.confidences.astype(np.float32),
                depths=self.depths.astype(np.float32),
            )

    def clear(self):
        with self._lock:
            self._clear_arrays()
