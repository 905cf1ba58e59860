"""
Local bundle adjustment over the most recent keyframes.

A light-weight alternating scheme instead of a full non-linear solver:
points are re-triangulated from their observations and blended with their
previous estimate, then every keyframe except the oldest one in the window
takes a gradient step on its reprojection error. The oldest keyframe fixes
the gauge and never moves.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from scipy.spatial.transform import Rotation

from monoslam.config import BundleAdjustmentConfig, CameraIntrinsics
from monoslam.core.map import Map
from monoslam.core.pose import Pose, project_to_so3
from monoslam.utils.geometry import normalize_pixels, triangulate_multiview

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    point_id: int
    keyframe_id: int
    xy: np.ndarray  # normalized image coordinates


@dataclass
class BundleAdjustmentResult:
    keyframe_ids: List[int]
    poses: Dict[int, Pose] = field(default_factory=dict)
    positions: Dict[int, np.ndarray] = field(default_factory=dict)
    initial_error: float = 0.0
    final_error: float = 0.0

    @property
    def num_points(self):
        return len(self.positions)


class BundleAdjustment:
    def __init__(self, intrinsics: CameraIntrinsics = None, config: BundleAdjustmentConfig = None):
        self.intrinsics = intrinsics or CameraIntrinsics()
        self.config = config or BundleAdjustmentConfig()

    def optimize(self, slam_map: Map) -> Optional[BundleAdjustmentResult]:
        """
        Refines the last ``window_size`` keyframes and the points they see.

        The window is copied under the map lock, refined without holding it,
        and written back in a single locked update.

        Returns:
            BundleAdjustmentResult, or None when the window has fewer than
            two keyframes.
        """
        with slam_map.lock:
            window = slam_map.recent_keyframes(self.config.window_size)
            if len(window) < 2:
                return None
            keyframe_ids = [kf.id for kf in window]
            poses = {kf.id: kf.pose.copy() for kf in window}
            positions = {}
            observations = []
            for kf in window:
                if not kf.map_point_ids:
                    continue
                kp_indices = list(kf.map_point_ids.keys())
                xy = normalize_pixels(kf.features.points[kp_indices], self.intrinsics)
                for kp_idx, coords in zip(kp_indices, xy):
                    mp_id = kf.map_point_ids[kp_idx]
                    map_point = slam_map.get_map_point(mp_id)
                    if map_point is None:
                        continue
                    positions[mp_id] = map_point.position.copy()
                    observations.append(Observation(mp_id, kf.id, coords))

        result = self.refine(keyframe_ids, poses, positions, observations)
        anchor = keyframe_ids[0]
        slam_map.apply_refinement(
            poses={k: p for k, p in result.poses.items() if k != anchor},
            positions=result.positions)
        logger.info("[Local BA] keyframes=%s points=%d reprojection RMS %.3f -> %.3f px",
                    keyframe_ids, result.num_points, result.initial_error, result.final_error)
        return result

    def refine(self, keyframe_ids, poses, positions, observations) -> BundleAdjustmentResult:
        """
        Runs the refinement passes on copies of the window state.

        Args:
            keyframe_ids: Window keyframe IDs, oldest (anchor) first.
            poses: keyframe_id -> Pose.
            positions: map_point_id -> (3,) position.
            observations: List of Observation.

        Returns:
            BundleAdjustmentResult with the refined poses and positions.
        """
        cfg = self.config
        poses = {k: p.copy() for k, p in poses.items()}
        positions = {k: np.asarray(v, dtype=np.float64).copy() for k, v in positions.items()}

        by_point = defaultdict(list)
        by_keyframe = defaultdict(list)
        for obs in observations:
            if obs.point_id in positions and obs.keyframe_id in poses:
                by_point[obs.point_id].append(obs)
                by_keyframe[obs.keyframe_id].append(obs)

        initial_error = self.reprojection_error(poses, positions, observations)
        for _ in range(cfg.iterations):
            self._refine_points(poses, positions, by_point)
            for kf_id in keyframe_ids[1:]:
                obs = by_keyframe.get(kf_id, [])
                if len(obs) < cfg.min_observations:
                    continue
                poses[kf_id] = self._step_pose(poses[kf_id], positions, obs)
        final_error = self.reprojection_error(poses, positions, observations)

        return BundleAdjustmentResult(list(keyframe_ids), poses, positions,
                                      initial_error, final_error)

    def _refine_points(self, poses, positions, by_point):
        damping = self.config.point_damping
        for mp_id, obs in by_point.items():
            if len(obs) < 2:
                continue
            projections = [poses[o.keyframe_id].matrix[:3] for o in obs]
            X = triangulate_multiview(projections, [o.xy for o in obs])
            if X is None:
                continue
            if any(poses[o.keyframe_id].transform(X)[0, 2] <= 0 for o in obs):
                continue
            positions[mp_id] = damping * positions[mp_id] + (1.0 - damping) * X

    def _step_pose(self, pose, positions, obs):
        """One damped gradient step on the mean squared reprojection error."""
        X = np.array([positions[o.point_id] for o in obs])
        xy = np.array([o.xy for o in obs])
        grad_rot, grad_trans = self._pose_gradient(pose, X, xy)
        if not (np.all(np.isfinite(grad_rot)) and np.all(np.isfinite(grad_trans))):
            return pose
        lr = self.config.learning_rate
        R = Rotation.from_rotvec(-lr * grad_rot).as_matrix() @ pose.rotation
        t = pose.translation - lr * grad_trans
        return Pose(project_to_so3(R), t)

    @staticmethod
    def _pose_gradient(pose, X, xy):
        """
        Gradient of 0.5 * mean |r|^2 w.r.t. a left rotation-vector
        perturbation and the translation, r being the residual in normalized
        image coordinates.
        """
        RX = X @ pose.rotation.T
        Xc = RX + pose.translation
        z = Xc[:, 2]
        front = z > 1e-9
        if not np.any(front):
            return np.zeros(3), np.zeros(3)
        RX, Xc, xy, z = RX[front], Xc[front], xy[front], z[front]
        x = Xc[:, 0] / z
        y = Xc[:, 1] / z
        rx = x - xy[:, 0]
        ry = y - xy[:, 1]
        # J^T r with J the Jacobian of the projection at Xc
        q = np.column_stack([rx / z, ry / z, -(x * rx + y * ry) / z])
        grad_trans = q.mean(axis=0)
        grad_rot = np.cross(RX, q).mean(axis=0)
        return grad_rot, grad_trans

    def reprojection_error(self, poses, positions, observations):
        """RMS reprojection error in pixels over the usable observations."""
        errors = []
        for o in observations:
            if o.point_id not in positions or o.keyframe_id not in poses:
                continue
            Xc = poses[o.keyframe_id].transform(positions[o.point_id])[0]
            if Xc[2] <= 1e-9:
                continue
            du = (Xc[0] / Xc[2] - o.xy[0]) * self.intrinsics.fx
            dv = (Xc[1] / Xc[2] - o.xy[1]) * self.intrinsics.fy
            errors.append(du * du + dv * dv)
        if not errors:
            return 0.0
        return float(np.sqrt(np.mean(errors)))
