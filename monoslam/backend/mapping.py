import logging
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from monoslam.config import CameraIntrinsics, MapperConfig
from monoslam.core.features import FeatureSet, Match
from monoslam.core.keyframe import KeyFrame
from monoslam.core.map import Map
from monoslam.core.map_point import MapPoint
from monoslam.core.pose import Pose
from monoslam.utils.image import sample_colors

logger = logging.getLogger(__name__)


class MapperState(Enum):
    BOOTSTRAP = 'bootstrap'
    TRACKING = 'tracking'


class Mapper:
    def __init__(self, slam_map: Map, intrinsics: CameraIntrinsics = None,
                 config: MapperConfig = None):
        """
        Decides keyframe insertion and triangulates new map points.

        Args:
            slam_map: Map the keyframes and points are committed to.
            intrinsics: Camera intrinsics.
            config: MapperConfig with keyframe and triangulation thresholds.
        """
        self.map = slam_map
        self.intrinsics = intrinsics or CameraIntrinsics()
        self.config = config or MapperConfig()

    @property
    def state(self) -> MapperState:
        if self.map.num_keyframes < self.config.bootstrap_keyframes:
            return MapperState.BOOTSTRAP
        return MapperState.TRACKING

    def should_insert_keyframe(self, pose: Pose) -> bool:
        """
        Always while bootstrapping; afterwards once the camera has moved more
        than ``keyframe_translation`` from the last keyframe.
        """
        if self.state is MapperState.BOOTSTRAP:
            return True
        last = self.map.last_keyframe()
        return last is None or last.distance_to(pose) > self.config.keyframe_translation

    def triangulate(self, reference: KeyFrame, features: FeatureSet, matches: List[Match],
                    pose: Pose, keyframe_id: Optional[int] = None) -> List[MapPoint]:
        """
        Triangulates matches between a keyframe and the current frame.

        Depth comes from the stereo relation ``fx * baseline / disparity``
        where the baseline is the distance travelled since the keyframe. The
        keyframe pixel is back-projected at that depth and moved to world
        coordinates with the keyframe pose.

        Args:
            reference: Keyframe whose keypoints are the match queries.
            features: Features of the current frame (match train side).
            matches: Correspondences reference -> current.
            pose: Camera-from-world pose of the current frame.
            keyframe_id: If given, the new points also record an observation
                in that keyframe.

        Returns:
            MapPoints passing the disparity, depth and confidence checks.
        """
        if not matches:
            return []
        cfg = self.config
        relative = pose @ reference.pose.inverse()
        baseline = float(np.linalg.norm(relative.translation))
        if baseline < 1e-9:
            logger.debug("Zero baseline to keyframe %d, nothing to triangulate", reference.id)
            return []

        query = np.array([m.query_idx for m in matches])
        train = np.array([m.train_idx for m in matches])
        pts_ref = reference.features.points[query]
        pts_cur = features.points[train]

        disparity = np.linalg.norm(pts_cur - pts_ref, axis=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            depth = self.intrinsics.fx * baseline / disparity
        uncertainty = depth * cfg.depth_uncertainty_factor
        confidence = 1.0 / (1.0 + uncertainty)

        valid = ((disparity >= cfg.min_disparity) & np.isfinite(depth)
                 & (depth >= cfg.min_depth) & (depth <= cfg.max_depth)
                 & (confidence >= cfg.min_confidence))
        if not np.any(valid):
            return []

        d = depth[valid]
        camera_points = np.column_stack([
            (pts_ref[valid, 0] - self.intrinsics.cx) / self.intrinsics.fx * d,
            (pts_ref[valid, 1] - self.intrinsics.cy) / self.intrinsics.fy * d,
            d,
        ])
        world_points = reference.pose.inverse_transform(camera_points)
        if reference.image is not None:
            colors = sample_colors(reference.image, pts_ref[valid])
        else:
            colors = np.ones((len(d), 3))

        points = []
        for i, (q, t) in enumerate(zip(query[valid], train[valid])):
            if not np.all(np.isfinite(world_points[i])):
                continue
            mp = MapPoint(world_points[i], colors[i], confidence[valid][i],
                          d[i], uncertainty[valid][i])
            mp.add_observation(reference.id, int(q))
            if keyframe_id is not None:
                mp.add_observation(keyframe_id, int(t))
            points.append(mp)
        logger.debug("Triangulated %d of %d matches (baseline %.3f)", len(points), len(matches), baseline)
        return points

    def insert_keyframe(self, pose: Pose, features: FeatureSet, image=None, timestamp=0.0,
                        matches: Optional[List[Match]] = None) -> Tuple[KeyFrame, List[MapPoint]]:
        """
        Creates a keyframe and commits it with its new points in one step.

        The first keyframe of a map defines the world origin and gets the
        identity pose.

        Args:
            pose: Camera-from-world pose of the frame.
            features: Features of the frame.
            image: Source image (for point colors).
            timestamp: Frame time.
            matches: Correspondences from the last keyframe to this frame.

        Returns:
            (keyframe, new map points with assigned IDs).
        """
        reference = self.map.last_keyframe()
        if reference is None:
            pose = Pose.identity()

        keyframe_id = self.map.next_keyframe_id
        new_points = []
        if reference is not None and matches:
            new_points = self.triangulate(reference, features, matches, pose, keyframe_id)

        keyframe = KeyFrame(keyframe_id, pose, features, image, timestamp)
        self.map.insert_keyframe(keyframe, new_points)
        logger.info("Inserted keyframe %d with %d new points (%d total)",
                    keyframe.id, len(new_points), len(self.map))
        return keyframe, new_points

    def reset(self):
        self.map.clear()
