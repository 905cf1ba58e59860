import numpy as np
from typing import Dict, Optional

from monoslam.core.features import FeatureSet
from monoslam.core.pose import Pose


class KeyFrame:
    """
    A frame selected to anchor map points.

    Only the Mapper creates keyframes and only bundle adjustment changes
    their pose afterwards.
    """

    def __init__(self, id, pose: Pose, features: FeatureSet, image=None, timestamp=0.0):
        """
        Args:
            id: Unique, monotonically increasing keyframe ID.
            pose: Camera-from-world pose.
            features: FeatureSet detected on the frame.
            image: Source image the features and point colors come from.
            timestamp: Capture time of the frame.
        """
        self.id = id
        self.pose = pose
        self.features = features
        self.image = image
        self.timestamp = timestamp
        # keypoint index -> map point ID
        self.map_point_ids: Dict[int, int] = {}

    def get_camera_center(self):
        return self.pose.camera_center

    def add_map_point(self, keypoint_idx, map_point_id):
        self.map_point_ids[keypoint_idx] = map_point_id

    def remove_map_point(self, map_point_id):
        for kp_idx in [k for k, v in self.map_point_ids.items() if v == map_point_id]:
            del self.map_point_ids[kp_idx]

    def get_map_point_id(self, keypoint_idx) -> Optional[int]:
        return self.map_point_ids.get(keypoint_idx)

    def distance_to(self, pose: Pose):
        """Translation between this keyframe's camera center and ``pose``'s."""
        return float(np.linalg.norm(pose.camera_center - self.get_camera_center()))

    def __repr__(self):
        return f"KeyFrame(id={self.id}, keypoints={len(self.features)}, points={len(self.map_point_ids)})"
