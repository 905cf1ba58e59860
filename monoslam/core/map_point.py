import numpy as np
from typing import Dict


class MapPoint:
    """A triangulated 3D landmark in world coordinates."""

    def __init__(self, position, color=(1.0, 1.0, 1.0), confidence=1.0,
                 depth=0.0, depth_uncertainty=0.0):
        """
        Args:
            position: (3,) world coordinates.
            color: RGB in [0, 1].
            confidence: Triangulation confidence in [0, 1].
            depth: Depth along the optical axis of the reference keyframe.
            depth_uncertainty: Absolute depth uncertainty.
        """
        self.id = None  # assigned by the Map
        self.position = np.asarray(position, dtype=np.float64).reshape(3)
        self.color = np.asarray(color, dtype=np.float64).reshape(3)
        self.confidence = float(confidence)
        self.depth = float(depth)
        self.depth_uncertainty = float(depth_uncertainty)
        # keyframe ID -> keypoint index
        self.observations: Dict[int, int] = {}

    def add_observation(self, keyframe_id, keypoint_idx):
        self.observations[keyframe_id] = keypoint_idx

    def is_valid(self):
        return bool(np.all(np.isfinite(self.position)))

    def __repr__(self):
        return f"MapPoint(id={self.id}, position={self.position}, confidence={self.confidence:.2f})"
