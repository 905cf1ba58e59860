import logging
import threading
import numpy as np
from typing import Dict, Iterable, List, Optional

from monoslam.core.keyframe import KeyFrame
from monoslam.core.map_point import MapPoint

logger = logging.getLogger(__name__)


class Map:
    """
    Store of KeyFrames and MapPoints indexed by stable integer IDs.

    All mutations go through methods that hold ``self.lock``, so there is a
    single writer at a time and readers that take the lock see either the
    state before or after a complete update.
    """

    def __init__(self):
        """Initialize an empty map."""
        self.lock = threading.RLock()
        self.keyframes: Dict[int, KeyFrame] = {}  # keyframe_id -> KeyFrame, insertion ordered
        self.map_points: Dict[int, MapPoint] = {}  # map_point_id -> MapPoint
        self.next_keyframe_id = 0
        self.next_map_point_id = 0

    def __len__(self):
        return len(self.map_points)

    @property
    def num_keyframes(self):
        return len(self.keyframes)

    def insert_keyframe(self, keyframe: KeyFrame, map_points: Iterable[MapPoint] = ()):
        """
        Adds a keyframe together with the map points triangulated for it.

        Point observations are registered in every keyframe they reference.
        Both are committed in one step.

        Args:
            keyframe: KeyFrame whose ID is ``next_keyframe_id``.
            map_points: New MapPoints, IDs not yet assigned.

        Returns:
            List of assigned MapPoint IDs.
        """
        with self.lock:
            if keyframe.id < self.next_keyframe_id or keyframe.id in self.keyframes:
                raise ValueError(f"Keyframe id {keyframe.id} is not newer than the map")
            self.keyframes[keyframe.id] = keyframe
            self.next_keyframe_id = keyframe.id + 1

            ids = []
            for map_point in map_points:
                ids.append(self._add_map_point(map_point))
            return ids

    def _add_map_point(self, map_point):
        map_point.id = self.next_map_point_id
        self.map_points[map_point.id] = map_point
        self.next_map_point_id += 1
        for kf_id, kp_idx in map_point.observations.items():
            keyframe = self.keyframes.get(kf_id)
            if keyframe is not None:
                keyframe.add_map_point(kp_idx, map_point.id)
        return map_point.id

    def get_keyframe(self, keyframe_id) -> Optional[KeyFrame]:
        return self.keyframes.get(keyframe_id, None)

    def get_map_point(self, map_point_id) -> Optional[MapPoint]:
        return self.map_points.get(map_point_id, None)

    def last_keyframe(self) -> Optional[KeyFrame]:
        with self.lock:
            if not self.keyframes:
                return None
            return next(reversed(self.keyframes.values()))

    def recent_keyframes(self, n) -> List[KeyFrame]:
        """The last ``n`` keyframes, oldest first."""
        with self.lock:
            return list(self.keyframes.values())[-n:] if n > 0 else []

    def remove_map_points(self, map_point_ids):
        """
        Removes map points and detaches them from the keyframes observing them.

        Returns:
            Number of points removed.
        """
        removed = 0
        with self.lock:
            for map_point_id in map_point_ids:
                map_point = self.map_points.pop(map_point_id, None)
                if map_point is None:
                    continue
                for kf_id in map_point.observations:
                    keyframe = self.keyframes.get(kf_id)
                    if keyframe is not None:
                        keyframe.remove_map_point(map_point_id)
                removed += 1
        if removed:
            logger.debug("Removed %d map points", removed)
        return removed

    def apply_refinement(self, poses=None, positions=None):
        """
        Writes refined keyframe poses and point positions back in one step.

        IDs that disappeared in the meantime are skipped.

        Args:
            poses: Mapping keyframe_id -> Pose.
            positions: Mapping map_point_id -> (3,) position.
        """
        with self.lock:
            for kf_id, pose in (poses or {}).items():
                keyframe = self.keyframes.get(kf_id)
                if keyframe is not None:
                    keyframe.pose = pose
            for mp_id, position in (positions or {}).items():
                map_point = self.map_points.get(mp_id)
                if map_point is not None:
                    map_point.position = np.asarray(position, dtype=np.float64).reshape(3)

    def get_point_array(self):
        """(N, 3) array of all map point positions."""
        with self.lock:
            if not self.map_points:
                return np.empty((0, 3))
            return np.array([mp.position for mp in self.map_points.values()])

    def trajectory(self):
        """(K, 3) array of keyframe camera centers in insertion order."""
        with self.lock:
            if not self.keyframes:
                return np.empty((0, 3))
            return np.array([kf.get_camera_center() for kf in self.keyframes.values()])

    def clear(self):
        with self.lock:
            self.keyframes.clear()
            self.map_points.clear()
            self.next_keyframe_id = 0
            self.next_map_point_id = 0
