import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from monoslam.backend.bundle_adjustment import BundleAdjustment
from monoslam.backend.mapping import Mapper
from monoslam.config import CameraIntrinsics, SlamConfig
from monoslam.core.features import FeatureSet
from monoslam.core.map import Map
from monoslam.core.point_cloud import PointCloudAccumulator, PointCloudSnapshot
from monoslam.core.pose import Pose
from monoslam.errors import (GeometricDegeneracyError, InsufficientDataError,
                             NumericInvalidError)
from monoslam.frontend.feature_detector import FeatureDetector
from monoslam.frontend.feature_tracker import FeatureTracker
from monoslam.frontend.pose_estimator import PoseEstimator

logger = logging.getLogger(__name__)


class TrackingStatus(Enum):
    INITIALIZING = 'initializing'
    TRACKING = 'tracking'
    STATIONARY = 'stationary'
    INSUFFICIENT_DATA = 'insufficient_data'
    DEGENERATE = 'degenerate'
    DROPPED = 'dropped'
    STOPPED = 'stopped'


@dataclass
class FrameResult:
    """Outcome of one call to :meth:`MonoSlam.process_frame`."""
    frame_id: Optional[int]
    status: TrackingStatus
    pose: Optional[Pose] = None
    num_features: int = 0
    num_matches: int = 0
    num_inliers: int = 0
    keyframe_id: Optional[int] = None
    new_points: int = 0

    @property
    def keyframe_inserted(self):
        return self.keyframe_id is not None

    @property
    def is_tracking(self):
        return self.status in (TrackingStatus.INITIALIZING, TrackingStatus.TRACKING,
                               TrackingStatus.STATIONARY)


@dataclass
class _FrameState:
    features: FeatureSet
    pose: Pose
    keyframe_id: Optional[int] = None


class MonoSlam:
    """
    Monocular SLAM system that coordinates all components.

    Frames are processed one at a time. A frame arriving while another one is
    being processed is dropped. Local bundle adjustment runs on a background
    worker unless ``bundle_adjustment.run_async`` is off.
    """

    def __init__(self, camera_intrinsics=None, settings_file=None, config: SlamConfig = None):
        """
        Initialize the SLAM system.

        Args:
            camera_intrinsics: CameraIntrinsics or 3x3 camera matrix. Overrides
                the camera section of the settings.
            settings_file: Path to a YAML settings file (optional).
            config: SlamConfig, used when no settings file is given.
        """
        if settings_file is not None:
            config = SlamConfig.from_yaml(settings_file)
        config = config or SlamConfig()
        if camera_intrinsics is not None:
            if not isinstance(camera_intrinsics, CameraIntrinsics):
                camera_intrinsics = CameraIntrinsics.from_matrix(camera_intrinsics)
            config = config.replace(camera=camera_intrinsics)
        self.config = config

        # Initialize components
        self.map = Map()
        self.detector = FeatureDetector(config.detector)
        self.tracker = FeatureTracker(config.tracker)
        self.pose_estimator = PoseEstimator(config.camera, config.pose)
        self.mapper = Mapper(self.map, config.camera, config.mapper)
        self.bundle_adjustment = BundleAdjustment(config.camera, config.bundle_adjustment)
        self.point_cloud = PointCloudAccumulator(config.point_cloud)

        self._frame_lock = threading.Lock()
        self._executor = None
        if config.bundle_adjustment.enabled and config.bundle_adjustment.run_async:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='monoslam-ba')
        self._ba_future = None
        self._previous: Optional[_FrameState] = None
        self._frame_count = 0
        self._running = True

    # ------------------------------------------------------------------ #
    # Frame processing
    # ------------------------------------------------------------------ #
    def process_frame(self, image, timestamp=None) -> FrameResult:
        """
        Process a new frame.

        Args:
            image: Grayscale (H, W), RGB (H, W, 3) or RGBA (H, W, 4) array.
            timestamp: Capture time; defaults to the current time.

        Returns:
            FrameResult. Frames that arrive while the pipeline is busy come
            back with status DROPPED and are not processed.
        """
        if not self._running:
            return FrameResult(None, TrackingStatus.STOPPED)
        if not self._frame_lock.acquire(blocking=False):
            logger.debug("Pipeline busy, dropping frame")
            return FrameResult(None, TrackingStatus.DROPPED)
        try:
            return self._track(image, time.time() if timestamp is None else timestamp)
        finally:
            self._frame_lock.release()

    def _track(self, image, timestamp):
        frame_id = self._frame_count
        self._frame_count += 1
        features = self.detector.detect(image)

        if self._previous is None:
            if len(features) == 0:
                return FrameResult(frame_id, TrackingStatus.INSUFFICIENT_DATA)
            keyframe, _ = self.mapper.insert_keyframe(Pose.identity(), features, image, timestamp)
            self._previous = _FrameState(features, keyframe.pose, keyframe.id)
            return FrameResult(frame_id, TrackingStatus.INITIALIZING, keyframe.pose,
                               num_features=len(features), keyframe_id=keyframe.id)

        previous = self._previous
        matches = self.tracker.track(previous.features, features)
        result = FrameResult(frame_id, TrackingStatus.TRACKING,
                             num_features=len(features), num_matches=len(matches))
        previous_pose = self._reference_pose(previous)

        if (len(matches) >= self.config.pose.min_inliers
                and self._parallax(previous.features, features, matches) < self.config.mapper.min_parallax):
            # no motion to estimate; keep the previous frame as reference
            result.status = TrackingStatus.STATIONARY
            result.pose = previous_pose
            return result

        try:
            estimate = self.pose_estimator.estimate_pose(previous.features, features, matches)
        except InsufficientDataError as e:
            logger.debug("Frame %d: %s", frame_id, e)
            result.status = TrackingStatus.INSUFFICIENT_DATA
            return result
        except (GeometricDegeneracyError, NumericInvalidError) as e:
            logger.warning("Frame %d: pose estimation failed: %s", frame_id, e)
            result.status = TrackingStatus.DEGENERATE
            return result
        result.num_inliers = estimate.num_inliers

        relative = Pose(estimate.pose.rotation,
                        estimate.pose.translation * self.config.mapper.baseline_scale)
        pose = relative @ previous_pose
        result.pose = pose

        keyframe_id = None
        if self.mapper.should_insert_keyframe(pose):
            last = self.map.last_keyframe()
            if last is not None and last.id == previous.keyframe_id:
                kf_matches = estimate.inliers
            else:
                kf_matches = self.tracker.track(last.features, features) if last is not None else []
            keyframe, new_points = self.mapper.insert_keyframe(pose, features, image, timestamp, kf_matches)
            keyframe_id = keyframe.id
            result.keyframe_id = keyframe.id
            result.new_points = len(new_points)
            self.point_cloud.add_points(new_points)
            self._after_keyframe()

        self._previous = _FrameState(features, pose, keyframe_id)
        return result

    def _reference_pose(self, previous):
        """Pose of the previous frame, taking refinement of its keyframe into account."""
        if previous.keyframe_id is not None:
            keyframe = self.map.get_keyframe(previous.keyframe_id)
            if keyframe is not None:
                return keyframe.pose
        return previous.pose

    @staticmethod
    def _parallax(features1, features2, matches):
        if not matches:
            return 0.0
        pts1 = features1.points[[m.query_idx for m in matches]]
        pts2 = features2.points[[m.train_idx for m in matches]]
        return float(np.median(np.linalg.norm(pts2 - pts1, axis=1)))

    def _after_keyframe(self):
        n = self.map.num_keyframes
        interval = self.config.point_cloud.filter_interval
        if interval > 0 and n % interval == 0:
            self.filter_point_cloud()
        ba = self.config.bundle_adjustment
        if ba.enabled and n >= 2 and n % max(1, ba.interval) == 0:
            self._schedule_refinement()

    # ------------------------------------------------------------------ #
    # Refinement and filtering
    # ------------------------------------------------------------------ #
    def _schedule_refinement(self):
        if self._executor is None:
            self._run_refinement()
            return
        if self._ba_future is not None and not self._ba_future.done():
            logger.debug("Bundle adjustment still running, skipping this keyframe")
            return
        self._ba_future = self._executor.submit(self._run_refinement)
        self._ba_future.add_done_callback(_log_refinement_failure)

    def _run_refinement(self):
        result = self.bundle_adjustment.optimize(self.map)
        if result is not None:
            self.point_cloud.refresh(self.map)
        return result

    def wait_for_refinement(self, timeout=None):
        """Block until the pending bundle adjustment job (if any) is done."""
        future = self._ba_future
        if future is not None:
            future.result(timeout=timeout)

    def filter_point_cloud(self):
        """
        Apply the confidence and statistical filters and merge voxels.
        Points removed from the cloud are removed from the map as well.

        Returns:
            Number of map points removed.
        """
        removed = self.point_cloud.filter_by_confidence()
        removed += self.point_cloud.filter_statistical_outliers()
        self.point_cloud.merge_voxels()
        return self.map.remove_map_points(removed)

    # ------------------------------------------------------------------ #
    # Queries and control
    # ------------------------------------------------------------------ #
    @property
    def state(self):
        return self.mapper.state

    @property
    def num_keyframes(self):
        return self.map.num_keyframes

    @property
    def num_map_points(self):
        return len(self.map)

    def get_point_cloud_data(self, color_by_depth=False) -> PointCloudSnapshot:
        return self.point_cloud.get_point_cloud_data(color_by_depth)

    get_point_cloud = get_point_cloud_data

    def get_trajectory(self):
        """(K, 3) keyframe camera centers, oldest first."""
        return self.map.trajectory()

    def reset(self):
        """Discard all keyframes and points; the next frame starts a new map."""
        with self._frame_lock:
            if self._ba_future is not None:
                wait([self._ba_future])
                self._ba_future = None
            self.mapper.reset()
            self.point_cloud.clear()
            self._previous = None
        logger.info("SLAM system reset")

    def shutdown(self):
        """Stop accepting frames and wait for background work to finish."""
        self._running = False
        with self._frame_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
        logger.info("SLAM system has been shut down")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()


def _log_refinement_failure(future):
    if not future.cancelled() and future.exception() is not None:
        logger.error("Bundle adjustment failed", exc_info=future.exception())
