"""
monoslam: a monocular visual SLAM core.

This package contains the following components:
- core: map data structures (poses, keyframes, map points, point cloud)
- frontend: feature detection, tracking and relative pose estimation
- backend: keyframe mapping and local bundle adjustment
- utils: geometry kernels, image helpers and visualization
"""

import logging

from monoslam.config import CameraIntrinsics, SlamConfig
from monoslam.system import FrameResult, MonoSlam, TrackingStatus

__version__ = '0.1.0'

__all__ = [
    'CameraIntrinsics',
    'FrameResult',
    'MonoSlam',
    'SlamConfig',
    'TrackingStatus',
    'init_logging',
]


def init_logging(level=logging.INFO):
    """Attach a console handler to the package logger (for scripts)."""
    logger = logging.getLogger('monoslam')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
