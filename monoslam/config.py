"""
Configuration for the SLAM pipeline.

Every component takes a frozen dataclass so that thresholds cannot change
while a session is running. A settings file is a YAML document with one
section per component, for example::

    camera:
      fx: 718.856
      fy: 718.856
      cx: 607.19
      cy: 185.21
    tracker:
      outlier_threshold: 4.0
    bundle_adjustment:
      run_async: false
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
import yaml

from monoslam.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics. Defaults approximate a 640x480 webcam."""
    fx: float = 800.0
    fy: float = 800.0
    cx: float = 320.0
    cy: float = 240.0

    @property
    def matrix(self):
        """3x3 camera matrix K."""
        return np.array([[self.fx, 0.0, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]])

    @property
    def focal_length(self):
        return 0.5 * (self.fx + self.fy)

    @classmethod
    def from_matrix(cls, K):
        K = np.asarray(K, dtype=float)
        return cls(fx=float(K[0, 0]), fy=float(K[1, 1]),
                   cx=float(K[0, 2]), cy=float(K[1, 2]))


@dataclass(frozen=True)
class DetectorConfig:
    max_features: int = 800
    scales: Tuple[float, ...] = (0.8, 1.0, 1.2)
    harris_k: float = 0.04
    block_size: int = 5
    quality_level: float = 0.01
    min_response: float = 1e-6
    nms_radius: float = 8.0
    subpix_window: int = 3
    descriptor_bits: int = 256
    patch_size: int = 31
    pattern_seed: int = 42
    blur_sigma: float = 2.0
    # capped by the number of scales when detecting
    num_threads: int = field(default_factory=lambda: os.cpu_count() or 1)


@dataclass(frozen=True)
class TrackerConfig:
    max_pixel_distance: float = 50.0
    max_descriptor_distance: float = 80.0
    ratio: float = 0.8
    ransac_iterations: int = 100
    sample_size: int = 4
    outlier_threshold: float = 3.0
    min_matches: int = 8
    seed: int = 0


@dataclass(frozen=True)
class PoseConfig:
    ransac_iterations: int = 100
    threshold_px: float = 2.0
    confidence: float = 0.99
    lo_iterations: int = 10
    lo_threshold_factor: float = 3.0
    min_inliers: int = 8
    chirality_samples: int = 50
    seed: int = 0


@dataclass(frozen=True)
class MapperConfig:
    bootstrap_keyframes: int = 2
    keyframe_translation: float = 0.15
    min_disparity: float = 1.5
    min_depth: float = 0.05
    max_depth: float = 100.0
    depth_uncertainty_factor: float = 0.1
    min_confidence: float = 0.3
    baseline_scale: float = 0.1
    min_parallax: float = 1.0


@dataclass(frozen=True)
class BundleAdjustmentConfig:
    enabled: bool = True
    window_size: int = 3
    iterations: int = 5
    point_damping: float = 0.7
    learning_rate: float = 0.01
    min_observations: int = 4
    interval: int = 1
    run_async: bool = True


@dataclass(frozen=True)
class PointCloudConfig:
    min_confidence: float = 0.2
    outlier_k: float = 2.0
    neighbor_radius: float = 0.05
    min_points_for_outlier: int = 9
    voxel_size: float = 0.01
    filter_interval: int = 10


@dataclass(frozen=True)
class SlamConfig:
    """Aggregated configuration for :class:`monoslam.system.MonoSlam`."""
    camera: CameraIntrinsics = field(default_factory=CameraIntrinsics)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    pose: PoseConfig = field(default_factory=PoseConfig)
    mapper: MapperConfig = field(default_factory=MapperConfig)
    bundle_adjustment: BundleAdjustmentConfig = field(default_factory=BundleAdjustmentConfig)
    point_cloud: PointCloudConfig = field(default_factory=PointCloudConfig)

    @classmethod
    def from_dict(cls, settings):
        """Build a config from nested dictionaries, one per section.

        Args:
            settings: Mapping of section name to a mapping of field overrides.

        Returns:
            SlamConfig with defaults for everything not given.

        Raises:
            ConfigError: On unknown sections or fields.
        """
        settings = settings or {}
        if not isinstance(settings, dict):
            raise ConfigError("Settings must be a mapping of sections")
        sections = {f.name: f for f in dataclasses.fields(cls)}
        kwargs = {}
        for name, values in settings.items():
            if name not in sections:
                raise ConfigError(f"Unknown settings section '{name}'")
            section_type = sections[name].default_factory
            kwargs[name] = _build_section(section_type, name, values or {})
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path):
        """Load a settings file written in YAML."""
        with open(path, 'r') as f:
            settings = yaml.safe_load(f)
        logger.debug("Loaded settings from %s", path)
        return cls.from_dict(settings)

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)


def _build_section(section_type, name, values):
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name: f for f in dataclasses.fields(section_type)}
    unknown = set(values) - set(known)
    if unknown:
        raise ConfigError(f"Unknown keys in section '{name}': {sorted(unknown)}")
    values = dict(values)
    if 'scales' in values:
        values['scales'] = tuple(float(s) for s in values['scales'])
    try:
        return section_type(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid values in section '{name}': {e}") from e
