import os

os.environ.setdefault("MPLBACKEND", "Agg")

import pytest

from monoslam.config import CameraIntrinsics
from synthetic import SyntheticScene, grid_points


@pytest.fixture
def intrinsics():
    return CameraIntrinsics(fx=600.0, fy=600.0, cx=320.0, cy=240.0)


@pytest.fixture
def grid_scene(intrinsics):
    return SyntheticScene(grid_points(), intrinsics)
