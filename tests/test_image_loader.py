import os

import cv2
import numpy as np
import pytest

from monoslam.utils.image_loader import ImageLoader


@pytest.fixture
def sequence(tmp_path):
    image_dir = tmp_path / "image_0"
    image_dir.mkdir()
    for i in range(3):
        img = np.zeros((20, 30, 3), dtype=np.uint8)
        img[..., 0] = 10 * i  # blue channel in BGR
        cv2.imwrite(os.path.join(str(image_dir), f"{i:06d}.png"), img)
    (tmp_path / "times.txt").write_text("0.0\n0.1\n0.2\n")
    (tmp_path / "calib.txt").write_text(
        "P0: 718.8 0 607.1 0 0 718.8 185.2 0 0 0 1 0\n"
        "P1: 718.8 0 607.1 -386.1 0 718.8 185.2 0 0 0 1 0\n")
    return tmp_path


def test_loads_frames_in_order(sequence):
    loader = ImageLoader(str(sequence))
    assert len(loader) == 3

    frames = list(loader)
    assert [t for _, t in frames] == [0.0, 0.1, 0.2]
    image = frames[2][0]
    assert image.shape == (20, 30, 3)
    # converted to RGB
    assert image[0, 0, 2] == 20 and image[0, 0, 0] == 0


def test_calibration(sequence):
    intrinsics = ImageLoader(str(sequence)).intrinsics()
    assert intrinsics.fx == pytest.approx(718.8)
    assert intrinsics.cx == pytest.approx(607.1)
    assert intrinsics.cy == pytest.approx(185.2)
    assert ImageLoader(str(sequence)).intrinsics('P9') is None


def test_timestamps_fall_back_to_frame_rate(sequence):
    os.remove(os.path.join(str(sequence), "times.txt"))
    loader = ImageLoader(str(sequence), fps=10.0)
    assert loader.get_timestamp(2) == pytest.approx(0.2)


def test_unreadable_image_raises(sequence):
    broken = os.path.join(str(sequence), "image_0", "000003.png")
    with open(broken, "w") as f:
        f.write("not an image")
    loader = ImageLoader(str(sequence))
    with pytest.raises(ValueError):
        loader.load_image(3)
