import cv2
import numpy as np

from monoslam.config import DetectorConfig
from monoslam.core.features import hamming_distance
from monoslam.core.pose import Pose
from monoslam.frontend.feature_detector import FeatureDetector, brief_pattern
from synthetic import textured_image


def test_keypoints_capped_and_sorted_by_score():
    detector = FeatureDetector(DetectorConfig(max_features=50))
    features = detector.detect(textured_image(seed=1))

    assert 0 < len(features) <= 50
    scores = [kp.score for kp in features.keypoints]
    assert all(a >= b for a, b in zip(scores, scores[1:]))
    assert features.descriptors.shape == (len(features), 32)
    assert features.descriptors.dtype == np.uint8


def test_blank_frame_yields_no_features():
    features = FeatureDetector().detect(np.full((480, 640), 90, dtype=np.uint8))
    assert len(features) == 0
    assert features.descriptors.shape == (0, 32)
    assert features.points.shape == (0, 2)


def test_keypoints_respect_suppression_radius():
    detector = FeatureDetector()
    points = detector.detect(textured_image(seed=2)).points
    diff = points[:, None, :] - points[None, :, :]
    dist = np.linalg.norm(diff, axis=2) + np.eye(len(points)) * 1e6
    assert dist.min() > detector.config.nms_radius


def test_scale_tags_come_from_configured_scales():
    detector = FeatureDetector()
    features = detector.detect(textured_image(seed=3))
    assert {kp.scale for kp in features.keypoints} <= set(detector.config.scales)


def test_rgba_frame_uses_luminance():
    gray = textured_image(seed=4)
    rgba = np.dstack([gray, gray, gray, np.full_like(gray, 255)])
    detector = FeatureDetector()

    from_gray = detector.detect(gray)
    from_rgba = detector.detect(rgba)
    assert np.allclose(from_gray.points, from_rgba.points)
    assert np.array_equal(from_gray.descriptors, from_rgba.descriptors)


def test_corners_found_at_checker_junctions(grid_scene):
    features = FeatureDetector().detect(grid_scene.render(Pose.identity()))
    projected = grid_scene.project(Pose.identity())

    dist = np.linalg.norm(projected[:, None, :] - features.points[None, :, :], axis=2)
    assert np.all(dist.min(axis=1) < 2.0)


def test_symmetric_junction_located_without_bias():
    img = np.zeros((480, 640), dtype=np.uint8)
    img[:240, :320] = 255
    img[240:, 320:] = 255
    # the four quadrants meet between pixels 319/320 and 239/240
    junction = np.array([319.5, 239.5])

    for scales in [(1.0,), (0.8, 1.0, 1.2)]:
        features = FeatureDetector(DetectorConfig(scales=scales)).detect(img)
        offsets = features.points - junction
        nearest = offsets[np.argmin(np.linalg.norm(offsets, axis=1))]
        assert np.all(np.abs(nearest) < 0.25)


# --------------------------------------------------------------------------- #
#  Descriptors
# --------------------------------------------------------------------------- #
def test_sampling_pattern_shared_and_read_only():
    a, b = FeatureDetector(), FeatureDetector()
    assert a.pattern is b.pattern
    assert not a.pattern.flags.writeable
    assert a.pattern.shape == (256, 4)
    assert np.abs(a.pattern).max() <= 15
    assert brief_pattern(256, 31, 42) is a.pattern


def test_descriptors_identical_for_identical_patches():
    img = textured_image(seed=5)
    shifted = np.roll(img, shift=(0, 7), axis=(0, 1))
    detector = FeatureDetector()
    d1 = detector.compute_descriptors(img, [[200.0, 200.0]])
    d2 = detector.compute_descriptors(shifted, [[207.0, 200.0]])
    assert hamming_distance(d1[0], d2[0]) == 0


def test_border_samples_are_clamped():
    detector = FeatureDetector()
    img = textured_image(seed=6)
    h, w = img.shape
    desc = detector.compute_descriptors(img, [[0.0, 0.0], [w - 1.0, h - 1.0], [w - 3.0, 2.0]])
    assert desc.shape == (3, 32)


def test_threaded_detection_matches_sequential():
    img = cv2.GaussianBlur(textured_image(seed=7), (3, 3), 0)
    sequential = FeatureDetector(DetectorConfig(num_threads=1)).detect(img)
    threaded = FeatureDetector(DetectorConfig(num_threads=3)).detect(img)
    assert np.allclose(sequential.points, threaded.points)
