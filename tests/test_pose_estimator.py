import numpy as np
import pytest

from monoslam.config import PoseConfig
from monoslam.core.features import FeatureSet, Match
from monoslam.core.pose import Pose
from monoslam.errors import InsufficientDataError
from monoslam.frontend.pose_estimator import PoseEstimator
from synthetic import SyntheticScene, pose_from_center, random_points, rotation_about_y


def _correspondences(scene, pose2, n=None):
    pts1 = scene.project(Pose.identity())
    pts2 = scene.project(pose2)
    if n is not None:
        pts1, pts2 = pts1[:n], pts2[:n]
    matches = [Match(i, i, 0.0) for i in range(len(pts1))]
    return FeatureSet.from_points(pts1), FeatureSet.from_points(pts2), matches


def _angle_deg(a, b):
    cos = np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))
    return np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))


def _rotation_angle_deg(R):
    return np.degrees(np.arccos(np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)))


def test_fewer_than_eight_correspondences_gives_no_pose(intrinsics):
    scene = SyntheticScene(random_points(7, seed=1), intrinsics)
    f1, f2, matches = _correspondences(scene, pose_from_center(np.eye(3), [0.2, 0.0, 0.0]))
    estimator = PoseEstimator(intrinsics)

    assert estimator.estimate(f1, f2, matches) is None
    with pytest.raises(InsufficientDataError):
        estimator.estimate_pose(f1, f2, matches)


def test_exactly_eight_correspondences_succeed(intrinsics):
    scene = SyntheticScene(random_points(8, seed=2), intrinsics)
    pose2 = pose_from_center(rotation_about_y(0.05), [0.3, 0.05, 0.1])
    f1, f2, matches = _correspondences(scene, pose2)

    estimate = PoseEstimator(intrinsics).estimate(f1, f2, matches)
    assert estimate is not None
    assert estimate.num_inliers == 8
    assert _angle_deg(estimate.pose.translation, pose2.translation) < 1.0
    assert _rotation_angle_deg(estimate.pose.rotation @ pose2.rotation.T) < 0.5


def test_recovers_motion_despite_outliers(intrinsics):
    scene = SyntheticScene(random_points(80, seed=3), intrinsics)
    pose2 = pose_from_center(rotation_about_y(-0.08), [0.25, -0.02, 0.05])
    f1, f2, matches = _correspondences(scene, pose2)

    rng = np.random.default_rng(3)
    pts2 = f2.points.copy()
    pts2[:12] += rng.uniform(15, 40, size=(12, 2)) * rng.choice([-1, 1], size=(12, 2))
    pts2[12:] += rng.normal(0, 0.3, size=(68, 2))
    f2 = FeatureSet.from_points(pts2)

    estimate = PoseEstimator(intrinsics).estimate(f1, f2, matches)
    assert estimate is not None
    inlier_idx = {m.query_idx for m in estimate.inliers}
    assert not inlier_idx & set(range(12))
    assert len(inlier_idx) >= 60
    assert _angle_deg(estimate.pose.translation, pose2.translation) < 5.0
    assert _rotation_angle_deg(estimate.pose.rotation @ pose2.rotation.T) < 1.0
    assert np.isclose(np.linalg.norm(estimate.pose.translation), 1.0)
    assert np.isclose(np.linalg.det(estimate.pose.rotation), 1.0)


def test_chirality_picks_forward_solution(intrinsics):
    scene = SyntheticScene(random_points(30, seed=4), intrinsics)
    pose2 = pose_from_center(np.eye(3), [0.0, 0.0, 0.5])
    f1, f2, matches = _correspondences(scene, pose2)

    estimate = PoseEstimator(intrinsics).estimate(f1, f2, matches)
    assert estimate is not None
    assert estimate.num_in_front == 30
    # camera moved forward, so points move towards it: t points along -z
    assert estimate.pose.translation[2] < -0.99


def test_local_optimization_recovers_all_clean_matches(intrinsics):
    scene = SyntheticScene(random_points(80, seed=3), intrinsics)
    pose2 = pose_from_center(rotation_about_y(-0.08), [0.25, -0.02, 0.05])
    f1, f2, matches = _correspondences(scene, pose2)

    rng = np.random.default_rng(3)
    pts2 = f2.points.copy()
    pts2[:12] += rng.uniform(15, 40, size=(12, 2)) * rng.choice([-1, 1], size=(12, 2))
    pts2[12:] += rng.normal(0, 0.3, size=(68, 2))
    f2 = FeatureSet.from_points(pts2)

    # few samples are enough once promising models are re-fit on their inliers
    estimator = PoseEstimator(intrinsics, PoseConfig(ransac_iterations=30))
    estimate = estimator.estimate(f1, f2, matches)
    assert estimate is not None
    assert {m.query_idx for m in estimate.inliers} == set(range(12, 80))
    assert _angle_deg(estimate.pose.translation, pose2.translation) < 5.0


def test_required_iterations_follow_inlier_ratio(intrinsics):
    estimator = PoseEstimator(intrinsics, PoseConfig(ransac_iterations=100, confidence=0.99))
    assert estimator._required_iterations(1.0) == 1
    assert estimator._required_iterations(0.0) == 100
    expected = int(np.ceil(np.log(0.01) / np.log(1.0 - 0.9 ** 8)))
    assert estimator._required_iterations(0.9) == expected
    assert estimator._required_iterations(0.5) > estimator._required_iterations(0.9)
