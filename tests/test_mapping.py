import numpy as np
import pytest

from monoslam.backend.mapping import Mapper, MapperState
from monoslam.config import MapperConfig
from monoslam.core.features import FeatureSet, Match
from monoslam.core.map import Map
from monoslam.core.pose import Pose
from synthetic import pose_from_center, rotation_about_y


def _pixels(point, pose, intrinsics):
    Xc = pose.transform(point)[0]
    return np.array([intrinsics.fx * Xc[0] / Xc[2] + intrinsics.cx,
                     intrinsics.fy * Xc[1] / Xc[2] + intrinsics.cy])


def _two_view(point, ref_pose, cur_pose, intrinsics):
    return (FeatureSet.from_points([_pixels(point, ref_pose, intrinsics)]),
            FeatureSet.from_points([_pixels(point, cur_pose, intrinsics)]))


@pytest.mark.parametrize("ref_pose", [
    Pose.identity(),
    pose_from_center(rotation_about_y(0.3), [1.0, -0.5, 2.0]),
])
def test_triangulation_matches_ground_truth(intrinsics, ref_pose):
    point = ref_pose.inverse_transform([[0.3, -0.2, 4.0]])[0]
    # sideways step of 0.1 along the reference camera's x axis
    cur_pose = pose_from_center(ref_pose.rotation,
                                ref_pose.camera_center + ref_pose.rotation.T @ [0.1, 0.0, 0.0])
    f_ref, f_cur = _two_view(point, ref_pose, cur_pose, intrinsics)

    slam_map = Map()
    mapper = Mapper(slam_map, intrinsics)
    mapper.insert_keyframe(Pose.identity(), f_ref)
    slam_map.keyframes[0].pose = ref_pose

    points = mapper.triangulate(slam_map.last_keyframe(), f_cur, [Match(0, 0, 0.0)], cur_pose)
    assert len(points) == 1
    assert np.linalg.norm(points[0].position - point) < 1e-3 * np.linalg.norm(point)
    assert np.isclose(points[0].depth, 4.0)
    assert np.isclose(points[0].confidence, 1.0 / (1.0 + 0.4))


def test_depth_and_disparity_bounds(intrinsics):
    config = MapperConfig(min_depth=0.5, max_depth=10.0)
    slam_map = Map()
    mapper = Mapper(slam_map, intrinsics, config)
    ref_pts = np.array([[300.0, 200.0]] * 4)
    # baseline 0.1, fx 600: depth = 60 / disparity
    disparities = [1.0, 3.0, 200.0, 20.0]
    cur_pts = ref_pts - np.column_stack([disparities, np.zeros(4)])
    mapper.insert_keyframe(Pose.identity(), FeatureSet.from_points(ref_pts))
    cur_pose = pose_from_center(np.eye(3), [0.1, 0.0, 0.0])

    matches = [Match(i, i, 0.0) for i in range(4)]
    points = mapper.triangulate(slam_map.last_keyframe(), FeatureSet.from_points(cur_pts),
                                matches, cur_pose)
    # 1 px: below min disparity; 3 px: depth 20 > max; 200 px: depth 0.3 < min
    assert len(points) == 1
    assert np.isclose(points[0].depth, 3.0)
    for mp in points:
        assert config.min_depth <= mp.depth <= config.max_depth


def test_low_confidence_points_discarded(intrinsics):
    slam_map = Map()
    mapper = Mapper(slam_map, intrinsics)
    mapper.insert_keyframe(Pose.identity(), FeatureSet.from_points([[300.0, 200.0]]))
    # disparity 2 px -> depth 30 -> confidence 0.25 < 0.3
    points = mapper.triangulate(slam_map.last_keyframe(), FeatureSet.from_points([[298.0, 200.0]]),
                                [Match(0, 0, 0.0)], pose_from_center(np.eye(3), [0.1, 0.0, 0.0]))
    assert points == []


def test_keyframe_policy_and_states(intrinsics):
    slam_map = Map()
    mapper = Mapper(slam_map, intrinsics, MapperConfig(keyframe_translation=0.15))
    features = FeatureSet.from_points([[100.0, 100.0]])

    assert mapper.state is MapperState.BOOTSTRAP
    far_away = pose_from_center(np.eye(3), [5.0, 0.0, 0.0])
    kf0, _ = mapper.insert_keyframe(far_away, features)
    assert kf0.id == 0
    assert np.allclose(kf0.pose.matrix, np.eye(4))

    # still bootstrapping: inserted regardless of motion
    assert mapper.should_insert_keyframe(Pose.identity())
    mapper.insert_keyframe(pose_from_center(np.eye(3), [0.05, 0.0, 0.0]), features)
    assert mapper.state is MapperState.TRACKING

    assert not mapper.should_insert_keyframe(pose_from_center(np.eye(3), [0.15, 0.0, 0.0]))
    assert mapper.should_insert_keyframe(pose_from_center(np.eye(3), [0.25, 0.0, 0.0]))


def test_insert_keyframe_records_observations(intrinsics, grid_scene):
    slam_map = Map()
    mapper = Mapper(slam_map, intrinsics)
    pose2 = pose_from_center(np.eye(3), [0.1, 0.0, 0.0])
    f1 = FeatureSet.from_points(grid_scene.project(Pose.identity()))
    f2 = FeatureSet.from_points(grid_scene.project(pose2))
    matches = [Match(i, i, 0.0) for i in range(len(f1))]

    kf0, _ = mapper.insert_keyframe(Pose.identity(), f1, grid_scene.render_rgba(Pose.identity()))
    kf1, points = mapper.insert_keyframe(pose2, f2, grid_scene.render_rgba(pose2), matches=matches)

    assert len(points) == 20
    assert len(slam_map) == 20
    for mp in points:
        assert mp.observations == {kf0.id: mp.observations[kf0.id], kf1.id: mp.observations[kf1.id]}
        assert kf0.get_map_point_id(mp.observations[kf0.id]) == mp.id
        assert kf1.get_map_point_id(mp.observations[kf1.id]) == mp.id
        assert np.all((0.0 <= mp.color) & (mp.color <= 1.0))
    assert np.allclose(np.sort(slam_map.get_point_array(), axis=0),
                       np.sort(grid_scene.points, axis=0), atol=1e-6)


def test_reset_returns_to_bootstrap(intrinsics):
    slam_map = Map()
    mapper = Mapper(slam_map, intrinsics)
    features = FeatureSet.from_points([[100.0, 100.0]])
    mapper.insert_keyframe(Pose.identity(), features)
    mapper.insert_keyframe(pose_from_center(np.eye(3), [0.3, 0.0, 0.0]), features)

    mapper.reset()
    assert slam_map.num_keyframes == 0
    assert len(slam_map) == 0
    assert mapper.state is MapperState.BOOTSTRAP
    kf, _ = mapper.insert_keyframe(pose_from_center(np.eye(3), [1.0, 0.0, 0.0]), features)
    assert kf.id == 0
    assert np.allclose(kf.pose.matrix, np.eye(4))
