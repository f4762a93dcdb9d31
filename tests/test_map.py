import numpy as np
import pytest

from gcamslam.core.frame import CameraObservations
from gcamslam.core.geometry import pose_error
from gcamslam.core.keyframe import KeyFrame
from gcamslam.core.map import Map
from gcamslam.core.map_point import MapPoint

from conftest import pose_at, random_descriptors


def _keyframe(kf_id, pose=None, n=6, seed=0):
    rng = np.random.default_rng(seed + kf_id)
    obs = [CameraObservations(rng.uniform(0, 400, (n, 2)), random_descriptors(n, rng))
           for _ in range(2)]
    return KeyFrame(kf_id, float(kf_id), np.eye(4) if pose is None else pose, obs)


def _map_with_keyframes(n_keyframes=3):
    m = Map()
    for k in range(n_keyframes):
        m.add_keyframe(_keyframe(k, pose_at(tx=0.5 * k)))
    return m


def _add_point(m, position, views, ref=None):
    mp = MapPoint(position, np.zeros(32, dtype=np.uint8), reference_keyframe_id=ref)
    mp_id = m.add_map_point(mp)
    for kf_id, cam, kp in views:
        m.add_observation(kf_id, mp_id, cam, kp)
    return mp_id


def test_observations_are_bidirectional():
    m = _map_with_keyframes(2)
    mp_id = _add_point(m, [0, 0, 5], [(0, 0, 1), (0, 1, 1), (1, 0, 2)], ref=0)

    assert m.map_points_of(0) == {mp_id}
    assert m.keyframes_observing(mp_id) == {0, 1}
    assert m.get_map_point(mp_id).num_observations == 3
    assert m.check_consistency() == []


def test_relinking_a_camera_replaces_its_keypoint():
    m = _map_with_keyframes(1)
    mp_id = _add_point(m, [0, 0, 5], [(0, 0, 1)])
    m.add_observation(0, mp_id, 0, 3)

    kf = m.get_keyframe(0)
    assert (0, 1) not in kf.map_points
    assert kf.map_points[(0, 3)] == mp_id
    assert m.get_map_point(mp_id).observations == {0: {0: 3}}
    assert m.check_consistency() == []


def test_keypoint_linked_to_new_landmark_leaves_old_one():
    m = _map_with_keyframes(2)
    a = _add_point(m, [0, 0, 5], [(0, 0, 1), (1, 0, 1)])
    b = _add_point(m, [1, 0, 5], [(1, 0, 4)])
    m.add_observation(0, b, 0, 1)

    assert m.get_keyframe(0).map_points[(0, 1)] == b
    assert m.keyframes_observing(a) == {1}
    assert m.check_consistency() == []


def test_remove_keyframe_drops_orphan_landmarks():
    m = _map_with_keyframes(2)
    orphan = _add_point(m, [0, 0, 5], [(0, 0, 0)])
    shared = _add_point(m, [0, 1, 5], [(0, 0, 1), (1, 0, 1)])

    removed = m.remove_keyframe(0)

    assert removed == [orphan]
    assert m.get_map_point(orphan) is None
    assert m.keyframes_observing(shared) == {1}
    assert m.check_consistency() == []


def test_remove_observation_with_minimum_removes_landmark():
    m = _map_with_keyframes(2)
    mp_id = _add_point(m, [0, 0, 5], [(0, 0, 0), (1, 0, 0)])

    assert m.remove_observation(1, mp_id, cam=0, min_observations=2)
    assert m.get_map_point(mp_id) is None
    assert m.map_points_of(0) == set()
    assert m.check_consistency() == []


def test_duplicate_keyframe_id_rejected():
    m = _map_with_keyframes(1)
    with pytest.raises(KeyError):
        m.add_keyframe(_keyframe(0))


def test_landmark_ids_are_never_reused():
    m = _map_with_keyframes(1)
    first = _add_point(m, [0, 0, 5], [(0, 0, 0)])
    m.remove_map_point(first)
    second = _add_point(m, [0, 0, 5], [(0, 0, 0)])
    assert second > first


def test_window_update_rejected_after_correction():
    m = _map_with_keyframes(2)
    generation = m.generation
    m.apply_correction({1: pose_at(tx=2.0)})

    assert not m.apply_window_update({0: pose_at(tx=9.0)}, {}, generation)
    assert np.allclose(m.get_keyframe(0).pose, pose_at(tx=0.0))
    assert m.apply_window_update({0: pose_at(tx=0.1)}, {}, m.generation)
    assert np.allclose(m.get_keyframe(0).pose, pose_at(tx=0.1))


def test_correction_moves_landmarks_and_newer_keyframes():
    m = _map_with_keyframes(3)
    mp_id = _add_point(m, [0.5, 0.0, 5.0], [(1, 0, 0), (2, 0, 0)], ref=1)
    old_kf2 = m.get_keyframe(2).pose.copy()
    old_position = m.get_map_point(mp_id).position.copy()
    generation = m.generation

    corrected = pose_at(tx=0.5, ty=0.2, yaw=0.05)
    deltas = m.apply_correction({1: corrected})

    delta = deltas[1]
    assert np.allclose(m.get_keyframe(1).pose, corrected)
    assert np.allclose(m.get_keyframe(0).pose, pose_at(tx=0.0))
    assert np.allclose(m.get_keyframe(2).pose, delta @ old_kf2)
    assert np.allclose(m.get_map_point(mp_id).position,
                       delta[:3, :3] @ old_position + delta[:3, 3])
    assert m.generation == generation + 1
    assert m.check_consistency() == []


def test_correction_skips_unreachable_keyframes():
    m = _map_with_keyframes(3)
    m.apply_correction({1: pose_at(tx=0.8)}, skip_ids={2})
    assert np.allclose(m.get_keyframe(1).pose, pose_at(tx=0.8))
    assert np.allclose(m.get_keyframe(2).pose, pose_at(tx=1.0))


def test_snapshot_is_isolated_from_later_writes():
    m = _map_with_keyframes(2)
    mp_id = _add_point(m, [0, 0, 5], [(0, 0, 0), (1, 0, 0)])
    snapshot = m.snapshot()

    m.set_keyframe_pose(0, pose_at(tx=3.0))
    m.set_map_point_position(mp_id, [9, 9, 9])

    assert np.allclose(snapshot.get_keyframe(0).pose, np.eye(4))
    assert np.allclose(snapshot.get_map_point(mp_id).position, [0, 0, 5])
    rot, trans = pose_error(snapshot.get_keyframe(1).pose, m.get_keyframe(1).pose)
    assert rot == pytest.approx(0.0) and trans == pytest.approx(0.0)
