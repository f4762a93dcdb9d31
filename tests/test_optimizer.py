import numpy as np

from gcamslam.backend.optimizer import BundleAdjustment, optimize_pose
from gcamslam.core.geometry import pose_error

from conftest import make_scene, pose_at


def _correspondences(rig, pose, points):
    out = []
    for cam in range(rig.num_cameras):
        uv, depth = rig.project(pose, cam, points)
        for k in np.where((depth > 0) & rig.cameras[cam].model.in_image(uv))[0]:
            out.append((cam, uv[k], points[k]))
    return out


def test_optimize_pose_recovers_motion(rig):
    points, _ = make_scene(40, seed=5)
    true_pose = pose_at(tx=0.2, ty=-0.05, yaw=0.05)
    correspondences = _correspondences(rig, true_pose, points)
    # One gross outlier
    cam, uv, X = correspondences[0]
    correspondences[0] = (cam, uv + 60.0, X)

    pose, inliers, result = optimize_pose(rig, pose_at(), correspondences)
    assert result.success
    rot_err, trans_err = pose_error(pose, true_pose)
    assert rot_err < 1e-3
    assert trans_err < 1e-3
    assert not inliers[0]
    assert inliers[1:].all()


def test_optimize_pose_without_correspondences(rig):
    pose, inliers, result = optimize_pose(rig, pose_at(tx=1.0), [])
    assert result is None
    assert len(inliers) == 0
    assert np.allclose(pose, pose_at(tx=1.0))


def test_points_refined_with_fixed_poses(rig):
    points, _ = make_scene(20, seed=6)
    poses = [pose_at(), pose_at(tx=0.4)]
    ba = BundleAdjustment(rig)
    for i, pose in enumerate(poses):
        ba.add_pose(i, pose, fixed=True)
    rng = np.random.default_rng(0)
    for k, X in enumerate(points):
        ba.add_point(k, X + rng.normal(0.0, 0.05, 3))
        for i, pose in enumerate(poses):
            for cam in range(rig.num_cameras):
                uv, depth = rig.project(pose, cam, X.reshape(1, 3))
                if depth[0] > 0:
                    ba.add_edge(k, i, cam, uv[0])
    result = ba.optimize()
    assert result.success
    assert ba.pose_ids() == []
    for k, X in enumerate(points):
        assert np.allclose(ba.get_point(k), X, atol=1e-4)
    assert max(e[3] for e in ba.edge_errors()) < 1e-2


def test_edge_error_behind_camera(rig):
    ba = BundleAdjustment(rig)
    ba.add_pose(0, np.eye(4), fixed=True)
    ba.add_point(0, [0.0, 0.0, -2.0], fixed=True)
    ba.add_edge(0, 0, 0, [320.0, 240.0])
    [(pt, pose_id, cam, err)] = ba.edge_errors()
    assert (pt, pose_id, cam) == (0, 0, 0)
    assert np.isinf(err)
