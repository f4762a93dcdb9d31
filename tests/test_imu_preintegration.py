import numpy as np

from gcamslam.core.frame import ImuSample
from gcamslam.core.geometry import so3_exp
from gcamslam.core.imu_preintegration import GRAVITY, ImuPreintegration

from conftest import pose_at


def _samples(gyro, accel, n=10, dt=0.05, t0=0.0):
    return [ImuSample(t0 + k * dt, np.asarray(gyro, dtype=float), np.asarray(accel, dtype=float))
            for k in range(n)]


def test_stationary_rig_stays_put():
    preint = ImuPreintegration.from_samples(_samples([0, 0, 0], -GRAVITY), 0.0, 0.5)
    assert preint.num_samples == 10
    assert np.isclose(preint.dt_sum, 0.5)
    pose, velocity = preint.predict(pose_at(tx=1.0), np.zeros(3))
    assert np.allclose(pose, pose_at(tx=1.0), atol=1e-9)
    assert np.allclose(velocity, 0.0, atol=1e-9)


def test_constant_rotation_rate():
    w = np.array([0.0, 0.2, 0.0])
    preint = ImuPreintegration.from_samples(_samples(w, -GRAVITY), 0.0, 0.5)
    assert np.allclose(preint.delta_R, so3_exp(w * 0.5))


def test_residual_vanishes_on_consistent_motion():
    # Constant body velocity of 1 m/s along x, no rotation
    preint = ImuPreintegration.from_samples(_samples([0, 0, 0], -GRAVITY), 0.0, 0.5)
    v = np.array([1.0, 0.0, 0.0])
    pose_j, v_j = preint.predict(pose_at(), v)
    assert np.allclose(pose_j, pose_at(tx=0.5))
    assert np.allclose(preint.residual(pose_at(), pose_j, v), 0.0, atol=1e-9)
    assert np.linalg.norm(preint.residual(pose_at(), pose_at(tx=0.7), v)) > 0.1


def test_out_of_range_intervals_skipped():
    preint = ImuPreintegration()
    preint.integrate([0, 0, 0], [0, 0, 9.81], 0.5)
    preint.integrate([0, 0, 0], [0, 0, 9.81], 0.0)
    assert preint.is_empty


def test_samples_outside_interval_ignored():
    samples = _samples([0, 0, 0], -GRAVITY, n=20)
    preint = ImuPreintegration.from_samples(samples, 0.25, 0.5)
    assert np.isclose(preint.dt_sum, 0.25)
