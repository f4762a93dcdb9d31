"""
IMU pre-integration between consecutive keyframes.

Relative motion is accumulated in the body frame of the first keyframe so it
can be turned into a residual between two keyframe poses without
re-integrating the raw samples:

    R_j = R_i * dR
    v_j = v_i + g * dt + R_i * dv
    p_j = p_i + v_i * dt + 0.5 * g * dt^2 + R_i * dp

Biases are held fixed at the values given on construction.
"""
import logging

import numpy as np

from gcamslam.core.geometry import Rt_to_T, so3_exp, so3_log

logger = logging.getLogger(__name__)

GRAVITY = np.array([0.0, 0.0, -9.81])

DT_MIN = 1e-6
DT_MAX = 0.1


class ImuPreintegration:
    def __init__(self, gyro_bias=None, accel_bias=None):
        self.gyro_bias = np.zeros(3) if gyro_bias is None else np.asarray(gyro_bias, dtype=float)
        self.accel_bias = np.zeros(3) if accel_bias is None else np.asarray(accel_bias, dtype=float)
        self.delta_R = np.eye(3)
        self.delta_v = np.zeros(3)
        self.delta_p = np.zeros(3)
        self.dt_sum = 0.0
        self.num_samples = 0

    def integrate(self, gyro, accel, dt):
        """
        Integrate one inertial sample held constant over dt.

        Args:
            gyro: Angular rate in the body frame (rad/s).
            accel: Specific force in the body frame (m/s^2), gravity included.
            dt: Duration in seconds.
        """
        if dt < DT_MIN or dt > DT_MAX:
            logger.debug("Skipping inertial sample with dt=%.6f s", dt)
            return
        w = np.asarray(gyro, dtype=float) - self.gyro_bias
        a = np.asarray(accel, dtype=float) - self.accel_bias

        acc_rot = self.delta_R @ a
        self.delta_p += self.delta_v * dt + 0.5 * acc_rot * dt * dt
        self.delta_v += acc_rot * dt
        self.delta_R = self.delta_R @ so3_exp(w * dt)
        self.dt_sum += dt
        self.num_samples += 1

    @classmethod
    def from_samples(cls, samples, t_start, t_end, gyro_bias=None, accel_bias=None):
        """
        Pre-integrate the samples covering [t_start, t_end].

        Each sample is held until the next one; the last sample is held until
        t_end.
        """
        preint = cls(gyro_bias, accel_bias)
        samples = sorted((s for s in samples if s.timestamp < t_end), key=lambda s: s.timestamp)
        for k, sample in enumerate(samples):
            t0 = max(sample.timestamp, t_start)
            t1 = samples[k + 1].timestamp if k + 1 < len(samples) else t_end
            t1 = min(t1, t_end)
            if t1 > t0:
                preint.integrate(sample.gyro, sample.accel, t1 - t0)
        return preint

    @property
    def is_empty(self):
        return self.num_samples == 0

    def predict(self, T_w_i, v_i):
        """
        Predict the pose and velocity at the end of the integration interval.

        Returns:
            tuple: (T_w_j, v_j)
        """
        R_i = T_w_i[:3, :3]
        p_i = T_w_i[:3, 3]
        dt = self.dt_sum
        R_j = R_i @ self.delta_R
        v_j = v_i + GRAVITY * dt + R_i @ self.delta_v
        p_j = p_i + v_i * dt + 0.5 * GRAVITY * dt * dt + R_i @ self.delta_p
        return Rt_to_T(R_j, p_j), v_j

    def residual(self, T_w_i, T_w_j, v_i):
        """
        Rotation and position residual between two keyframe poses.

        Returns:
            (6,) array: [rotation error (rad), position error (m)].
        """
        R_i = T_w_i[:3, :3]
        R_j = T_w_j[:3, :3]
        dt = self.dt_sum
        r_rot = so3_log(self.delta_R.T @ R_i.T @ R_j)
        r_pos = R_i.T @ (T_w_j[:3, 3] - T_w_i[:3, 3] - v_i * dt - 0.5 * GRAVITY * dt * dt) - self.delta_p
        return np.concatenate([r_rot, r_pos])
