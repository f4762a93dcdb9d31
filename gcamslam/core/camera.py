"""
Camera models and the multi-camera rig.

The SLAM back-end only ever talks to a projection model through
`project` (camera-frame points -> pixels) and `unproject` (pixels -> unit
rays), so any calibrated model can be plugged in. A pinhole model is
provided for rectified images and for synthetic tests.
"""
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

import numpy as np

from gcamslam.core.geometry import inv_T, transform_points


class CameraModel:
    """Interface of a calibrated projection model."""

    camera_type = 'mono'

    def project(self, points_c):
        """(N,3) camera-frame points -> (N,2) pixels."""
        raise NotImplementedError

    def unproject(self, pixels):
        """(N,2) pixels -> (N,3) unit rays in the camera frame."""
        raise NotImplementedError

    def in_image(self, pixels):
        """Boolean mask of pixels that fall inside the image."""
        return np.all(np.isfinite(pixels), axis=1)

    @property
    def params(self):
        return {}


class PinholeCamera(CameraModel):
    def __init__(self, fx, fy, cx, cy, width=None, height=None, camera_type='mono'):
        """
        Pinhole projection for rectified images.

        Args:
            fx, fy: Focal lengths in pixels.
            cx, cy: Principal point in pixels.
            width, height: Optional image size used for visibility checks.
            camera_type: 'mono' or 'stereo'.
        """
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.width = width
        self.height = height
        self.camera_type = camera_type

    @property
    def params(self):
        return {'fx': self.fx, 'fy': self.fy, 'cx': self.cx, 'cy': self.cy,
                'width': self.width, 'height': self.height}

    def project(self, points_c):
        points_c = np.atleast_2d(np.asarray(points_c, dtype=float))
        z = points_c[:, 2]
        with np.errstate(divide='ignore', invalid='ignore'):
            u = self.fx * points_c[:, 0] / z + self.cx
            v = self.fy * points_c[:, 1] / z + self.cy
        uv = np.stack([u, v], axis=1)
        uv[z <= 1e-9] = np.nan
        return uv

    def unproject(self, pixels):
        pixels = np.atleast_2d(np.asarray(pixels, dtype=float))
        rays = np.stack([(pixels[:, 0] - self.cx) / self.fx,
                         (pixels[:, 1] - self.cy) / self.fy,
                         np.ones(len(pixels))], axis=1)
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)

    def in_image(self, pixels):
        mask = np.all(np.isfinite(pixels), axis=1)
        if self.width is not None and self.height is not None:
            mask &= (pixels[:, 0] >= 0) & (pixels[:, 0] < self.width)
            mask &= (pixels[:, 1] >= 0) & (pixels[:, 1] < self.height)
        return mask

    def __repr__(self):
        return (f"PinholeCamera(fx={self.fx}, fy={self.fy}, cx={self.cx}, cy={self.cy}, "
                f"type={self.camera_type})")


@dataclass
class Camera:
    """One camera of the rig: a projection model plus its pose in the rig frame."""

    name: str
    model: CameraModel
    T_b_c: np.ndarray = field(default_factory=lambda: np.eye(4))

    @property
    def camera_type(self):
        return self.model.camera_type


class CameraRig:
    def __init__(self, cameras: List[Camera], stereo_pairs: Optional[List[Tuple[int, int]]] = None,
                 has_imu=False):
        """
        An ordered set of cameras moving as one rigid body.

        Args:
            cameras: Cameras in rig order.
            stereo_pairs: Index pairs of cameras with overlapping views.
            has_imu: Whether an inertial sensor is rigidly attached.
        """
        if not cameras:
            raise ValueError("A camera rig needs at least one camera")
        self.cameras = list(cameras)
        self.stereo_pairs = [tuple(p) for p in (stereo_pairs or [])]
        self.has_imu = has_imu
        for i, j in self.stereo_pairs:
            if not (0 <= i < len(self.cameras) and 0 <= j < len(self.cameras)) or i == j:
                raise ValueError(f"Invalid stereo pair ({i}, {j})")
        self._T_c_b = [inv_T(c.T_b_c) for c in self.cameras]

    def __len__(self):
        return len(self.cameras)

    @property
    def num_cameras(self):
        return len(self.cameras)

    def T_b_c(self, cam):
        return self.cameras[cam].T_b_c

    def T_c_b(self, cam):
        return self._T_c_b[cam]

    def camera_pose(self, T_w_b, cam):
        """World pose T_w_c of camera `cam` when the rig sits at T_w_b."""
        return T_w_b @ self.cameras[cam].T_b_c

    def project(self, T_w_b, cam, points_w):
        """
        Project world points into camera `cam`.

        Returns:
            pixels: (N,2) array, NaN for points behind the camera.
            depth: (N,) depth along the camera z axis.
        """
        T_c_w = self._T_c_b[cam] @ inv_T(T_w_b)
        points_c = transform_points(T_c_w, points_w)
        return self.cameras[cam].model.project(points_c), points_c[:, 2]

    def world_rays(self, T_w_b, cam, pixels):
        """
        Back-project pixels of camera `cam` into world rays.

        Returns:
            origin: (3,) camera center in the world frame.
            directions: (N,3) unit ray directions in the world frame.
        """
        T_w_c = self.camera_pose(T_w_b, cam)
        rays_c = self.cameras[cam].model.unproject(pixels)
        return T_w_c[:3, 3].copy(), rays_c @ T_w_c[:3, :3].T

    def with_extrinsics(self, extrinsics):
        """Copy of the rig with new camera-to-rig poses (self-calibration)."""
        cameras = [replace(c, T_b_c=np.asarray(T, dtype=float).copy())
                   for c, T in zip(self.cameras, extrinsics)]
        return CameraRig(cameras, self.stereo_pairs, self.has_imu)
