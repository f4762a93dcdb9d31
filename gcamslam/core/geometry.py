"""
Rigid-body helpers.

Poses are 4x4 homogeneous matrices T_a_b mapping points from frame b into
frame a. Optimization code works on 6-vectors [rotation vector, translation].
"""
import numpy as np
from scipy.spatial.transform import Rotation as R


def Rt_to_T(Rmat, t):
    """Build a 4x4 transform from a rotation matrix and a translation."""
    T = np.eye(4)
    T[:3, :3] = Rmat
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3)
    return T


def inv_T(T):
    """Invert a rigid 4x4 transform."""
    Rmat = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = Rmat.T
    Ti[:3, 3] = -Rmat.T @ t
    return Ti


def relative_pose(T_w_a, T_w_b):
    """Return T_a_b, the pose of b expressed in frame a."""
    return inv_T(T_w_a) @ T_w_b


def project_to_SO3(M):
    """Closest rotation (Frobenius norm) to a near-rotation matrix."""
    U, _, Vt = np.linalg.svd(M)
    Rmat = U @ Vt
    if np.linalg.det(Rmat) < 0:
        U[:, -1] *= -1
        Rmat = U @ Vt
    return Rmat


def so3_exp(rotvec):
    return R.from_rotvec(np.asarray(rotvec, dtype=float)).as_matrix()


def so3_log(Rmat):
    return R.from_matrix(Rmat).as_rotvec()


def pose_to_vector(T):
    """4x4 pose -> [rx, ry, rz, tx, ty, tz]."""
    vec = np.empty(6)
    vec[:3] = so3_log(project_to_SO3(T[:3, :3]))
    vec[3:] = T[:3, 3]
    return vec


def vector_to_pose(vec):
    """[rx, ry, rz, tx, ty, tz] -> 4x4 pose."""
    return Rt_to_T(so3_exp(vec[:3]), vec[3:6])


def pose_error(T_a, T_b):
    """
    Rotation (radians) and translation distance between two poses.

    Returns:
        tuple: (rotation_error, translation_error)
    """
    dR = T_a[:3, :3].T @ T_b[:3, :3]
    return float(np.linalg.norm(so3_log(dR))), float(np.linalg.norm(T_a[:3, 3] - T_b[:3, 3]))


def transform_points(T, points):
    """Apply a 4x4 transform to an (N,3) array of points."""
    points = np.atleast_2d(points)
    return points @ T[:3, :3].T + T[:3, 3]


def pose_to_quat_trans(T):
    """
    Convert a pose into (quaternion, translation).

    Returns:
        q: (4,) quaternion ordered (w, x, y, z) with w >= 0.
        t: (3,) translation.
    """
    x, y, z, w = R.from_matrix(project_to_SO3(T[:3, :3])).as_quat()
    q = np.array([w, x, y, z])
    if q[0] < 0:
        q = -q
    return q, T[:3, 3].copy()


def quat_trans_to_pose(q, t):
    """Inverse of pose_to_quat_trans, q ordered (w, x, y, z)."""
    w, x, y, z = q
    return Rt_to_T(R.from_quat([x, y, z, w]).as_matrix(), t)


def angle_between(v1, v2):
    """Angle in radians between two vectors."""
    n1 = np.linalg.norm(v1)
    n2 = np.linalg.norm(v2)
    if n1 == 0 or n2 == 0:
        return 0.0
    c = np.clip(np.dot(v1, v2) / (n1 * n2), -1.0, 1.0)
    return float(np.arccos(c))
