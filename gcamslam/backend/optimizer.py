"""
Sparse reprojection (and inertial) least-squares problems.

BundleAdjustment collects poses, points, camera extrinsics and observation
edges, then solves for the free ones with the shared Solver. Poses and
extrinsics are parametrized as [rotation vector, translation].
"""
import logging

import numpy as np
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation as R

from gcamslam.backend.solver import Solver
from gcamslam.core.geometry import pose_to_vector, vector_to_pose

logger = logging.getLogger(__name__)

BEHIND_CAMERA_RESIDUAL = 100.0  # pixels


class BundleAdjustment:
    def __init__(self, rig, solver=None, huber_threshold_px=2.0, pixel_sigma=1.0):
        """
        Implements bundle adjustment over a multi-camera rig.

        Args:
            rig: CameraRig providing projection models and extrinsics.
            solver: Solver running the rounds (default settings if None).
            huber_threshold_px: Inlier scale of the robust loss, in pixels.
            pixel_sigma: Standard deviation of a keypoint measurement.
        """
        self.rig = rig
        self.solver = solver or Solver()
        self.huber_threshold_px = huber_threshold_px
        self.pixel_sigma = pixel_sigma

        self._pose_ids = []
        self._pose_index = {}
        self._poses = []
        self._pose_fixed = []

        self._point_ids = []
        self._point_index = {}
        self._points = []
        self._point_fixed = []

        self._extrinsics = [pose_to_vector(rig.T_b_c(c)) for c in range(rig.num_cameras)]
        self._extrinsic_fixed = [True] * rig.num_cameras

        self._edges = []          # (point row, pose row, cam, measurement)
        self._inertial = []       # (pose row i, pose row j, preint, velocity_i, weights)
        self.result = None

    # ------------------------------------------------------------------ #
    #  Problem construction
    # ------------------------------------------------------------------ #
    def add_pose(self, pose_id, pose, fixed=False):
        """ Adds a rig pose T_w_b to the problem. """
        if pose_id in self._pose_index:
            self._pose_fixed[self._pose_index[pose_id]] &= fixed
            return
        self._pose_index[pose_id] = len(self._pose_ids)
        self._pose_ids.append(pose_id)
        self._poses.append(pose_to_vector(pose))
        self._pose_fixed.append(fixed)

    def add_point(self, point_id, point, fixed=False):
        """ Adds a 3D world point to the problem. """
        if point_id in self._point_index:
            return
        self._point_index[point_id] = len(self._point_ids)
        self._point_ids.append(point_id)
        self._points.append(np.asarray(point, dtype=float).reshape(3).copy())
        self._point_fixed.append(fixed)

    def set_extrinsic_fixed(self, cam, fixed):
        """Let the camera-to-rig pose of `cam` be refined (self-calibration)."""
        self._extrinsic_fixed[cam] = fixed

    def add_edge(self, point_id, pose_id, cam, measurement):
        """ Adds a pixel observation of a point by camera `cam` of a pose. """
        self._edges.append((self._point_index[point_id], self._pose_index[pose_id], cam,
                            np.asarray(measurement, dtype=float).reshape(2)))

    def add_inertial_edge(self, pose_id_i, pose_id_j, preintegration, velocity_i,
                          rotation_sigma=0.01, position_sigma=0.05):
        """ Adds a pre-integrated inertial constraint between two poses. """
        if preintegration is None or preintegration.is_empty:
            return
        weights = np.concatenate([np.full(3, 1.0 / rotation_sigma),
                                  np.full(3, 1.0 / position_sigma)])
        self._inertial.append((self._pose_index[pose_id_i], self._pose_index[pose_id_j],
                               preintegration, np.asarray(velocity_i, dtype=float), weights))

    @property
    def num_edges(self):
        return len(self._edges)

    # ------------------------------------------------------------------ #
    #  Parameter packing
    # ------------------------------------------------------------------ #
    def _layout(self):
        free_poses = [i for i, f in enumerate(self._pose_fixed) if not f]
        free_points = [i for i, f in enumerate(self._point_fixed) if not f]
        free_ext = [c for c, f in enumerate(self._extrinsic_fixed) if not f]
        pose_col = {row: 6 * k for k, row in enumerate(free_poses)}
        offset = 6 * len(free_poses)
        point_col = {row: offset + 3 * k for k, row in enumerate(free_points)}
        offset += 3 * len(free_points)
        ext_col = {c: offset + 6 * k for k, c in enumerate(free_ext)}
        size = offset + 6 * len(free_ext)
        return pose_col, point_col, ext_col, size

    def _pack(self, pose_col, point_col, ext_col, size):
        x = np.zeros(size)
        for row, col in pose_col.items():
            x[col:col + 6] = self._poses[row]
        for row, col in point_col.items():
            x[col:col + 3] = self._points[row]
        for c, col in ext_col.items():
            x[col:col + 6] = self._extrinsics[c]
        return x

    def _unpack(self, x, pose_col, point_col, ext_col):
        poses = np.array(self._poses).reshape(-1, 6)
        points = np.array(self._points).reshape(-1, 3)
        extrinsics = np.array(self._extrinsics).reshape(-1, 6)
        for row, col in pose_col.items():
            poses[row] = x[col:col + 6]
        for row, col in point_col.items():
            points[row] = x[col:col + 3]
        for c, col in ext_col.items():
            extrinsics[c] = x[col:col + 6]
        return poses, points, extrinsics

    # ------------------------------------------------------------------ #
    #  Residuals
    # ------------------------------------------------------------------ #
    def _reprojection_residuals(self, poses, points, extrinsics):
        if not self._edges:
            return np.zeros(0)
        pt_rows = np.array([e[0] for e in self._edges])
        pose_rows = np.array([e[1] for e in self._edges])
        cams = np.array([e[2] for e in self._edges])
        measured = np.array([e[3] for e in self._edges])

        R_wb = R.from_rotvec(poses[:, :3]).as_matrix()
        R_bc = R.from_rotvec(extrinsics[:, :3]).as_matrix()

        X_w = points[pt_rows]
        # X_b = R_wb^T (X_w - t_wb), X_c = R_bc^T (X_b - t_bc)
        X_b = np.einsum('nji,nj->ni', R_wb[pose_rows], X_w - poses[pose_rows, 3:])
        X_c = np.einsum('nji,nj->ni', R_bc[cams], X_b - extrinsics[cams, 3:])

        projected = np.empty((len(self._edges), 2))
        for c in np.unique(cams):
            mask = cams == c
            projected[mask] = self.rig.cameras[c].model.project(X_c[mask])

        residuals = (projected - measured) / self.pixel_sigma
        residuals[~np.isfinite(residuals)] = BEHIND_CAMERA_RESIDUAL / self.pixel_sigma
        return residuals.ravel()

    def _inertial_residuals(self, poses):
        if not self._inertial:
            return np.zeros(0)
        out = []
        for i, j, preint, v_i, weights in self._inertial:
            out.append(weights * preint.residual(vector_to_pose(poses[i]),
                                                 vector_to_pose(poses[j]), v_i))
        return np.concatenate(out)

    def _jacobian_sparsity(self, pose_col, point_col, ext_col, size):
        m = 2 * len(self._edges) + 6 * len(self._inertial)
        sparsity = lil_matrix((m, size), dtype=int)
        for k, (pt_row, pose_row, cam, _) in enumerate(self._edges):
            rows = slice(2 * k, 2 * k + 2)
            if pose_row in pose_col:
                c = pose_col[pose_row]
                sparsity[rows, c:c + 6] = 1
            if pt_row in point_col:
                c = point_col[pt_row]
                sparsity[rows, c:c + 3] = 1
            if cam in ext_col:
                c = ext_col[cam]
                sparsity[rows, c:c + 6] = 1
        base = 2 * len(self._edges)
        for k, (i, j, _, _, _) in enumerate(self._inertial):
            rows = slice(base + 6 * k, base + 6 * k + 6)
            for row in (i, j):
                if row in pose_col:
                    c = pose_col[row]
                    sparsity[rows, c:c + 6] = 1
        return sparsity

    # ------------------------------------------------------------------ #
    #  Solve
    # ------------------------------------------------------------------ #
    def optimize(self):
        """
        Solve for the free parameters.

        The estimate is only written back when the solve did not diverge.

        Returns:
            SolverResult of the run.
        """
        pose_col, point_col, ext_col, size = self._layout()
        x0 = self._pack(pose_col, point_col, ext_col, size)

        def fun(x):
            poses, points, extrinsics = self._unpack(x, pose_col, point_col, ext_col)
            return np.concatenate([self._reprojection_residuals(poses, points, extrinsics),
                                   self._inertial_residuals(poses)])

        sparsity = self._jacobian_sparsity(pose_col, point_col, ext_col, size) if size else None
        f_scale = self.huber_threshold_px / self.pixel_sigma
        self.result = self.solver.solve(fun, x0, jac_sparsity=sparsity, loss='huber',
                                        f_scale=f_scale)
        if not self.result.diverged:
            poses, points, extrinsics = self._unpack(self.result.x, pose_col, point_col, ext_col)
            self._poses = list(poses)
            self._points = list(points)
            self._extrinsics = list(extrinsics)
        logger.debug("Bundle adjustment: %d poses, %d points, %d edges, status=%s",
                     len(self._poses), len(self._points), len(self._edges), self.result.status)
        return self.result

    # ------------------------------------------------------------------ #
    #  Readback
    # ------------------------------------------------------------------ #
    def get_pose(self, pose_id):
        """ Retrieves the optimized 4x4 pose. """
        return vector_to_pose(self._poses[self._pose_index[pose_id]])

    def get_point(self, point_id):
        """ Retrieves the optimized 3D point. """
        return np.array(self._points[self._point_index[point_id]])

    def get_extrinsic(self, cam):
        return vector_to_pose(self._extrinsics[cam])

    def pose_ids(self, free_only=True):
        return [pid for pid, fixed in zip(self._pose_ids, self._pose_fixed)
                if not (free_only and fixed)]

    def point_ids(self, free_only=True):
        return [pid for pid, fixed in zip(self._point_ids, self._point_fixed)
                if not (free_only and fixed)]

    def edge_errors(self):
        """
        Pixel reprojection error of every edge at the current estimate.

        Returns:
            List of (point ID, pose ID, cam, error); error is inf behind the camera.
        """
        poses = np.array(self._poses).reshape(-1, 6)
        points = np.array(self._points).reshape(-1, 3)
        extrinsics = np.array(self._extrinsics).reshape(-1, 6)
        residuals = self._reprojection_residuals(poses, points, extrinsics).reshape(-1, 2)
        errors = np.linalg.norm(residuals, axis=1) * self.pixel_sigma
        out = []
        for (pt_row, pose_row, cam, _), err in zip(self._edges, errors):
            if err >= BEHIND_CAMERA_RESIDUAL:
                err = np.inf
            out.append((self._point_ids[pt_row], self._pose_ids[pose_row], cam, float(err)))
        return out


def optimize_pose(rig, pose, correspondences, solver=None, huber_threshold_px=2.0,
                  inlier_threshold_px=4.0):
    """
    Motion-only bundle adjustment of a single rig pose against fixed points.

    Args:
        rig: CameraRig.
        pose: Initial 4x4 rig pose T_w_b.
        correspondences: Sequence of (cam, pixel, world point).
        solver: Solver to use.
        huber_threshold_px: Inlier scale of the robust loss.
        inlier_threshold_px: Max error for a correspondence to count as inlier.

    Returns:
        tuple: (refined pose, boolean inlier mask, SolverResult)
    """
    ba = BundleAdjustment(rig, solver, huber_threshold_px=huber_threshold_px)
    ba.add_pose(0, pose, fixed=False)
    for k, (cam, uv, X_w) in enumerate(correspondences):
        ba.add_point(k, X_w, fixed=True)
        ba.add_edge(k, 0, cam, uv)
    if ba.num_edges == 0:
        return np.array(pose, dtype=float), np.zeros(0, dtype=bool), None
    result = ba.optimize()
    errors = np.array([e[3] for e in ba.edge_errors()])
    return ba.get_pose(0), errors <= inlier_threshold_px, result
