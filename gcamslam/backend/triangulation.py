import logging
from typing import List, Tuple

import numpy as np

from gcamslam.core.geometry import angle_between
from gcamslam.errors import TriangulationError

logger = logging.getLogger(__name__)

# (rig pose T_w_b, camera index, pixel)
View = Tuple[np.ndarray, int, np.ndarray]


def midpoint_from_rays(origins, directions):
    """
    Least-squares point closest to a bundle of rays.

    Minimizes sum ||(I - d d^T)(X - o)||^2 over all rays.

    Args:
        origins: (M,3) ray origins.
        directions: (M,3) unit ray directions.

    Returns:
        (3,) point, or None if the rays are parallel.
    """
    A = np.zeros((3, 3))
    b = np.zeros(3)
    for o, d in zip(origins, directions):
        P = np.eye(3) - np.outer(d, d)
        A += P
        b += P @ o
    if np.linalg.cond(A) > 1e12:
        return None
    return np.linalg.solve(A, b)


def max_parallax(directions):
    """Largest angle (radians) between any two ray directions."""
    best = 0.0
    for i in range(len(directions)):
        for j in range(i + 1, len(directions)):
            best = max(best, angle_between(directions[i], directions[j]))
    return best


def triangulate_views(rig, views: List[View], min_parallax_deg=1.0, min_depth=0.05,
                      max_depth=200.0, max_reprojection_error_px=4.0):
    """Triangulate one world point seen from two or more rig cameras.

    Views may come from different cameras of the same rig pose (overlapping
    cameras) or from different keyframes.

    Args:
        rig: CameraRig holding the camera models and extrinsics.
        views: (T_w_b, camera index, pixel) for each observation.
        min_parallax_deg: Smallest acceptable angle between viewing rays.
        min_depth, max_depth: Acceptable depth in every observing camera.
        max_reprojection_error_px: Max mean reprojection error.

    Returns:
        (3,) world point.

    Raises:
        TriangulationError: when any validation fails.
    """
    if len(views) < 2:
        raise TriangulationError(f"need at least 2 views, got {len(views)}")

    origins, directions = [], []
    for T_w_b, cam, uv in views:
        origin, dirs = rig.world_rays(T_w_b, cam, np.asarray(uv, dtype=float).reshape(1, 2))
        origins.append(origin)
        directions.append(dirs[0])
    origins = np.array(origins)
    directions = np.array(directions)

    parallax = np.degrees(max_parallax(directions))
    if parallax < min_parallax_deg:
        raise TriangulationError(f"insufficient parallax {parallax:.3f} deg")

    X_w = midpoint_from_rays(origins, directions)
    if X_w is None:
        raise TriangulationError("degenerate ray configuration")

    errors = []
    for T_w_b, cam, uv in views:
        pixels, depth = rig.project(T_w_b, cam, X_w.reshape(1, 3))
        if depth[0] <= 0:
            raise TriangulationError(f"negative depth {depth[0]:.3f}")
        if not (min_depth <= depth[0] <= max_depth):
            raise TriangulationError(f"depth {depth[0]:.3f} out of range")
        errors.append(float(np.linalg.norm(pixels[0] - np.asarray(uv, dtype=float))))

    mean_error = float(np.mean(errors))
    if not np.isfinite(mean_error) or mean_error > max_reprojection_error_px:
        raise TriangulationError(f"reprojection error {mean_error:.3f} px")

    logger.debug("Triangulated point from %d views: parallax=%.2f deg, error=%.2f px",
                 len(views), parallax, mean_error)
    return X_w
