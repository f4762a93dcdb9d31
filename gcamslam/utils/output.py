"""Plain-text tables for trajectories, landmark maps and rig extrinsics."""
import logging

import numpy as np

from gcamslam.core.geometry import pose_to_quat_trans, quat_trans_to_pose
from gcamslam.errors import ConfigError

logger = logging.getLogger(__name__)

EXTRINSICS_HEADER = "# name qw qx qy qz tx ty tz"
POSES_HEADER = "# timestamp px py pz qw qx qy qz"
MAP_HEADER = "# id x y z n_observations frozen"


def write_extrinsics(path, rig):
    """One row per camera: name, rotation quaternion, translation of T_b_c."""
    with open(path, "w") as f:
        f.write(EXTRINSICS_HEADER + "\n")
        for camera in rig.cameras:
            q, t = pose_to_quat_trans(camera.T_b_c)
            f.write(" ".join([camera.name] + [f"{v:.9f}" for v in (*q, *t)]) + "\n")
    logger.info("Wrote extrinsics of %d cameras to %s", rig.num_cameras, path)


def read_extrinsics(path):
    """
    Read a table written by write_extrinsics.

    Returns:
        dict camera name -> 4x4 T_b_c, in file order.
    """
    extrinsics = {}
    try:
        with open(path) as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigError(f"Failed to read extrinsics file {path}: {e}") from e
    for lineno, line in enumerate(lines, start=1):
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        if len(tokens) != 8:
            raise ConfigError(f"{path}:{lineno}: expected 8 fields, got {len(tokens)}")
        values = np.array([float(v) for v in tokens[1:]])
        extrinsics[tokens[0]] = quat_trans_to_pose(values[:4], values[4:])
    return extrinsics


def write_trajectory(path, trajectory):
    """
    Args:
        trajectory: Iterable of (timestamp, 4x4 T_w_b).
    """
    count = 0
    with open(path, "w") as f:
        f.write(POSES_HEADER + "\n")
        for timestamp, pose in trajectory:
            q, t = pose_to_quat_trans(pose)
            f.write(f"{timestamp:.6f} " + " ".join(f"{v:.9f}" for v in (*t, *q)) + "\n")
            count += 1
    logger.info("Wrote %d poses to %s", count, path)


def read_trajectory(path):
    trajectory = []
    with open(path) as f:
        for line in f:
            tokens = line.split()
            if not tokens or tokens[0].startswith("#"):
                continue
            values = [float(v) for v in tokens]
            trajectory.append((values[0], quat_trans_to_pose(values[4:8], values[1:4])))
    return trajectory


def write_map_points(path, snapshot):
    """One row per landmark of a MapSnapshot."""
    with open(path, "w") as f:
        f.write(MAP_HEADER + "\n")
        for mp_id in sorted(snapshot.map_points):
            mp = snapshot.map_points[mp_id]
            x, y, z = mp.position
            f.write(f"{mp_id} {x:.6f} {y:.6f} {z:.6f} {mp.num_observations} {int(mp.frozen)}\n")
    logger.info("Wrote %d landmarks to %s", len(snapshot.map_points), path)
