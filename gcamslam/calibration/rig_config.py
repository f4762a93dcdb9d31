"""
Line-oriented rig description used by the calibration front-end.

Each non-empty line declares one sensor; keywords are case-insensitive and
tokens are separated by whitespace:

    stereo <left topic> <right topic>
    mono <topic>
    imu <topic>

A valid file declares at least one stereo pair and exactly one IMU.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from gcamslam.core.camera import Camera, CameraRig
from gcamslam.core.geometry import inv_T
from gcamslam.errors import ConfigError, DuplicateImuError

logger = logging.getLogger(__name__)


@dataclass
class RigSpec:
    camera_groups: List[List[str]] = field(default_factory=list)
    imu_topic: Optional[str] = None

    @property
    def camera_topics(self):
        return [topic for group in self.camera_groups for topic in group]

    @property
    def num_cameras(self):
        return len(self.camera_topics)


def parse_rig_lines(lines):
    """
    Parse sensor declarations.

    Raises:
        ConfigError: malformed line, unknown sensor type, or missing
            stereo/IMU declaration.
        DuplicateImuError: the IMU is declared twice.
    """
    spec = RigSpec()
    has_stereo = False
    for lineno, line in enumerate(lines, start=1):
        tokens = line.split()
        if not tokens:
            continue
        kind, args = tokens[0].lower(), tokens[1:]
        if kind == 'stereo':
            if len(args) < 2:
                raise ConfigError(f"line {lineno}: the stereo camera sensor is improperly defined")
            spec.camera_groups.append(args[:2])
            has_stereo = True
        elif kind == 'mono':
            if len(args) < 1:
                raise ConfigError(f"line {lineno}: the mono camera sensor is improperly defined")
            spec.camera_groups.append(args[:1])
        elif kind == 'imu':
            if spec.imu_topic is not None:
                raise DuplicateImuError(
                    f"line {lineno}: a duplicate definition was found for the imu sensor")
            if len(args) < 1:
                raise ConfigError(f"line {lineno}: the IMU sensor is improperly defined")
            spec.imu_topic = args[0]
        else:
            raise ConfigError(f"line {lineno}: unknown sensor type: {tokens[0]}")

    if not has_stereo:
        raise ConfigError("rig configuration declares no stereo camera pair")
    if spec.imu_topic is None:
        raise ConfigError("rig configuration declares no imu sensor")
    return spec


def parse_rig_config(path):
    """Read and parse a rig configuration file."""
    try:
        with open(path) as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {path}: {e}") from e
    spec = parse_rig_lines(lines)
    logger.info("Rig configuration %s: %d cameras in %d groups, imu=%s",
                path, spec.num_cameras, len(spec.camera_groups), spec.imu_topic)
    return spec


def build_rig(spec, cameras):
    """
    Assemble the rig described by a RigSpec.

    The first camera of each group sits at the rig origin; the second camera
    of a stereo pair is seeded with the pair-relative pose. A mono camera
    keeps its supplied seed, or identity.

    Args:
        spec: RigSpec.
        cameras: Mapping topic -> (CameraModel, seed T_b_c or None).

    Returns:
        CameraRig with has_imu set.
    """
    rig_cameras = []
    stereo_pairs = []
    for group in spec.camera_groups:
        for topic in group:
            if topic not in cameras:
                raise ConfigError(f"No camera description for topic {topic}")
        if len(group) == 2:
            (model_a, seed_a), (model_b, seed_b) = cameras[group[0]], cameras[group[1]]
            seed_a = np.eye(4) if seed_a is None else np.asarray(seed_a, dtype=float)
            seed_b = np.eye(4) if seed_b is None else np.asarray(seed_b, dtype=float)
            model_a.camera_type = 'stereo'
            model_b.camera_type = 'stereo'
            index = len(rig_cameras)
            rig_cameras.append(Camera(group[0], model_a, np.eye(4)))
            rig_cameras.append(Camera(group[1], model_b, inv_T(seed_a) @ seed_b))
            stereo_pairs.append((index, index + 1))
        else:
            model, seed = cameras[group[0]]
            model.camera_type = 'mono'
            rig_cameras.append(Camera(group[0], model,
                                      np.eye(4) if seed is None else np.asarray(seed, dtype=float)))
    return CameraRig(rig_cameras, stereo_pairs, has_imu=spec.imu_topic is not None)
