"""
Recorded runs on disk.

A recording directory holds `cameras.yaml`, describing each camera by
topic name, and one `frame_XXXXXX.npz` per synchronized frame with arrays
`timestamp`, `kp_<i>` / `desc_<i>` per camera (rig order) and an optional
`imu` array of rows `[t, gx, gy, gz, ax, ay, az]`.
"""
import glob
import logging
import os

import numpy as np
import yaml

from gcamslam.core.camera import PinholeCamera
from gcamslam.core.frame import CameraObservations, Frame, ImuSample
from gcamslam.errors import ConfigError

logger = logging.getLogger(__name__)

CAMERAS_FILE = 'cameras.yaml'


def load_camera_descriptions(path):
    """
    Read camera models from a YAML file.

    Returns:
        dict topic -> (PinholeCamera, seed T_b_c or None)
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read camera descriptions {path}: {e}") from e

    cameras = {}
    for entry in data.get('cameras', []):
        try:
            name = entry['name']
            model = entry.get('model', 'pinhole')
            if model != 'pinhole':
                raise ConfigError(f"Unsupported camera model {model} for {name}")
            camera = PinholeCamera(entry['fx'], entry['fy'], entry['cx'], entry['cy'],
                                   entry.get('width'), entry.get('height'))
        except KeyError as e:
            raise ConfigError(f"Camera description in {path} lacks {e}") from e
        seed = entry.get('T_b_c')
        cameras[name] = (camera, None if seed is None else np.array(seed, dtype=float).reshape(4, 4))
    if not cameras:
        raise ConfigError(f"No cameras described in {path}")
    return cameras


def save_frame(path, frame):
    arrays = {'timestamp': np.array(frame.timestamp)}
    for i, obs in enumerate(frame.observations):
        arrays[f'kp_{i}'] = obs.keypoints
        arrays[f'desc_{i}'] = obs.descriptors
    if frame.imu:
        arrays['imu'] = np.array([[s.timestamp, *s.gyro, *s.accel] for s in frame.imu])
    np.savez(path, **arrays)


def load_frame(path, num_cameras, frame_id=-1):
    with np.load(path) as data:
        observations = []
        for i in range(num_cameras):
            if f'kp_{i}' not in data.files:
                raise ConfigError(f"{path} has no observations for camera {i}")
            observations.append(CameraObservations(data[f'kp_{i}'], data[f'desc_{i}']))
        imu = []
        if 'imu' in data.files:
            imu = [ImuSample(float(r[0]), r[1:4].copy(), r[4:7].copy())
                   for r in np.atleast_2d(data['imu'])]
        return Frame(float(data['timestamp']), observations, imu, frame_id)


class Recording:
    def __init__(self, directory):
        self.directory = directory
        if not os.path.isdir(directory):
            raise ConfigError(f"Recording directory not found: {directory}")
        self.cameras = load_camera_descriptions(os.path.join(directory, CAMERAS_FILE))
        self.frame_paths = sorted(glob.glob(os.path.join(directory, 'frame_*.npz')))
        logger.info("Recording %s: %d cameras, %d frames", directory, len(self.cameras),
                    len(self.frame_paths))

    def __len__(self):
        return len(self.frame_paths)

    def frames(self, num_cameras):
        """Yield frames in recording order."""
        for frame_id, path in enumerate(self.frame_paths):
            yield load_frame(path, num_cameras, frame_id)
