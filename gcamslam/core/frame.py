from dataclasses import dataclass, field
from typing import List

import numpy as np


@dataclass
class ImuSample:
    """One inertial sample: angular rate (rad/s) and specific force (m/s^2)."""

    timestamp: float
    gyro: np.ndarray
    accel: np.ndarray


@dataclass
class CameraObservations:
    """Already-extracted 2D keypoints and descriptors of one image."""

    keypoints: np.ndarray    # (N,2) pixels
    descriptors: np.ndarray  # (N,D)

    def __post_init__(self):
        self.keypoints = np.asarray(self.keypoints, dtype=float).reshape(-1, 2)
        self.descriptors = np.asarray(self.descriptors)
        if self.descriptors.ndim == 1:
            self.descriptors = self.descriptors.reshape(len(self.keypoints), -1)
        if len(self.keypoints) != len(self.descriptors):
            raise ValueError(
                f"{len(self.keypoints)} keypoints but {len(self.descriptors)} descriptors")

    def __len__(self):
        return len(self.keypoints)

    @classmethod
    def empty(cls, descriptor_size=32, dtype=np.uint8):
        return cls(np.empty((0, 2)), np.empty((0, descriptor_size), dtype=dtype))


@dataclass
class Frame:
    """
    Synchronized images of every rig camera plus the inertial samples that
    precede them. Transient: either discarded or promoted to a KeyFrame.
    """

    timestamp: float
    observations: List[CameraObservations]
    imu: List[ImuSample] = field(default_factory=list)
    frame_id: int = -1

    def all_descriptors(self):
        """Stack descriptors of every camera into one (N,D) array."""
        arrays = [o.descriptors for o in self.observations if len(o)]
        if not arrays:
            return None
        return np.vstack(arrays)
