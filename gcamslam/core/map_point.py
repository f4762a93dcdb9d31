import copy
from typing import Dict

import numpy as np


def descriptor_distance(d1, d2):
    """Hamming distance for binary (uint8) descriptors, Euclidean otherwise."""
    if d1.dtype == np.uint8 and d2.dtype == np.uint8:
        return int(np.unpackbits(np.bitwise_xor(d1, d2)).sum())
    return float(np.linalg.norm(d1.astype(float) - d2.astype(float)))


class MapPoint:
    """
    Represents a 3D landmark in the world coordinate system

    Each landmark stores:
    - 3D position in world coordinates
    - Representative descriptor
    - Observations: keyframe ID -> {camera index: keypoint index}
    - Whether it is frozen (left the window, excluded from local optimization)

    A keyframe sees a landmark at most once per camera, but overlapping
    cameras of the same keyframe may all see it.
    """
    def __init__(self, position, descriptor, reference_keyframe_id=None):
        """
        Initialize a landmark with its 3D position and descriptor.

        Args:
            position: 3D position in world coordinates (numpy array of shape (3,))
            descriptor: Representative descriptor (numpy array)
            reference_keyframe_id: Keyframe that created this landmark.
        """
        self.id = None  # ID will be assigned when added to Map
        self.position = np.array(position, dtype=float).reshape(3)
        self.descriptor = descriptor
        self.reference_keyframe_id = reference_keyframe_id
        self.observations: Dict[int, Dict[int, int]] = {}
        self.frozen = False

    @property
    def keyframes_observed(self):
        return set(self.observations)

    @property
    def num_observations(self):
        """Number of (keyframe, camera) views of this landmark."""
        return sum(len(views) for views in self.observations.values())

    def views(self):
        """Iterate over (keyframe ID, camera index, keypoint index)."""
        for kf_id, views in self.observations.items():
            for cam, kp_idx in views.items():
                yield kf_id, cam, kp_idx

    def add_observation(self, keyframe_id, cam, kp_idx):
        """
        Adds an observation of this landmark from a keyframe.

        Args:
            keyframe_id: ID of the KeyFrame observing this point
            cam: Camera index within the rig.
            kp_idx: Keypoint index within that camera's image.
        """
        self.observations.setdefault(keyframe_id, {})[cam] = kp_idx

    def remove_observation(self, keyframe_id, cam=None):
        """Drop one camera view, or every view of the keyframe when cam is None."""
        if cam is None:
            return self.observations.pop(keyframe_id, None)
        views = self.observations.get(keyframe_id)
        if views is None:
            return None
        kp_idx = views.pop(cam, None)
        if not views:
            del self.observations[keyframe_id]
        return kp_idx

    def update_descriptor(self, descriptors):
        """
        Updates the representative descriptor as the one with the minimum
        summed distance to all associated descriptors from keyframes.

        Args:
            descriptors: List of descriptors observed for this landmark
        """
        if not descriptors:
            return
        if len(descriptors) == 1:
            self.descriptor = descriptors[0]
            return

        best_sum_distance = float('inf')
        best_descriptor = None
        for i, desc1 in enumerate(descriptors):
            sum_distance = sum(descriptor_distance(desc1, desc2)
                               for j, desc2 in enumerate(descriptors) if i != j)
            if sum_distance < best_sum_distance:
                best_sum_distance = sum_distance
                best_descriptor = desc1

        if best_descriptor is not None:
            self.descriptor = best_descriptor

    def copy(self):
        mp = copy.copy(self)
        mp.position = self.position.copy()
        mp.observations = {k: dict(v) for k, v in self.observations.items()}
        return mp

    def __repr__(self):
        return (f"MapPoint(id={self.id}, obs={self.num_observations}, "
                f"frozen={self.frozen})")
