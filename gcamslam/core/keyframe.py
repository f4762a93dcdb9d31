import copy
from typing import Dict, List, Optional, Tuple

import numpy as np

from gcamslam.core.frame import CameraObservations

ObservationKey = Tuple[int, int]  # (camera index, keypoint index)


class KeyFrame:
    """
    A keyframe stores:
    - Rig pose in the world frame (T_w_b)
    - Per-camera keypoints and descriptors
    - Associations (camera, keypoint) -> landmark ID
    - Optional inertial pre-integration against the previous keyframe
    - Bag-of-words vector once registered with the loop recognizer
    """
    def __init__(self, id, timestamp, pose, observations: List[CameraObservations],
                 imu_preintegration=None, velocity=None, frame_id=-1):
        """
        Initialize a keyframe.

        Args:
            id: Unique identifier for the keyframe.
            timestamp: Capture time of the source frame.
            pose: 4x4 rig pose T_w_b (rig to world).
            observations: One CameraObservations per rig camera.
            imu_preintegration: ImuPreintegration against the previous keyframe.
            velocity: World-frame velocity estimate (3,).
            frame_id: Index of the frame this keyframe was promoted from.
        """
        self.id = id
        self.timestamp = float(timestamp)
        self.pose = np.array(pose, dtype=float)
        self.observations = observations
        self.imu_preintegration = imu_preintegration
        self.velocity = np.zeros(3) if velocity is None else np.asarray(velocity, dtype=float)
        self.frame_id = frame_id

        # (camera index, keypoint index) -> landmark ID
        self.map_points: Dict[ObservationKey, int] = {}

        self.bow_vector: Optional[Dict[int, float]] = None

    def get_rig_center(self):
        """Rig origin in world coordinates."""
        return self.pose[:3, 3].copy()

    def keypoint(self, cam, kp_idx):
        return self.observations[cam].keypoints[kp_idx]

    def descriptor(self, cam, kp_idx):
        return self.observations[cam].descriptors[kp_idx]

    def add_map_point(self, key: ObservationKey, map_point_id):
        """
        Associates a keypoint with a landmark ID.

        Args:
            key: (camera index, keypoint index) of the observation.
            map_point_id: The corresponding landmark ID.
        """
        if map_point_id is None:
            raise ValueError(f"KeyFrame {self.id} cannot store a None landmark id")
        self.map_points[key] = map_point_id

    def remove_map_point(self, map_point_id, cam=None):
        """Drop the associations to the given landmark, optionally for one camera only."""
        keys = [k for k, mp_id in self.map_points.items()
                if mp_id == map_point_id and (cam is None or k[0] == cam)]
        for k in keys:
            del self.map_points[k]
        return keys

    def get_map_point_ids(self):
        return set(self.map_points.values())

    def unmatched_keypoints(self, cam):
        """Keypoint indices of camera `cam` not associated with any landmark."""
        matched = {kp for (c, kp) in self.map_points if c == cam}
        return [i for i in range(len(self.observations[cam])) if i not in matched]

    def all_descriptors(self):
        arrays = [o.descriptors for o in self.observations if len(o)]
        if not arrays:
            return None
        return np.vstack(arrays)

    def copy(self):
        """Copy the mutable state; keypoint/descriptor arrays are shared."""
        kf = copy.copy(self)
        kf.pose = self.pose.copy()
        kf.velocity = self.velocity.copy()
        kf.map_points = dict(self.map_points)
        kf.bow_vector = None if self.bow_vector is None else dict(self.bow_vector)
        return kf

    def __repr__(self):
        return (f"KeyFrame(id={self.id}, t={self.timestamp:.3f}, "
                f"landmarks={len(self.map_points)})")
