import logging
import threading
from types import MappingProxyType
from typing import Dict, List, Optional

import numpy as np

from gcamslam.core.geometry import inv_T
from gcamslam.core.keyframe import KeyFrame
from gcamslam.core.map_point import MapPoint

logger = logging.getLogger(__name__)


class MapSnapshot:
    """
    Immutable view of the map at one instant.

    Records are copies taken under the map lock, so readers (loop recognizer,
    visualization, output writers) never observe a half-applied update.
    """
    def __init__(self, keyframes, map_points, generation):
        self.keyframes = MappingProxyType(keyframes)
        self.map_points = MappingProxyType(map_points)
        self.generation = generation

    def get_keyframe(self, keyframe_id) -> Optional[KeyFrame]:
        return self.keyframes.get(keyframe_id)

    def get_map_point(self, map_point_id) -> Optional[MapPoint]:
        return self.map_points.get(map_point_id)

    def keyframe_ids(self):
        return sorted(self.keyframes)


class Map:
    """
        Represents the global map storing KeyFrames and MapPoints.

        The map is the only structure written by more than one worker: every
        mutation takes the internal lock, and relations are kept
        bidirectional (a keyframe lists a landmark iff the landmark lists the
        keyframe).
    """
    def __init__(self):
        """ Initialize an empty map."""
        self.keyframes: Dict[int, KeyFrame] = {}
        self.map_points: Dict[int, MapPoint] = {}
        self.next_keyframe_id = 0
        self.next_map_point_id = 0
        # Bumped whenever poses are corrected globally; lets the window
        # detect that a solve was built on stale poses.
        self.generation = 0
        self._lock = threading.RLock()

    @property
    def lock(self):
        return self._lock

    # ------------------------------------------------------------------ #
    #  Creation / lookup
    # ------------------------------------------------------------------ #
    def new_keyframe_id(self):
        with self._lock:
            kf_id = self.next_keyframe_id
            self.next_keyframe_id += 1
            return kf_id

    def add_keyframe(self, keyframe):
        """
        Adds a keyframe to the map.

        Args:
            keyframe: KeyFrame object to be added. Its ID must be unused.
        """
        with self._lock:
            if keyframe.id in self.keyframes:
                raise KeyError(f"KeyFrame {keyframe.id} already in the map")
            self.keyframes[keyframe.id] = keyframe
            self.next_keyframe_id = max(self.next_keyframe_id, keyframe.id + 1)

    def add_map_point(self, map_point):
        """  Add a new MapPoint to the map and assign it a unique ID.

        Args:
            map_point: MapPoint object to be added.

        Returns:
            The assigned MapPoint ID.
        """
        with self._lock:
            map_point.id = self.next_map_point_id
            self.map_points[map_point.id] = map_point
            self.next_map_point_id += 1
            return map_point.id

    def get_keyframe(self, keyframe_id) -> Optional[KeyFrame]:
        with self._lock:
            return self.keyframes.get(keyframe_id)

    def get_map_point(self, map_point_id) -> Optional[MapPoint]:
        with self._lock:
            return self.map_points.get(map_point_id)

    def keyframe_ids(self):
        with self._lock:
            return sorted(self.keyframes)

    def __len__(self):
        return len(self.keyframes)

    # ------------------------------------------------------------------ #
    #  Relations
    # ------------------------------------------------------------------ #
    def add_observation(self, keyframe_id, map_point_id, cam, kp_idx):
        """
        Link a keyframe observation to a landmark, on both sides.

        A camera of a keyframe observes a landmark at most once; linking a
        second keypoint of the same camera replaces the first. A keypoint
        already linked to another landmark is unlinked from it.
        """
        with self._lock:
            kf = self.keyframes[keyframe_id]
            mp = self.map_points[map_point_id]
            previous = mp.observations.get(keyframe_id, {}).get(cam)
            if previous is not None:
                kf.map_points.pop((cam, previous), None)
            existing = kf.map_points.get((cam, kp_idx))
            if existing is not None and existing != map_point_id:
                other = self.map_points.get(existing)
                if other is not None:
                    other.remove_observation(keyframe_id, cam)
            kf.add_map_point((cam, kp_idx), map_point_id)
            mp.add_observation(keyframe_id, cam, kp_idx)

    def remove_observation(self, keyframe_id, map_point_id, cam=None, min_observations=1):
        """
        Unlink a keyframe (or one of its cameras) and a landmark.

        The landmark is removed when fewer than `min_observations` views remain.

        Returns:
            True if the landmark was removed as a consequence.
        """
        with self._lock:
            self._detach(keyframe_id, map_point_id, cam)
            mp = self.map_points.get(map_point_id)
            if mp is not None and mp.num_observations < min_observations:
                self._remove_map_point(map_point_id)
                return True
            return False

    def _detach(self, keyframe_id, map_point_id, cam=None):
        kf = self.keyframes.get(keyframe_id)
        mp = self.map_points.get(map_point_id)
        if kf is not None:
            kf.remove_map_point(map_point_id, cam)
        if mp is not None:
            mp.remove_observation(keyframe_id, cam)

    def map_points_of(self, keyframe_id):
        """IDs of the landmarks observed by a keyframe."""
        with self._lock:
            kf = self.keyframes.get(keyframe_id)
            return set() if kf is None else kf.get_map_point_ids()

    def keyframes_observing(self, map_point_id):
        """IDs of the keyframes observing a landmark."""
        with self._lock:
            mp = self.map_points.get(map_point_id)
            return set() if mp is None else mp.keyframes_observed

    # ------------------------------------------------------------------ #
    #  Removal
    # ------------------------------------------------------------------ #
    def remove_keyframe(self, keyframe_id):
        """
        Removes a keyframe from the map.

        The keyframe is first detached from every landmark it observes; a
        landmark left without observers is removed too.

        Returns:
            IDs of the landmarks removed as a consequence.
        """
        with self._lock:
            kf = self.keyframes.get(keyframe_id)
            if kf is None:
                return []
            removed = []
            for mp_id in list(kf.get_map_point_ids()):
                if self.remove_observation(keyframe_id, mp_id):
                    removed.append(mp_id)
            del self.keyframes[keyframe_id]
            return removed

    def remove_map_point(self, map_point_id):
        """ Removes a map point from the map and all keyframes that observe it.

        Args:
            map_point_id: ID of the map point to be removed.
        """
        with self._lock:
            self._remove_map_point(map_point_id)

    def _remove_map_point(self, map_point_id):
        mp = self.map_points.get(map_point_id)
        if mp is None:
            return
        for kf_id in list(mp.observations):
            kf = self.keyframes.get(kf_id)
            if kf is not None:
                kf.remove_map_point(map_point_id)
        del self.map_points[map_point_id]

    # ------------------------------------------------------------------ #
    #  State updates
    # ------------------------------------------------------------------ #
    def set_keyframe_pose(self, keyframe_id, pose):
        with self._lock:
            self.keyframes[keyframe_id].pose = np.array(pose, dtype=float)

    def set_map_point_position(self, map_point_id, position):
        with self._lock:
            self.map_points[map_point_id].position = np.array(position, dtype=float).reshape(3)

    def apply_window_update(self, poses, positions, generation):
        """
        Write back a window solve in one critical section.

        Args:
            poses: Mapping keyframe ID -> 4x4 pose.
            positions: Mapping landmark ID -> 3D position.
            generation: Map generation the solve was built on.

        Returns:
            False (and writes nothing) if a global correction happened since.
        """
        with self._lock:
            if generation != self.generation:
                return False
            for kf_id, pose in poses.items():
                if kf_id in self.keyframes:
                    self.keyframes[kf_id].pose = np.array(pose, dtype=float)
            for mp_id, position in positions.items():
                if mp_id in self.map_points:
                    self.map_points[mp_id].position = np.array(position, dtype=float).reshape(3)
            return True

    def update_map_point_descriptor(self, map_point_id):
        """
        Update a map point's descriptor based on all its observations.

        Args:
            map_point_id: ID of the map point to update.
        """
        with self._lock:
            mp = self.map_points.get(map_point_id)
            if mp is None:
                return
            descriptors = []
            for kf_id, cam, kp_idx in mp.views():
                kf = self.keyframes.get(kf_id)
                if kf is not None:
                    descriptors.append(kf.descriptor(cam, kp_idx))
            mp.update_descriptor(descriptors)

    def apply_correction(self, corrected_poses, skip_ids=()):
        """
        Apply a global pose correction atomically.

        Keyframes in `corrected_poses` take their new pose. Keyframes newer
        than the last corrected one follow the correction of the closest
        corrected keyframe before them, so poses admitted while the
        correction was being solved stay consistent. Landmarks move rigidly
        with their reference keyframe.

        Args:
            corrected_poses: Mapping keyframe ID -> corrected 4x4 pose.
            skip_ids: Keyframes that must keep their pose (unreachable nodes).

        Returns:
            Mapping keyframe ID -> 4x4 correction (T_new @ inv(T_old)).
        """
        with self._lock:
            deltas = {}
            for kf_id, pose in corrected_poses.items():
                kf = self.keyframes.get(kf_id)
                if kf is None:
                    continue
                deltas[kf_id] = np.asarray(pose, dtype=float) @ inv_T(kf.pose)

            if not deltas:
                return {}

            corrected_ids = sorted(deltas)
            for kf_id in sorted(self.keyframes):
                if kf_id in deltas or kf_id in skip_ids:
                    continue
                previous = [c for c in corrected_ids if c < kf_id]
                if previous and kf_id > corrected_ids[-1]:
                    deltas[kf_id] = deltas[previous[-1]]

            for kf_id, delta in deltas.items():
                kf = self.keyframes[kf_id]
                kf.pose = delta @ kf.pose
                kf.velocity = delta[:3, :3] @ kf.velocity

            for mp in self.map_points.values():
                ref = mp.reference_keyframe_id
                if ref not in deltas:
                    ref = next((k for k in mp.observations if k in deltas), None)
                if ref is None:
                    continue
                delta = deltas[ref]
                mp.position = delta[:3, :3] @ mp.position + delta[:3, 3]

            self.generation += 1
            logger.info("Applied correction to %d keyframes (generation %d)",
                        len(deltas), self.generation)
            return deltas

    # ------------------------------------------------------------------ #
    #  Readers
    # ------------------------------------------------------------------ #
    def local_map_points(self, num_keyframes):
        """
        Landmarks seen by the most recent keyframes, as arrays.

        Returns:
            tuple: (ids list, (M,3) positions, list of descriptors)
        """
        with self._lock:
            recent = sorted(self.keyframes)[-num_keyframes:]
            ids = set()
            for kf_id in recent:
                ids.update(self.keyframes[kf_id].get_map_point_ids())
            ids = sorted(ids)
            positions = np.array([self.map_points[i].position for i in ids]).reshape(-1, 3)
            descriptors = [self.map_points[i].descriptor for i in ids]
        return ids, positions, descriptors

    def snapshot(self):
        """Copy every record under the lock and return an immutable view."""
        with self._lock:
            keyframes = {k: kf.copy() for k, kf in self.keyframes.items()}
            map_points = {k: mp.copy() for k, mp in self.map_points.items()}
            generation = self.generation
        return MapSnapshot(keyframes, map_points, generation)

    def check_consistency(self) -> List[str]:
        """
        Verify bidirectional consistency of the keyframe/landmark relation.

        Returns:
            A list of human-readable violations (empty when consistent).
        """
        problems = []
        with self._lock:
            for kf_id, kf in self.keyframes.items():
                for (cam, kp_idx), mp_id in kf.map_points.items():
                    mp = self.map_points.get(mp_id)
                    if mp is None:
                        problems.append(f"KeyFrame {kf_id} references missing landmark {mp_id}")
                    elif mp.observations.get(kf_id, {}).get(cam) != kp_idx:
                        problems.append(
                            f"Landmark {mp_id} does not list KeyFrame {kf_id} at {(cam, kp_idx)}")
            for mp_id, mp in self.map_points.items():
                for kf_id, cam, kp_idx in mp.views():
                    kf = self.keyframes.get(kf_id)
                    if kf is None:
                        problems.append(f"Landmark {mp_id} observed by missing KeyFrame {kf_id}")
                    elif kf.map_points.get((cam, kp_idx)) != mp_id:
                        problems.append(
                            f"KeyFrame {kf_id} does not list landmark {mp_id} at {(cam, kp_idx)}")
        return problems
