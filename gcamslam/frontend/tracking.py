"""
Frame-to-map tracking and the session state machine.

States move only through the TRANSITIONS table:

    UNINITIALIZED --init ok--> TRACKING <--reloc ok-- RELOCALIZING
          |                       |--lost--------------^    |
          +--timeout--> FAILED <--------retries exhausted---+
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from gcamslam.backend.optimizer import optimize_pose
from gcamslam.backend.solver import Solver
from gcamslam.config import TrackingConfig
from gcamslam.core.geometry import inv_T, pose_error
from gcamslam.core.imu_preintegration import ImuPreintegration
from gcamslam.core.keyframe import KeyFrame
from gcamslam.errors import (Condition, ConditionKind, InitializationTimeoutError,
                             InvalidTransitionError, TrackingLostError)
from gcamslam.frontend.feature_matcher import FeatureMatcher
from gcamslam.frontend.initializer import MapInitializer

logger = logging.getLogger(__name__)


class TrackingState(Enum):
    UNINITIALIZED = 'uninitialized'
    TRACKING = 'tracking'
    RELOCALIZING = 'relocalizing'
    FAILED = 'failed'


class TrackingEvent(Enum):
    INIT_PENDING = 'init_pending'
    INIT_SUCCEEDED = 'init_succeeded'
    INIT_TIMEOUT = 'init_timeout'
    TRACK_OK = 'track_ok'
    TRACK_LOST = 'track_lost'
    RELOC_SUCCEEDED = 'reloc_succeeded'
    RELOC_FAILED = 'reloc_failed'
    RELOC_EXHAUSTED = 'reloc_exhausted'


TRANSITIONS = {
    (TrackingState.UNINITIALIZED, TrackingEvent.INIT_PENDING): TrackingState.UNINITIALIZED,
    (TrackingState.UNINITIALIZED, TrackingEvent.INIT_SUCCEEDED): TrackingState.TRACKING,
    (TrackingState.UNINITIALIZED, TrackingEvent.INIT_TIMEOUT): TrackingState.FAILED,
    (TrackingState.TRACKING, TrackingEvent.TRACK_OK): TrackingState.TRACKING,
    (TrackingState.TRACKING, TrackingEvent.TRACK_LOST): TrackingState.RELOCALIZING,
    (TrackingState.RELOCALIZING, TrackingEvent.RELOC_SUCCEEDED): TrackingState.TRACKING,
    (TrackingState.RELOCALIZING, TrackingEvent.RELOC_FAILED): TrackingState.RELOCALIZING,
    (TrackingState.RELOCALIZING, TrackingEvent.RELOC_EXHAUSTED): TrackingState.FAILED,
}


def transition(state, event):
    """Next state for an event; FAILED is terminal."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(f"No transition from {state.name} on {event.name}") from None


@dataclass
class TrackingResult:
    state: TrackingState
    pose: Optional[np.ndarray] = None
    num_matches: int = 0
    num_inliers: int = 0
    new_keyframe_ids: List[int] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)


class Tracking:
    def __init__(self, map_instance, rig, config: TrackingConfig = None, solver=None,
                 matcher=None, initializer=None, loop_closing=None, window_size=8,
                 on_keyframe=None):
        """
        Estimates the rig pose of every frame against recent landmarks.

        Args:
            map_instance: Shared Map.
            rig: CameraRig.
            config: TrackingConfig.
            solver: Solver for motion-only optimization.
            matcher: FeatureMatcher.
            initializer: MapInitializer (built from the other arguments if None).
            loop_closing: LoopClosing used to relocalize against the whole map.
            window_size: Number of recent keyframes whose landmarks are tracked.
            on_keyframe: Callback receiving the ID of every new keyframe.
        """
        self.map = map_instance
        self.rig = rig
        self.config = config or TrackingConfig()
        self.solver = solver or Solver()
        self.matcher = matcher or FeatureMatcher(self.config.match_ratio,
                                                 self.config.max_descriptor_distance)
        self.initializer = initializer or MapInitializer(rig, map_instance, self.matcher,
                                                         self.config)
        self.loop_closing = loop_closing
        self.window_size = window_size
        self.on_keyframe = on_keyframe

        self.state = TrackingState.UNINITIALIZED
        self.last_pose = None
        self.prev_pose = None
        self.velocity = np.zeros(3)
        self.last_timestamp = None
        self.last_keyframe_id = None
        self.frames_uninitialized = 0
        self.relocalization_attempts = 0
        self._imu_since_keyframe = []
        # Map generation each part of the motion state is expressed in.
        # velocity shares the tag of prev_pose.
        self.pose_generation = map_instance.generation
        self.prev_generation = map_instance.generation
        self.matched_generation = map_instance.generation

    def _fire(self, event):
        self.state = transition(self.state, event)

    def process_frame(self, frame) -> TrackingResult:
        """
        Track one frame.

        Raises:
            InitializationTimeoutError: the map could not be initialized
                within `init_max_frames` frames.
        """
        if self.state == TrackingState.FAILED:
            return TrackingResult(TrackingState.FAILED)
        self._imu_since_keyframe.extend(frame.imu)
        if self.state == TrackingState.UNINITIALIZED:
            return self._initialize(frame)
        if self.state == TrackingState.TRACKING:
            return self._track(frame)
        return self._relocalize(frame)

    # ------------------------------------------------------------------ #
    #  Initialization
    # ------------------------------------------------------------------ #
    def _initialize(self, frame):
        self.frames_uninitialized += 1
        result = self.initializer.try_initialize(frame)
        if result.success:
            self._fire(TrackingEvent.INIT_SUCCEEDED)
            last = self.map.get_keyframe(result.keyframe_ids[-1])
            self._reset_motion(last.pose, frame.timestamp, self.map.generation)
            self.last_keyframe_id = last.id
            self._imu_since_keyframe = []
            for kf_id in result.keyframe_ids:
                self._emit_keyframe(kf_id)
            return TrackingResult(self.state, last.pose.copy(), result.num_landmarks,
                                  result.num_landmarks, list(result.keyframe_ids))

        if self.frames_uninitialized >= self.config.init_max_frames:
            self._fire(TrackingEvent.INIT_TIMEOUT)
            raise InitializationTimeoutError(
                f"Map not initialized after {self.frames_uninitialized} frames")
        self._fire(TrackingEvent.INIT_PENDING)
        return TrackingResult(self.state)

    # ------------------------------------------------------------------ #
    #  Tracking
    # ------------------------------------------------------------------ #
    def predict_pose(self, frame):
        """Predicted (pose, velocity) from inertial samples, else constant velocity."""
        if self.rig.has_imu and frame.imu:
            preint = ImuPreintegration.from_samples(frame.imu, self.last_timestamp, frame.timestamp)
            if not preint.is_empty:
                return preint.predict(self.last_pose, self.velocity)
        delta = inv_T(self.prev_pose) @ self.last_pose
        return self.last_pose @ delta, self.velocity

    def match_local_map(self, frame, pose, radius):
        """
        Project recent landmarks and match them against frame keypoints.

        The map generation the landmarks were read at is kept in
        `matched_generation`.

        Returns:
            List of (cam, kp_idx, landmark ID, world position).
        """
        with self.map.lock:
            ids, positions, descriptors = self.map.local_map_points(self.window_size)
            self.matched_generation = self.map.generation
        if not ids:
            return []
        matches = []
        for cam, obs in enumerate(frame.observations):
            if len(obs) == 0:
                continue
            pixels, depth = self.rig.project(pose, cam, positions)
            visible = np.where((depth > 0) & self.rig.cameras[cam].model.in_image(pixels))[0]
            if len(visible) == 0:
                continue
            found = self.matcher.search_by_projection(
                pixels[visible], [descriptors[k] for k in visible],
                obs.keypoints, obs.descriptors, radius)
            for row, kp_idx, _ in found:
                k = visible[row]
                matches.append((cam, kp_idx, ids[k], positions[k]))
        return matches

    def _refine(self, frame, pose, matches):
        correspondences = [(cam, frame.observations[cam].keypoints[kp], X)
                           for cam, kp, _, X in matches]
        pose, inliers, _ = optimize_pose(self.rig, pose, correspondences, self.solver,
                                         inlier_threshold_px=self.config.inlier_threshold_px)
        return pose, [m for m, ok in zip(matches, inliers) if ok]

    def _track(self, frame):
        cfg = self.config
        predicted, velocity = self.predict_pose(frame)
        matches = self.match_local_map(frame, predicted, cfg.search_radius_px)
        if len(matches) < cfg.min_tracking_matches:
            matches = self.match_local_map(frame, predicted, 3 * cfg.search_radius_px)
        if len(matches) < cfg.min_tracking_matches:
            return self._lost(frame, len(matches))

        pose, inliers = self._refine(frame, predicted, matches)
        if len(inliers) < cfg.min_tracking_matches:
            return self._lost(frame, len(inliers))

        self._fire(TrackingEvent.TRACK_OK)
        generation = self.matched_generation
        dt = frame.timestamp - self.last_timestamp
        # The refined pose is in the frame of the landmarks it was matched to;
        # a correction landing since the last frame leaves the two poses in
        # different frames, so the previous velocity is kept.
        if not (self.rig.has_imu and frame.imu) and dt > 0 and generation == self.pose_generation:
            velocity = (pose[:3, 3] - self.last_pose[:3, 3]) / dt
        self.prev_pose, self.last_pose = self.last_pose, pose
        self.prev_generation, self.pose_generation = self.pose_generation, generation
        self.velocity = np.asarray(velocity, dtype=float)
        self.last_timestamp = frame.timestamp

        new_keyframes = []
        if self.need_new_keyframe(frame, pose, len(inliers)):
            new_keyframes.append(self._create_keyframe(frame, pose, inliers))
        return TrackingResult(self.state, pose.copy(), len(matches), len(inliers), new_keyframes)

    def _lost(self, frame, num_matches):
        self._fire(TrackingEvent.TRACK_LOST)
        self.relocalization_attempts = 0
        error = TrackingLostError(num_matches, self.config.min_tracking_matches)
        logger.warning("%s at t=%.3f", error, frame.timestamp)
        condition = Condition(ConditionKind.TRACKING_LOST,
                              f"{num_matches} matches at t={frame.timestamp:.3f}",
                              self.last_keyframe_id, error=error)
        return TrackingResult(self.state, None, num_matches, 0, conditions=[condition])

    # ------------------------------------------------------------------ #
    #  Keyframes
    # ------------------------------------------------------------------ #
    def need_new_keyframe(self, frame, pose, num_inliers):
        """Promote on low overlap with the reference keyframe or on enough motion/time."""
        cfg = self.config
        ref = self.map.get_keyframe(self.last_keyframe_id)
        if ref is None:
            return True
        if num_inliers < cfg.keyframe_min_matches:
            return True
        if num_inliers < cfg.keyframe_overlap_ratio * len(ref.map_points):
            return True
        if frame.timestamp - ref.timestamp > cfg.keyframe_max_interval_sec:
            return True
        rot_err, trans_err = pose_error(ref.pose, pose)
        return trans_err > cfg.keyframe_translation or np.degrees(rot_err) > cfg.keyframe_rotation_deg

    def _create_keyframe(self, frame, pose, matches):
        preint = None
        ref = self.map.get_keyframe(self.last_keyframe_id)
        if self.rig.has_imu and self._imu_since_keyframe and ref is not None:
            preint = ImuPreintegration.from_samples(self._imu_since_keyframe, ref.timestamp,
                                                    frame.timestamp)
        with self.map.lock:
            kf = KeyFrame(self.map.new_keyframe_id(), frame.timestamp, pose, frame.observations,
                          imu_preintegration=preint, velocity=self.velocity,
                          frame_id=frame.frame_id)
            self.map.add_keyframe(kf)
            for cam, kp_idx, mp_id, _ in matches:
                if self.map.get_map_point(mp_id) is not None:
                    self.map.add_observation(kf.id, mp_id, cam, kp_idx)
        self.last_keyframe_id = kf.id
        self._imu_since_keyframe = []
        logger.debug("New KeyFrame %d at t=%.3f with %d tracked landmarks",
                     kf.id, frame.timestamp, len(kf.map_points))
        self._emit_keyframe(kf.id)
        return kf.id

    def _emit_keyframe(self, kf_id):
        if self.on_keyframe is not None:
            self.on_keyframe(kf_id)

    # ------------------------------------------------------------------ #
    #  Relocalization
    # ------------------------------------------------------------------ #
    def _relocalize(self, frame):
        cfg = self.config
        self.relocalization_attempts += 1

        pose, inliers = None, []
        matches = self.match_local_map(frame, self.last_pose, 3 * cfg.search_radius_px)
        generation = self.matched_generation
        if len(matches) >= cfg.min_tracking_matches:
            pose, inliers = self._refine(frame, self.last_pose, matches)
        if len(inliers) < cfg.min_tracking_matches and self.loop_closing is not None:
            estimate = self.loop_closing.relocalize(frame)
            if estimate is not None:
                pose = estimate.pose
                generation = estimate.generation
                inliers = []
                for cam, kp_idx, mp_id in estimate.matches:
                    mp = self.map.get_map_point(mp_id)
                    if mp is not None:
                        inliers.append((cam, kp_idx, mp_id, mp.position.copy()))

        if pose is not None and len(inliers) >= cfg.min_tracking_matches:
            self._fire(TrackingEvent.RELOC_SUCCEEDED)
            logger.info("Relocalized at t=%.3f after %d attempt(s) with %d inliers",
                        frame.timestamp, self.relocalization_attempts, len(inliers))
            condition = Condition(ConditionKind.RELOCALIZED,
                                  f"{len(inliers)} inliers after "
                                  f"{self.relocalization_attempts} attempt(s)")
            self.relocalization_attempts = 0
            self._reset_motion(pose, frame.timestamp, generation)
            self._imu_since_keyframe = []
            self.last_keyframe_id = None
            kf_id = self._create_keyframe(frame, pose, inliers)
            return TrackingResult(self.state, pose.copy(), len(matches), len(inliers), [kf_id],
                                  [condition])

        if self.relocalization_attempts >= cfg.max_relocalization_attempts:
            self._fire(TrackingEvent.RELOC_EXHAUSTED)
            logger.error("Relocalization failed after %d attempts", self.relocalization_attempts)
            condition = Condition(ConditionKind.SESSION_FAILED,
                                  f"relocalization failed after {self.relocalization_attempts} "
                                  f"attempts")
            return TrackingResult(self.state, conditions=[condition])
        self._fire(TrackingEvent.RELOC_FAILED)
        return TrackingResult(self.state, num_matches=len(inliers))

    # ------------------------------------------------------------------ #
    #  Motion state
    # ------------------------------------------------------------------ #
    def _reset_motion(self, pose, timestamp, generation):
        self.last_pose = np.array(pose, dtype=float)
        self.prev_pose = self.last_pose.copy()
        self.velocity = np.zeros(3)
        self.last_timestamp = timestamp
        self.pose_generation = self.prev_generation = generation

    def apply_correction(self, deltas, generation=None):
        """
        Carry the motion state through a global correction of the map.

        Args:
            deltas: Mapping keyframe ID -> 4x4 correction, as returned by
                Map.apply_correction.
            generation: Map generation the correction produced. Poses
                already estimated against that generation (or a later one)
                are left alone. None applies the correction to every pose.
        """
        if self.last_pose is None or not deltas:
            return
        delta = deltas.get(self.last_keyframe_id)
        if delta is None:
            delta = deltas[max(deltas)]
        if generation is None or self.pose_generation < generation:
            self.last_pose = delta @ self.last_pose
            if generation is not None:
                self.pose_generation = generation
        if generation is None or self.prev_generation < generation:
            self.prev_pose = delta @ self.prev_pose
            self.velocity = delta[:3, :3] @ self.velocity
            if generation is not None:
                self.prev_generation = generation
        logger.debug("Tracking re-anchored after global correction")
