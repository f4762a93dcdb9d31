"""
Extrinsic self-calibration of a camera rig.

A recorded run is replayed through a SLAM session with the seeded
extrinsics. The resulting keyframe poses, landmarks and the camera-to-rig
poses of every non-reference camera are then refined jointly.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
from tqdm import tqdm

from gcamslam.backend.optimizer import BundleAdjustment
from gcamslam.backend.solver import Solver, SolverResult
from gcamslam.config import SlamConfig
from gcamslam.core.geometry import pose_error
from gcamslam.errors import FatalError
from gcamslam.frontend.tracking import TrackingState
from gcamslam.system import SlamSession

logger = logging.getLogger(__name__)


@dataclass
class CalibrationResult:
    rig: object
    trajectory: List[Tuple[float, np.ndarray]]
    snapshot: object
    solver_result: SolverResult = None
    num_frames: int = 0
    loop_edges: list = field(default_factory=list)


class SelfCalibration:
    def __init__(self, rig, config: SlamConfig = None, vocabulary=None, reference_camera=0):
        """
        Args:
            rig: CameraRig with seeded extrinsics.
            config: SlamConfig for the replay.
            vocabulary: Vocabulary for loop closure during the replay.
            reference_camera: Camera whose extrinsic stays fixed (defines the rig frame).
        """
        self.rig = rig
        self.config = copy.deepcopy(config or SlamConfig())
        self.vocabulary = vocabulary
        self.reference_camera = reference_camera

    def replay(self, frames):
        """Run every frame through a session; returns the finished session."""
        session = SlamSession(self.rig, self.config, self.vocabulary)
        num_frames = 0
        try:
            for frame in tqdm(frames, desc="Replaying recording", disable=None):
                session.process_frame(frame)
                num_frames += 1
                if session.state == TrackingState.FAILED:
                    raise FatalError(f"Tracking failed at frame {num_frames}")
        finally:
            session.shutdown()
        for condition in session.poll_conditions():
            logger.info("Replay condition %s: %s", condition.kind.name, condition.message)
        return session, num_frames

    def refine(self, map_instance):
        """
        Jointly refine keyframe poses, landmarks and non-reference extrinsics.

        Returns:
            tuple: (refined CameraRig, SolverResult)
        """
        window = self.config.window
        solver = Solver(self.config.solver)
        ba = BundleAdjustment(self.rig, solver, window.huber_threshold_px, window.pixel_sigma)
        snapshot = map_instance.snapshot()
        kf_ids = snapshot.keyframe_ids()
        if len(kf_ids) < 2:
            raise FatalError("Not enough keyframes to refine the rig extrinsics")

        for kf_id in kf_ids:
            ba.add_pose(kf_id, snapshot.keyframes[kf_id].pose, fixed=(kf_id == kf_ids[0]))
        for mp_id, mp in snapshot.map_points.items():
            if mp.num_observations < 2:
                continue
            ba.add_point(mp_id, mp.position)
            for kf_id, cam, kp_idx in mp.views():
                ba.add_edge(mp_id, kf_id, cam, snapshot.keyframes[kf_id].keypoint(cam, kp_idx))
        if self.rig.has_imu:
            for prev_id, kf_id in zip(kf_ids[:-1], kf_ids[1:]):
                kf = snapshot.keyframes[kf_id]
                ba.add_inertial_edge(prev_id, kf_id, kf.imu_preintegration,
                                     snapshot.keyframes[prev_id].velocity,
                                     window.imu_rotation_sigma, window.imu_position_sigma)
        for cam in range(self.rig.num_cameras):
            if cam != self.reference_camera:
                ba.set_extrinsic_fixed(cam, False)

        result = ba.optimize()
        if result.diverged:
            logger.warning("Extrinsic refinement diverged; keeping the seeded extrinsics")
            return self.rig, result

        refined = self.rig.with_extrinsics([ba.get_extrinsic(c) for c in range(self.rig.num_cameras)])
        for cam in range(self.rig.num_cameras):
            rot, trans = pose_error(self.rig.T_b_c(cam), refined.T_b_c(cam))
            logger.info("Camera %s: extrinsic moved by %.4f rad, %.4f m",
                        refined.cameras[cam].name, rot, trans)
        for kf_id in ba.pose_ids():
            map_instance.set_keyframe_pose(kf_id, ba.get_pose(kf_id))
        for mp_id in ba.point_ids():
            map_instance.set_map_point_position(mp_id, ba.get_point(mp_id))
        return refined, result

    def run(self, frames):
        """
        Replay a recording and refine the rig.

        Args:
            frames: Iterable of Frame in recording order.

        Returns:
            CalibrationResult.
        """
        session, num_frames = self.replay(frames)
        refined, result = self.refine(session.map)
        snapshot = session.map.snapshot()
        centers = {k: kf.get_rig_center() for k, kf in snapshot.keyframes.items()}
        loop_edges = [(centers[e.i], centers[e.j]) for e in session.pose_graph.loop_edges
                      if e.i in centers and e.j in centers]
        return CalibrationResult(refined, session.trajectory(), snapshot, result, num_frames,
                                 loop_edges)
