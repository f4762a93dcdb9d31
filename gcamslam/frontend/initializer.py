import logging
from dataclasses import dataclass, field
from typing import List

import cv2
import numpy as np

from gcamslam.backend.triangulation import triangulate_views
from gcamslam.config import TrackingConfig
from gcamslam.core.geometry import Rt_to_T, inv_T
from gcamslam.core.keyframe import KeyFrame
from gcamslam.core.map_point import MapPoint
from gcamslam.errors import TriangulationError

logger = logging.getLogger(__name__)


@dataclass
class InitializationResult:
    success: bool
    keyframe_ids: List[int] = field(default_factory=list)
    num_landmarks: int = 0


class MapInitializer:
    def __init__(self, rig, map_instance, matcher, config: TrackingConfig = None,
                 max_reprojection_error_px=4.0, min_depth=0.05, max_depth=200.0):
        """
        Bootstraps the map from the first frames.

        With overlapping cameras a single frame is enough; otherwise two
        frames of the first camera are related by an essential matrix.

        Args:
            rig: CameraRig.
            map_instance: Global Map instance.
            matcher: FeatureMatcher providing .match(des1, des2).
            config: TrackingConfig with the initialization thresholds.
        """
        self.rig = rig
        self.map = map_instance
        self.matcher = matcher
        self.config = config or TrackingConfig()
        self.max_reprojection_error_px = max_reprojection_error_px
        self.min_depth = min_depth
        self.max_depth = max_depth
        self.reference_frame = None

    def _triangulate(self, views):
        try:
            return triangulate_views(self.rig, views,
                                     min_parallax_deg=self.config.min_init_parallax_deg,
                                     min_depth=self.min_depth, max_depth=self.max_depth,
                                     max_reprojection_error_px=self.max_reprojection_error_px)
        except TriangulationError:
            return None

    def try_initialize(self, frame, initial_pose=None) -> InitializationResult:
        """
        Attempts to initialize the map with a new frame.

        Returns:
            InitializationResult; keyframes and landmarks are only added to
            the map when initialization succeeds.
        """
        pose = np.eye(4) if initial_pose is None else np.asarray(initial_pose, dtype=float)
        if self.rig.stereo_pairs:
            return self._initialize_stereo(frame, pose)
        return self._initialize_two_view(frame, pose)

    # ------------------------------------------------------------------ #
    #  Overlapping cameras
    # ------------------------------------------------------------------ #
    def _initialize_stereo(self, frame, pose):
        points = []
        used = set()
        for cam_i, cam_j in self.rig.stereo_pairs:
            obs_i, obs_j = frame.observations[cam_i], frame.observations[cam_j]
            for kp_i, kp_j, _ in self.matcher.match(obs_i.descriptors, obs_j.descriptors):
                if (cam_i, kp_i) in used or (cam_j, kp_j) in used:
                    continue
                X = self._triangulate([(pose, cam_i, obs_i.keypoints[kp_i]),
                                       (pose, cam_j, obs_j.keypoints[kp_j])])
                if X is None:
                    continue
                used.update({(cam_i, kp_i), (cam_j, kp_j)})
                points.append((X, [(cam_i, kp_i), (cam_j, kp_j)]))

        if len(points) < self.config.min_init_landmarks:
            logger.debug("Stereo initialization: %d landmarks (need %d)",
                         len(points), self.config.min_init_landmarks)
            return InitializationResult(False, num_landmarks=len(points))

        with self.map.lock:
            kf = KeyFrame(self.map.new_keyframe_id(), frame.timestamp, pose, frame.observations,
                          frame_id=frame.frame_id)
            self.map.add_keyframe(kf)
            for X, views in points:
                self._add_point(X, [(kf, cam, kp) for cam, kp in views])
        logger.info("Initialized from overlapping cameras: KeyFrame %d, %d landmarks",
                    kf.id, len(points))
        return InitializationResult(True, [kf.id], len(points))

    # ------------------------------------------------------------------ #
    #  Two-view
    # ------------------------------------------------------------------ #
    def _initialize_two_view(self, frame, pose, cam=0):
        if self.reference_frame is None:
            self.reference_frame = frame
            return InitializationResult(False)

        ref = self.reference_frame
        obs_ref, obs_cur = ref.observations[cam], frame.observations[cam]
        matches = self.matcher.match(obs_ref.descriptors, obs_cur.descriptors)
        if len(matches) < max(8, self.config.min_init_landmarks):
            logger.debug("Two-view initialization: only %d matches", len(matches))
            return InitializationResult(False)

        model = self.rig.cameras[cam].model
        rays_ref = model.unproject(np.array([obs_ref.keypoints[m[0]] for m in matches]))
        rays_cur = model.unproject(np.array([obs_cur.keypoints[m[1]] for m in matches]))
        pts_ref = rays_ref[:, :2] / rays_ref[:, 2:3]
        pts_cur = rays_cur[:, :2] / rays_cur[:, 2:3]

        E, mask = cv2.findEssentialMat(pts_ref, pts_cur, np.eye(3), method=cv2.RANSAC,
                                       prob=0.999, threshold=1e-3)
        if E is None or E.shape != (3, 3):
            self.reference_frame = frame
            return InitializationResult(False)
        _, R_cr, t_cr, mask = cv2.recoverPose(E, pts_ref, pts_cur, np.eye(3), mask=mask)

        # Camera motion ref -> cur, then lifted to rig poses.
        T_cur_ref = Rt_to_T(R_cr, t_cr.ravel())
        T_b_c = self.rig.T_b_c(cam)
        pose_ref = pose
        pose_cur = pose_ref @ T_b_c @ inv_T(T_cur_ref) @ self.rig.T_c_b(cam)

        points = []
        for (i, j, _), ok in zip(matches, mask.ravel()):
            if not ok:
                continue
            X = self._triangulate([(pose_ref, cam, obs_ref.keypoints[i]),
                                   (pose_cur, cam, obs_cur.keypoints[j])])
            if X is not None:
                points.append((X, i, j))

        if len(points) < self.config.min_init_landmarks:
            logger.debug("Two-view initialization: %d landmarks (need %d)",
                         len(points), self.config.min_init_landmarks)
            return InitializationResult(False, num_landmarks=len(points))

        with self.map.lock:
            kf_ref = KeyFrame(self.map.new_keyframe_id(), ref.timestamp, pose_ref,
                              ref.observations, frame_id=ref.frame_id)
            self.map.add_keyframe(kf_ref)
            kf_cur = KeyFrame(self.map.new_keyframe_id(), frame.timestamp, pose_cur,
                              frame.observations, frame_id=frame.frame_id)
            self.map.add_keyframe(kf_cur)
            for X, i, j in points:
                self._add_point(X, [(kf_ref, cam, i), (kf_cur, cam, j)])
        self.reference_frame = None
        logger.info("Initialized from two views: KeyFrames %d, %d with %d landmarks",
                    kf_ref.id, kf_cur.id, len(points))
        return InitializationResult(True, [kf_ref.id, kf_cur.id], len(points))

    def _add_point(self, X, views):
        kf0, cam0, kp0 = views[0]
        mp = MapPoint(X, kf0.descriptor(cam0, kp0), reference_keyframe_id=kf0.id)
        mp_id = self.map.add_map_point(mp)
        for kf, cam, kp in views:
            self.map.add_observation(kf.id, mp_id, cam, kp)
        self.map.update_map_point_descriptor(mp_id)
        return mp_id
