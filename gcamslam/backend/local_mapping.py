import logging
from collections import deque

import numpy as np

from gcamslam.backend.optimizer import BundleAdjustment
from gcamslam.backend.solver import Solver
from gcamslam.backend.triangulation import triangulate_views
from gcamslam.config import WindowConfig
from gcamslam.core.geometry import inv_T
from gcamslam.core.map_point import MapPoint
from gcamslam.errors import TriangulationError, WindowDivergedError
from gcamslam.frontend.feature_matcher import FeatureMatcher

logger = logging.getLogger(__name__)


class LocalMapping:
    def __init__(self, map_instance, rig, config: WindowConfig = None, solver=None, matcher=None):
        """
        Sliding-window bundle adjustment over the most recent keyframes.

        Owns the window membership; every pose and landmark it refines lives
        in the shared map and is written back in one critical section.

        Args:
            map_instance: Shared Map.
            rig: CameraRig.
            config: WindowConfig.
            solver: Solver used for the window solve.
            matcher: FeatureMatcher used to find new correspondences.
        """
        self.map = map_instance
        self.rig = rig
        self.config = config or WindowConfig()
        self.solver = solver or Solver()
        self.matcher = matcher or FeatureMatcher(self.config.match_ratio,
                                                 self.config.max_descriptor_distance)
        self.window = deque()
        # Map generation the window was last re-anchored to
        self.generation = map_instance.generation
        self.stats = {'triangulated': 0, 'triangulation_failures': 0, 'culled': 0,
                      'frozen': 0, 'discarded': 0, 'stale_solves': 0,
                      'deferred_solves': 0}

    @property
    def window_ids(self):
        return list(self.window)

    # ------------------------------------------------------------------ #
    #  Admit / evict
    # ------------------------------------------------------------------ #
    def admit(self, keyframe_id):
        """
        Add a keyframe to the window and triangulate new landmarks for it.

        The oldest keyframes are evicted first so the window never exceeds
        its configured size.

        Returns:
            IDs of the landmarks created.
        """
        if self.map.get_keyframe(keyframe_id) is None:
            logger.warning("Cannot admit unknown KeyFrame %d", keyframe_id)
            return []
        self.window.append(keyframe_id)
        while len(self.window) > self.config.size:
            self.evict()
        created = self.triangulate_new_points(keyframe_id)
        logger.debug("Admitted KeyFrame %d: window=%s, %d new landmarks",
                     keyframe_id, list(self.window), len(created))
        return created

    def evict(self):
        """
        Remove the oldest keyframe from the window.

        Landmarks it observed that no remaining window keyframe observes are
        frozen or discarded according to the eviction policy. A landmark
        still observed inside the window is never touched.

        Returns:
            ID of the evicted keyframe, or None if the window is empty.
        """
        if not self.window:
            return None
        kf_id = self.window.popleft()
        remaining = set(self.window)
        with self.map.lock:
            for mp_id in self.map.map_points_of(kf_id):
                mp = self.map.get_map_point(mp_id)
                if mp is None or mp.keyframes_observed & remaining:
                    continue
                if self.config.eviction_policy == 'discard' or mp.num_observations < 2:
                    self.map.remove_map_point(mp_id)
                    self.stats['discarded'] += 1
                else:
                    mp.frozen = True
                    self.stats['frozen'] += 1
        logger.debug("Evicted KeyFrame %d from the window", kf_id)
        return kf_id

    # ------------------------------------------------------------------ #
    #  Triangulation
    # ------------------------------------------------------------------ #
    def _triangulate(self, views):
        """views: list of (kf_id, pose, cam, kp_idx, uv, descriptor)"""
        try:
            return triangulate_views(
                self.rig, [(pose, cam, uv) for _, pose, cam, _, uv, _ in views],
                min_parallax_deg=self.config.min_parallax_deg,
                min_depth=self.config.min_depth, max_depth=self.config.max_depth,
                max_reprojection_error_px=self.config.max_reprojection_error_px)
        except TriangulationError as e:
            self.stats['triangulation_failures'] += 1
            logger.debug("Triangulation skipped: %s", e)
            return None

    def _match_unmatched(self, state, id_a, cam_a, id_b, cam_b):
        kf_a, _, free_a = state[id_a]
        kf_b, _, free_b = state[id_b]
        idx_a = sorted(free_a[cam_a])
        idx_b = sorted(free_b[cam_b])
        if not idx_a or not idx_b:
            return []
        des_a = kf_a.observations[cam_a].descriptors[idx_a]
        des_b = kf_b.observations[cam_b].descriptors[idx_b]
        return [(idx_a[i], idx_b[j]) for i, j, _ in self.matcher.match(des_a, des_b)]

    def triangulate_new_points(self, keyframe_id):
        """
        Create landmarks from unmatched keypoints of a keyframe.

        Overlapping camera pairs of the keyframe itself are tried first, then
        the same camera of every other window keyframe, newest first. Poses
        and free keypoints are copied under the map lock; matching and
        triangulation run without it.
        """
        with self.map.lock:
            kf = self.map.get_keyframe(keyframe_id)
            if kf is None:
                return []
            generation = self.map.generation
            # kf_id -> (keyframe, pose, {cam: unmatched keypoint indices})
            state = {}
            for k in [keyframe_id] + [o for o in reversed(self.window) if o != keyframe_id]:
                other = self.map.get_keyframe(k)
                if other is not None:
                    state[k] = (other, other.pose.copy(),
                                {cam: set(other.unmatched_keypoints(cam))
                                 for cam in range(self.rig.num_cameras)})

        pairs = [(keyframe_id, cam_i, keyframe_id, cam_j) for cam_i, cam_j in self.rig.stereo_pairs]
        pairs += [(keyframe_id, cam, other_id, cam) for other_id in state if other_id != keyframe_id
                  for cam in range(self.rig.num_cameras)]
        candidates = []
        for id_a, cam_a, id_b, cam_b in pairs:
            for kp_a, kp_b in self._match_unmatched(state, id_a, cam_a, id_b, cam_b):
                kf_a, pose_a, free_a = state[id_a]
                kf_b, pose_b, free_b = state[id_b]
                views = [(id_a, pose_a, cam_a, kp_a, kf_a.keypoint(cam_a, kp_a),
                          kf_a.descriptor(cam_a, kp_a)),
                         (id_b, pose_b, cam_b, kp_b, kf_b.keypoint(cam_b, kp_b),
                          kf_b.descriptor(cam_b, kp_b))]
                X_w = self._triangulate(views)
                if X_w is None:
                    continue
                free_a[cam_a].discard(kp_a)
                free_b[cam_b].discard(kp_b)
                candidates.append((X_w, views))
        return self._insert_points(keyframe_id, state[keyframe_id][1], generation, candidates)

    def _insert_points(self, keyframe_id, pose, generation, candidates):
        """Add triangulated points to the map, moved along with any correction since the copy."""
        created = []
        with self.map.lock:
            kf = self.map.get_keyframe(keyframe_id)
            if kf is None:
                return created
            delta = None
            if generation != self.map.generation:
                delta = kf.pose @ inv_T(pose)
            for X_w, views in candidates:
                if any(self.map.get_keyframe(k) is None
                       or (cam, kp) in self.map.get_keyframe(k).map_points
                       for k, _, cam, kp, _, _ in views):
                    continue
                if delta is not None:
                    X_w = delta[:3, :3] @ X_w + delta[:3, 3]
                mp_id = self.map.add_map_point(
                    MapPoint(X_w, views[0][5], reference_keyframe_id=keyframe_id))
                for kf_id, _, cam, kp_idx, _, _ in views:
                    self.map.add_observation(kf_id, mp_id, cam, kp_idx)
                self.map.update_map_point_descriptor(mp_id)
                created.append(mp_id)
        self.stats['triangulated'] += len(created)
        return created

    # ------------------------------------------------------------------ #
    #  Optimization
    # ------------------------------------------------------------------ #
    def _build_problem(self):
        cfg = self.config
        ba = BundleAdjustment(self.rig, self.solver, cfg.huber_threshold_px, cfg.pixel_sigma)
        window = [k for k in self.window if self.map.get_keyframe(k) is not None]
        if len(window) < 2:
            return None, window

        # The oldest window pose is held constant to fix the gauge.
        for kf_id in window:
            ba.add_pose(kf_id, self.map.get_keyframe(kf_id).pose, fixed=(kf_id == window[0]))

        landmarks = set()
        for kf_id in window:
            landmarks |= self.map.map_points_of(kf_id)
        for mp_id in sorted(landmarks):
            mp = self.map.get_map_point(mp_id)
            if mp.num_observations < 2:
                continue
            ba.add_point(mp_id, mp.position, fixed=mp.frozen)
            for kf_id, cam, kp_idx in mp.views():
                kf = self.map.get_keyframe(kf_id)
                ba.add_pose(kf_id, kf.pose, fixed=True)
                ba.add_edge(mp_id, kf_id, cam, kf.keypoint(cam, kp_idx))

        if self.rig.has_imu:
            for prev_id, kf_id in zip(window[:-1], window[1:]):
                kf = self.map.get_keyframe(kf_id)
                prev = self.map.get_keyframe(prev_id)
                ba.add_inertial_edge(prev_id, kf_id, kf.imu_preintegration, prev.velocity,
                                     cfg.imu_rotation_sigma, cfg.imu_position_sigma)
        return ba, window

    def optimize(self):
        """
        Jointly refine window poses and the landmarks they observe.

        After a global correction the window is not solved again until it
        has been re-anchored to the corrected map (see reanchor).

        Returns:
            SolverResult, or None when there is nothing to optimize or the
            window waits for a re-anchor.

        Raises:
            WindowDivergedError: the solve kept increasing the residual; the
                map is left as it was before the solve.
        """
        with self.map.lock:
            generation = self.map.generation
            if generation != self.generation:
                self.stats['deferred_solves'] += 1
                logger.debug("Window solve deferred: map generation %d, window anchored to %d",
                             generation, self.generation)
                return None
            ba, window = self._build_problem()
        if ba is None or ba.num_edges == 0:
            return None

        result = ba.optimize()
        if result.diverged:
            raise WindowDivergedError(result.initial_cost, result.final_cost, result.bad_rounds)

        window_set = set(window)
        poses = {k: ba.get_pose(k) for k in ba.pose_ids() if k in window_set}
        positions = {p: ba.get_point(p) for p in ba.point_ids()}
        with self.map.lock:
            if not self.map.apply_window_update(poses, positions, generation):
                self.stats['stale_solves'] += 1
                logger.info("Discarding window solve built on map generation %d", generation)
                return result
            self._cull_outliers(ba, window_set)
        logger.debug("Window solve: cost %.4g -> %.4g in %d evaluations",
                     result.initial_cost, result.final_cost, result.iterations)
        return result

    def _cull_outliers(self, ba, window_set):
        threshold = self.config.outlier_threshold_px
        for mp_id, kf_id, cam, err in ba.edge_errors():
            if kf_id not in window_set or err <= threshold:
                continue
            if self.map.get_map_point(mp_id) is None:
                continue
            self.map.remove_observation(kf_id, mp_id, cam, min_observations=2)
            self.stats['culled'] += 1

    def reanchor(self, generation):
        """
        Accept a global correction into the window.

        Window poses and landmarks were already moved by the correction;
        this resumes window solves on the corrected map. A stale generation
        (an older correction) is ignored.

        Returns:
            True if the window now follows `generation`.
        """
        if generation < self.generation:
            return False
        self.generation = generation
        logger.info("Window re-anchored to map generation %d", generation)
        return True

    def mean_reprojection_error(self):
        """Mean pixel error of every window observation at the current map state."""
        with self.map.lock:
            ba, _ = self._build_problem()
        if ba is None or ba.num_edges == 0:
            return 0.0
        errors = np.array([e[3] for e in ba.edge_errors()])
        return float(np.mean(errors[np.isfinite(errors)])) if np.isfinite(errors).any() else np.inf
