"""
Place recognition and geometric verification.

Keyframes are indexed by bag-of-words vector. A query retrieves similar
keyframes outside a temporal exclusion window; each candidate is verified by
matching its landmarks to the query keypoints (2D-3D), estimating the query
rig pose with PnP + RANSAC in one camera and refining it over every camera.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from gcamslam.backend.optimizer import optimize_pose
from gcamslam.backend.solver import Solver
from gcamslam.config import LoopConfig
from gcamslam.core.geometry import Rt_to_T, inv_T, relative_pose
from gcamslam.frontend.feature_matcher import FeatureMatcher
from gcamslam.utils.bow_database import BoWDatabase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopConstraint:
    query_id: int
    match_id: int
    T_match_query: np.ndarray
    num_inliers: int
    score: float


@dataclass
class PoseEstimate:
    pose: np.ndarray
    matches: list       # (cam, kp_idx, landmark ID) inliers
    num_inliers: int
    score: float = 0.0
    keyframe_id: Optional[int] = None
    generation: int = 0     # map generation the landmark positions were read at


class LoopClosing:
    def __init__(self, map_instance, rig, vocabulary, config: LoopConfig = None, solver=None,
                 matcher=None, database=None):
        self.map = map_instance
        self.rig = rig
        self.vocabulary = vocabulary
        self.config = config or LoopConfig()
        self.solver = solver or Solver()
        self.matcher = matcher or FeatureMatcher(self.config.match_ratio,
                                                 self.config.max_descriptor_distance)
        self.database = database or BoWDatabase()

    # ------------------------------------------------------------------ #
    #  Indexing
    # ------------------------------------------------------------------ #
    def compute_bow(self, source):
        """BoW vector of a Frame or KeyFrame, over the descriptors of every camera."""
        descriptors = source.all_descriptors()
        if descriptors is None:
            return {}
        return self.vocabulary.transform(descriptors)

    def add_keyframe(self, keyframe_id):
        """Compute and index the BoW vector of a keyframe."""
        kf = self.map.get_keyframe(keyframe_id)
        if kf is None:
            return None
        bow = self.compute_bow(kf)
        with self.map.lock:
            kf.bow_vector = bow
        self.database.add(keyframe_id, bow)
        return bow

    # ------------------------------------------------------------------ #
    #  Detection
    # ------------------------------------------------------------------ #
    def detect(self, keyframe_id) -> List[LoopConstraint]:
        """
        Look for places revisited by a keyframe.

        Candidates among the `exclusion_window` keyframes preceding the query
        are never considered.

        Returns:
            Verified loop constraints, best first (possibly empty).
        """
        cfg = self.config
        snapshot = self.map.snapshot()
        query = snapshot.get_keyframe(keyframe_id)
        if query is None:
            return []
        bow = query.bow_vector if query.bow_vector is not None else self.compute_bow(query)

        def outside_window(candidate_id):
            return candidate_id != keyframe_id and keyframe_id - candidate_id > cfg.exclusion_window

        candidates = self.database.query(bow, top_k=cfg.max_candidates,
                                         min_score=cfg.min_similarity, accept=outside_window)
        constraints = []
        for cand_id, score in candidates:
            estimate = self.verify(query.observations, query.pose, cand_id, snapshot)
            if estimate is None:
                continue
            candidate = snapshot.get_keyframe(cand_id)
            T_match_query = relative_pose(candidate.pose, estimate.pose)
            constraints.append(LoopConstraint(keyframe_id, cand_id, T_match_query,
                                              estimate.num_inliers, score))
            logger.info("Loop detected: KeyFrame %d <-> %d (%d inliers, score %.3f)",
                        keyframe_id, cand_id, estimate.num_inliers, score)
        constraints.sort(key=lambda c: -c.num_inliers)
        return constraints

    def relocalize(self, frame) -> Optional[PoseEstimate]:
        """
        Recover the rig pose of a frame against the whole map.

        Returns:
            Best PoseEstimate, or None when no candidate verifies.
        """
        cfg = self.config
        bow = self.compute_bow(frame)
        if not bow:
            return None
        snapshot = self.map.snapshot()
        candidates = self.database.query(bow, top_k=cfg.max_candidates,
                                         min_score=cfg.min_similarity)
        best = None
        for cand_id, score in candidates:
            estimate = self.verify(frame.observations, None, cand_id, snapshot)
            if estimate is not None and (best is None or estimate.num_inliers > best.num_inliers):
                estimate.score = score
                estimate.generation = snapshot.generation
                best = estimate
        if best is not None:
            logger.info("Relocalized against KeyFrame %d with %d inliers",
                        best.keyframe_id, best.num_inliers)
        return best

    # ------------------------------------------------------------------ #
    #  Verification
    # ------------------------------------------------------------------ #
    def match_landmarks(self, observations, candidate, snapshot):
        """2D-3D matches (cam, kp_idx, landmark ID) between query keypoints and candidate landmarks."""
        lm_ids, lm_desc = [], []
        for (cam, kp_idx), mp_id in candidate.map_points.items():
            if snapshot.get_map_point(mp_id) is None:
                continue
            lm_ids.append(mp_id)
            lm_desc.append(candidate.descriptor(cam, kp_idx))
        if not lm_ids:
            return []
        lm_desc = np.array(lm_desc)

        best = {}
        for cam, obs in enumerate(observations):
            if len(obs) == 0:
                continue
            for i, kp_idx, dist in self.matcher.match(lm_desc, obs.descriptors):
                mp_id = lm_ids[i]
                if mp_id not in best or dist < best[mp_id][2]:
                    best[mp_id] = (cam, kp_idx, dist)
        return [(cam, kp_idx, mp_id) for mp_id, (cam, kp_idx, _) in best.items()]

    def _pnp_in_camera(self, cam, pixels, points_w):
        """Rig pose from one camera's 2D-3D matches; pixels are lifted to normalized rays."""
        model = self.rig.cameras[cam].model
        rays = model.unproject(pixels)
        valid = rays[:, 2] > 1e-6
        if np.count_nonzero(valid) < 6:
            return None
        normalized = (rays[valid, :2] / rays[valid, 2:3]).astype(np.float64)
        # Pixel threshold converted to normalized units around the first match.
        shifted = model.unproject(pixels[:1] + np.array([[self.config.pnp_threshold_px, 0.0]]))
        threshold = float(np.linalg.norm(shifted[0, :2] / shifted[0, 2] - normalized[0]))
        ok, rvec, tvec, inliers = cv2.solvePnPRansac(
            points_w[valid].astype(np.float64), normalized, np.eye(3), None,
            iterationsCount=self.config.pnp_iterations,
            reprojectionError=max(threshold, 1e-6), confidence=0.99,
            flags=cv2.SOLVEPNP_EPNP)
        if not ok or inliers is None:
            return None
        T_c_w = Rt_to_T(cv2.Rodrigues(rvec)[0], tvec.ravel())
        return inv_T(T_c_w) @ self.rig.T_c_b(cam), len(inliers)

    def estimate_pose(self, observations, matches, snapshot, initial_pose=None):
        """
        Estimate the rig pose from 2D-3D matches.

        Returns:
            PoseEstimate or None.
        """
        cfg = self.config
        if len(matches) < cfg.min_inliers:
            return None
        pixels = np.array([observations[c].keypoints[k] for c, k, _ in matches])
        points_w = np.array([snapshot.get_map_point(m).position for _, _, m in matches])
        cams = np.array([c for c, _, _ in matches])

        pose = initial_pose
        best_support = 0
        for cam in np.unique(cams):
            mask = cams == cam
            solution = self._pnp_in_camera(int(cam), pixels[mask], points_w[mask])
            if solution is not None and solution[1] > best_support:
                pose, best_support = solution
        if pose is None:
            return None

        correspondences = [(int(c), uv, X) for c, uv, X in zip(cams, pixels, points_w)]
        pose, inliers, _ = optimize_pose(self.rig, pose, correspondences, self.solver,
                                         huber_threshold_px=cfg.pnp_threshold_px,
                                         inlier_threshold_px=cfg.pnp_threshold_px)
        num_inliers = int(np.count_nonzero(inliers))
        if num_inliers < cfg.min_inliers:
            logger.debug("Geometric verification failed: %d inliers (need %d)",
                         num_inliers, cfg.min_inliers)
            return None
        inlier_matches = [m for m, ok in zip(matches, inliers) if ok]
        return PoseEstimate(pose, inlier_matches, num_inliers)

    def verify(self, observations, initial_pose, candidate_id, snapshot) -> Optional[PoseEstimate]:
        candidate = snapshot.get_keyframe(candidate_id)
        if candidate is None:
            return None
        matches = self.match_landmarks(observations, candidate, snapshot)
        estimate = self.estimate_pose(observations, matches, snapshot, initial_pose)
        if estimate is not None:
            estimate.keyframe_id = candidate_id
        return estimate
