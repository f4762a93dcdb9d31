import cv2
import numpy as np
from scipy.spatial import cKDTree

from gcamslam.core.map_point import descriptor_distance


class FeatureMatcher:
    def __init__(self, ratio_thresh=0.8, max_distance=80.0):
        """
        Initializes the FeatureMatcher with the specified thresholds.

        Args:
            ratio_thresh: Ratio threshold for filtering ambiguous matches.
            max_distance: Largest accepted descriptor distance.
        """
        self.ratio_thresh = ratio_thresh
        self.max_distance = max_distance
        self.bf_hamming = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        self.bf_l2 = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)

    def _prepare(self, des1, des2):
        des1 = np.asarray(des1)
        des2 = np.asarray(des2)
        if des1.dtype == np.uint8 and des2.dtype == np.uint8:
            return self.bf_hamming, des1, des2
        return self.bf_l2, des1.astype(np.float32), des2.astype(np.float32)

    def match(self, des1, des2):
        """
        Matches descriptors using the BFMatcher and applies the ratio test.

        Each train descriptor is used at most once; the closest query wins.

        Args:
            des1: (N,D) query descriptors.
            des2: (M,D) train descriptors.

        Returns:
            List of (query index, train index, distance).
        """
        if des1 is None or des2 is None or len(des1) == 0 or len(des2) == 0:
            return []
        bf, des1, des2 = self._prepare(des1, des2)
        knn_matches = bf.knnMatch(des1, des2, k=2)

        best_for_train = {}
        for pair in knn_matches:
            if not pair:
                continue
            m = pair[0]
            if m.distance > self.max_distance:
                continue
            if len(pair) > 1 and m.distance >= self.ratio_thresh * pair[1].distance:
                continue
            current = best_for_train.get(m.trainIdx)
            if current is None or m.distance < current[2]:
                best_for_train[m.trainIdx] = (m.queryIdx, m.trainIdx, float(m.distance))
        return sorted(best_for_train.values())

    def search_by_projection(self, projected, descriptors, keypoints, keypoint_descriptors,
                             radius, exclude=None):
        """
        Match projected landmarks against keypoints lying within a radius.

        Args:
            projected: (M,2) predicted pixel positions of the landmarks.
            descriptors: M landmark descriptors.
            keypoints: (N,2) keypoints of the current image.
            keypoint_descriptors: (N,D) descriptors of the current image.
            radius: Search radius in pixels.
            exclude: Keypoint indices already matched.

        Returns:
            List of (landmark row, keypoint index, distance).
        """
        if len(projected) == 0 or len(keypoints) == 0:
            return []
        exclude = exclude or set()
        tree = cKDTree(keypoints)
        neighbours = tree.query_ball_point(projected, r=radius)

        best_for_keypoint = {}
        for row, candidates in enumerate(neighbours):
            best, second, best_idx = np.inf, np.inf, -1
            for kp_idx in candidates:
                if kp_idx in exclude:
                    continue
                dist = descriptor_distance(descriptors[row], keypoint_descriptors[kp_idx])
                if dist < best:
                    best, second, best_idx = dist, best, kp_idx
                elif dist < second:
                    second = dist
            if best_idx < 0 or best > self.max_distance:
                continue
            if np.isfinite(second) and best >= self.ratio_thresh * second:
                continue
            current = best_for_keypoint.get(best_idx)
            if current is None or best < current[2]:
                best_for_keypoint[best_idx] = (row, best_idx, float(best))
        return sorted(best_for_keypoint.values())
