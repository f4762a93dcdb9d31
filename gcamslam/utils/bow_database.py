import threading
from collections import defaultdict


def l1_score(v1, v2):
    """Similarity of two L1-normalized BoW vectors: 1 - 0.5 * |v1 - v2|_1, in [0, 1]."""
    score = 0.0
    for w, a in v1.items():
        b = v2.get(w)
        if b is not None:
            score += abs(a) + abs(b) - abs(a - b)
    return 0.5 * score


class BoWDatabase:
    def __init__(self):
        """
        Inverted index of keyframe bag-of-words vectors for place recognition.

        Safe to query from the tracking thread while the loop worker adds
        keyframes.
        """
        self.bow_vectors = {}
        self.inverted_index = defaultdict(set)
        self._lock = threading.Lock()

    def __len__(self):
        return len(self.bow_vectors)

    def __contains__(self, keyframe_id):
        return keyframe_id in self.bow_vectors

    def add(self, keyframe_id, bow_vector):
        """
        Add a keyframe's BoW representation to the database.

        Args:
            keyframe_id: Unique identifier for the keyframe.
            bow_vector: dict word -> weight.
        """
        with self._lock:
            self.bow_vectors[keyframe_id] = dict(bow_vector)
            for w in bow_vector:
                self.inverted_index[w].add(keyframe_id)

    def remove(self, keyframe_id):
        with self._lock:
            bow_vector = self.bow_vectors.pop(keyframe_id, None)
            if bow_vector is None:
                return
            for w in bow_vector:
                self.inverted_index[w].discard(keyframe_id)

    def query(self, bow_vector, top_k=3, min_score=0.0, accept=None):
        """
        Query the database to find the best matching keyframes.

        Args:
            bow_vector: Query BoW vector.
            top_k: Number of best matches to return.
            min_score: Candidates scoring below this are dropped.
            accept: Optional predicate on keyframe IDs.

        Returns:
            List of (keyframe_id, score) sorted by decreasing similarity.
        """
        with self._lock:
            candidates = set()
            for w in bow_vector:
                candidates |= self.inverted_index.get(w, set())
            if accept is not None:
                candidates = {c for c in candidates if accept(c)}
            scores = [(c, l1_score(bow_vector, self.bow_vectors[c])) for c in candidates]
        scores = [s for s in scores if s[1] >= min_score]
        scores.sort(key=lambda x: (-x[1], x[0]))
        return scores[:top_k]
