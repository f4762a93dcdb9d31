import argparse
import logging
import os
import pickle

import numpy as np
from scipy.spatial.distance import cdist
from sklearn.cluster import MiniBatchKMeans
from tqdm import tqdm

from gcamslam.errors import VocabularyNotFoundError

logger = logging.getLogger(__name__)


def descriptors_to_features(descriptors):
    """Binary (uint8) descriptors are unpacked to bits so k-means works in Hamming space."""
    descriptors = np.atleast_2d(np.asarray(descriptors))
    if descriptors.dtype == np.uint8:
        return np.unpackbits(descriptors, axis=1).astype(np.float32)
    return descriptors.astype(np.float32)


class Vocabulary:
    def __init__(self, k=10, depth=3):
        """
        Visual vocabulary with TF-IDF weighting.

        Args:
            k: Branching factor; the vocabulary holds k**depth words.
            depth: Depth of the equivalent vocabulary tree.
        """
        self.k = k
        self.depth = depth
        self.words = None
        self.word_weights = None

    @property
    def num_words(self):
        return 0 if self.words is None else len(self.words)

    def train(self, descriptors_list, random_state=0):
        """
        Train the vocabulary with MiniBatchKMeans.

        Args:
            descriptors_list: One (N_i,D) descriptor array per training image.
                Each image is a document for the IDF weights.
        """
        documents = [d for d in descriptors_list if d is not None and len(d)]
        if not documents:
            raise ValueError("No descriptors to train the vocabulary on")
        features = np.vstack([descriptors_to_features(d) for d in documents])
        n_clusters = min(self.k ** self.depth, len(features))
        logger.info("Training vocabulary: %d descriptors, %d words", len(features), n_clusters)
        kmeans = MiniBatchKMeans(n_clusters=n_clusters, batch_size=1000, n_init=3,
                                 random_state=random_state).fit(features)
        self.words = kmeans.cluster_centers_.astype(np.float32)

        word_counts = np.zeros(len(self.words))
        for d in tqdm(documents, desc="Calculating word frequencies", disable=None):
            for w in np.unique(self.get_visual_word(d)):
                word_counts[w] += 1
        num_documents = len(documents)
        self.word_weights = np.log(num_documents / np.maximum(word_counts, 1.0))
        logger.info("Vocabulary trained on %d documents", num_documents)
        return self

    def save(self, path):
        with open(path, "wb") as f:
            pickle.dump({'k': self.k, 'depth': self.depth, 'words': self.words,
                         'word_weights': self.word_weights}, f)
        logger.info("Saved vocabulary (%d words) to %s", self.num_words, path)

    @classmethod
    def load(cls, path):
        """
        Load a vocabulary written by save().

        Raises:
            VocabularyNotFoundError: the file is missing or unreadable.
        """
        if path is None or not os.path.isfile(path):
            raise VocabularyNotFoundError(f"Vocabulary file not found: {path}")
        try:
            with open(path, "rb") as f:
                data = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as e:
            raise VocabularyNotFoundError(f"Cannot read vocabulary {path}: {e}") from e
        vocab = cls(data['k'], data['depth'])
        vocab.words = np.asarray(data['words'], dtype=np.float32)
        vocab.word_weights = np.asarray(data['word_weights'], dtype=float)
        logger.info("Loaded vocabulary (%d words) from %s", vocab.num_words, path)
        return vocab

    def get_visual_word(self, descriptors):
        """Index of the nearest word for each descriptor."""
        if descriptors is None or np.asarray(descriptors).size == 0:
            return np.array([], dtype=int)
        distances = cdist(descriptors_to_features(descriptors), self.words, metric='euclidean')
        return np.argmin(distances, axis=1)

    def transform(self, descriptors):
        """
        Bag-of-words vector of a descriptor set.

        Returns:
            dict word -> TF-IDF weight, L1-normalized.
        """
        words = self.get_visual_word(descriptors)
        if len(words) == 0:
            return {}
        ids, counts = np.unique(words, return_counts=True)
        weights = counts / len(words) * self.word_weights[ids]
        total = np.sum(np.abs(weights))
        if total <= 0:
            return {}
        return {int(w): float(v / total) for w, v in zip(ids, weights) if v > 0}


def load_descriptor_files(paths):
    """Each .npy file is one image; an .npz contributes every desc_* array it holds."""
    descriptors = []
    for path in tqdm(paths, desc="Loading descriptors", disable=None):
        if path.endswith('.npz'):
            with np.load(path) as data:
                descriptors.extend(data[k] for k in data.files if k.startswith('desc'))
        else:
            descriptors.append(np.load(path))
    return descriptors


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train a bag-of-words vocabulary")
    parser.add_argument("inputs", nargs="+", help="Descriptor files (.npy or recording .npz)")
    parser.add_argument("-o", "--output", required=True, help="Vocabulary output path")
    parser.add_argument("-k", type=int, default=10, help="Branching factor")
    parser.add_argument("--depth", type=int, default=3, help="Tree depth")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    descriptors = load_descriptor_files(args.inputs)
    Vocabulary(args.k, args.depth).train(descriptors).save(args.output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
