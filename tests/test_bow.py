import numpy as np
import pytest

from gcamslam.errors import VocabularyNotFoundError
from gcamslam.utils.bow_database import BoWDatabase, l1_score
from gcamslam.vocabulary.vocab_create import Vocabulary, main

from conftest import random_descriptors


def _documents(n_docs=5, size=30, seed=0):
    rng = np.random.default_rng(seed)
    return [random_descriptors(size, rng) for _ in range(n_docs)]


@pytest.fixture(scope="module")
def documents():
    return _documents()


@pytest.fixture(scope="module")
def vocabulary(documents):
    # As many words as training descriptors: every word belongs to one document
    return Vocabulary(k=10, depth=3).train(documents)


def test_l1_score():
    assert l1_score({1: 0.5, 2: 0.5}, {1: 0.5, 2: 0.5}) == pytest.approx(1.0)
    assert l1_score({1: 0.5, 2: 0.5}, {1: 1.0}) == pytest.approx(0.5)
    assert l1_score({1: 1.0}, {2: 1.0}) == 0.0


def test_transform_is_normalized(vocabulary, documents):
    bow = vocabulary.transform(documents[0])
    assert bow
    assert sum(bow.values()) == pytest.approx(1.0)
    assert all(v > 0 for v in bow.values())
    assert vocabulary.transform(np.empty((0, 32), dtype=np.uint8)) == {}


def test_database_query(vocabulary, documents):
    db = BoWDatabase()
    for i, doc in enumerate(documents):
        db.add(i, vocabulary.transform(doc))
    assert len(db) == 5

    query = vocabulary.transform(documents[2])
    [(best, score)] = db.query(query, top_k=1)
    assert best == 2
    assert score == pytest.approx(1.0)

    others = db.query(query, top_k=5, accept=lambda kf_id: kf_id != 2)
    assert all(kf_id != 2 for kf_id, _ in others)

    db.remove(2)
    assert 2 not in db
    assert all(kf_id != 2 for kf_id, _ in db.query(query, top_k=5))


def test_save_and_load(tmp_path, vocabulary, documents):
    path = str(tmp_path / "vocab.pkl")
    vocabulary.save(path)
    loaded = Vocabulary.load(path)
    assert loaded.num_words == vocabulary.num_words
    assert loaded.transform(documents[1]) == vocabulary.transform(documents[1])


def test_missing_vocabulary(tmp_path):
    with pytest.raises(VocabularyNotFoundError):
        Vocabulary.load(str(tmp_path / "missing.pkl"))
    bad = tmp_path / "bad.pkl"
    bad.write_bytes(b"\x00not a pickle")
    with pytest.raises(VocabularyNotFoundError):
        Vocabulary.load(str(bad))


def test_train_requires_descriptors():
    with pytest.raises(ValueError):
        Vocabulary().train([np.empty((0, 32), dtype=np.uint8)])


def test_train_cli(tmp_path):
    inputs = []
    for i, doc in enumerate(_documents(3, 20, seed=1)):
        path = tmp_path / f"desc_{i}.npy"
        np.save(path, doc)
        inputs.append(str(path))
    output = tmp_path / "vocab.pkl"
    assert main(inputs + ["-o", str(output), "-k", "4", "--depth", "2"]) == 0
    assert Vocabulary.load(str(output)).num_words == 16
