import pytest

from gcamslam.config import SlamConfig, load_config
from gcamslam.errors import ConfigError


def test_defaults():
    config = SlamConfig()
    config.validate()
    assert config.window.eviction_policy == 'freeze'
    assert config.loop.enabled


def test_load_yaml(tmp_path):
    path = tmp_path / "slam.yaml"
    path.write_text("window:\n  size: 5\n  eviction_policy: discard\n"
                    "loop:\n  enabled: false\n"
                    "queues:\n  threaded: false\n")
    config = load_config(str(path))
    assert config.window.size == 5
    assert config.window.eviction_policy == 'discard'
    assert not config.loop.enabled
    assert not config.queues.threaded
    # Untouched sections keep their defaults
    assert config.tracking.min_tracking_matches == 15


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)) == SlamConfig()


@pytest.mark.parametrize("data", [
    {'window': {'bogus': 1}},
    {'nonsense': {}},
    {'window': {'size': 1}},
    {'window': {'eviction_policy': 'keep'}},
    {'tracking': {'max_relocalization_attempts': 0}},
    {'queues': {'recognition_capacity': 0}},
    {'window': [1, 2]},
    [1, 2],
])
def test_invalid_configuration(data):
    with pytest.raises(ConfigError):
        SlamConfig.from_dict(data)


def test_missing_and_malformed_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("window: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(str(bad))


def test_round_trip_through_dict():
    config = SlamConfig.from_dict({'solver': {'max_rounds': 3}})
    assert SlamConfig.from_dict(config.to_dict()) == config
