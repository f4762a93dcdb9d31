import numpy as np
import pytest

from gcamslam.calibration.rig_config import build_rig, parse_rig_config, parse_rig_lines
from gcamslam.errors import ConfigError, DuplicateImuError

from conftest import make_camera, pose_at


def test_parse_full_rig():
    spec = parse_rig_lines(["STEREO /cam0 /cam1\n", "\n", "mono   /cam2\n", "Imu /imu0\n"])
    assert spec.camera_groups == [["/cam0", "/cam1"], ["/cam2"]]
    assert spec.camera_topics == ["/cam0", "/cam1", "/cam2"]
    assert spec.imu_topic == "/imu0"


@pytest.mark.parametrize("lines,error", [
    (["stereo /cam0", "imu /imu"], ConfigError),
    (["stereo /a /b", "mono", "imu /imu"], ConfigError),
    (["stereo /a /b", "lidar /velodyne", "imu /imu"], ConfigError),
    (["stereo /a /b", "imu /imu", "imu /imu1"], DuplicateImuError),
    (["mono /a", "imu /imu"], ConfigError),
    (["stereo /a /b"], ConfigError),
    (["stereo /a /b", "imu"], ConfigError),
])
def test_invalid_rig(lines, error):
    with pytest.raises(error):
        parse_rig_lines(lines)


def test_duplicate_imu_is_a_config_error():
    assert issubclass(DuplicateImuError, ConfigError)


def test_parse_rig_config_file(tmp_path):
    path = tmp_path / "rig.txt"
    path.write_text("stereo left right\nimu imu0\n")
    assert parse_rig_config(str(path)).imu_topic == "imu0"
    with pytest.raises(ConfigError):
        parse_rig_config(str(tmp_path / "missing.txt"))


def test_build_rig_seeds_extrinsics():
    spec = parse_rig_lines(["stereo left right", "mono side", "imu imu0"])
    seed_left = pose_at(tx=1.0)
    seed_right = pose_at(tx=1.2)
    seed_side = pose_at(yaw=np.pi / 2)
    rig = build_rig(spec, {"left": (make_camera(), seed_left),
                           "right": (make_camera(), seed_right),
                           "side": (make_camera(), seed_side)})
    assert rig.num_cameras == 3
    assert rig.stereo_pairs == [(0, 1)]
    assert rig.has_imu
    assert np.allclose(rig.T_b_c(0), np.eye(4))
    # Right camera relative to the left one
    assert np.allclose(rig.T_b_c(1), pose_at(tx=0.2))
    assert np.allclose(rig.T_b_c(2), seed_side)
    assert rig.cameras[0].camera_type == 'stereo'
    assert rig.cameras[2].camera_type == 'mono'


def test_build_rig_without_seeds():
    spec = parse_rig_lines(["stereo left right", "mono side", "imu imu0"])
    rig = build_rig(spec, {t: (make_camera(), None) for t in ("left", "right", "side")})
    for cam in range(3):
        assert np.allclose(rig.T_b_c(cam), np.eye(4))


def test_build_rig_missing_camera():
    spec = parse_rig_lines(["stereo left right", "imu imu0"])
    with pytest.raises(ConfigError):
        build_rig(spec, {"left": (make_camera(), None)})
