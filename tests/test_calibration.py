import os

import numpy as np
import pytest
import yaml

from gcamslam.calibration.cli import main
from gcamslam.calibration.recording import Recording, load_camera_descriptions, save_frame
from gcamslam.calibration.self_calibration import SelfCalibration
from gcamslam.config import SlamConfig
from gcamslam.core.geometry import pose_error
from gcamslam.core.map import Map
from gcamslam.errors import ConfigError, FatalError
from gcamslam.utils.output import read_extrinsics, read_trajectory

from conftest import add_mapped_keyframe, make_rig, make_scene, pose_at, render_frame


def _config():
    return SlamConfig.from_dict({'tracking': {'keyframe_translation': 0.12},
                                 'loop': {'enabled': False},
                                 'queues': {'threaded': False}})


@pytest.fixture
def recording(tmp_path):
    """Synthetic stereo run along +x, plus its rig description."""
    rig = make_rig()
    points, descriptors = make_scene(150, seed=3)
    directory = tmp_path / "run"
    directory.mkdir()
    cameras = {'cameras': [
        {'name': 'left', 'fx': 400.0, 'fy': 400.0, 'cx': 320.0, 'cy': 240.0,
         'width': 640, 'height': 480, 'T_b_c': np.eye(4).tolist()},
        {'name': 'right', 'fx': 400.0, 'fy': 400.0, 'cx': 320.0, 'cy': 240.0,
         'width': 640, 'height': 480, 'T_b_c': rig.T_b_c(1).tolist()},
    ]}
    (directory / "cameras.yaml").write_text(yaml.safe_dump(cameras))
    for i in range(8):
        frame, _ = render_frame(rig, pose_at(tx=0.05 * i), points, descriptors, timestamp=0.1 * i)
        save_frame(str(directory / f"frame_{i:06d}.npz"), frame)

    rig_file = tmp_path / "rig.txt"
    rig_file.write_text("stereo left right\nimu imu0\n")
    slam_file = tmp_path / "slam.yaml"
    slam_file.write_text(yaml.safe_dump(_config().to_dict()))
    return directory, rig_file, slam_file


def test_refine_recovers_rotated_camera():
    rig = make_rig()
    points, descriptors = make_scene(150, seed=3)
    m = Map()
    landmarks = {}
    for i in range(4):
        add_mapped_keyframe(m, rig, pose_at(tx=0.2 * i), points, descriptors, timestamp=i,
                            landmarks=landmarks)

    T_b_c1 = rig.T_b_c(1).copy()
    seeded = rig.with_extrinsics([rig.T_b_c(0), T_b_c1 @ pose_at(yaw=0.01)])
    before, _ = pose_error(seeded.T_b_c(1), T_b_c1)

    refined, result = SelfCalibration(seeded, _config()).refine(m)
    after, _ = pose_error(refined.T_b_c(1), T_b_c1)
    assert result.success
    assert before == pytest.approx(0.01)
    assert after < 1e-4
    # Reference camera defines the rig frame
    assert np.allclose(refined.T_b_c(0), np.eye(4))


def test_refine_needs_two_keyframes(rig):
    with pytest.raises(FatalError):
        SelfCalibration(rig, _config()).refine(Map())


def test_recording_round_trip(recording):
    directory, _, _ = recording
    rec = Recording(str(directory))
    assert len(rec) == 8
    frames = list(rec.frames(2))
    assert [f.frame_id for f in frames] == list(range(8))
    assert frames[3].timestamp == pytest.approx(0.3)
    assert frames[0].observations[0].descriptors.dtype == np.uint8


def test_bad_recordings(tmp_path):
    with pytest.raises(ConfigError):
        Recording(str(tmp_path / "missing"))
    path = tmp_path / "cameras.yaml"
    path.write_text(yaml.safe_dump({'cameras': [{'name': 'left', 'fx': 400.0}]}))
    with pytest.raises(ConfigError):
        load_camera_descriptions(str(path))
    path.write_text(yaml.safe_dump({'cameras': []}))
    with pytest.raises(ConfigError):
        load_camera_descriptions(str(path))


def test_cli_writes_outputs(tmp_path, recording):
    directory, rig_file, slam_file = recording
    out = tmp_path / "out"
    code = main(["--config", str(rig_file), "--recording", str(directory),
                 "--output-dir", str(out), "--slam-config", str(slam_file), "--plot"])
    assert code == 0
    for name in ("camera_extrinsics.txt", "poses.txt", "map_points.txt", "trajectory.png"):
        assert os.path.exists(out / name)

    extrinsics = read_extrinsics(str(out / "camera_extrinsics.txt"))
    assert list(extrinsics) == ["left", "right"]
    rot, trans = pose_error(extrinsics["right"], make_rig().T_b_c(1))
    assert rot < 1e-3
    assert trans < 1e-2
    trajectory = read_trajectory(str(out / "poses.txt"))
    assert trajectory[0][0] == 0.0


def test_cli_intermediate_extrinsics(tmp_path, recording):
    directory, rig_file, slam_file = recording
    table = tmp_path / "seed.txt"
    table.write_text("# name qw qx qy qz tx ty tz\n"
                     "left 1 0 0 0 0 0 0\n"
                     "right 1 0 0 0 0.2 0 0\n")
    out = tmp_path / "out"
    args = ["--config", str(rig_file), "--recording", str(directory), "--output-dir", str(out),
            "--slam-config", str(slam_file), "--intermediate", str(table)]
    assert main(args) == 0

    table.write_text("# name qw qx qy qz tx ty tz\nleft 1 0 0 0 0 0 0\n")
    assert main(args) == 1


def test_cli_rejects_bad_rig_config(tmp_path, recording):
    directory, _, slam_file = recording
    bad = tmp_path / "bad_rig.txt"
    bad.write_text("stereo left right\nimu a\nimu b\n")
    assert main(["--config", str(bad), "--recording", str(directory),
                 "--slam-config", str(slam_file), "--output-dir", str(tmp_path / "o")]) == 1
