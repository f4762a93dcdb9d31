import numpy as np
import pytest

from gcamslam.core.camera import Camera, CameraRig, PinholeCamera
from gcamslam.core.frame import CameraObservations, Frame
from gcamslam.core.geometry import Rt_to_T, so3_exp

BASELINE = 0.2


# --------------------------------------------------------------------------- #
#  Synthetic rig / scene helpers
# --------------------------------------------------------------------------- #
def make_camera():
    """640x480 pinhole camera."""
    return PinholeCamera(400.0, 400.0, 320.0, 240.0, width=640, height=480)


def make_rig(stereo=True, has_imu=False, baseline=BASELINE):
    """Rig frame = first camera frame (looking down +Z); second camera offset along +X."""
    cameras = [Camera("cam0", make_camera())]
    pairs = []
    if stereo:
        T_b_c1 = np.eye(4)
        T_b_c1[0, 3] = baseline
        cameras.append(Camera("cam1", make_camera(), T_b_c1))
        pairs.append((0, 1))
    return CameraRig(cameras, pairs, has_imu=has_imu)


def pose_at(tx=0.0, ty=0.0, tz=0.0, yaw=0.0):
    """Rig pose translated by (tx, ty, tz) and rotated about the camera y axis."""
    return Rt_to_T(so3_exp([0.0, yaw, 0.0]), [tx, ty, tz])


def random_descriptors(n, rng):
    """Random 256-bit binary descriptors."""
    return rng.integers(0, 256, size=(n, 32), dtype=np.uint8)


def make_scene(n_points=80, seed=0):
    """Points in front of the rig plus one unique descriptor per point."""
    rng = np.random.default_rng(seed)
    points = np.stack([rng.uniform(-3.0, 3.0, n_points),
                       rng.uniform(-2.0, 2.0, n_points),
                       rng.uniform(3.0, 8.0, n_points)], axis=1)
    return points, random_descriptors(n_points, rng)


def render_frame(rig, pose, points, descriptors, timestamp=0.0, noise_px=0.0, rng=None,
                 frame_id=-1):
    """
    Project the scene into every camera of the rig.

    Returns:
        (Frame, visible) where visible[cam] lists the scene index of each keypoint.
    """
    rng = rng or np.random.default_rng(0)
    observations, visible = [], []
    for cam in range(rig.num_cameras):
        pixels, depth = rig.project(pose, cam, points)
        mask = (depth > 0) & rig.cameras[cam].model.in_image(pixels)
        idx = np.where(mask)[0]
        kps = pixels[idx] + rng.normal(0.0, noise_px, (len(idx), 2)) if noise_px else pixels[idx]
        observations.append(CameraObservations(kps, descriptors[idx]))
        visible.append(idx)
    return Frame(timestamp, observations, frame_id=frame_id), visible


def empty_frame(rig, timestamp):
    return Frame(timestamp, [CameraObservations.empty() for _ in range(rig.num_cameras)])


@pytest.fixture
def rig():
    return make_rig()


@pytest.fixture
def scene():
    return make_scene()


def add_mapped_keyframe(m, rig, pose, points, descriptors, timestamp=0.0, landmarks=None):
    """
    Insert a keyframe that observes the scene, with one landmark per visible point.

    Args:
        landmarks: Scene index -> landmark ID, shared across calls and extended.

    Returns:
        (KeyFrame, landmarks)
    """
    from gcamslam.core.keyframe import KeyFrame
    from gcamslam.core.map_point import MapPoint

    landmarks = {} if landmarks is None else landmarks
    frame, visible = render_frame(rig, pose, points, descriptors, timestamp)
    kf = KeyFrame(m.new_keyframe_id(), timestamp, pose, frame.observations)
    m.add_keyframe(kf)
    for cam in range(rig.num_cameras):
        for kp, idx in enumerate(visible[cam]):
            idx = int(idx)
            if idx not in landmarks:
                landmarks[idx] = m.add_map_point(
                    MapPoint(points[idx], descriptors[idx], reference_keyframe_id=kf.id))
            m.add_observation(kf.id, landmarks[idx], cam, kp)
    return kf, landmarks


def train_vocabulary(descriptors, seed=0):
    """Vocabulary with one word per training descriptor, plus distractor documents."""
    from gcamslam.vocabulary.vocab_create import Vocabulary

    rng = np.random.default_rng(seed + 100)
    documents = [descriptors] + [random_descriptors(len(descriptors), rng) for _ in range(3)]
    return Vocabulary(k=10, depth=3).train(documents)
