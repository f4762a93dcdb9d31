import argparse
import logging
import os
import sys

import numpy as np

from gcamslam.calibration.recording import Recording
from gcamslam.calibration.rig_config import build_rig, parse_rig_config
from gcamslam.calibration.self_calibration import SelfCalibration
from gcamslam.config import SlamConfig, load_config
from gcamslam.errors import ConfigError, FatalError
from gcamslam.utils.output import (read_extrinsics, write_extrinsics, write_map_points,
                                   write_trajectory)

logger = logging.getLogger("gcamslam.calibrate")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Self-calibrate the extrinsics of a camera rig")
    parser.add_argument("--config", required=True, help="Rig sensor configuration file")
    parser.add_argument("--recording", required=True, help="Recorded run directory")
    parser.add_argument("--output-dir", default="calibration_output", help="Output directory")
    parser.add_argument("--slam-config", help="YAML SLAM settings")
    parser.add_argument("--vocabulary", help="Vocabulary file for loop closure")
    parser.add_argument("--intermediate", metavar="EXTRINSICS",
                        help="Seed extrinsics from a previously written extrinsics table")
    parser.add_argument("--plot", action="store_true", help="Save a trajectory plot")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def run(args):
    spec = parse_rig_config(args.config)
    recording = Recording(args.recording)
    rig = build_rig(spec, recording.cameras)

    if args.intermediate:
        table = read_extrinsics(args.intermediate)
        missing = [c.name for c in rig.cameras if c.name not in table]
        if missing:
            raise ConfigError(f"Intermediate extrinsics lack cameras {missing}")
        rig = rig.with_extrinsics([table[c.name] for c in rig.cameras])
        logger.info("Seeded extrinsics from %s", args.intermediate)

    config = load_config(args.slam_config) if args.slam_config else SlamConfig()
    if args.vocabulary:
        config.loop.vocabulary_path = args.vocabulary
    if config.loop.enabled and config.loop.vocabulary_path is None:
        logger.info("No vocabulary given; running without loop closure")
        config.loop.enabled = False

    calibration = SelfCalibration(rig, config)
    result = calibration.run(recording.frames(rig.num_cameras))

    os.makedirs(args.output_dir, exist_ok=True)
    write_extrinsics(os.path.join(args.output_dir, "camera_extrinsics.txt"), result.rig)
    write_trajectory(os.path.join(args.output_dir, "poses.txt"), result.trajectory)
    write_map_points(os.path.join(args.output_dir, "map_points.txt"), result.snapshot)
    if args.plot:
        from gcamslam.utils.visualizer import Visualizer
        points = np.array([mp.position for mp in result.snapshot.map_points.values()])
        Visualizer().plot_map(result.trajectory, points, result.loop_edges,
                              path=os.path.join(args.output_dir, "trajectory.png"))
    for camera in result.rig.cameras:
        logger.info("%s\n%s", camera.name, np.array2string(camera.T_b_c, precision=5))
    return result


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        run(args)
    except FatalError as e:
        logger.error("Aborted: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
