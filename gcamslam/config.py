"""
Configuration for a SLAM session.

Settings are grouped in one dataclass per component and can be loaded from a
YAML file whose top-level keys match the section names:

    tracking:
      min_tracking_matches: 15
    window:
      size: 8
      eviction_policy: freeze
    loop:
      enabled: true
      vocabulary_path: orb_vocab.pkl
"""
from dataclasses import dataclass, field, fields, asdict
from typing import Optional

import yaml

from gcamslam.errors import ConfigError

EVICTION_POLICIES = ('freeze', 'discard')


@dataclass
class SolverConfig:
    max_iterations: int = 20          # function evaluations per round
    max_rounds: int = 5               # rounds per solve
    max_time_sec: float = 2.0         # wall-clock budget per solve
    max_bad_rounds: int = 2           # consecutive rounds with increased cost before giving up
    divergence_tolerance: float = 1e-3  # relative cost increase tolerated per round
    function_tolerance: float = 1e-8


@dataclass
class TrackingConfig:
    init_max_frames: int = 30         # UNINITIALIZED -> FAILED after this many frames
    min_init_landmarks: int = 30
    min_init_parallax_deg: float = 1.0
    min_tracking_matches: int = 15
    search_radius_px: float = 20.0
    max_descriptor_distance: float = 80.0
    match_ratio: float = 0.9
    inlier_threshold_px: float = 4.0
    max_relocalization_attempts: int = 10
    # Keyframe promotion triggers
    keyframe_overlap_ratio: float = 0.75
    keyframe_min_matches: int = 40
    keyframe_max_interval_sec: float = 1.0
    keyframe_translation: float = 0.5
    keyframe_rotation_deg: float = 15.0


@dataclass
class WindowConfig:
    size: int = 8
    eviction_policy: str = 'freeze'
    huber_threshold_px: float = 2.0
    outlier_threshold_px: float = 5.99 ** 0.5 * 2.0
    min_parallax_deg: float = 1.0
    max_reprojection_error_px: float = 4.0
    min_depth: float = 0.05
    max_depth: float = 200.0
    match_ratio: float = 0.8
    max_descriptor_distance: float = 80.0
    pixel_sigma: float = 1.0
    imu_rotation_sigma: float = 0.01
    imu_position_sigma: float = 0.05


@dataclass
class LoopConfig:
    enabled: bool = True
    vocabulary_path: Optional[str] = None
    exclusion_window: int = 20        # most recent keyframes never considered as candidates
    min_similarity: float = 0.05
    max_candidates: int = 3
    min_inliers: int = 25
    match_ratio: float = 0.8
    max_descriptor_distance: float = 80.0
    pnp_threshold_px: float = 4.0
    pnp_iterations: int = 200


@dataclass
class PoseGraphConfig:
    rotation_sigma: float = 0.01
    translation_sigma: float = 0.05
    loop_rotation_sigma: float = 0.02
    loop_translation_sigma: float = 0.1
    huber_threshold: float = 3.0
    change_tolerance: float = 1e-6     # smallest pose update (rad or m) reported as a correction


@dataclass
class QueueConfig:
    threaded: bool = True
    bundle_adjustment_capacity: int = 64
    recognition_capacity: int = 32
    shutdown_timeout_sec: float = 30.0


@dataclass
class SlamConfig:
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    window: WindowConfig = field(default_factory=WindowConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    pose_graph: PoseGraphConfig = field(default_factory=PoseGraphConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)

    @classmethod
    def from_dict(cls, data):
        """
        Build a configuration from a nested mapping.

        Args:
            data: Mapping of section name -> mapping of option -> value.

        Returns:
            SlamConfig with defaults for every option not present.

        Raises:
            ConfigError: On unknown sections, unknown options or bad values.
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration must be a mapping, got {type(data).__name__}")

        sections = {}
        for f in fields(cls):
            section_type = f.default_factory
            values = data.get(f.name, {}) or {}
            if not isinstance(values, dict):
                raise ConfigError(f"Section '{f.name}' must be a mapping")
            known = {sf.name for sf in fields(section_type)}
            unknown = set(values) - known
            if unknown:
                raise ConfigError(f"Unknown option(s) in '{f.name}': {sorted(unknown)}")
            sections[f.name] = section_type(**values)

        unknown_sections = set(data) - set(sections)
        if unknown_sections:
            raise ConfigError(f"Unknown configuration section(s): {sorted(unknown_sections)}")

        config = cls(**sections)
        config.validate()
        return config

    def validate(self):
        if self.window.size < 2:
            raise ConfigError("window.size must be at least 2")
        if self.window.eviction_policy not in EVICTION_POLICIES:
            raise ConfigError(
                f"window.eviction_policy must be one of {EVICTION_POLICIES}, "
                f"got '{self.window.eviction_policy}'")
        if self.tracking.init_max_frames < 1:
            raise ConfigError("tracking.init_max_frames must be positive")
        if self.tracking.max_relocalization_attempts < 1:
            raise ConfigError("tracking.max_relocalization_attempts must be positive")
        if self.queues.recognition_capacity < 1 or self.queues.bundle_adjustment_capacity < 1:
            raise ConfigError("queue capacities must be positive")

    def to_dict(self):
        return asdict(self)


def load_config(config_path):
    """
    Load a YAML configuration file.

    Args:
        config_path: Path to the YAML file.

    Returns:
        SlamConfig instance.

    Raises:
        ConfigError: If the file is missing or malformed.
    """
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {config_path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed configuration file {config_path}: {exc}") from exc
    return SlamConfig.from_dict(data)
