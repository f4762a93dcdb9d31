"""
Error taxonomy and named session conditions.

Errors fall into four families:
- Recoverable: logged and skipped, state stays intact.
- Degraded: tracking loss, handled by relocalization.
- Structural: surfaced to the caller as a Condition, the session continues.
- Fatal: the session aborts before producing output.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
import time


class SlamError(Exception):
    """Base class for every error raised by gcamslam."""


class RecoverableError(SlamError):
    """A local failure that is counted and skipped."""


class TriangulationError(RecoverableError):
    """Insufficient parallax, negative depth or excessive reprojection error."""


class SolverIterationError(RecoverableError):
    """A single solver round failed or stalled."""


class DegradedError(SlamError):
    """The session keeps running in a reduced mode."""


class TrackingLostError(DegradedError):
    """Too few matches to track the current frame."""

    def __init__(self, num_matches, min_matches):
        super().__init__(f"Tracking lost: {num_matches} matches (need {min_matches})")
        self.num_matches = num_matches
        self.min_matches = min_matches


class StructuralError(SlamError):
    """A unit of work is paused but the session continues."""


class WindowDivergedError(StructuralError):
    """The window solve kept increasing the total residual."""

    def __init__(self, initial_cost, final_cost, bad_rounds):
        super().__init__(
            f"Window diverged after {bad_rounds} bad rounds "
            f"(cost {initial_cost:.4g} -> {final_cost:.4g})")
        self.initial_cost = initial_cost
        self.final_cost = final_cost
        self.bad_rounds = bad_rounds


class PoseGraphDisconnectedError(StructuralError):
    """Some pose-graph nodes cannot be reached from the origin node."""

    def __init__(self, node_ids):
        node_ids = sorted(node_ids)
        super().__init__(f"Pose graph nodes unreachable from origin: {node_ids}")
        self.node_ids = node_ids


class InvalidTransitionError(SlamError):
    """An event that has no transition from the current tracking state."""


class FatalError(SlamError):
    """The session cannot continue."""


class InitializationTimeoutError(FatalError):
    """The rig never initialized within the configured number of frames."""


class ConfigError(FatalError):
    """Malformed or missing configuration."""


class DuplicateImuError(ConfigError):
    """A calibration config declares the IMU more than once."""


class VocabularyNotFoundError(FatalError):
    """Loop closure is enabled but no vocabulary could be loaded."""


class SessionClosedError(FatalError):
    """Work was submitted to a session that is shutting down."""


class ConditionKind(Enum):
    WINDOW_DIVERGED = 'window_diverged'
    GRAPH_DISCONNECTED = 'graph_disconnected'
    TRACKING_LOST = 'tracking_lost'
    RELOCALIZED = 'relocalized'
    LOOP_CLOSED = 'loop_closed'
    RECOGNITION_DROPPED = 'recognition_dropped'
    SESSION_FAILED = 'session_failed'


@dataclass(frozen=True)
class Condition:
    """A named event surfaced to the caller of a session."""

    kind: ConditionKind
    message: str
    keyframe_id: Optional[int] = None
    stamp: float = field(default_factory=time.monotonic)
    error: Optional[SlamError] = None
