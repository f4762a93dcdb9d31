"""
Session object coordinating tracking, windowed bundle adjustment and loop
closure.

Three units of work run concurrently in threaded mode:
- tracking runs on the caller's thread inside process_frame();
- the bundle adjustment worker admits every keyframe, in order, to the
  sliding window and refines it;
- the recognition worker extends the pose graph, searches for loops and
  applies global corrections.

Tracking never blocks on the workers. The bundle adjustment queue never
drops a keyframe; the recognition queue is bounded and, when full, its
oldest waiting keyframe is kept for the pose graph but skipped for place
recognition.
"""
import logging
import queue
import threading
from collections import deque

from gcamslam.backend.local_mapping import LocalMapping
from gcamslam.backend.loop_closing import LoopClosing
from gcamslam.backend.pose_graph import PoseGraph
from gcamslam.backend.solver import Solver
from gcamslam.config import SlamConfig
from gcamslam.core.geometry import relative_pose
from gcamslam.core.map import Map
from gcamslam.errors import (Condition, ConditionKind, FatalError, SessionClosedError,
                             VocabularyNotFoundError, WindowDivergedError)
from gcamslam.frontend.feature_matcher import FeatureMatcher
from gcamslam.frontend.tracking import Tracking, TrackingState
from gcamslam.vocabulary.vocab_create import Vocabulary

logger = logging.getLogger(__name__)

_STOP = object()


class RecognitionQueue:
    def __init__(self, capacity):
        """
        Bounded FIFO of keyframes waiting for place recognition.

        Every keyframe put is eventually delivered. When more than
        `capacity` entries wait for recognition, the oldest of them is
        demoted to graph-only.
        """
        self.capacity = capacity
        self._items = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = []

    def __len__(self):
        with self._cond:
            return len(self._items)

    def put(self, keyframe_id):
        """Returns the ID demoted to graph-only, if any."""
        demoted = None
        with self._cond:
            waiting = [item for item in self._items if item[1]]
            if len(waiting) >= self.capacity:
                waiting[0][1] = False
                demoted = waiting[0][0]
                self.dropped.append(demoted)
            self._items.append([keyframe_id, True])
            self._cond.notify()
        return demoted

    def get(self, timeout=None):
        """Next (keyframe ID, recognize) pair, or None once closed and drained."""
        with self._cond:
            while not self._items and not self._closed:
                if not self._cond.wait(timeout):
                    return None
            if not self._items:
                return None
            kf_id, recognize = self._items.popleft()
            return kf_id, recognize

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class SlamSession:
    def __init__(self, rig, config: SlamConfig = None, vocabulary=None):
        """
        Create a session for one camera rig.

        Args:
            rig: CameraRig.
            config: SlamConfig (defaults if None).
            vocabulary: Pre-loaded Vocabulary; loaded from
                `config.loop.vocabulary_path` when omitted.

        Raises:
            VocabularyNotFoundError: loop closure is enabled without a vocabulary.
            ConfigError: the configuration is invalid.
        """
        self.config = config or SlamConfig()
        self.config.validate()
        self.rig = rig

        if self.config.loop.enabled and vocabulary is None:
            if self.config.loop.vocabulary_path is None:
                raise VocabularyNotFoundError("Loop closure enabled but no vocabulary given")
            vocabulary = Vocabulary.load(self.config.loop.vocabulary_path)
        self.vocabulary = vocabulary

        self.map = Map()
        self.solver = Solver(self.config.solver)
        self.local_mapping = LocalMapping(self.map, rig, self.config.window, self.solver)
        self.pose_graph = PoseGraph(self.config.pose_graph, self.solver)
        self.loop_closing = None
        if self.config.loop.enabled:
            self.loop_closing = LoopClosing(self.map, rig, vocabulary, self.config.loop,
                                            self.solver)
        track_cfg = self.config.tracking
        self.tracking = Tracking(self.map, rig, track_cfg, self.solver,
                                 FeatureMatcher(track_cfg.match_ratio,
                                                track_cfg.max_descriptor_distance),
                                 loop_closing=self.loop_closing,
                                 window_size=self.config.window.size,
                                 on_keyframe=self._on_keyframe)

        self._ba_queue = queue.Queue()
        self._recognition_queue = RecognitionQueue(self.config.queues.recognition_capacity)
        self._corrections = queue.Queue()
        self._conditions = deque()
        self._conditions_lock = threading.Lock()
        self._closed = False
        self._last_graph_node = None
        self._frame_count = 0

        self.threaded = self.config.queues.threaded
        self._threads = []
        if self.threaded:
            self._threads = [
                threading.Thread(target=self._bundle_adjustment_loop, name="gcamslam-ba",
                                 daemon=True),
                threading.Thread(target=self._recognition_loop, name="gcamslam-loop",
                                 daemon=True),
            ]
            for t in self._threads:
                t.start()

    # ------------------------------------------------------------------ #
    #  Public API
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> TrackingState:
        return self.tracking.state

    def process_frame(self, frame):
        """
        Track one frame and schedule background work.

        Returns:
            TrackingResult for the frame.

        Raises:
            SessionClosedError: the session is shutting down.
            InitializationTimeoutError: the map never initialized.
        """
        if self._closed:
            raise SessionClosedError("Session is shut down")
        if frame.frame_id < 0:
            frame.frame_id = self._frame_count
        self._frame_count += 1

        self._apply_pending_corrections()
        try:
            result = self.tracking.process_frame(frame)
        except FatalError as e:
            self._record(Condition(ConditionKind.SESSION_FAILED, str(e), error=e))
            raise
        for condition in result.conditions:
            self._record(condition)

        if not self.threaded:
            self.run_pending()
        return result

    def run_pending(self):
        """Synchronously drain both work queues (non-threaded mode)."""
        # A correction from the recognition pass queues a re-anchor for the window
        while not self._ba_queue.empty() or len(self._recognition_queue):
            while True:
                try:
                    item = self._ba_queue.get_nowait()
                except queue.Empty:
                    break
                self._handle_ba_item(item)
            while len(self._recognition_queue):
                item = self._recognition_queue.get(timeout=0)
                if item is None:
                    break
                self._handle_recognition_item(*item)
        self._apply_pending_corrections()

    def poll_conditions(self):
        """Return and clear the conditions raised since the last poll."""
        with self._conditions_lock:
            conditions = list(self._conditions)
            self._conditions.clear()
        return conditions

    def trajectory(self):
        """List of (timestamp, T_w_b) for every keyframe, in keyframe order."""
        snapshot = self.map.snapshot()
        return [(snapshot.keyframes[k].timestamp, snapshot.keyframes[k].pose)
                for k in snapshot.keyframe_ids()]

    def landmarks(self):
        """Mapping landmark ID -> world position."""
        snapshot = self.map.snapshot()
        return {i: mp.position for i, mp in snapshot.map_points.items()}

    def shutdown(self, timeout=None):
        """
        Stop accepting frames, finish all queued work and join the workers.

        Returns:
            True if every worker finished within the timeout.
        """
        if timeout is None:
            timeout = self.config.queues.shutdown_timeout_sec
        if self._closed:
            return not any(t.is_alive() for t in self._threads)
        self._closed = True
        if not self.threaded:
            self.run_pending()
            return True
        self._ba_queue.put(_STOP)
        finished = True
        for t in self._threads:
            t.join(timeout)
            if t.is_alive():
                logger.error("Worker %s did not stop within %.1f s", t.name, timeout)
                finished = False
        self._apply_pending_corrections()
        logger.info("Session shut down: %d keyframes, %d landmarks",
                    len(self.map), len(self.map.map_points))
        return finished

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    # ------------------------------------------------------------------ #
    #  Plumbing
    # ------------------------------------------------------------------ #
    def _record(self, condition):
        logger.info("Condition %s: %s", condition.kind.name, condition.message)
        with self._conditions_lock:
            self._conditions.append(condition)

    def _on_keyframe(self, kf_id):
        self._ba_queue.put(('keyframe', kf_id))
        backlog = self._ba_queue.qsize()
        if backlog > self.config.queues.bundle_adjustment_capacity:
            logger.warning("Bundle adjustment backlog: %d keyframes waiting", backlog)

    def _apply_pending_corrections(self):
        while True:
            try:
                generation, deltas = self._corrections.get_nowait()
            except queue.Empty:
                return
            self.tracking.apply_correction(deltas, generation)

    # ------------------------------------------------------------------ #
    #  Bundle adjustment worker
    # ------------------------------------------------------------------ #
    def _bundle_adjustment_loop(self):
        while True:
            item = self._ba_queue.get()
            if item is _STOP:
                break
            try:
                self._handle_ba_item(item)
            except Exception:
                logger.exception("Bundle adjustment worker failed on %s", item)
                self._record(Condition(ConditionKind.SESSION_FAILED,
                                       f"bundle adjustment worker failed on {item}"))
        self._recognition_queue.close()

    def _handle_ba_item(self, item):
        kind, value = item
        if kind == 'reanchor':
            if self.local_mapping.reanchor(value) and self.local_mapping.window:
                self._solve_window(self.local_mapping.window[-1])
            return
        kf_id = value
        self.local_mapping.admit(kf_id)
        self._solve_window(kf_id)
        demoted = self._recognition_queue.put(kf_id)
        if demoted is not None:
            logger.warning("Recognition queue full: KeyFrame %d kept for the pose graph only",
                           demoted)
            self._record(Condition(ConditionKind.RECOGNITION_DROPPED,
                                   f"KeyFrame {demoted} skipped for place recognition", demoted))

    def _solve_window(self, kf_id):
        try:
            self.local_mapping.optimize()
        except WindowDivergedError as e:
            logger.warning("%s", e)
            self._record(Condition(ConditionKind.WINDOW_DIVERGED, str(e), kf_id, error=e))

    # ------------------------------------------------------------------ #
    #  Recognition / pose graph worker
    # ------------------------------------------------------------------ #
    def _recognition_loop(self):
        while True:
            item = self._recognition_queue.get()
            if item is None:
                break
            try:
                self._handle_recognition_item(*item)
            except Exception:
                logger.exception("Recognition worker failed on KeyFrame %s", item[0])
                self._record(Condition(ConditionKind.SESSION_FAILED,
                                       f"recognition worker failed on KeyFrame {item[0]}",
                                       item[0]))

    def _handle_recognition_item(self, kf_id, recognize):
        kf = self.map.get_keyframe(kf_id)
        if kf is None:
            return
        with self.map.lock:
            pose = kf.pose.copy()
            previous = self.map.get_keyframe(self._last_graph_node) \
                if self._last_graph_node is not None else None
            T_prev_cur = relative_pose(previous.pose, pose) if previous is not None else None
        self.pose_graph.add_node(kf_id, pose)
        if T_prev_cur is not None:
            self.pose_graph.add_odometry_edge(self._last_graph_node, kf_id, T_prev_cur)
        self._last_graph_node = kf_id

        if self.loop_closing is None:
            return
        # Graph-only keyframes are still indexed as future candidates
        self.loop_closing.add_keyframe(kf_id)
        if not recognize:
            return
        constraints = self.loop_closing.detect(kf_id)
        if not constraints:
            return
        for c in constraints:
            self.pose_graph.add_loop_edge(c)
            self._record(Condition(ConditionKind.LOOP_CLOSED,
                                   f"KeyFrame {c.query_id} <-> {c.match_id} "
                                   f"({c.num_inliers} inliers)", c.query_id))
        self._correct()

    def _correct(self):
        with self.map.lock:
            self.pose_graph.update_node_poses(
                {k: self.map.keyframes[k].pose for k in self.pose_graph.nodes
                 if k in self.map.keyframes})
        result = self.pose_graph.optimize()
        if result.error is not None:
            self._record(Condition(ConditionKind.GRAPH_DISCONNECTED, str(result.error),
                                   error=result.error))
        if not result.changed:
            return
        with self.map.lock:
            deltas = self.map.apply_correction(result.poses, skip_ids=result.unreachable)
            generation = self.map.generation
        self._corrections.put((generation, deltas))
        self._ba_queue.put(('reanchor', generation))
