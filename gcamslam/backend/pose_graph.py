"""
Pose graph over keyframes.

Nodes hold the last known keyframe poses; odometry edges hold the relative
pose between consecutive keyframes as measured when they were added, loop
edges hold verified loop constraints. Optimizing distributes the loop error
along the trajectory while the origin node stays fixed.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import numpy as np
from scipy.sparse import csr_matrix, lil_matrix
from scipy.sparse.csgraph import breadth_first_order

from gcamslam.backend.solver import Solver, SolverResult
from gcamslam.config import PoseGraphConfig
from gcamslam.core.geometry import (inv_T, pose_error, pose_to_vector, relative_pose, so3_log,
                                    vector_to_pose)
from gcamslam.errors import PoseGraphDisconnectedError

logger = logging.getLogger(__name__)

ODOMETRY = 'odometry'
LOOP = 'loop'


@dataclass
class PoseGraphEdge:
    i: int
    j: int
    T_i_j: np.ndarray
    kind: str
    weights: np.ndarray


@dataclass
class PoseGraphResult:
    poses: Dict[int, np.ndarray]
    unreachable: Set[int] = field(default_factory=set)
    solver_result: SolverResult = None
    changed: bool = False
    error: Optional[PoseGraphDisconnectedError] = None


class PoseGraph:
    def __init__(self, config: PoseGraphConfig = None, solver=None):
        self.config = config or PoseGraphConfig()
        self.solver = solver or Solver()
        self.nodes: Dict[int, np.ndarray] = {}
        self.edges: List[PoseGraphEdge] = []
        self.origin_id = None

    def __len__(self):
        return len(self.nodes)

    def _weights(self, rotation_sigma, translation_sigma):
        return np.concatenate([np.full(3, 1.0 / rotation_sigma),
                               np.full(3, 1.0 / translation_sigma)])

    def add_node(self, node_id, pose):
        """Adds a keyframe node; the first node added is the fixed origin."""
        self.nodes[node_id] = np.array(pose, dtype=float)
        if self.origin_id is None:
            self.origin_id = node_id

    def update_node_poses(self, poses):
        """Refresh the last known poses (e.g. after window refinement)."""
        for node_id, pose in poses.items():
            if node_id in self.nodes:
                self.nodes[node_id] = np.array(pose, dtype=float)

    def add_odometry_edge(self, i, j, T_i_j=None):
        """Relative-pose edge between consecutive keyframes; measured from node poses if omitted."""
        if T_i_j is None:
            T_i_j = relative_pose(self.nodes[i], self.nodes[j])
        cfg = self.config
        self.edges.append(PoseGraphEdge(i, j, np.array(T_i_j, dtype=float), ODOMETRY,
                                        self._weights(cfg.rotation_sigma, cfg.translation_sigma)))

    def add_loop_edge(self, constraint):
        """Adds a verified LoopConstraint as an edge match -> query."""
        cfg = self.config
        self.edges.append(PoseGraphEdge(constraint.match_id, constraint.query_id,
                                        np.array(constraint.T_match_query, dtype=float), LOOP,
                                        self._weights(cfg.loop_rotation_sigma,
                                                      cfg.loop_translation_sigma)))

    @property
    def loop_edges(self):
        return [e for e in self.edges if e.kind == LOOP]

    def reachable_nodes(self):
        """IDs of the nodes connected to the origin through any edges."""
        if self.origin_id is None:
            return set()
        ids = sorted(self.nodes)
        index = {n: k for k, n in enumerate(ids)}
        rows, cols = [], []
        for e in self.edges:
            if e.i in index and e.j in index:
                rows += [index[e.i], index[e.j]]
                cols += [index[e.j], index[e.i]]
        adjacency = csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(len(ids), len(ids)))
        order = breadth_first_order(adjacency, index[self.origin_id], directed=False,
                                    return_predecessors=False)
        return {ids[k] for k in order}

    def edge_residual(self, edge, T_i, T_j):
        """[rotation, translation] error of inv(T_ij) inv(T_i) T_j, weighted."""
        E = inv_T(edge.T_i_j) @ inv_T(T_i) @ T_j
        return edge.weights * np.concatenate([so3_log(E[:3, :3]), E[:3, 3]])

    def optimize(self) -> PoseGraphResult:
        """
        Optimize every node reachable from the origin.

        Nodes not reachable from the origin are left out, listed in
        `unreachable` and reported through `error`. On a graph whose edges
        already agree with the node poses the solve is skipped. `changed` is
        set only when some pose moves by more than `change_tolerance`, so
        rerunning on a settled graph is a no-op.
        """
        if self.origin_id is None:
            return PoseGraphResult({})
        reachable = self.reachable_nodes()
        unreachable = set(self.nodes) - reachable
        error = None
        if unreachable:
            error = PoseGraphDisconnectedError(unreachable)
            logger.warning("%s (origin %d)", error, self.origin_id)

        free = sorted(n for n in reachable if n != self.origin_id)
        col = {n: 6 * k for k, n in enumerate(free)}
        edges = [e for e in self.edges if e.i in reachable and e.j in reachable]
        poses = {n: self.nodes[n].copy() for n in reachable}
        if not free or not edges:
            return PoseGraphResult(poses, unreachable, error=error)

        x0 = np.concatenate([pose_to_vector(self.nodes[n]) for n in free])

        def node_pose(x, n):
            if n in col:
                return vector_to_pose(x[col[n]:col[n] + 6])
            return self.nodes[n]

        def fun(x):
            return np.concatenate([self.edge_residual(e, node_pose(x, e.i), node_pose(x, e.j))
                                   for e in edges])

        if np.max(np.abs(fun(x0))) < 1e-9:
            return PoseGraphResult(poses, unreachable, error=error)

        sparsity = lil_matrix((6 * len(edges), 6 * len(free)), dtype=int)
        for k, e in enumerate(edges):
            for n in (e.i, e.j):
                if n in col:
                    sparsity[6 * k:6 * k + 6, col[n]:col[n] + 6] = 1

        result = self.solver.solve(fun, x0, jac_sparsity=sparsity, loss='huber',
                                   f_scale=self.config.huber_threshold)
        if result.diverged:
            logger.warning("Pose graph solve diverged; keeping previous poses")
            return PoseGraphResult(poses, unreachable, result, error=error)

        updated = {n: vector_to_pose(result.x[col[n]:col[n] + 6]) for n in free}
        largest = max(max(pose_error(self.nodes[n], updated[n])) for n in free)
        if largest <= self.config.change_tolerance:
            logger.debug("Pose graph settled: largest update %.3g", largest)
            return PoseGraphResult(poses, unreachable, result, error=error)
        for n in free:
            poses[n] = updated[n]
            self.nodes[n] = updated[n].copy()
        logger.info("Pose graph: %d nodes, %d edges (%d loop), cost %.4g -> %.4g",
                    len(reachable), len(edges), len(self.loop_edges),
                    result.initial_cost, result.final_cost)
        return PoseGraphResult(poses, unreachable, result, changed=True, error=error)
