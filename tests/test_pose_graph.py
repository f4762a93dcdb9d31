import numpy as np
import pytest

from gcamslam.backend.loop_closing import LoopConstraint
from gcamslam.backend.pose_graph import PoseGraph
from gcamslam.errors import PoseGraphDisconnectedError

from conftest import pose_at


def _chain(step, n=6):
    graph = PoseGraph()
    for i in range(n):
        graph.add_node(i, pose_at(tx=step * i))
    for i in range(n - 1):
        graph.add_odometry_edge(i, i + 1)
    return graph


def test_consistent_graph_is_unchanged():
    graph = _chain(1.0)
    result = graph.optimize()
    assert not result.changed
    assert result.unreachable == set()
    assert result.error is None
    for i in range(6):
        assert np.array_equal(result.poses[i], pose_at(tx=1.0 * i))


def test_loop_edge_distributes_drift():
    graph = _chain(1.1)
    graph.add_loop_edge(LoopConstraint(query_id=5, match_id=0, T_match_query=pose_at(tx=5.0),
                                       num_inliers=40, score=0.3))
    assert len(graph.loop_edges) == 1

    result = graph.optimize()
    assert result.changed
    assert result.solver_result.success
    # Origin is fixed
    assert np.allclose(result.poses[0], pose_at())
    x = [result.poses[i][0, 3] for i in range(6)]
    # Odometry weighted 20 (x5 edges) against loop weighted 10
    assert x[5] == pytest.approx(5.0 * 4700.0 / 4500.0, abs=1e-2)
    steps = np.diff(x)
    assert np.allclose(steps, steps.mean(), atol=1e-3)
    assert np.allclose(graph.nodes[5], result.poses[5])

    # Graph nodes hold the corrected poses, so a second run is a no-op
    rerun = graph.optimize()
    assert not rerun.changed
    for i in range(6):
        assert np.array_equal(rerun.poses[i], result.poses[i])
        assert np.array_equal(graph.nodes[i], result.poses[i])


def test_unreachable_nodes_left_out():
    graph = _chain(1.0, n=3)
    graph.add_node(7, pose_at(tx=10.0))
    assert graph.reachable_nodes() == {0, 1, 2}

    result = graph.optimize()
    assert result.unreachable == {7}
    assert 7 not in result.poses
    assert np.array_equal(graph.nodes[7], pose_at(tx=10.0))
    assert isinstance(result.error, PoseGraphDisconnectedError)
    assert result.error.node_ids == [7]


def test_empty_graph():
    result = PoseGraph().optimize()
    assert result.poses == {}
    assert not result.changed


def test_update_node_poses_ignores_unknown_nodes():
    graph = _chain(1.0, n=2)
    graph.update_node_poses({1: pose_at(tx=2.0), 9: pose_at()})
    assert np.allclose(graph.nodes[1], pose_at(tx=2.0))
    assert 9 not in graph.nodes
