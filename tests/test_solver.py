import numpy as np
import pytest

from gcamslam.backend.solver import (CONVERGED, DIVERGED, NO_RESIDUALS, TIMEOUT, Solver,
                                     robust_cost)
from gcamslam.config import SolverConfig
from gcamslam.errors import SolverIterationError


def test_robust_cost_huber():
    assert robust_cost([0.5, -0.5]) == 0.25
    # Linear growth past the inlier scale
    assert robust_cost([3.0]) == 0.5 * (2 * 3.0 - 1.0)
    assert robust_cost([3.0], loss='linear') == 4.5


def test_solve_converges():
    target = np.array([1.0, -2.0, 3.0])
    result = Solver().solve(lambda x: x - target, np.zeros(3))
    assert result.status == CONVERGED
    assert result.success
    assert np.allclose(result.x, target, atol=1e-6)
    assert result.final_cost < result.initial_cost


def test_solve_rejects_increasing_cost():
    calls = [0]

    def growing(x):
        calls[0] += 1
        return np.full(3, float(calls[0])) + 0.0 * x

    x0 = np.zeros(3)
    result = Solver(SolverConfig(max_bad_rounds=2)).solve(growing, x0)
    assert result.status == DIVERGED
    assert result.diverged
    assert not result.success
    assert result.bad_rounds == 2
    # Nothing accepted
    assert np.array_equal(result.x, x0)


def test_solve_without_residuals():
    result = Solver().solve(lambda x: np.empty(0), np.zeros(6))
    assert result.status == NO_RESIDUALS
    assert result.success
    assert result.rounds == 0


def test_solve_time_budget():
    result = Solver(SolverConfig(max_time_sec=-1.0)).solve(lambda x: x - 1.0, np.zeros(2))
    assert result.status == TIMEOUT
    assert result.rounds == 0
    assert np.array_equal(result.x, np.zeros(2))


def test_round_rejects_non_finite_residuals():
    with pytest.raises(SolverIterationError):
        Solver().solve_round(lambda x: np.full(2, np.nan) + x, np.zeros(2))


def test_failing_rounds_count_as_bad():
    calls = [0]

    def finite_once(x):
        calls[0] += 1
        return x - 1.0 if calls[0] == 1 else np.full(2, np.nan)

    result = Solver(SolverConfig(max_bad_rounds=3)).solve(finite_once, np.zeros(2))
    assert result.status == DIVERGED
    assert result.bad_rounds == 3
    assert np.array_equal(result.x, np.zeros(2))
