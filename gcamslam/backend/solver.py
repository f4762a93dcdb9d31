"""
Iterative nonlinear least-squares wrapper shared by every optimization.

The problem is solved in short rounds of scipy's trust-region solver so a
wall-clock budget can be enforced and a round that increases the total
robust cost can be detected. A solve whose cost keeps increasing is reported
as diverged and its estimate is discarded by the caller.
"""
import logging
import time
from dataclasses import dataclass

import numpy as np
from scipy.optimize import least_squares

from gcamslam.config import SolverConfig
from gcamslam.errors import SolverIterationError

logger = logging.getLogger(__name__)

CONVERGED = 'converged'
MAX_ROUNDS = 'max_rounds'
TIMEOUT = 'timeout'
DIVERGED = 'diverged'
NO_RESIDUALS = 'no_residuals'


def robust_cost(residuals, loss='huber', f_scale=1.0):
    """0.5 * sum(rho(r^2)), with the same loss conventions as least_squares."""
    z = np.square(np.asarray(residuals, dtype=float)) / (f_scale ** 2)
    if loss == 'huber':
        rho = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
    elif loss == 'cauchy':
        rho = np.log1p(z)
    else:
        rho = z
    return 0.5 * float(np.sum(rho)) * f_scale ** 2


@dataclass
class SolverResult:
    x: np.ndarray
    initial_cost: float
    final_cost: float
    iterations: int
    rounds: int
    bad_rounds: int
    status: str
    elapsed: float

    @property
    def success(self):
        return self.status in (CONVERGED, MAX_ROUNDS, TIMEOUT, NO_RESIDUALS)

    @property
    def diverged(self):
        return self.status == DIVERGED


class Solver:
    def __init__(self, config: SolverConfig = None):
        self.config = config or SolverConfig()

    def solve(self, fun, x0, jac_sparsity=None, loss='huber', f_scale=1.0) -> SolverResult:
        """
        Minimize the robust cost of `fun` starting from x0.

        Args:
            fun: Callable returning the residual vector for a parameter vector.
            x0: Initial parameters.
            jac_sparsity: Optional (m, n) sparsity structure of the Jacobian.
            loss: Robust loss name understood by scipy.
            f_scale: Inlier scale of the robust loss.

        Returns:
            SolverResult; `x` holds the last accepted estimate.
        """
        cfg = self.config
        start = time.monotonic()
        x = np.asarray(x0, dtype=float).copy()
        r0 = np.asarray(fun(x), dtype=float)
        if r0.size == 0 or x.size == 0:
            return SolverResult(x, 0.0, 0.0, 0, 0, 0, NO_RESIDUALS, 0.0)

        cost = robust_cost(r0, loss, f_scale)
        initial_cost = cost
        iterations = 0
        rounds = 0
        bad_rounds = 0
        status = MAX_ROUNDS

        while rounds < cfg.max_rounds:
            if time.monotonic() - start > cfg.max_time_sec:
                status = TIMEOUT
                break
            rounds += 1
            try:
                res = self.solve_round(fun, x, jac_sparsity, loss, f_scale)
            except SolverIterationError as e:
                logger.warning("Solver round %d failed: %s", rounds, e)
                bad_rounds += 1
                if bad_rounds >= cfg.max_bad_rounds:
                    status = DIVERGED
                    break
                continue

            iterations += res.nfev
            new_cost = robust_cost(res.fun, loss, f_scale)
            if not np.isfinite(new_cost) or new_cost > cost * (1.0 + cfg.divergence_tolerance) + 1e-12:
                bad_rounds += 1
                logger.debug("Solver round %d increased cost %.6g -> %.6g", rounds, cost, new_cost)
                if bad_rounds >= cfg.max_bad_rounds:
                    status = DIVERGED
                    break
                continue

            bad_rounds = 0
            x = res.x
            cost = new_cost
            if res.status > 0:
                status = CONVERGED
                break

        elapsed = time.monotonic() - start
        logger.debug("Solve %s after %d rounds, %d evaluations: cost %.6g -> %.6g",
                     status, rounds, iterations, initial_cost, cost)
        return SolverResult(x, initial_cost, cost, iterations, rounds, bad_rounds, status, elapsed)

    def solve_round(self, fun, x, jac_sparsity=None, loss='huber', f_scale=1.0):
        """
        One bounded trust-region run from x.

        Raises:
            SolverIterationError: scipy rejected the problem (non-finite
                residuals, singular system).
        """
        cfg = self.config
        try:
            return least_squares(fun, x, jac_sparsity=jac_sparsity, loss=loss,
                                 f_scale=f_scale, method='trf', x_scale='jac',
                                 max_nfev=cfg.max_iterations,
                                 ftol=cfg.function_tolerance,
                                 xtol=cfg.function_tolerance)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise SolverIterationError(str(e)) from e
