import autograd.numpy as np
import pytest

from orthobnb import MatrixCompletionProblem
from orthobnb.solvers import (
    AltMinResult,
    FeasibilityResult,
    RelaxationResult,
    RelaxationStatus,
)


def zero_warm_start(A, k, indices, gamma, lam, tol=None, max_iters=None):
    """Warm start returning the zero completion."""
    n, m = A.shape
    return AltMinResult(
        U=np.eye(n)[:, :k],
        V=np.zeros((k, m)),
        objective=float("nan"),
        iterations=0,
        solve_time=0.0,
    )


def exact_relaxation(problem, objective):
    """A relaxation solution that is exactly feasible for the original problem."""
    n, m, k = problem.n, problem.m, problem.k
    U = np.eye(n)[:, :k]
    return RelaxationResult(
        status=RelaxationStatus.SOLVED,
        solver_status="optimal",
        objective=objective,
        U=U,
        Y=np.dot(U, U.T),
        X=np.zeros((n, m)),
        Theta=np.eye(m),
    )


class ShrinkingBoundOracle:
    """
    Deterministic oracle whose bound grows as the node's box shrinks.

    The relaxation objective is `target - scale * total_width`, and the
    returned factor is zero, so no node is ever master-feasible unless
    `exact_on_call` names the (1-based) relaxation call that should return
    an exactly feasible solution with objective `exact_objective`.
    """

    def __init__(self, target, scale=1e-3, exact_on_call=None, exact_objective=0.0):
        self.target = target
        self.scale = scale
        self.exact_on_call = exact_on_call
        self.exact_objective = exact_objective
        self.feasibility_calls = 0
        self.relaxation_calls = 0
        self.seen_bounds = []

    def check_feasibility(self, bounds):
        self.feasibility_calls += 1
        return FeasibilityResult(True, RelaxationStatus.SOLVED, "optimal")

    def solve_relaxation(self, bounds, problem):
        self.relaxation_calls += 1
        self.seen_bounds.append(bounds)
        if self.relaxation_calls == self.exact_on_call:
            return exact_relaxation(problem, self.exact_objective)

        n, m, k = problem.n, problem.m, problem.k
        width = float(np.sum(bounds.u_upper - bounds.u_lower))
        return RelaxationResult(
            status=RelaxationStatus.SOLVED,
            solver_status="optimal",
            objective=self.target - self.scale * width,
            U=np.zeros((n, k)),
            Y=np.zeros((n, n)),
            X=0.5 * problem.A,
            Theta=np.zeros((m, m)),
        )


class InfeasibleOracle:
    """Every region is infeasible; the full relaxation must never be reached."""

    def __init__(self):
        self.feasibility_calls = 0

    def check_feasibility(self, bounds):
        self.feasibility_calls += 1
        return FeasibilityResult(False, RelaxationStatus.INFEASIBLE, "infeasible")

    def solve_relaxation(self, bounds, problem):
        raise AssertionError("full relaxation solved for an infeasible region")


@pytest.fixture
def low_rank_matrix():
    """A 4 x 3 matrix of rank 2."""
    left = np.array([[1.0, 0.0], [0.5, 1.0], [0.0, 2.0], [1.0, -1.0]])
    right = np.array([[1.0, 2.0, 0.0], [0.0, 1.0, 1.0]])
    return np.dot(left, right)


@pytest.fixture
def observed_mask():
    return np.array(
        [
            [1.0, 1.0, 0.0],
            [1.0, 0.0, 1.0],
            [0.0, 1.0, 1.0],
            [1.0, 1.0, 1.0],
        ]
    )


@pytest.fixture
def problem(low_rank_matrix, observed_mask):
    return MatrixCompletionProblem(low_rank_matrix, observed_mask, k=2, gamma=10.0, lam=0.0)


@pytest.fixture
def small_problem():
    """A 3 x 2 rank-1 problem, small enough for fast geometry at every node."""
    A = np.outer([1.0, 2.0, -1.0], [1.0, 0.5])
    indices = np.array([[1.0, 1.0], [1.0, 0.0], [0.0, 1.0]])
    return MatrixCompletionProblem(A, indices, k=1, gamma=10.0, lam=0.0)
