"""
Convex Relaxation Oracle (cvxpy)

Builds and solves, for a node's bounds on the orthonormal factor U, the two
conic models consumed by the branch-and-bound driver:

- a feasibility model: interval bounds, optional per-column polyhedra,
  McCormick envelopes of the bilinear terms U[i, j1] * U[i, j2], the
  orthogonality constraints written on the summed envelopes and unit-ball
  column norms, with a zero objective
- a full relaxation adding the lifted variables Y ~ U U^T, X and
  Theta ~ X^T X, coupled either by semidefinite constraints (SDP) or by
  second-order cone constraints on 2x2 minors (SOCP)
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional

import autograd.numpy as np
import cvxpy as cp

from ..constants import Relaxation
from .base import (
    FeasibilityResult,
    NodeBounds,
    RelaxationResult,
    RelaxationStatus,
    UnexpectedStatusError,
    classify_status,
)

if TYPE_CHECKING:
    from ..problem import MatrixCompletionProblem
    from .bnb.geometry import Polyhedron

logger = logging.getLogger(__name__)

SOLVED_STATUSES = (cp.OPTIMAL, cp.OPTIMAL_INACCURATE)
INFEASIBLE_STATUSES = (
    cp.INFEASIBLE,
    cp.INFEASIBLE_INACCURATE,
    cp.UNBOUNDED,
    cp.UNBOUNDED_INACCURATE,
)


def _row(expr):
    """View a 1-D expression of length p as a 1 x p row."""
    return cp.reshape(expr, (1, expr.size), order="F")


def _selector(indices, size: int) -> np.ndarray:
    """Constant matrix S with (S @ v)[r] == v[indices[r]]."""
    return np.eye(size)[np.asarray(indices, dtype=int)]


def _entries(M, rows: np.ndarray, cols: np.ndarray):
    """Entries M[rows[r], cols[r]] of a matrix expression, as a vector."""
    n_rows, n_cols = M.shape
    return cp.sum(cp.multiply(_selector(rows, n_rows) @ M, _selector(cols, n_cols)), axis=1)


def _minor_cones(diag_a, diag_b, off_diag) -> cp.SOC:
    """|| (a - b, 2 c) || <= a + b, i.e. c^2 <= a b with a, b >= 0, one cone per entry."""
    return cp.SOC(diag_a + diag_b, cp.vstack([_row(diag_a - diag_b), _row(2 * off_diag)]), axis=0)


def polyhedron_constraints(polyhedron: "Polyhedron", x) -> List[cp.Constraint]:
    """Constraints restricting the vector expression x to a polyhedron."""
    if polyhedron.A is None:
        return []
    return [polyhedron.A @ x <= polyhedron.b]


class CvxpyRelaxationOracle:
    """
    Relaxation oracle backed by cvxpy.

    Args:
        relaxation: "SDP" or "SOCP"
        solver: cvxpy solver name; None lets cvxpy choose
        solver_options: Extra keyword arguments for `cvxpy.Problem.solve`
        log_level: Solver console output is enabled only at DEBUG or below
        orthogonality_tolerance: Slack on the summed-envelope orthogonality
            constraints
    """

    def __init__(
        self,
        relaxation: Relaxation | str = Relaxation.SDP,
        solver: Optional[str] = None,
        solver_options: Optional[Dict[str, object]] = None,
        log_level: int = logging.WARNING,
        orthogonality_tolerance: float = 0.0,
    ):
        self.relaxation = Relaxation(relaxation)
        self.solver = solver
        self.solver_options = dict(solver_options or {})
        self.log_level = log_level
        self.orthogonality_tolerance = float(orthogonality_tolerance)

    @property
    def verbose(self) -> bool:
        return self.log_level <= logging.DEBUG

    def _factor_constraints(self, U, bounds: NodeBounds) -> List[cp.Constraint]:
        """Constraints on U shared by the feasibility model and the full relaxation."""
        n, k = bounds.shape
        u_lower = np.asarray(bounds.u_lower, dtype=float)
        u_upper = np.asarray(bounds.u_upper, dtype=float)

        constraints = [U >= u_lower, U <= u_upper]

        if bounds.polyhedra is not None:
            for j, polyhedron in enumerate(bounds.polyhedra):
                if polyhedron is not None:
                    constraints.extend(polyhedron_constraints(polyhedron, U[:, j]))

        # McCormick envelopes of U[:, j1] * U[:, j2] for j1 <= j2, one column of T per pair
        j1, j2 = np.triu_indices(k)
        T = cp.Variable((n, len(j1)))
        U1 = U @ _selector(j1, k).T
        U2 = U @ _selector(j2, k).T
        L1, L2 = u_lower[:, j1], u_lower[:, j2]
        H1, H2 = u_upper[:, j1], u_upper[:, j2]
        constraints += [
            T >= cp.multiply(L2, U1) + cp.multiply(L1, U2) - L1 * L2,
            T >= cp.multiply(H2, U1) + cp.multiply(H1, U2) - H1 * H2,
            T <= cp.multiply(H2, U1) + cp.multiply(L1, U2) - L1 * H2,
            T <= cp.multiply(L2, U1) + cp.multiply(H1, U2) - H1 * L2,
        ]

        # U^T U = I on the envelopes
        gram = cp.sum(T, axis=0)
        target = (j1 == j2).astype(float)
        if self.orthogonality_tolerance > 0:
            constraints.append(cp.abs(gram - target) <= self.orthogonality_tolerance)
        else:
            constraints.append(gram == target)

        constraints.append(cp.SOC(np.ones(k), U, axis=0))
        return constraints

    def _context(self, bounds: NodeBounds, stage: str, problem=None) -> dict:
        n, k = bounds.shape
        context = {"n": n, "k": k, "relaxation": self.relaxation.value, "stage": stage}
        if problem is not None:
            context["m"] = problem.m
        return context

    def _solve(self, model: cp.Problem, bounds: NodeBounds, stage: str, problem=None):
        start = time.time()
        try:
            model.solve(solver=self.solver, verbose=self.verbose, **self.solver_options)
        except cp.error.SolverError as e:
            raise UnexpectedStatusError("solver_error", self._context(bounds, stage, problem)) from e
        elapsed = time.time() - start

        status = classify_status(model.status, SOLVED_STATUSES, INFEASIBLE_STATUSES)
        if status == RelaxationStatus.UNEXPECTED:
            raise UnexpectedStatusError(model.status, self._context(bounds, stage, problem))
        logger.debug(f"{stage} solve finished with status {model.status} in {elapsed:.3f}s")

        stats = model.solver_stats
        if stats is not None and stats.solve_time is not None:
            elapsed = float(stats.solve_time)
        return status, elapsed

    def check_feasibility(self, bounds: NodeBounds) -> FeasibilityResult:
        """Whether the node's bounds admit any (relaxed) orthonormal U."""
        U = cp.Variable(bounds.shape)
        model = cp.Problem(cp.Minimize(0), self._factor_constraints(U, bounds))
        status, elapsed = self._solve(model, bounds, "feasibility")
        return FeasibilityResult(
            feasible=status == RelaxationStatus.SOLVED,
            status=status,
            solver_status=model.status,
            time_taken=elapsed,
        )

    def _sdp_variables(self, n: int, m: int, k: int):
        Z = cp.Variable((n + m, n + m), PSD=True)
        Y, X, Theta = Z[:n, :n], Z[:n, n:], Z[n:, n:]
        U = cp.Variable((n, k))
        W = cp.Variable((n + k, n + k), PSD=True)
        S = cp.Variable((n, n), PSD=True)
        constraints = [
            W[:n, :n] == Y,
            W[:n, n:] == U,
            W[n:, n:] == np.eye(k),
            S == np.eye(n) - Y,
        ]
        return U, Y, X, Theta, constraints

    def _socp_variables(self, n: int, m: int, k: int):
        Y = cp.Variable((n, n), symmetric=True)
        X = cp.Variable((n, m))
        Theta = cp.Variable((m, m), symmetric=True)
        U = cp.Variable((n, k))

        y_diag = cp.diag(Y)
        theta_diag = cp.diag(Theta)
        constraints = []

        # Y_ij^2 <= Y_ii Y_jj
        i, j = np.triu_indices(n)
        constraints.append(_minor_cones(_selector(i, n) @ y_diag, _selector(j, n) @ y_diag, _entries(Y, i, j)))

        # X_ij^2 <= Y_ii Theta_jj
        xi = np.repeat(np.arange(n), m)
        xj = np.tile(np.arange(m), n)
        constraints.append(
            _minor_cones(_selector(xi, n) @ y_diag, _selector(xj, m) @ theta_diag, _entries(X, xi, xj))
        )

        # Theta_ij^2 <= Theta_ii Theta_jj
        ti, tj = np.triu_indices(m)
        constraints.append(
            _minor_cones(_selector(ti, m) @ theta_diag, _selector(tj, m) @ theta_diag, _entries(Theta, ti, tj))
        )

        # ||U_i||^2 <= Y_ii
        constraints.append(cp.SOC(y_diag + 1, cp.vstack([_row(y_diag - 1), 2 * U.T]), axis=0))

        # ||U_i +- U_j||^2 <= Y_ii + Y_jj +- 2 Y_ij
        Ui = _selector(i, n) @ U
        Uj = _selector(j, n) @ U
        y_sum = _selector(i, n) @ y_diag + _selector(j, n) @ y_diag
        y_off = _entries(Y, i, j)
        for sign in (1.0, -1.0):
            s = y_sum + sign * 2 * y_off
            constraints.append(
                cp.SOC(s + 1, cp.vstack([_row(s - 1), 2 * (Ui + sign * Uj).T]), axis=0)
            )
        return U, Y, X, Theta, constraints

    def solve_relaxation(
        self,
        bounds: NodeBounds,
        problem: "MatrixCompletionProblem",
    ) -> RelaxationResult:
        """Solve the convex relaxation of the completion problem over the node's bounds."""
        n, m, k = problem.n, problem.m, problem.k
        if bounds.shape != (n, k):
            raise ValueError(
                f"Dimension mismatch. Node bounds must have size ({n}, {k}); got {bounds.shape}."
            )

        if self.relaxation == Relaxation.SDP:
            U, Y, X, Theta, constraints = self._sdp_variables(n, m, k)
        else:
            U, Y, X, Theta, constraints = self._socp_variables(n, m, k)

        constraints.append(cp.trace(Y) <= k)
        constraints.extend(self._factor_constraints(U, bounds))

        objective = (
            0.5 * cp.sum(cp.multiply(problem.indices, cp.square(X - problem.A)))
            + cp.trace(Theta) / (2.0 * problem.gamma)
            + problem.lam * cp.trace(Y)
        )
        model = cp.Problem(cp.Minimize(objective), constraints)
        status, elapsed = self._solve(model, bounds, "relaxation", problem)

        if status != RelaxationStatus.SOLVED:
            return RelaxationResult(status=status, solver_status=model.status, solve_time=elapsed)

        return RelaxationResult(
            status=status,
            solver_status=model.status,
            solve_time=elapsed,
            objective=float(model.value),
            U=np.asarray(U.value, dtype=float),
            Y=np.asarray(Y.value, dtype=float),
            X=np.asarray(X.value, dtype=float),
            Theta=np.asarray(Theta.value, dtype=float),
        )
