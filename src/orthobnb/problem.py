from __future__ import annotations

from typing import Callable, Dict

import autograd.numpy as np

from .constants import MSEKind
from .solvers import BranchAndBoundSolver, BnBResult, RelaxationOracle


class MatrixCompletionProblem:
    """Low-rank matrix completion with an orthonormal rank-k factor.

    Minimizes
        1/2 * sum over observed (X_ij - A_ij)^2 + 1/(2 gamma) * ||X||_F^2 + lam * ||U||_F^2
    over X in the column span of U, subject to U^T U = I_k.
    """

    def __init__(self, A, indices, k: int, gamma: float, lam: float):
        A = np.asarray(A, dtype=float)
        indices = np.asarray(indices, dtype=float)

        if A.ndim != 2:
            raise ValueError(f"Input matrix A must be 2-dimensional, got shape {A.shape}")
        if A.shape != indices.shape:
            raise ValueError(
                "Dimension mismatch. Input matrix A must have size (n, m) and "
                f"input matrix indices must have size (n, m); got {A.shape} and {indices.shape}."
            )
        if not np.all((indices == 0.0) | (indices == 1.0)):
            raise ValueError("Observation mask `indices` must contain only zeros and ones")

        k = int(k)
        n = A.shape[0]
        if not 1 <= k <= n:
            raise ValueError(f"Rank k must satisfy 1 <= k <= n = {n}, got {k}")
        if n < 2:
            raise ValueError("Matrix completion requires at least two rows")
        if gamma <= 0:
            raise ValueError(f"gamma must be positive, got {gamma}")
        if lam < 0:
            raise ValueError(f"lam must be non-negative, got {lam}")

        self.A = A
        self.indices = indices
        self.k = k
        self.gamma = float(gamma)
        self.lam = float(lam)

    @property
    def shape(self):
        return self.A.shape

    @property
    def n(self) -> int:
        return self.A.shape[0]

    @property
    def m(self) -> int:
        return self.A.shape[1]

    @property
    def num_indices(self) -> int:
        return int(round(float(np.sum(self.indices))))

    def objective(self, X, U) -> float:
        """Objective of the original (non-convex) problem at (X, U)."""
        X = np.asarray(X, dtype=float)
        U = np.asarray(U, dtype=float)
        if X.shape != self.shape or U.shape[0] != self.n:
            raise ValueError(
                "Dimension mismatch. Input matrix X must have size (n, m) and "
                f"input matrix U must have size (n, k); got {X.shape} and {U.shape}."
            )
        fit = 0.5 * np.sum((X - self.A) ** 2 * self.indices)
        ridge = np.sum(X**2) / (2.0 * self.gamma)
        return float(fit + ridge + self.lam * np.sum(U**2))

    def mse(self, X, kind: MSEKind | str = MSEKind.OUT) -> float:
        """Mean squared error over sampled (`in`), unsampled (`out`) or all entries."""
        kind = MSEKind(kind)
        sq = (np.asarray(X, dtype=float) - self.A) ** 2
        total = self.indices.size
        observed = float(np.sum(self.indices))

        if kind == MSEKind.OUT:
            if observed == total:
                return 0.0
            return float(np.sum(sq * (1.0 - self.indices)) / (total - observed))
        if kind == MSEKind.IN:
            if observed == 0.0:
                return 0.0
            return float(np.sum(sq * self.indices) / observed)
        return float(np.sum(sq) / total)

    def solve(
        self,
        solver_options: Dict[str, object] | None = None,
        oracle: RelaxationOracle | None = None,
        warm_start: Callable | None = None,
    ) -> BnBResult:
        """
        Solve to global optimality (up to the configured gap) by branch-and-bound.

        Args:
            solver_options: `bb_*` search options, relaxation choice and
                options forwarded to the conic solver.
            oracle: Relaxation oracle; defaults to a cvxpy-backed oracle for
                the requested relaxation.
            warm_start: Callable with the signature of
                `alternating_minimization`, used to seed the incumbent.

        Returns:
            BnBResult with the best incumbent and the run statistics
        """
        solver = BranchAndBoundSolver(oracle=oracle, warm_start=warm_start)
        return solver.solve(self, solver_options or {})


def branchandbound_matrix_completion(
    k: int,
    A,
    indices,
    gamma: float,
    lam: float,
    **options,
) -> BnBResult:
    """Convenience wrapper: build the problem and solve it with `options` as solver options."""
    oracle = options.pop("oracle", None)
    warm_start = options.pop("warm_start", None)
    problem = MatrixCompletionProblem(A, indices, k, gamma, lam)
    return problem.solve(solver_options=options, oracle=oracle, warm_start=warm_start)
