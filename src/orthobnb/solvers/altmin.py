"""Alternating minimization warm start for rank-k matrix completion."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import autograd.numpy as np

from ..constants import DEFAULT_ALTMIN_MAXITER, DEFAULT_ALTMIN_TOL

logger = logging.getLogger(__name__)


@dataclass
class AltMinResult:
    U: np.ndarray  # n x k
    V: np.ndarray  # k x m
    objective: float
    iterations: int
    solve_time: float


def _altmin_objective(U, V, A, indices, gamma):
    X = np.dot(U, V)
    return float(0.5 * np.sum(indices * (X - A) ** 2) + np.sum(X**2) / (2.0 * gamma))


def _update_rows(V, A, indices, gamma):
    """Minimize over the left factor with V fixed; each row is an independent ridge problem."""
    n = A.shape[0]
    ridge = np.dot(V, V.T) / gamma
    rows = []
    for i in range(n):
        Vd = V * indices[i]
        lhs = np.dot(Vd, V.T) + ridge
        rhs = np.dot(Vd, A[i])
        rows.append(np.linalg.lstsq(lhs, rhs, rcond=None)[0])
    return np.array(rows)


def alternating_minimization(
    A,
    k: int,
    indices,
    gamma: float,
    lam: float,
    tol: float = DEFAULT_ALTMIN_TOL,
    max_iters: int = DEFAULT_ALTMIN_MAXITER,
) -> AltMinResult:
    """
    Heuristic rank-k completion by alternating least squares.

    Starts from the rank-k truncated SVD of the observed entries (unobserved
    entries zeroed) and alternates exact minimization of
        1/2 * sum over observed (U V - A)_ij^2 + 1/(2 gamma) * ||U V||_F^2
    over U and V until the objective changes by less than `tol`. The
    regularization weight `lam` acts on the orthonormal factor recovered by
    the caller and plays no role here.

    Returns:
        AltMinResult with U (n x k), V (k x m), the final objective, the
        number of iterations and the elapsed time
    """
    start_time = time.time()
    A = np.asarray(A, dtype=float)
    indices = np.asarray(indices, dtype=float)
    n, m = A.shape

    left, singular, right = np.linalg.svd(A * indices, full_matrices=True)
    r = min(k, len(singular))
    U = left[:, :k]
    V = np.zeros((k, m))
    V[:r] = singular[:r, None] * right[:r]

    objective = float("inf")
    iterations = 0
    while iterations < max_iters:
        iterations += 1
        U_new = _update_rows(V, A, indices, gamma)
        V_new = _update_rows(U_new.T, A.T, indices.T, gamma).T
        objective_new = _altmin_objective(U_new, V_new, A, indices, gamma)
        converged = abs(objective_new - objective) < tol
        U, V, objective = U_new, V_new, objective_new
        if converged:
            break

    solve_time = time.time() - start_time
    logger.debug(
        f"Alternating minimization: objective {objective:.6e} after {iterations} "
        f"iterations ({solve_time:.3f}s)"
    )
    return AltMinResult(U=U, V=V, objective=objective, iterations=iterations, solve_time=solve_time)
