"""Certification that a relaxation solution solves the original non-convex problem."""

from __future__ import annotations

import autograd.numpy as np
from scipy.linalg import eigvalsh


def smallest_eigenvalue(M) -> float:
    M = np.asarray(M, dtype=float)
    M = (M + M.T) / 2
    return float(eigvalsh(M, subset_by_index=[0, 0])[0])


def master_problem_feasible(
    Y,
    U,
    X,
    Theta,
    orthogonality_tolerance: float = 0.0,
    projection_tolerance: float = 0.0,
    lifted_variable_tolerance: float = 0.0,
) -> bool:
    """
    Check whether a relaxation solution is feasible for the original problem.

    All of the following must hold:
    - |U^T U - I| <= orthogonality_tolerance elementwise
    - trace(Y) <= k
    - lambda_min(Y - U U^T) >= -projection_tolerance
    - lambda_min([[Y, X], [X^T, Theta]]) >= -lifted_variable_tolerance

    Tolerances default to zero (exact certification).
    """
    Y = np.asarray(Y, dtype=float)
    U = np.asarray(U, dtype=float)
    X = np.asarray(X, dtype=float)
    Theta = np.asarray(Theta, dtype=float)

    n, k = U.shape
    if Y.shape != (n, n) or X.shape[0] != n or Theta.shape != (X.shape[1], X.shape[1]):
        raise ValueError(
            "Dimension mismatch. Y must be (n, n), U (n, k), X (n, m) and Theta (m, m); "
            f"got {Y.shape}, {U.shape}, {X.shape} and {Theta.shape}."
        )

    if np.any(np.abs(np.dot(U.T, U) - np.eye(k)) > orthogonality_tolerance):
        return False
    if np.trace(Y) > k:
        return False
    if smallest_eigenvalue(Y - np.dot(U, U.T)) < -projection_tolerance:
        return False
    lifted = np.block([[Y, X], [X.T, Theta]])
    return smallest_eigenvalue(lifted) >= -lifted_variable_tolerance
