"""
Branching Coordinate Selection

Strategies:
- LEXICOGRAPHIC: Split the widest interval (first in row-major order on ties)
- GRADIENT: Split the interval maximizing width * |d proxy / d coordinate|,
  where the proxy is the completion objective evaluated with the relaxation's
  X projected onto the span of the factor at the node's reference point.
  Falls back to LEXICOGRAPHIC when every score vanishes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Tuple

import autograd.numpy as np
from autograd import grad

from .node import BranchingType

if TYPE_CHECKING:
    from ...problem import MatrixCompletionProblem

logger = logging.getLogger(__name__)


def lexicographic_branching(widths) -> Tuple[int, int]:
    """Index of the widest interval."""
    widths = np.asarray(widths, dtype=float)
    index = np.unravel_index(int(np.argmax(widths)), widths.shape)
    return tuple(int(i) for i in index)


def completion_proxy(U, X, problem: "MatrixCompletionProblem"):
    """Completion objective at the projection of X onto span(U), differentiable in U."""
    P = np.dot(U, np.dot(U.T, X))
    fit = 0.5 * np.sum(problem.indices * (P - problem.A) ** 2)
    ridge = np.sum(P**2) / (2.0 * problem.gamma)
    return fit + ridge + problem.lam * np.sum(U**2)


def gradient_branching(
    widths,
    point,
    to_factor: Callable,
    X,
    problem: "MatrixCompletionProblem",
) -> Tuple[int, int]:
    """
    Select the coordinate with the largest width-weighted gradient magnitude.

    Args:
        widths: Interval widths of the region coordinates
        point: Reference point in region coordinates (same shape as widths)
        to_factor: Map from region coordinates to the n x k factor U
        X: Completed matrix from the node's relaxation
        problem: The matrix completion problem

    Returns:
        Index of the coordinate to split
    """
    widths = np.asarray(widths, dtype=float)
    point = np.asarray(point, dtype=float)
    X = np.asarray(X, dtype=float)

    proxy_grad = grad(lambda z: completion_proxy(to_factor(z), X, problem))
    scores = widths * np.abs(proxy_grad(point))

    if not np.all(np.isfinite(scores)) or np.max(scores) <= 0:
        logger.debug("Gradient scores vanished; falling back to lexicographic branching")
        return lexicographic_branching(widths)

    index = np.unravel_index(int(np.argmax(scores)), scores.shape)
    return tuple(int(i) for i in index)


def select_branching_coordinate(
    branching: BranchingType,
    widths,
    point=None,
    to_factor: Callable | None = None,
    X=None,
    problem: "MatrixCompletionProblem | None" = None,
) -> Tuple[int, int]:
    """Select the coordinate to split based on strategy."""
    if branching == BranchingType.LEXICOGRAPHIC:
        return lexicographic_branching(widths)
    return gradient_branching(widths, point, to_factor, X, problem)
