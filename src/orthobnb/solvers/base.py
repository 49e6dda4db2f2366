from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence

import autograd.numpy as anp  # type: ignore

if TYPE_CHECKING:
    from ..problem import MatrixCompletionProblem
    from .bnb.geometry import Polyhedron


ArrayLike = anp.ndarray


class SolverStatus(StrEnum):
    OPTIMAL = "optimal"
    SUBOPTIMAL = "suboptimal"


class RelaxationStatus(StrEnum):
    """Outcome buckets for a relaxation solve."""

    SOLVED = "solved"
    INFEASIBLE = "infeasible"
    UNEXPECTED = "unexpected"


class UnexpectedStatusError(RuntimeError):
    """Raised when a relaxation solve ends in a status that cannot be classified.

    Treating such a solve as either feasible or infeasible would make the
    tree's bounds unsound, so the search aborts instead.
    """

    def __init__(self, status: str, context: dict | None = None):
        self.status = status
        self.context = dict(context or {})
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        message = f"Unexpected relaxation termination status: {status}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


@dataclass
class NodeBounds:
    """A materialized node region: interval bounds on U plus optional per-column polyhedra."""

    u_lower: ArrayLike
    u_upper: ArrayLike
    polyhedra: Optional[List[Optional["Polyhedron"]]] = None

    @property
    def shape(self):
        return self.u_lower.shape


@dataclass
class FeasibilityResult:
    feasible: bool
    status: RelaxationStatus
    solver_status: str
    time_taken: float = 0.0


@dataclass
class RelaxationResult:
    status: RelaxationStatus
    solver_status: str
    solve_time: float = 0.0
    objective: float = float("inf")
    U: Optional[ArrayLike] = None
    Y: Optional[ArrayLike] = None
    X: Optional[ArrayLike] = None
    Theta: Optional[ArrayLike] = None

    @property
    def feasible(self) -> bool:
        return self.status == RelaxationStatus.SOLVED


class RelaxationOracle(Protocol):
    def check_feasibility(self, bounds: NodeBounds) -> FeasibilityResult:
        ...

    def solve_relaxation(
        self,
        bounds: NodeBounds,
        problem: "MatrixCompletionProblem",
    ) -> RelaxationResult:
        ...


def classify_status(
    status: str,
    solved: Sequence[str],
    infeasible: Sequence[str],
) -> RelaxationStatus:
    if status in solved:
        return RelaxationStatus.SOLVED
    if status in infeasible:
        return RelaxationStatus.INFEASIBLE
    return RelaxationStatus.UNEXPECTED
