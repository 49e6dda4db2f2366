from __future__ import annotations

from .altmin import AltMinResult, alternating_minimization
from .base import (
    FeasibilityResult,
    NodeBounds,
    RelaxationOracle,
    RelaxationResult,
    RelaxationStatus,
    SolverStatus,
    UnexpectedStatusError,
)
from .bnb_backend import BnBResult, BranchAndBoundSolver, TerminationReason
from .cvxpy_backend import CvxpyRelaxationOracle


__all__ = [
    "AltMinResult",
    "BnBResult",
    "BranchAndBoundSolver",
    "CvxpyRelaxationOracle",
    "FeasibilityResult",
    "NodeBounds",
    "RelaxationOracle",
    "RelaxationResult",
    "RelaxationStatus",
    "SolverStatus",
    "TerminationReason",
    "UnexpectedStatusError",
    "alternating_minimization",
]
