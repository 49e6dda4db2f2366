__all__ = [
    "MatrixCompletionProblem",
    "branchandbound_matrix_completion",
    "BranchAndBoundSolver",
    "BnBResult",
    "CvxpyRelaxationOracle",
    "UnexpectedStatusError",
    "alternating_minimization",
    "master_problem_feasible",
    "phi_ranges_to_u_ranges",
    "phi_ranges_to_polyhedra",
    "SDP",
    "SOCP",
    "BOX",
    "ANGULAR",
    "POLYHEDRAL",
    "HYBRID",
    "SolverStatus",
    "TerminationReason",
]

from .constants import Relaxation, BranchingRegion
from .problem import MatrixCompletionProblem, branchandbound_matrix_completion
from .solvers import (
    BnBResult,
    BranchAndBoundSolver,
    CvxpyRelaxationOracle,
    SolverStatus,
    TerminationReason,
    UnexpectedStatusError,
    alternating_minimization,
)
from .solvers.bnb import master_problem_feasible, phi_ranges_to_polyhedra, phi_ranges_to_u_ranges

SDP = Relaxation.SDP
SOCP = Relaxation.SOCP

BOX = BranchingRegion.BOX
ANGULAR = BranchingRegion.ANGULAR
POLYHEDRAL = BranchingRegion.POLYHEDRAL
HYBRID = BranchingRegion.HYBRID
