"""
Spatial Branch-and-Bound Components

This package holds the pieces the search driver in `bnb_backend` is built
from.

Modules:
- node: Node, statistics, run-log and incumbent dataclasses
- geometry: Angular-to-box and angular-to-polyhedron conversions
- regions: Box and angular regions and the per-kind region strategies
- branching: Branching coordinate selection
- ledger: Live relaxation bounds and their retirement
- feasibility: Certification of relaxation solutions for the original problem
"""

from .branching import lexicographic_branching, gradient_branching, select_branching_coordinate
from .feasibility import master_problem_feasible
from .geometry import (
    Polyhedron,
    angles_to_factor,
    angles_to_vector,
    phi_ranges_to_polyhedra,
    phi_ranges_to_u_ranges,
    product_ranges,
)
from .ledger import BoundLedger
from .node import (
    BBNode,
    BBStats,
    BranchingType,
    Incumbent,
    NodeSelection,
    RunLogRow,
)
from .regions import (
    AngularRegion,
    BoxRegion,
    IntervalRegion,
    RegionStrategy,
    get_region_strategy,
    root_angles,
    root_box,
)

__all__ = [
    "AngularRegion",
    "BBNode",
    "BBStats",
    "BoundLedger",
    "BoxRegion",
    "BranchingType",
    "Incumbent",
    "IntervalRegion",
    "NodeSelection",
    "Polyhedron",
    "RegionStrategy",
    "RunLogRow",
    "angles_to_factor",
    "angles_to_vector",
    "get_region_strategy",
    "gradient_branching",
    "lexicographic_branching",
    "master_problem_feasible",
    "phi_ranges_to_polyhedra",
    "phi_ranges_to_u_ranges",
    "product_ranges",
    "root_angles",
    "root_box",
    "select_branching_coordinate",
]
