"""
Branch-and-Bound Node, Statistics and Incumbent Dataclasses

This module contains the core data structures used by the matrix completion
branch-and-bound search: nodes, run statistics, run-log rows and the
incumbent solution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import autograd.numpy as np

ROOT_ID = 1
NO_PARENT = 0


class NodeSelection(StrEnum):
    """Node selection strategy."""

    BREADTH_FIRST = "breadthfirst"  # FIFO in creation order
    BEST_FIRST = "bestfirst"  # Always pick the node with the smallest lower bound


class BranchingType(StrEnum):
    """Branching coordinate selection."""

    LEXICOGRAPHIC = "lexicographic"  # Widest interval
    GRADIENT = "gradient"  # Widest interval weighted by a gradient proxy


@dataclass(order=True)
class BBNode:
    """
    A node in the branch-and-bound tree.

    Bound semantics:
    - `lower_bound` is inherited from the parent's relaxation objective
      (-inf at the root) and is what bound-dominance pruning compares
      against the incumbent.
    - `priority` orders the heap: the lower bound for best-first, a constant
      for breadth-first so that ties fall back to `node_id` (creation order).
    """

    priority: float
    node_id: int

    parent_id: int = field(compare=False, default=NO_PARENT)
    depth: int = field(compare=False, default=0)
    region: Any = field(compare=False, default=None)
    lower_bound: float = field(compare=False, default=float("-inf"))


@dataclass
class BBStats:
    """Counters and timings from a branch-and-bound run.

    The counters satisfy
        nodes_dominated + nodes_relax_infeasible + nodes_relax_feasible == nodes_explored
        nodes_relax_feasible_pruned + nodes_master_feasible + nodes_relax_feasible_split
            == nodes_relax_feasible
    """

    nodes_explored: int = 0
    nodes_total: int = 1
    # Inherited bound already above the incumbent; no solver call
    nodes_dominated: int = 0
    # Feasibility check (or full relaxation) reported infeasible
    nodes_relax_infeasible: int = 0
    # Relaxation solved
    nodes_relax_feasible: int = 0
    nodes_relax_feasible_pruned: int = 0
    nodes_master_feasible: int = 0
    nodes_master_feasible_improvement: int = 0
    nodes_relax_feasible_split: int = 0

    feasibility_solves: int = 0
    relaxation_solves: int = 0

    solve_time_altmin: float = 0.0
    solve_time_relaxation_feasibility: float = 0.0
    solve_time_relaxation: float = 0.0
    solve_time_u_ranges: float = 0.0
    solve_time_polyhedra: float = 0.0

    best_bound: float = float("-inf")
    gap: float = float("inf")


@dataclass
class RunLogRow:
    """One line of the progress table."""

    explored: int
    total: int
    lower: float
    upper: float
    gap: float
    runtime: float


@dataclass
class Incumbent:
    """Best solution to the original problem found so far."""

    objective: float
    U: np.ndarray
    X: np.ndarray
    Y: np.ndarray
    mse_in: float = float("nan")
    mse_out: float = float("nan")

    def copy(self) -> "Incumbent":
        return Incumbent(
            objective=self.objective,
            U=self.U.copy(),
            X=self.X.copy(),
            Y=self.Y.copy(),
            mse_in=self.mse_in,
            mse_out=self.mse_out,
        )
