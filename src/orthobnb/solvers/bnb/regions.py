"""
Branching Regions

Node regions are interval boxes, either directly on the entries of U
(BoxRegion) or on the spherical angles of its columns (AngularRegion).
A RegionStrategy, chosen once per solve from the branching-region option,
knows how to build the root region, materialize a region into the bounds
handed to the relaxation oracle, and split a region in two.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Type

import autograd.numpy as np

from ...constants import BranchingRegion, PolyhedralMode
from ..base import NodeBounds, RelaxationResult
from .geometry import angles_to_factor, phi_ranges_to_polyhedra, phi_ranges_to_u_ranges
from .node import BBStats


@dataclass(eq=False)
class IntervalRegion:
    """Elementwise interval bounds lower <= x <= upper on a matrix of coordinates."""

    lower: np.ndarray
    upper: np.ndarray

    def __post_init__(self):
        self.lower = np.array(self.lower, dtype=float)
        self.upper = np.array(self.upper, dtype=float)
        if self.lower.ndim != 2 or self.lower.shape != self.upper.shape:
            raise ValueError(
                f"Region bounds must be matrices of equal shape; got {self.lower.shape} "
                f"and {self.upper.shape}"
            )
        if np.any(self.lower > self.upper):
            raise ValueError("Region lower bounds must not exceed upper bounds")

    @property
    def shape(self):
        return self.lower.shape

    def widths(self) -> np.ndarray:
        return self.upper - self.lower

    def split(self, index: Tuple[int, int]) -> Tuple["IntervalRegion", "IntervalRegion"]:
        """Split at the midpoint of coordinate `index`; the halves share only the cut face."""
        mid = self.lower[index] + (self.upper[index] - self.lower[index]) / 2

        left_upper = self.upper.copy()
        left_upper[index] = mid
        right_lower = self.lower.copy()
        right_lower[index] = mid

        left = type(self)(self.lower.copy(), left_upper)
        right = type(self)(right_lower, self.upper.copy())
        return left, right

    def contains(self, point, tol: float = 0.0) -> bool:
        point = np.asarray(point, dtype=float)
        return bool(np.all(point >= self.lower - tol) and np.all(point <= self.upper + tol))


class BoxRegion(IntervalRegion):
    """Bounds on the entries of the n x k factor U."""

    @property
    def u_lower(self) -> np.ndarray:
        return self.lower

    @property
    def u_upper(self) -> np.ndarray:
        return self.upper


class AngularRegion(IntervalRegion):
    """Bounds on the (n-1) x k spherical angles of the columns of U, within [0, pi]."""

    def __post_init__(self):
        super().__post_init__()
        if np.any(self.lower < 0) or np.any(self.upper > np.pi):
            raise ValueError("Angular bounds must lie within [0, pi]")

    @property
    def phi_lower(self) -> np.ndarray:
        return self.lower

    @property
    def phi_upper(self) -> np.ndarray:
        return self.upper


def root_box(n: int, k: int) -> BoxRegion:
    """[-1, 1]^(n x k) with the last row restricted to [0, 1] (column sign symmetry)."""
    u_lower = -np.ones((n, k))
    u_lower[n - 1, :] = 0.0
    return BoxRegion(u_lower, np.ones((n, k)))


def root_angles(n: int, k: int) -> AngularRegion:
    return AngularRegion(np.zeros((n - 1, k)), np.full((n - 1, k), np.pi))


class RegionStrategy:
    """Dispatch for one branching-region kind."""

    kind: BranchingRegion
    region_type: Type[IntervalRegion]

    def root_region(self, n: int, k: int) -> IntervalRegion:
        raise NotImplementedError

    def materialize(self, region: IntervalRegion, stats: BBStats) -> NodeBounds:
        raise NotImplementedError

    def gradient_point(
        self, region: IntervalRegion, relaxation: RelaxationResult
    ) -> Tuple[np.ndarray, Callable]:
        """Point in region coordinates and the map from region coordinates to U."""
        raise NotImplementedError

    def branch(self, region: IntervalRegion, index: Tuple[int, int]):
        if not isinstance(region, self.region_type):
            raise TypeError(
                f"{self.kind.value} branching expects a {self.region_type.__name__}, "
                f"got {type(region).__name__}"
            )
        return region.split(index)


class BoxStrategy(RegionStrategy):
    kind = BranchingRegion.BOX
    region_type = BoxRegion

    def root_region(self, n: int, k: int) -> BoxRegion:
        return root_box(n, k)

    def materialize(self, region: BoxRegion, stats: BBStats) -> NodeBounds:
        return NodeBounds(region.u_lower, region.u_upper)

    def gradient_point(self, region: BoxRegion, relaxation: RelaxationResult):
        point = np.clip(np.asarray(relaxation.U, dtype=float), region.lower, region.upper)
        return point, lambda U: U


class AngularStrategy(RegionStrategy):
    kind = BranchingRegion.ANGULAR
    region_type = AngularRegion

    def root_region(self, n: int, k: int) -> AngularRegion:
        return root_angles(n, k)

    def _u_ranges(self, region: AngularRegion, stats: BBStats):
        start = time.time()
        u_lower, u_upper = phi_ranges_to_u_ranges(region.phi_lower, region.phi_upper)
        stats.solve_time_u_ranges += time.time() - start
        return u_lower, u_upper

    def materialize(self, region: AngularRegion, stats: BBStats) -> NodeBounds:
        u_lower, u_upper = self._u_ranges(region, stats)
        return NodeBounds(u_lower, u_upper)

    def gradient_point(self, region: AngularRegion, relaxation: RelaxationResult):
        return (region.lower + region.upper) / 2, angles_to_factor


class PolyhedralStrategy(AngularStrategy):
    """Angular branching whose nodes are bounded by polyhedra inside the root box."""

    kind = BranchingRegion.POLYHEDRAL

    def __init__(self, mode: PolyhedralMode = PolyhedralMode.FULL):
        self.mode = PolyhedralMode(mode)

    def _polyhedra(self, region: AngularRegion, stats: BBStats):
        start = time.time()
        polyhedra = phi_ranges_to_polyhedra(
            region.phi_lower,
            region.phi_upper,
            lite=self.mode == PolyhedralMode.LITE,
        )
        stats.solve_time_polyhedra += time.time() - start
        return polyhedra

    def materialize(self, region: AngularRegion, stats: BBStats) -> NodeBounds:
        n, k = region.shape[0] + 1, region.shape[1]
        box = root_box(n, k)
        return NodeBounds(box.u_lower, box.u_upper, self._polyhedra(region, stats))


class HybridStrategy(PolyhedralStrategy):
    """Angular branching with both the derived interval box and the polyhedra."""

    kind = BranchingRegion.HYBRID

    def materialize(self, region: AngularRegion, stats: BBStats) -> NodeBounds:
        u_lower, u_upper = self._u_ranges(region, stats)
        return NodeBounds(u_lower, u_upper, self._polyhedra(region, stats))


_STRATEGIES: Dict[BranchingRegion, Type[RegionStrategy]] = {
    BranchingRegion.BOX: BoxStrategy,
    BranchingRegion.ANGULAR: AngularStrategy,
    BranchingRegion.POLYHEDRAL: PolyhedralStrategy,
    BranchingRegion.HYBRID: HybridStrategy,
}


def get_region_strategy(
    kind: BranchingRegion | str,
    polyhedral_mode: PolyhedralMode | str = PolyhedralMode.FULL,
) -> RegionStrategy:
    kind = BranchingRegion(kind)
    strategy_cls = _STRATEGIES[kind]
    if issubclass(strategy_cls, PolyhedralStrategy):
        return strategy_cls(polyhedral_mode)
    return strategy_cls()
