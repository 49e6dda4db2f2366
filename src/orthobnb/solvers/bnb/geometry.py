"""
Region Geometry for Branch-and-Bound

Pure functions translating an angular (generalized spherical coordinate)
region into bounds on the orthonormal factor U:

- phi_ranges_to_u_ranges: an axis-aligned interval box containing every unit
  column reachable from the angular box
- phi_ranges_to_polyhedra: a per-column polyhedral outer approximation used
  as additional (disjunctive) constraints on top of the interval box

Each column of U is recovered from its n-1 angles as
    u_1 = cos(phi_1)
    u_i = sin(phi_1) ... sin(phi_{i-1}) cos(phi_i)
    u_n = sin(phi_1) ... sin(phi_{n-1})
so angles in [0, pi] cover the half-sphere with u_n >= 0.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import autograd.numpy as np
from scipy.optimize import linprog

from ...constants import DEFAULT_ANGLE_ATOL

logger = logging.getLogger(__name__)


def product_ranges(
    a_lower: float,
    a_upper: float,
    b_lower: float,
    b_upper: float,
) -> Tuple[float, float]:
    """Interval image of the product of [a_lower, a_upper] and [b_lower, b_upper]."""
    if not (a_lower <= a_upper and b_lower <= b_upper):
        raise ValueError(
            "Domain error. Interval endpoints must satisfy a_lower <= a_upper and "
            f"b_lower <= b_upper; got [{a_lower}, {a_upper}] and [{b_lower}, {b_upper}]."
        )
    if 0 <= a_lower:
        if 0 <= b_lower:
            return a_lower * b_lower, a_upper * b_upper
        if b_upper <= 0:
            return a_upper * b_lower, a_lower * b_upper
        return a_upper * b_lower, a_upper * b_upper
    if a_upper <= 0:
        if 0 <= b_lower:
            return a_lower * b_upper, a_upper * b_lower
        if b_upper <= 0:
            return a_upper * b_upper, a_lower * b_lower
        return a_lower * b_upper, a_lower * b_lower
    # a_lower < 0 < a_upper
    if 0 <= b_lower:
        return a_lower * b_upper, a_upper * b_upper
    if b_upper <= 0:
        return a_upper * b_lower, a_lower * b_lower
    return (
        min(a_upper * b_lower, a_lower * b_upper),
        max(a_lower * b_lower, a_upper * b_upper),
    )


def _check_angle_range(phi_lower: float, phi_upper: float) -> None:
    if not (0 <= phi_lower <= phi_upper <= np.pi):
        raise ValueError(
            "Domain error. Angle bounds must satisfy 0 <= phi_lower <= phi_upper <= pi; "
            f"got [{phi_lower}, {phi_upper}]."
        )


def cos_range(phi_lower: float, phi_upper: float) -> Tuple[float, float]:
    """Image of cos over [phi_lower, phi_upper] (decreasing on [0, pi])."""
    _check_angle_range(phi_lower, phi_upper)
    return float(np.cos(phi_upper)), float(np.cos(phi_lower))


def sin_range(phi_lower: float, phi_upper: float) -> Tuple[float, float]:
    """Image of sin over [phi_lower, phi_upper] within [0, pi]."""
    _check_angle_range(phi_lower, phi_upper)
    s_lower, s_upper = float(np.sin(phi_lower)), float(np.sin(phi_upper))
    if phi_upper <= np.pi / 2:
        return s_lower, s_upper
    if np.pi / 2 <= phi_lower:
        return s_upper, s_lower
    # Straddles pi/2, where sin peaks
    return min(s_lower, s_upper), 1.0


def _check_angle_shapes(phi_lower, phi_upper):
    phi_lower = np.asarray(phi_lower, dtype=float)
    phi_upper = np.asarray(phi_upper, dtype=float)
    if phi_lower.ndim != 2 or phi_lower.shape != phi_upper.shape:
        raise ValueError(
            "Dimension mismatch. Input matrices phi_lower and phi_upper must both "
            f"have size (n-1, k); got {phi_lower.shape} and {phi_upper.shape}."
        )
    return phi_lower, phi_upper


def phi_ranges_to_u_ranges(phi_lower, phi_upper):
    """
    Bound every unit column expressible by angles in [phi_lower, phi_upper].

    Args:
        phi_lower: (n-1, k) lower angle bounds, in [0, pi]
        phi_upper: (n-1, k) upper angle bounds, in [0, pi]

    Returns:
        Tuple (u_lower, u_upper) of (n, k) arrays with u_lower <= u_upper

    Raises:
        ValueError: on shape mismatch or angle bounds outside
            0 <= phi_lower <= phi_upper <= pi
    """
    phi_lower, phi_upper = _check_angle_shapes(phi_lower, phi_upper)
    n = phi_lower.shape[0] + 1
    k = phi_lower.shape[1]

    u_lower = np.ones((n, k))
    u_upper = np.ones((n, k))

    for j in range(k):
        cos_column = [cos_range(lo, hi) for lo, hi in zip(phi_lower[:, j], phi_upper[:, j])]
        sin_column = [sin_range(lo, hi) for lo, hi in zip(phi_lower[:, j], phi_upper[:, j])]

        for i in range(n - 1):
            lo, hi = cos_column[i]
            # Sine images are non-negative, so each product picks the sine
            # endpoint by the sign of the running endpoint
            for s_lo, s_hi in sin_column[:i]:
                lo, hi = product_ranges(lo, hi, s_lo, s_hi)
            u_lower[i, j] = lo
            u_upper[i, j] = hi

        lo, hi = 1.0, 1.0
        for s_lo, s_hi in sin_column:
            lo, hi = product_ranges(lo, hi, s_lo, s_hi)
        u_lower[n - 1, j] = lo
        u_upper[n - 1, j] = hi

    return u_lower, u_upper


def angles_to_vector(phi):
    """Unit vector in R^(len(phi) + 1) with generalized spherical angles `phi`.

    Written without in-place updates so autograd can differentiate through it.
    """
    entries = []
    running = 1.0
    for i in range(len(phi)):
        entries.append(running * np.cos(phi[i]))
        running = running * np.sin(phi[i])
    entries.append(running)
    return np.array(entries)


def angles_to_factor(phi):
    """Map an (n-1, k) angle matrix to the (n, k) factor whose columns are unit vectors."""
    k = phi.shape[1]
    return np.stack([angles_to_vector(phi[:, j]) for j in range(k)], axis=1)


@dataclass
class Polyhedron:
    """A convex polyhedron {x in R^dim : A x <= b}; no half-spaces means all of R^dim."""

    dim: int
    A: Optional[np.ndarray] = None
    b: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.A is not None:
            self.A = np.atleast_2d(np.asarray(self.A, dtype=float))
            self.b = np.atleast_1d(np.asarray(self.b, dtype=float))
            if self.A.shape != (len(self.b), self.dim):
                raise ValueError(
                    f"Half-space data must have shapes (h, {self.dim}) and (h,); "
                    f"got {self.A.shape} and {self.b.shape}"
                )

    @property
    def num_halfspaces(self) -> int:
        return 0 if self.A is None else self.A.shape[0]

    def intersect_halfspace(self, a, beta: float) -> "Polyhedron":
        """Return a new polyhedron with the extra half-space a . x <= beta."""
        a = np.asarray(a, dtype=float).reshape(1, self.dim)
        if self.A is None:
            A, b = a, np.array([float(beta)])
        else:
            A = np.vstack([self.A, a])
            b = np.concatenate([self.b, [float(beta)]])
        return Polyhedron(self.dim, A, b)

    def contains(self, x, tol: float = 1e-9) -> bool:
        if self.A is None:
            return True
        x = np.asarray(x, dtype=float)
        return bool(np.all(np.dot(self.A, x) <= self.b + tol))


def corner_angles(phi_lower, phi_upper) -> List[np.ndarray]:
    """All 2^(n-1) corners of a single column's angular box."""
    return [np.array(corner) for corner in itertools.product(*zip(phi_lower, phi_upper))]


def adjacent_corner_angles(phi_lower, phi_upper, atol: float = DEFAULT_ANGLE_ATOL):
    """
    Reference corner plus the corners obtained by flipping one angle at a time.

    The reference takes the lower endpoint of each angle unless it sits on 0,
    in which case it takes the upper endpoint. An angle spanning all of
    [0, pi] has no admissible reference endpoint.
    """
    reference = []
    use_lower = []
    for lo, hi in zip(phi_lower, phi_upper):
        if not np.isclose(lo, 0.0, rtol=0.0, atol=atol):
            reference.append(lo)
            use_lower.append(True)
        elif not np.isclose(hi, np.pi, rtol=0.0, atol=atol):
            reference.append(hi)
            use_lower.append(False)
        else:
            raise ValueError("Cannot pick a reference corner for an angle spanning [0, pi]")
    reference = np.array(reference, dtype=float)

    corners = [reference]
    for i, lower in enumerate(use_lower):
        corner = reference.copy()
        corner[i] = phi_upper[i] if lower else phi_lower[i]
        corners.append(corner)
    return corners


def separating_halfspace(points: List[np.ndarray]) -> Optional[Tuple[np.ndarray, float]]:
    """
    Half-space c . x <= beta whose boundary passes through every point and
    which excludes the origin.

    Solves min c . p_0 s.t. c . (p_0 - p_i) = 0, sum(c) = 1. Returns None when
    the LP has no solution or the hyperplane passes through the origin.
    """
    reference = points[0]
    dim = reference.shape[0]
    rows = [reference - p for p in points[1:]]
    rows.append(np.ones(dim))
    A_eq = np.vstack(rows)
    b_eq = np.concatenate([np.zeros(len(points) - 1), [1.0]])

    res = linprog(
        reference,
        A_eq=A_eq,
        b_eq=b_eq,
        bounds=[(None, None)] * dim,
        method="highs",
    )
    if res.status != 0:
        logger.debug(f"Separating half-space LP failed: {res.message}")
        return None

    c = np.asarray(res.x, dtype=float)
    beta = float(res.fun)
    if beta < 0:
        return c, beta
    if beta > 0:
        return -c, -beta
    return None


def last_angle_wedge(phi_lower: float, phi_upper: float, dim: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Half-spaces confining (u_{n-1}, u_n) to the planar wedge of the last angle.

    The pair equals r * (cos(phi), sin(phi)) with r >= 0, so the last angle
    lying in [phi_lower, phi_upper] is exactly the intersection of two
    half-planes through the origin.
    """
    A = np.zeros((2, dim))
    A[0, -2:] = [np.sin(phi_lower), -np.cos(phi_lower)]
    A[1, -2:] = [-np.sin(phi_upper), np.cos(phi_upper)]
    return A, np.zeros(2)


def column_polyhedron_full(phi_lower, phi_upper) -> Polyhedron:
    """Tangent cut at each corner vector, the slab of the first angle and the wedge of the last."""
    corners = np.array([angles_to_vector(phi) for phi in corner_angles(phi_lower, phi_upper)])
    dim = corners.shape[1]

    # u_1 = cos(phi_1) on the unit sphere
    slab_A = np.zeros((2, dim))
    slab_A[0, 0], slab_A[1, 0] = 1.0, -1.0
    slab_b = np.array([np.cos(phi_lower[0]), -np.cos(phi_upper[0])])

    wedge_A, wedge_b = last_angle_wedge(phi_lower[-1], phi_upper[-1], dim)
    return Polyhedron(
        dim,
        A=np.vstack([corners, slab_A, wedge_A]),
        b=np.concatenate([np.ones(corners.shape[0]), slab_b, wedge_b]),
    )


def column_polyhedron_lite(
    phi_lower,
    phi_upper,
    atol: float = DEFAULT_ANGLE_ATOL,
) -> Optional[Polyhedron]:
    """Separating half-space through the adjacent corners plus a cut at the angular midpoint.

    Returns None (no restriction) when some angle spans the full [0, pi] range.
    """
    phi_lower = np.asarray(phi_lower, dtype=float)
    phi_upper = np.asarray(phi_upper, dtype=float)
    if np.isclose(np.max(phi_upper - phi_lower), np.pi, rtol=0.0, atol=atol):
        return None

    knot = angles_to_vector((phi_lower + phi_upper) / 2)
    dim = knot.shape[0]
    polyhedron = Polyhedron(dim, A=knot.reshape(1, dim), b=np.ones(1))

    points = [angles_to_vector(phi) for phi in adjacent_corner_angles(phi_lower, phi_upper, atol)]
    halfspace = separating_halfspace(points)
    if halfspace is None:
        logger.debug("No separating half-space for column; keeping the midpoint cut only")
        return polyhedron
    c, beta = halfspace
    return polyhedron.intersect_halfspace(c, beta)


def phi_ranges_to_polyhedra(phi_lower, phi_upper, lite: bool = False) -> List[Optional[Polyhedron]]:
    """
    Per-column polyhedral outer approximations of an angular box.

    Full mode keeps only cuts that hold on the whole spherical cell: the
    tangent plane c . x <= 1 at every corner vector c, the slab
    cos(phi_1 upper) <= x_1 <= cos(phi_1 lower) and the two half-planes of the
    last angle on (x_{n-1}, x_n). The hull of the corner vectors is not used,
    since for n >= 3 the edges of a cell bulge outside the cone of its
    corners. Intermediate angles are left to the interval box.

    Lite mode uses the plane through the reference corner and its adjacent
    corners. It contains the whole arc when n = 2; for n >= 3 it is not
    guaranteed to contain every point of the cell.

    Args:
        phi_lower: (n-1, k) lower angle bounds
        phi_upper: (n-1, k) upper angle bounds
        lite: Use the cheap adjacent-corner construction instead of the
            corner and wedge cuts

    Returns:
        List of k polyhedra in R^n; lite mode may contain None entries
    """
    phi_lower, phi_upper = _check_angle_shapes(phi_lower, phi_upper)
    for lo, hi in zip(np.ravel(phi_lower), np.ravel(phi_upper)):
        _check_angle_range(lo, hi)

    k = phi_lower.shape[1]
    if lite:
        return [column_polyhedron_lite(phi_lower[:, j], phi_upper[:, j]) for j in range(k)]
    return [column_polyhedron_full(phi_lower[:, j], phi_upper[:, j]) for j in range(k)]
