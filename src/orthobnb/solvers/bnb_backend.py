"""
Branch-and-Bound Matrix Completion Backend

Certifies a globally optimal rank-k completion by spatial branch-and-bound
over the orthonormal factor U, bounding each region with a convex (SDP or
SOCP) relaxation.

Features:
- Four region parametrizations (box, angular, polyhedral, hybrid)
- Breadth-first or best-first node selection
- Lexicographic or gradient-guided branching
- Cheap feasibility check before every full relaxation solve
- Alternating minimization warm start for the incumbent
- Bound ledger retiring parent bounds once all children are resolved
- Gap, node-count, time and root-only termination
"""

from __future__ import annotations

import heapq
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Type

import autograd.numpy as np

from ..constants import (
    DEFAULT_ALTMIN_MAXITER,
    DEFAULT_ALTMIN_TOL,
    DEFAULT_GAP,
    DEFAULT_MAX_NODES,
    DEFAULT_MAX_TIME,
    DEFAULT_UPDATE_STEP,
    BranchingRegion,
    MSEKind,
    PolyhedralMode,
    Relaxation,
)
from .altmin import alternating_minimization
from .base import (
    RelaxationOracle,
    RelaxationStatus,
    SolverStatus,
    UnexpectedStatusError,
)
from .bnb.branching import select_branching_coordinate
from .bnb.feasibility import master_problem_feasible
from .bnb.ledger import BoundLedger
from .bnb.node import (
    NO_PARENT,
    ROOT_ID,
    BBNode,
    BBStats,
    BranchingType,
    Incumbent,
    NodeSelection,
    RunLogRow,
)
from .bnb.regions import RegionStrategy, get_region_strategy
from .cvxpy_backend import CvxpyRelaxationOracle

if TYPE_CHECKING:
    from ..problem import MatrixCompletionProblem

logger = logging.getLogger(__name__)

TABLE_RULE = "-" * 83
TABLE_HEADER = "|   Explored |      Total |      Lower |      Upper |        Gap |    Runtime (s) |"


class TerminationReason(StrEnum):
    GAP = "gap"
    EXHAUSTED = "exhausted"
    NODE_LIMIT = "node_limit"
    TIME_LIMIT = "time_limit"
    ROOT_ONLY = "root_only"


def compute_gap(upper: float, lower: float) -> float:
    """Relative gap upper / lower - 1, or the absolute gap when lower <= 0."""
    if lower == float("-inf"):
        return float("inf")
    if lower > 0:
        gap = upper / lower - 1
    else:
        gap = upper - lower
    return max(gap, 0.0)


def _parse_choice(enum_cls: Type[StrEnum], value, option: str):
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(f'"{member.value}"' for member in enum_cls)
        raise ValueError(
            f"Invalid value for {option}: {value!r}. Must be one of {choices}."
        ) from None


@dataclass
class SearchOptions:
    relaxation: Relaxation = Relaxation.SDP
    branching_region: BranchingRegion = BranchingRegion.BOX
    polyhedral_mode: PolyhedralMode = PolyhedralMode.FULL
    branching: BranchingType = BranchingType.LEXICOGRAPHIC
    node_selection: NodeSelection = NodeSelection.BREADTH_FIRST
    gap: float = DEFAULT_GAP
    root_only: bool = False
    max_nodes: int = DEFAULT_MAX_NODES
    max_time: float = DEFAULT_MAX_TIME
    update_step: int = DEFAULT_UPDATE_STEP
    orthogonality_tolerance: float = 0.0
    projection_tolerance: float = 0.0
    lifted_variable_tolerance: float = 0.0
    relaxation_orthogonality_tolerance: float = 0.0
    verbose: bool = False
    solver: Optional[str] = None
    solver_log_level: int = logging.WARNING
    altmin_tol: float = DEFAULT_ALTMIN_TOL
    altmin_maxiter: int = DEFAULT_ALTMIN_MAXITER
    solver_options: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, solver_options: Dict[str, object]) -> "SearchOptions":
        """Pop the search options; whatever remains is passed to the conic solver."""
        options = dict(solver_options)
        parsed = cls(
            relaxation=_parse_choice(Relaxation, options.pop("relaxation", "SDP"), "relaxation"),
            branching_region=_parse_choice(
                BranchingRegion, options.pop("bb_branching_region", "box"), "bb_branching_region"
            ),
            polyhedral_mode=_parse_choice(
                PolyhedralMode, options.pop("bb_polyhedral_mode", "full"), "bb_polyhedral_mode"
            ),
            branching=_parse_choice(
                BranchingType, options.pop("bb_branching", "lexicographic"), "bb_branching"
            ),
            node_selection=_parse_choice(
                NodeSelection, options.pop("bb_node_selection", "breadthfirst"), "bb_node_selection"
            ),
            gap=float(options.pop("bb_gap", DEFAULT_GAP)),
            root_only=bool(options.pop("bb_root_only", False)),
            max_nodes=int(options.pop("bb_max_nodes", DEFAULT_MAX_NODES)),
            max_time=float(options.pop("bb_max_time", DEFAULT_MAX_TIME)),
            update_step=int(options.pop("bb_update_step", DEFAULT_UPDATE_STEP)),
            orthogonality_tolerance=float(options.pop("bb_orthogonality_tolerance", 0.0)),
            projection_tolerance=float(options.pop("bb_projection_tolerance", 0.0)),
            lifted_variable_tolerance=float(options.pop("bb_lifted_variable_tolerance", 0.0)),
            relaxation_orthogonality_tolerance=float(
                options.pop("bb_relaxation_orthogonality_tolerance", 0.0)
            ),
            verbose=bool(options.pop("bb_verbose", False)),
            solver=options.pop("solver", None),
            solver_log_level=int(options.pop("solver_log_level", logging.WARNING)),
            altmin_tol=float(options.pop("altmin_tol", DEFAULT_ALTMIN_TOL)),
            altmin_maxiter=int(options.pop("altmin_maxiter", DEFAULT_ALTMIN_MAXITER)),
        )
        parsed.solver_options = options

        if parsed.gap < 0:
            raise ValueError(f"bb_gap must be non-negative, got {parsed.gap}")
        if parsed.max_nodes < 1:
            raise ValueError(f"bb_max_nodes must be positive, got {parsed.max_nodes}")
        if parsed.max_time <= 0:
            raise ValueError(f"bb_max_time must be positive, got {parsed.max_time}")
        if parsed.update_step < 1:
            raise ValueError(f"bb_update_step must be positive, got {parsed.update_step}")
        for name in (
            "orthogonality_tolerance",
            "projection_tolerance",
            "lifted_variable_tolerance",
            "relaxation_orthogonality_tolerance",
        ):
            if getattr(parsed, name) < 0:
                raise ValueError(f"bb_{name} must be non-negative, got {getattr(parsed, name)}")
        return parsed


@dataclass
class BnBResult:
    """Outcome of a branch-and-bound run."""

    status: SolverStatus
    termination: TerminationReason
    solution: Incumbent
    initial: Incumbent
    stats: BBStats
    run_log: List[RunLogRow]
    params: Dict[str, object]
    time_taken: float

    @property
    def objective(self) -> float:
        return self.solution.objective

    @property
    def lower_bound(self) -> float:
        return self.stats.best_bound

    @property
    def gap(self) -> float:
        return self.stats.gap


@dataclass
class SearchContext:
    """Mutable state of one search, owned by the driver."""

    problem: "MatrixCompletionProblem"
    options: SearchOptions
    strategy: RegionStrategy
    oracle: RelaxationOracle
    incumbent: Incumbent
    start_time: float
    stats: BBStats = field(default_factory=BBStats)
    ledger: BoundLedger = field(default_factory=BoundLedger)
    queue: List[BBNode] = field(default_factory=list)
    run_log: List[RunLogRow] = field(default_factory=list)
    last_logged_total: int = 1

    @property
    def upper(self) -> float:
        return self.incumbent.objective

    @property
    def elapsed(self) -> float:
        return time.time() - self.start_time


class BranchAndBoundSolver:
    """
    Spatial branch-and-bound solver for orthonormal-factor matrix completion.

    Args:
        oracle: Relaxation oracle; by default a CvxpyRelaxationOracle is
            built from the relaxation and solver options of each solve
        warm_start: Callable with the signature of `alternating_minimization`
    """

    def __init__(
        self,
        oracle: Optional[RelaxationOracle] = None,
        warm_start: Optional[Callable] = None,
    ):
        self.oracle = oracle
        self.warm_start = warm_start or alternating_minimization

    def solve(
        self,
        problem: "MatrixCompletionProblem",
        solver_options: Dict[str, object],
    ) -> BnBResult:
        """
        Solve a matrix completion problem to global optimality.

        Args:
            problem: The completion problem
            solver_options: Options including B&B and conic solver options:

                - relaxation: "SDP" or "SOCP" (default: "SDP")
                - bb_branching_region: "box", "angular", "polyhedral" or "hybrid" (default: "box")
                - bb_polyhedral_mode: "full" or "lite" (default: "full")
                - bb_branching: "lexicographic" or "gradient" (default: "lexicographic")
                - bb_node_selection: "breadthfirst" or "bestfirst" (default: "breadthfirst")
                - bb_gap: Optimality gap tolerance (default: 1e-6)
                - bb_root_only: Stop after the root node (default: False)
                - bb_max_nodes: Maximum nodes generated (default: 1000000)
                - bb_max_time: Maximum time in seconds (default: 3600)
                - bb_update_step: Log a progress line every this many generated nodes (default: 1000)
                - bb_orthogonality_tolerance: Entrywise slack on U^T U = I when certifying a
                  relaxation solution (default: 0.0)
                - bb_projection_tolerance: Slack on Y - U U^T being PSD (default: 0.0)
                - bb_lifted_variable_tolerance: Slack on [[Y, X], [X^T, Theta]] being PSD (default: 0.0)
                - bb_relaxation_orthogonality_tolerance: Slack on the orthogonality constraints
                  of the relaxations (default: 0.0)
                - bb_verbose: Log progress at INFO instead of DEBUG (default: False)
                - solver: cvxpy solver name (default: chosen by cvxpy)
                - solver_log_level: Logging level driving solver output (default: WARNING)
                - altmin_tol: Warm start convergence tolerance (default: 1e-10)
                - altmin_maxiter: Warm start iteration limit (default: 10000)

                Remaining options are passed directly to the conic solver.

        Returns:
            BnBResult with the best incumbent and the run statistics
        """
        start_time = time.time()
        options = SearchOptions.from_dict(solver_options)
        strategy = get_region_strategy(options.branching_region, options.polyhedral_mode)
        oracle = self.oracle or CvxpyRelaxationOracle(
            options.relaxation,
            solver=options.solver,
            solver_options=options.solver_options,
            log_level=options.solver_log_level,
            orthogonality_tolerance=options.relaxation_orthogonality_tolerance,
        )

        stats = BBStats()
        initial = self._warm_start(problem, options, stats)
        ctx = SearchContext(
            problem=problem,
            options=options,
            strategy=strategy,
            oracle=oracle,
            incumbent=initial.copy(),
            start_time=start_time,
            stats=stats,
        )
        stats.gap = compute_gap(ctx.upper, stats.best_bound)

        root = BBNode(
            priority=self._priority(options.node_selection, float("-inf")),
            node_id=ROOT_ID,
            parent_id=NO_PARENT,
            depth=0,
            region=strategy.root_region(problem.n, problem.k),
        )
        heapq.heappush(ctx.queue, root)

        self._log_header(ctx)

        while True:
            termination = self._check_termination(ctx)
            if termination is not None:
                break

            node = heapq.heappop(ctx.queue)
            try:
                branched = self._process_node(ctx, node)
            except UnexpectedStatusError as e:
                context = dict(e.context)
                context.update(
                    n=problem.n,
                    m=problem.m,
                    k=problem.k,
                    relaxation=options.relaxation.value,
                    branching_region=options.branching_region.value,
                    node_id=node.node_id,
                )
                raise UnexpectedStatusError(e.status, context) from e
            ctx.ledger.retire(node.node_id, node.parent_id, branched)

            lower_improved = self._update_lower_bound(ctx)
            if (
                not ctx.ledger
                or lower_improved
                or node.node_id == ROOT_ID
                or stats.nodes_total // options.update_step > ctx.last_logged_total // options.update_step
                or stats.gap <= options.gap
                or stats.nodes_total >= options.max_nodes
                or ctx.elapsed > options.max_time
            ) and not self._last_row_current(ctx):
                self._add_update(ctx)

        if not self._last_row_current(ctx):
            self._add_update(ctx)
        time_taken = time.time() - start_time

        if termination in (TerminationReason.GAP, TerminationReason.EXHAUSTED):
            status = SolverStatus.OPTIMAL
        else:
            status = SolverStatus.SUBOPTIMAL

        self._log_summary(ctx, termination, time_taken)

        return BnBResult(
            status=status,
            termination=termination,
            solution=ctx.incumbent,
            initial=initial,
            stats=stats,
            run_log=ctx.run_log,
            params=self._params(problem, options),
            time_taken=time_taken,
        )

    def _warm_start(
        self,
        problem: "MatrixCompletionProblem",
        options: SearchOptions,
        stats: BBStats,
    ) -> Incumbent:
        """Initial incumbent: warm-start factors re-orthonormalized by an SVD of their product."""
        result = self.warm_start(
            problem.A,
            problem.k,
            problem.indices,
            problem.gamma,
            problem.lam,
            tol=options.altmin_tol,
            max_iters=options.altmin_maxiter,
        )
        stats.solve_time_altmin += result.solve_time

        X = np.dot(result.U, result.V)
        left, _, _ = np.linalg.svd(X)
        U = left[:, : problem.k]
        Y = np.dot(U, U.T)
        return Incumbent(
            objective=problem.objective(X, U),
            U=U,
            X=X,
            Y=Y,
            mse_in=problem.mse(X, MSEKind.IN),
            mse_out=problem.mse(X, MSEKind.OUT),
        )

    @staticmethod
    def _priority(node_selection: NodeSelection, lower_bound: float) -> float:
        if node_selection == NodeSelection.BEST_FIRST:
            return lower_bound
        return 0.0

    def _check_termination(self, ctx: SearchContext) -> Optional[TerminationReason]:
        options, stats = ctx.options, ctx.stats
        if not ctx.queue:
            return TerminationReason.EXHAUSTED
        if stats.gap <= options.gap:
            return TerminationReason.GAP
        if stats.nodes_total >= options.max_nodes:
            return TerminationReason.NODE_LIMIT
        if ctx.elapsed > options.max_time:
            return TerminationReason.TIME_LIMIT
        if options.root_only and stats.nodes_explored >= 1:
            return TerminationReason.ROOT_ONLY
        return None

    def _process_node(self, ctx: SearchContext, node: BBNode) -> bool:
        """
        Evaluate one node.

        Returns:
            True if the node was split into two children, False if it was
            pruned (dominated, infeasible, not improving or master-feasible)
        """
        problem, stats = ctx.problem, ctx.stats
        stats.nodes_explored += 1

        # Prune by inherited bound before any solver call
        if node.lower_bound > ctx.upper:
            stats.nodes_dominated += 1
            return False

        bounds = ctx.strategy.materialize(node.region, stats)

        feasibility = ctx.oracle.check_feasibility(bounds)
        stats.feasibility_solves += 1
        stats.solve_time_relaxation_feasibility += feasibility.time_taken
        if feasibility.status == RelaxationStatus.UNEXPECTED:
            raise UnexpectedStatusError(feasibility.solver_status, {"stage": "feasibility"})
        if not feasibility.feasible:
            stats.nodes_relax_infeasible += 1
            return False

        relaxation = ctx.oracle.solve_relaxation(bounds, problem)
        stats.relaxation_solves += 1
        stats.solve_time_relaxation += relaxation.solve_time
        if relaxation.status == RelaxationStatus.UNEXPECTED:
            raise UnexpectedStatusError(relaxation.solver_status, {"stage": "relaxation"})
        if not relaxation.feasible:
            logger.debug(f"Node {node.node_id} passed the feasibility check but its relaxation is infeasible")
            stats.nodes_relax_infeasible += 1
            return False

        stats.nodes_relax_feasible += 1
        objective = relaxation.objective
        ctx.ledger.record(node.node_id, objective)

        # Prune by relaxation objective
        if objective >= ctx.upper:
            stats.nodes_relax_feasible_pruned += 1
            return False

        if master_problem_feasible(
            relaxation.Y,
            relaxation.U,
            relaxation.X,
            relaxation.Theta,
            orthogonality_tolerance=ctx.options.orthogonality_tolerance,
            projection_tolerance=ctx.options.projection_tolerance,
            lifted_variable_tolerance=ctx.options.lifted_variable_tolerance,
        ):
            stats.nodes_master_feasible += 1
            if objective < ctx.upper:
                stats.nodes_master_feasible_improvement += 1
                ctx.incumbent = Incumbent(
                    objective=objective,
                    U=relaxation.U.copy(),
                    X=relaxation.X.copy(),
                    Y=relaxation.Y.copy(),
                    mse_in=problem.mse(relaxation.X, MSEKind.IN),
                    mse_out=problem.mse(relaxation.X, MSEKind.OUT),
                )
                stats.gap = compute_gap(ctx.upper, stats.best_bound)
                self._add_update(ctx)
            return False

        stats.nodes_relax_feasible_split += 1
        self._branch(ctx, node, relaxation, objective)
        return True

    def _branch(self, ctx: SearchContext, node: BBNode, relaxation, objective: float) -> None:
        region = node.region
        widths = region.widths()
        if ctx.options.branching == BranchingType.GRADIENT:
            point, to_factor = ctx.strategy.gradient_point(region, relaxation)
            index = select_branching_coordinate(
                ctx.options.branching, widths, point, to_factor, relaxation.X, ctx.problem
            )
        else:
            index = select_branching_coordinate(ctx.options.branching, widths)

        left, right = ctx.strategy.branch(region, index)
        stats = ctx.stats
        child_ids = (stats.nodes_total + 1, stats.nodes_total + 2)
        stats.nodes_total += 2

        priority = self._priority(ctx.options.node_selection, objective)
        for child_id, child_region in zip(child_ids, (left, right)):
            heapq.heappush(
                ctx.queue,
                BBNode(
                    priority=priority,
                    node_id=child_id,
                    parent_id=node.node_id,
                    depth=node.depth + 1,
                    region=child_region,
                    lower_bound=objective,
                ),
            )
        ctx.ledger.register_children(node.node_id, child_ids)
        logger.debug(f"Node {node.node_id} split on {index} into nodes {child_ids}")

    def _update_lower_bound(self, ctx: SearchContext) -> bool:
        """Raise the global lower bound to the minimum live bound; returns whether it increased."""
        stats = ctx.stats
        live = ctx.ledger.lower_bound()
        if live is None:
            # Nothing open is bounded: either the root is still queued or the tree is exhausted
            candidate = float("-inf") if ctx.queue else ctx.upper
        else:
            candidate = live

        improved = candidate > stats.best_bound
        if improved:
            stats.best_bound = candidate
        stats.gap = compute_gap(ctx.upper, stats.best_bound)
        return improved

    def _log_level(self, ctx: SearchContext) -> int:
        return logging.INFO if ctx.options.verbose else logging.DEBUG

    def _add_update(self, ctx: SearchContext) -> None:
        stats = ctx.stats
        row = RunLogRow(
            explored=stats.nodes_explored,
            total=stats.nodes_total,
            lower=stats.best_bound,
            upper=ctx.upper,
            gap=stats.gap,
            runtime=ctx.elapsed,
        )
        ctx.run_log.append(row)
        ctx.last_logged_total = stats.nodes_total
        logger.log(
            self._log_level(ctx),
            f"| {row.explored:10d} | {row.total:10d} | {row.lower:10f} | {row.upper:10f} "
            f"| {row.gap:10f} | {row.runtime:10.3f}  s  |",
        )

    @staticmethod
    def _last_row_current(ctx: SearchContext) -> bool:
        """Whether the last run-log row already shows the current counters and bounds."""
        if not ctx.run_log:
            return False
        row, stats = ctx.run_log[-1], ctx.stats
        return (
            row.explored == stats.nodes_explored
            and row.total == stats.nodes_total
            and row.lower == stats.best_bound
            and row.upper == ctx.upper
        )

    def _log_header(self, ctx: SearchContext) -> None:
        problem, options = ctx.problem, ctx.options
        level = self._log_level(ctx)
        if not logger.isEnabledFor(level):
            return
        lines = [
            "Starting branch-and-bound on a matrix completion problem.",
            f"k:                 {problem.k:10d}",
            f"m:                 {problem.m:10d}",
            f"n:                 {problem.n:10d}",
            f"num_indices:       {problem.num_indices:10d}",
            f"gamma:             {problem.gamma:10g}",
            f"lambda:            {problem.lam:10g}",
            f"Relaxation:        {options.relaxation.value:>10s}",
            f"Branching region:  {options.branching_region.value:>10s}",
            f"Branching type:    {options.branching.value:>10s}",
            f"Node selection:    {options.node_selection.value:>10s}",
            f"Optimality gap:    {options.gap:10g}",
            f"Maximum nodes:     {options.max_nodes:10d}",
            f"Time limit (s):    {options.max_time:10g}",
            f"Warm start:        {ctx.upper:10f}",
            TABLE_RULE,
            TABLE_HEADER,
            TABLE_RULE,
        ]
        for line in lines:
            logger.log(level, line)

    def _log_summary(self, ctx: SearchContext, termination: TerminationReason, time_taken: float) -> None:
        level = self._log_level(ctx)
        if not logger.isEnabledFor(level):
            return
        logger.log(level, TABLE_RULE)
        logger.log(level, f"Terminated: {termination.value}")
        logger.log(level, f"{'time_taken':>33s}: {time_taken:10.3f}")
        for key, value in asdict(ctx.stats).items():
            if key.startswith("nodes") or key.endswith("solves"):
                logger.log(level, f"{key:>33s}: {value:10d}")
            elif key.startswith("solve_time"):
                logger.log(level, f"{key:>33s}: {value:10.3f}")
            else:
                logger.log(level, f"{key:>33s}: {value}")
        logger.log(level, f"Best incumbent objective: {ctx.upper}")
        logger.log(level, f"MSE of sampled entries: {ctx.incumbent.mse_in}")
        logger.log(level, f"MSE of unsampled entries: {ctx.incumbent.mse_out}")

    @staticmethod
    def _params(problem: "MatrixCompletionProblem", options: SearchOptions) -> Dict[str, object]:
        return {
            "k": problem.k,
            "m": problem.m,
            "n": problem.n,
            "num_indices": problem.num_indices,
            "gamma": problem.gamma,
            "lam": problem.lam,
            "relaxation": options.relaxation.value,
            "branching_region": options.branching_region.value,
            "polyhedral_mode": options.polyhedral_mode.value,
            "branching_type": options.branching.value,
            "node_selection": options.node_selection.value,
            "optimality_gap": options.gap,
            "max_nodes": options.max_nodes,
            "time_limit": options.max_time,
            "root_only": options.root_only,
            "orthogonality_tolerance": options.orthogonality_tolerance,
            "projection_tolerance": options.projection_tolerance,
            "lifted_variable_tolerance": options.lifted_variable_tolerance,
        }
