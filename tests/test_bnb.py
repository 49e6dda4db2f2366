"""Tests for the branch-and-bound search driver."""
import heapq

import autograd.numpy as np
import pytest

import orthobnb as obb
from orthobnb.solvers import (
    FeasibilityResult,
    RelaxationResult,
    RelaxationStatus,
    UnexpectedStatusError,
)
from orthobnb.solvers import bnb_backend
from orthobnb.solvers.bnb import BBNode
from orthobnb.solvers.bnb_backend import SearchOptions, TerminationReason, compute_gap

from conftest import InfeasibleOracle, ShrinkingBoundOracle, exact_relaxation, zero_warm_start


def _warm_objective(problem):
    return problem.objective(np.zeros(problem.shape), np.eye(problem.n)[:, : problem.k])


def _check_counters(stats):
    assert (
        stats.nodes_dominated + stats.nodes_relax_infeasible + stats.nodes_relax_feasible
        == stats.nodes_explored
    )
    assert (
        stats.nodes_relax_feasible_pruned
        + stats.nodes_master_feasible
        + stats.nodes_relax_feasible_split
        == stats.nodes_relax_feasible
    )
    assert stats.nodes_master_feasible_improvement <= stats.nodes_master_feasible


def _check_monotone(run_log):
    for previous, current in zip(run_log, run_log[1:]):
        assert current.lower >= previous.lower
        assert current.upper <= previous.upper


@pytest.mark.parametrize("region", ["box", "angular", "polyhedral", "hybrid"])
def test_bnb_counter_identities(small_problem, region):
    """Node counters add up for every region kind."""
    oracle = ShrinkingBoundOracle(_warm_objective(small_problem))
    result = small_problem.solve(
        {"bb_branching_region": region, "bb_max_nodes": 15},
        oracle=oracle,
        warm_start=zero_warm_start,
    )

    stats = result.stats
    _check_counters(stats)
    assert result.termination == TerminationReason.NODE_LIMIT
    assert result.status == obb.SolverStatus.SUBOPTIMAL
    assert stats.nodes_total == 15
    assert stats.nodes_explored == 7
    assert stats.nodes_relax_feasible_split == 7
    assert oracle.relaxation_calls == stats.relaxation_solves == 7
    assert oracle.feasibility_calls == stats.feasibility_solves == 7
    _check_monotone(result.run_log)


def test_bnb_polyhedral_bounds_reach_oracle(small_problem):
    oracle = ShrinkingBoundOracle(_warm_objective(small_problem))
    small_problem.solve(
        {"bb_branching_region": "polyhedral", "bb_polyhedral_mode": "lite", "bb_max_nodes": 5},
        oracle=oracle,
        warm_start=zero_warm_start,
    )
    # The root spans the full angular range, so lite mode cannot restrict it
    assert oracle.seen_bounds[0].polyhedra == [None]
    assert all(bounds.polyhedra is not None for bounds in oracle.seen_bounds)


def test_bnb_gradient_best_first_monotone(problem):
    """Gradient branching with best-first selection keeps the bounds monotone."""
    oracle = ShrinkingBoundOracle(_warm_objective(problem), scale=1e-2)
    result = problem.solve(
        {
            "bb_branching_region": "angular",
            "bb_branching": "gradient",
            "bb_node_selection": "bestfirst",
            "bb_max_nodes": 21,
            "bb_update_step": 2,
        },
        oracle=oracle,
        warm_start=zero_warm_start,
    )
    _check_counters(result.stats)
    _check_monotone(result.run_log)
    assert len(result.run_log) >= 3
    assert result.params["branching_type"] == "gradient"


def test_bnb_breadth_first_order(problem):
    """Children are visited in creation order, left half first."""
    oracle = ShrinkingBoundOracle(_warm_objective(problem))
    problem.solve({"bb_max_nodes": 7}, oracle=oracle, warm_start=zero_warm_start)

    # The root box is widest at (0, 0), which is split at 0
    assert oracle.seen_bounds[1].u_upper[0, 0] == 0.0
    assert oracle.seen_bounds[2].u_lower[0, 0] == 0.0


def test_bnb_infeasible_root_skips_relaxation(problem):
    """An infeasible region is pruned by the feasibility check alone."""
    oracle = InfeasibleOracle()
    result = problem.solve(oracle=oracle, warm_start=zero_warm_start)

    assert oracle.feasibility_calls == 1
    assert result.stats.nodes_relax_infeasible == 1
    assert result.stats.relaxation_solves == 0
    assert result.termination == TerminationReason.EXHAUSTED
    assert result.status == obb.SolverStatus.OPTIMAL
    assert result.gap == 0.0
    assert result.lower_bound == result.objective == result.initial.objective
    _check_counters(result.stats)


def test_bnb_master_feasible_root(problem):
    """An exactly feasible root relaxation closes the search."""
    oracle = ShrinkingBoundOracle(_warm_objective(problem), exact_on_call=1, exact_objective=0.5)
    result = problem.solve(oracle=oracle, warm_start=zero_warm_start)

    stats = result.stats
    assert stats.nodes_master_feasible == 1
    assert stats.nodes_master_feasible_improvement == 1
    assert result.objective == 0.5
    assert result.initial.objective > 0.5
    assert result.termination == TerminationReason.EXHAUSTED
    assert result.gap == 0.0
    assert result.run_log[-1].lower == result.run_log[-1].upper == 0.5
    assert np.allclose(result.solution.U, np.eye(4)[:, :2])
    _check_counters(stats)
    _check_monotone(result.run_log)


def test_bnb_gap_closed_by_improvement(problem):
    """A master-feasible child below every open bound terminates on the gap."""
    oracle = ShrinkingBoundOracle(_warm_objective(problem), exact_on_call=2, exact_objective=0.1)
    result = problem.solve(oracle=oracle, warm_start=zero_warm_start)

    assert result.termination == TerminationReason.GAP
    assert result.status == obb.SolverStatus.OPTIMAL
    assert result.stats.nodes_explored == 2
    assert result.objective == 0.1
    _check_counters(result.stats)


def test_bnb_root_only(problem):
    oracle = ShrinkingBoundOracle(_warm_objective(problem))
    result = problem.solve({"bb_root_only": True}, oracle=oracle, warm_start=zero_warm_start)

    assert result.termination == TerminationReason.ROOT_ONLY
    assert result.stats.nodes_explored == 1
    assert result.stats.nodes_total == 3
    assert result.lower_bound == oracle.target - oracle.scale * np.sum(
        oracle.seen_bounds[0].u_upper - oracle.seen_bounds[0].u_lower
    )


def test_bnb_time_limit(problem):
    oracle = ShrinkingBoundOracle(_warm_objective(problem))
    result = problem.solve({"bb_max_time": 1e-9}, oracle=oracle, warm_start=zero_warm_start)

    assert result.termination == TerminationReason.TIME_LIMIT
    assert result.status == obb.SolverStatus.SUBOPTIMAL
    assert result.stats.nodes_explored == 0
    assert result.objective == result.initial.objective


@pytest.mark.parametrize("options", [{"bb_max_nodes": 7}, {"bb_root_only": True}, {"bb_max_time": 1e-9}])
def test_bnb_run_log_ends_without_repeat(problem, options):
    """The closing row is only added when the last logged row is stale."""
    oracle = ShrinkingBoundOracle(_warm_objective(problem))
    result = problem.solve(options, oracle=oracle, warm_start=zero_warm_start)

    assert result.run_log
    last = result.run_log[-1]
    assert (last.explored, last.total) == (result.stats.nodes_explored, result.stats.nodes_total)
    assert last.lower == result.lower_bound
    for previous, current in zip(result.run_log, result.run_log[1:]):
        assert (previous.explored, previous.total, previous.lower, previous.upper) != (
            current.explored,
            current.total,
            current.lower,
            current.upper,
        )


class NearlyOrthonormalOracle:
    """Root relaxation whose factor misses orthonormality by a relative 1e-7."""

    def check_feasibility(self, bounds):
        return FeasibilityResult(True, RelaxationStatus.SOLVED, "optimal")

    def solve_relaxation(self, bounds, problem):
        relaxation = exact_relaxation(problem, 0.5)
        relaxation.U = relaxation.U * (1 - 1e-7)
        relaxation.Y = np.dot(relaxation.U, relaxation.U.T)
        return relaxation


@pytest.mark.parametrize("tolerance, certified", [(0.0, 0), (1e-6, 1)])
def test_bnb_orthogonality_tolerance_reaches_certification(problem, tolerance, certified):
    result = problem.solve(
        {"bb_orthogonality_tolerance": tolerance, "bb_max_nodes": 3},
        oracle=NearlyOrthonormalOracle(),
        warm_start=zero_warm_start,
    )
    assert result.stats.nodes_master_feasible == certified
    assert (result.objective == 0.5) == bool(certified)
    assert result.params["orthogonality_tolerance"] == tolerance


def test_bnb_relaxation_tolerance_reaches_default_oracle(problem, monkeypatch):
    built = {}

    def fake_oracle(relaxation, **kwargs):
        built.update(kwargs, relaxation=relaxation)
        return InfeasibleOracle()

    monkeypatch.setattr(bnb_backend, "CvxpyRelaxationOracle", fake_oracle)
    problem.solve(
        {"bb_relaxation_orthogonality_tolerance": 1e-5, "relaxation": "SOCP", "max_iters": 50},
        warm_start=zero_warm_start,
    )
    assert built["orthogonality_tolerance"] == 1e-5
    assert built["relaxation"] == "SOCP"
    assert built["solver_options"] == {"max_iters": 50}


def _refusing_warm_start(*args, **kwargs):
    raise AssertionError("warm start ran before option validation")


@pytest.mark.parametrize(
    "options, option_name",
    [
        ({"relaxation": "LP"}, "relaxation"),
        ({"bb_branching_region": "sphere"}, "bb_branching_region"),
        ({"bb_polyhedral_mode": "medium"}, "bb_polyhedral_mode"),
        ({"bb_branching": "random"}, "bb_branching"),
        ({"bb_node_selection": "depthfirst"}, "bb_node_selection"),
        ({"bb_max_nodes": 0}, "bb_max_nodes"),
        ({"bb_projection_tolerance": -1e-6}, "bb_projection_tolerance"),
        ({"bb_relaxation_orthogonality_tolerance": -1.0}, "bb_relaxation_orthogonality_tolerance"),
    ],
)
def test_bnb_invalid_options(problem, options, option_name):
    """Configuration errors are raised before any work is done."""
    with pytest.raises(ValueError, match=option_name):
        problem.solve(options, oracle=InfeasibleOracle(), warm_start=_refusing_warm_start)


class UnexpectedOracle:
    def check_feasibility(self, bounds):
        return FeasibilityResult(True, RelaxationStatus.SOLVED, "optimal")

    def solve_relaxation(self, bounds, problem):
        return RelaxationResult(status=RelaxationStatus.UNEXPECTED, solver_status="user_limit")


def test_bnb_unexpected_status_is_fatal(problem):
    with pytest.raises(UnexpectedStatusError, match="user_limit") as excinfo:
        problem.solve({"relaxation": "SOCP"}, oracle=UnexpectedOracle(), warm_start=zero_warm_start)

    context = excinfo.value.context
    assert context["node_id"] == 1
    assert context["relaxation"] == "SOCP"
    assert context["branching_region"] == "box"
    assert context["stage"] == "relaxation"
    assert (context["n"], context["m"], context["k"]) == (4, 3, 2)


def test_search_options_forward_unknown_keys():
    options = SearchOptions.from_dict({"bb_gap": 1e-3, "max_iters": 500, "bb_verbose": True})
    assert options.gap == 1e-3
    assert options.verbose
    assert options.solver_options == {"max_iters": 500}


def test_compute_gap():
    assert compute_gap(2.0, float("-inf")) == float("inf")
    assert np.isclose(compute_gap(1.5, 1.0), 0.5)
    assert compute_gap(1.0, -1.0) == 2.0
    assert compute_gap(0.5, 1.0) == 0.0


def test_node_heap_order():
    """Equal priorities pop in creation order; otherwise the smallest priority wins."""
    queue = []
    for node_id, priority in [(3, 0.0), (1, 0.0), (2, 0.0)]:
        heapq.heappush(queue, BBNode(priority=priority, node_id=node_id))
    assert [heapq.heappop(queue).node_id for _ in range(3)] == [1, 2, 3]

    for node_id, priority in [(4, 2.0), (5, -1.0), (6, 0.5)]:
        heapq.heappush(queue, BBNode(priority=priority, node_id=node_id))
    assert heapq.heappop(queue).node_id == 5


def test_branchandbound_wrapper(low_rank_matrix, observed_mask):
    result = obb.branchandbound_matrix_completion(
        2,
        low_rank_matrix,
        observed_mask,
        10.0,
        0.0,
        oracle=InfeasibleOracle(),
        warm_start=zero_warm_start,
        bb_verbose=True,
    )
    assert result.params["n"] == 4
    assert result.params["num_indices"] == 9
    assert result.stats.solve_time_altmin == 0.0
