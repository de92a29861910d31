import logging
import math
from dataclasses import replace

import numpy as np
import pytest

from conftest import assert_kkt

from asqp.blocks.aux import ASConfig, Builder, Result, State
from asqp.blocks.linalg import DenseLinearAlgebra
from asqp.examples.portfolio import box_least_squares, portfolio
from asqp.solver import ActiveSetSolver


# ---------------------------
# End-to-end scenarios
# ---------------------------

def test_unconstrained(unconstrained, cfg):
    with unconstrained.build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [1.0, -2.0])
    assert res.value == pytest.approx(-5.0)
    assert res.iterations == 1
    np.testing.assert_allclose(res.x, np.linalg.solve(unconstrained.Q, unconstrained.c))


def test_single_equality(one_equality, cfg):
    with one_equality.build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [0.5, 0.5])
    assert res.value == pytest.approx(0.25)
    assert res.multipliers[0] == pytest.approx(-0.5)
    assert_kkt(one_equality, res, cfg)


def test_inequality_becomes_active(one_inequality, cfg):
    with one_inequality.build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [0.5, 0.5])
    assert res.active_set.tolist() == [0]
    assert res.multipliers[0] == pytest.approx(1.5)
    assert_kkt(one_inequality, res, cfg)


def test_infeasible(infeasible, cfg):
    with infeasible.build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.INFEASIBLE
    np.testing.assert_array_equal(res.x, [0.0, 0.0])


def test_rank_deficient_working_set_shrinks(redundant_pair, cfg, monkeypatch):
    solver = redundant_pair.build(cfg)
    calls = []
    shrink = solver.shrink

    def counting_shrink():
        calls.append(solver.get_included().tolist())
        shrink()

    monkeypatch.setattr(solver, "shrink", counting_shrink)
    res = solver.solve()
    solver.close()

    assert calls and calls[0] == [0, 1]
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [0.5, 0.5])
    assert len(res.active_set) == 1
    assert_kkt(redundant_pair, res, cfg)


def test_warm_start_after_perturbation(one_inequality, cfg):
    with one_inequality.build(cfg) as solver:
        first = solver.solve()

    perturbed = replace(one_inequality, c=one_inequality.c + np.array([1e-8, 0.0]))
    with perturbed.build(cfg) as solver:
        res = solver.solve(kick_start=first)
    assert res.state is State.OPTIMAL
    assert res.iterations <= 1
    np.testing.assert_allclose(res.x, [0.5, 0.5], atol=1e-7)


def test_bounded_quadratic_from_infeasible_origin(cfg):
    # min x1² + 4x2² − 8x1 − 16x2  s.t.  x1 + x2 ≥ 5, x1 ≥ 3, 0 ≤ x ≤ 10
    AI = np.array([[-1.0, -1.0], [-1.0, 0.0], [0.0, -1.0], [1.0, 0.0], [0.0, 1.0]])
    BI = np.array([-5.0, -3.0, 0.0, 10.0, 10.0])
    problem = Builder(np.diag([2.0, 8.0]), [8.0, 16.0]).inequalities(AI, BI)
    with problem.build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.OPTIMAL
    assert res.value == pytest.approx(-32.0)
    np.testing.assert_allclose(res.x, [4.0, 2.0], atol=1e-8)
    assert res.active_set.size == 0


def test_projection_onto_simplex(cfg):
    problem = (
        Builder(np.eye(3), [1.0, 2.0, 3.0])
        .equalities(np.ones((1, 3)), [1.0])
        .inequalities(-np.eye(3), np.zeros(3))
    )
    with problem.build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [0.0, 0.0, 1.0], atol=1e-9)
    assert res.value == pytest.approx(-2.5)
    assert sorted(res.active_set.tolist()) == [0, 1]
    assert_kkt(problem, res, cfg)


def _triangle_lp():
    # Q = 0: min −x1 − x2 over x ≥ 0, x1 + x2 ≤ 1
    AI = np.array([[1.0, 1.0], [-1.0, 0.0], [0.0, -1.0]])
    return Builder(np.zeros((2, 2)), [1.0, 1.0]).inequalities(AI, [1.0, 0.0, 0.0])


def test_linear_objective(cfg):
    with _triangle_lp().build(cfg) as solver:
        res = solver.solve()
    assert res.state is State.OPTIMAL
    assert res.value == pytest.approx(-1.0)


def test_singular_subproblem_on_empty_working_set_is_optimal(cfg):
    # every point of the face x1 + x2 = 1 is optimal; no working set pins x
    with _triangle_lp().build(cfg) as solver:
        res = solver.solve(kick_start=np.array([0.5, 0.5]))
        hist = solver.history
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [0.5, 0.5])
    assert res.value == pytest.approx(-1.0)
    assert res.active_set.size == 0
    assert hist[-1]["to_include"] == -1 and hist[-1]["to_exclude"] == -1


def test_negative_multiplier_drops_row(cfg):
    # min (x1 − 1)² + (x2 − 2.5)² over a pentagon, started at the vertex (2, 0)
    AI = np.array(
        [[-1.0, 2.0], [1.0, 2.0], [0.0, -1.0], [-1.0, 0.0], [1.0, -2.0]]
    )
    BI = np.array([2.0, 6.0, 0.0, 0.0, 2.0])
    problem = Builder(2.0 * np.eye(2), [2.0, 5.0]).inequalities(AI, BI)
    with problem.build(cfg) as solver:
        res = solver.solve(kick_start=np.array([2.0, 0.0]))
        hist = solver.history

    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [1.4, 1.7], atol=1e-9)
    assert res.value == pytest.approx(-6.45)
    assert res.active_set.tolist() == [0]
    assert res.multipliers[0] == pytest.approx(0.8)
    assert res.iterations == 3
    assert_kkt(problem, res, cfg)

    # at (2, 0) rows 2 and 4 are tight with multipliers −1 and −2; row 4 was
    # included last, so row 2 leaves first
    assert hist[0]["to_exclude"] == 2 and hist[0]["included"] == [4]
    assert hist[1]["to_exclude"] == 4 and hist[1]["included"] == []
    assert hist[2]["to_include"] == 0 and hist[2]["included"] == [0]
    assert hist[-1]["state"] == "OPTIMAL"


# ---------------------------
# Invariants along the iteration
# ---------------------------

def test_working_set_grows_one_row_at_a_time(unit_box, cfg):
    with unit_box.build(cfg) as solver:
        res = solver.solve(kick_start=np.zeros(3))
        hist = solver.history

    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, np.ones(3))
    assert res.active_set.tolist() == [0, 1, 2]
    np.testing.assert_allclose(res.multipliers, [9.0, 9.0, 9.0])
    assert res.iterations >= 3

    for info in hist:
        inc = set(info["included"])
        assert inc <= set(range(3))
        alpha = info["alpha"]
        if not math.isnan(alpha):
            assert 0.0 <= alpha <= 1.0
            if alpha < 1.0:
                assert info["to_include"] >= 0


@pytest.mark.parametrize("make", [portfolio, box_least_squares])
def test_objective_never_increases(make, cfg):
    problem = make()
    with problem.build(cfg) as solver:
        res = solver.solve()
        objectives = [info["objective"] for info in solver.history]

    assert res.state is State.OPTIMAL
    for prev, cur in zip(objectives, objectives[1:]):
        assert cur <= prev + cfg.solution_tol * max(abs(prev), 1.0)
    assert_kkt(problem, res, cfg, rtol=1e-6)


def test_partition_after_solve(unit_box, cfg):
    with unit_box.build(cfg) as solver:
        solver.solve(kick_start=np.zeros(3))
        inc, exc = solver.get_included(), solver.get_excluded()
        assert set(inc) | set(exc) == {0, 1, 2}
        assert not set(inc) & set(exc)
        assert solver.count_included() + solver.count_excluded() == 3
        assert solver.get_last_included() in inc
        assert solver.iteration_multipliers().shape == (solver.count_included(),)


def test_initialise_returns_feasible_point(one_inequality, cfg):
    with one_inequality.build(cfg) as solver:
        assert solver.initialise()
        assert solver.state is State.FEASIBLE
        assert solver.check_feasibility(False)
        assert solver.check_feasibility(True)


# ---------------------------
# Restarts and limits
# ---------------------------

def test_optimal_kick_start_needs_no_iterations(unconstrained, one_inequality, cfg):
    for problem in (unconstrained, one_inequality):
        with problem.build(cfg) as solver:
            res = solver.solve()
            again = solver.solve(kick_start=res)
        assert again.state is State.OPTIMAL
        assert again.iterations == 0
        np.testing.assert_allclose(again.x, res.x)


def test_unusable_kick_start_goes_through_phase_one(one_inequality, cfg):
    bad = Result(state=State.FAILED, x=np.array([5.0, 5.0]), value=0.0)
    with one_inequality.build(cfg) as solver:
        res = solver.solve(kick_start=bad)
        assert res.state is State.OPTIMAL
        with pytest.raises(ValueError):
            solver.solve(kick_start=np.zeros(3))


def test_infeasible_kick_start_is_repaired(one_inequality, cfg):
    with one_inequality.build(cfg) as solver:
        res = solver.solve(kick_start=np.array([3.0, 3.0]))
    assert res.state is State.OPTIMAL
    np.testing.assert_allclose(res.x, [0.5, 0.5])


def test_iteration_limit(unit_box, caplog):
    cfg = ASConfig(iteration_limit=1)
    with unit_box.build(cfg) as solver, caplog.at_level(logging.WARNING):
        res = solver.solve(kick_start=np.zeros(3))
    assert res.state is State.FAILED
    assert res.iterations == 1
    assert "iteration limit" in caplog.text


def test_time_limit(one_inequality):
    with one_inequality.build(ASConfig(time_limit=0.0)) as solver:
        res = solver.solve()
    assert res.state is State.FAILED
    assert res.iterations == 0


def test_phase_one_time_limit_is_a_failure(one_inequality, caplog):
    with one_inequality.build(ASConfig(lp_time_limit=0.0)) as solver, caplog.at_level(logging.WARNING):
        res = solver.solve()
    assert res.state is State.FAILED
    assert res.iterations == 0
    assert "no starting point" in caplog.text


class _OverflowingAlgebra(DenseLinearAlgebra):
    def solve_kkt(self, K, rhs, key=None):
        ok, sol = super().solve_kkt(K, rhs, key)
        return ok, np.full_like(sol, np.inf)


def test_non_finite_iterate_restores_previous_point(unconstrained, cfg):
    solver = ActiveSetSolver(unconstrained, cfg, la=_OverflowingAlgebra())
    with np.errstate(invalid="ignore", over="ignore"):
        res = solver.solve()
    solver.close()
    assert res.state is State.FAILED
    assert np.all(np.isfinite(res.x))


def test_repeated_solves_reset_state(one_inequality, cfg):
    with one_inequality.build(cfg) as solver:
        a = solver.solve()
        b = solver.solve()
    assert a.iterations == b.iterations
    np.testing.assert_allclose(a.x, b.x)
    assert solver.history[-1]["state"] == "OPTIMAL"
    assert solver.history[-1]["iteration"] == b.iterations


# ---------------------------
# Configuration surface
# ---------------------------

def test_mapped_storage_and_small_segments(one_inequality):
    cfg = ASConfig(allocator="mmap", segment_capacity=4, initial_capacity=1)
    solver = one_inequality.build(cfg)
    res = solver.solve()
    assert res.state is State.OPTIMAL
    solver.close()
    assert solver._x.allocator.live_bytes == 0


def test_debug_and_verbose_output(one_inequality, caplog, capsys):
    cfg = ASConfig(debug=True, verbose=True)
    with caplog.at_level(logging.DEBUG):
        with one_inequality.build(cfg) as solver:
            solver.solve()
    assert "[ActiveSet]" in caplog.text
    assert "I-included-slack" in caplog.text
    assert "OPTIMAL" in capsys.readouterr().out


def test_unknown_allocator_is_rejected(one_inequality):
    with pytest.raises(ValueError):
        one_inequality.build(ASConfig(allocator="gpu"))
