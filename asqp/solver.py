"""
Primal active-set solver for dense convex QPs

    minimise   ½ xᵀQx − cᵀx
    subject to AE x = BE,  AI x ≤ BI

Outline
-------
1. initialise : kick start (if feasible) or Phase I LP → feasible x; tight
                inequalities enter the working set.
2. iterate    : solve the equality-constrained KKT system for the working
                set, step towards its minimiser as far as the excluded rows
                allow (ratio test), then
                  - add the blocking row, or
                  - drop the row with the most negative multiplier, or
                  - stop (OPTIMAL) when neither applies.
3. recovery   : a singular KKT system drops the included row with the largest
                |multiplier| (`shrink`) and the subproblem is solved again.

Iterate and multipliers live in SegmentedVector buffers owned by the solver;
`close()` releases them.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Dict, List, Optional, Union

import numpy as np

from .aux.segmented import SegmentedVector, make_allocator
from .blocks.aux import ASConfig, Builder, Result, State, _validate_config
from .blocks.kernels import (
    k_first_equality_violation,
    k_first_inequality_violation,
    k_largest_abs_multiplier,
    k_most_negative_multiplier,
    k_ratio_test,
)
from .blocks.kkt import KKTAssembler
from .blocks.linalg import DenseLinearAlgebra, LinearAlgebra
from .blocks.selector import IndexSelector
from .phase1 import LPStatus, PhaseI


class ActiveSetSolver:
    def __init__(
        self,
        problem: Builder,
        config: Optional[ASConfig] = None,
        la: Optional[LinearAlgebra] = None,
    ):
        self.problem = problem
        self.cfg = _validate_config(config)
        self.la = la if la is not None else DenseLinearAlgebra(self.cfg.rcond, self.cfg.debug)
        self.kkt = KKTAssembler(problem, self.la)
        self.phase1 = PhaseI(problem, self.la, self.cfg)

        self.n = problem.n
        self.m_eq = problem.m_eq
        self.m_ineq = problem.m_ineq

        self.working = IndexSelector(self.m_ineq)
        self._x = self._new_vector(self.n)
        self._L = self._new_vector(self.m_eq + self.m_ineq)
        self.step_x = self.la.make_zero_vector(self.n)

        self.constraint_to_include = -1
        self.state = State.FAILED
        self.iterations = 0
        self.history: List[Dict] = []

        self._alpha = math.nan  # no ratio test yet
        self._suggested = (-1, -1)
        self._t0 = 0.0

    def _new_vector(self, size: int) -> SegmentedVector:
        cfg = self.cfg
        vec = SegmentedVector(
            cfg.segment_capacity,
            cfg.initial_capacity,
            allocator=make_allocator(cfg.allocator),
        )
        vec.extend(np.zeros(size))
        return vec

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    @property
    def x(self) -> np.ndarray:
        return self._x.to_numpy()

    @property
    def multipliers(self) -> np.ndarray:
        return self._L.to_numpy()

    def count_included(self) -> int:
        return self.working.count_included()

    def count_excluded(self) -> int:
        return self.working.count_excluded()

    def get_included(self) -> np.ndarray:
        return self.working.included()

    def get_excluded(self) -> np.ndarray:
        return self.working.excluded()

    def get_last_included(self) -> int:
        return self.working.last_included

    def get_last_excluded(self) -> int:
        return self.working.last_excluded

    def iteration_multipliers(self) -> np.ndarray:
        """Equality multipliers stacked with those of the included rows."""
        L = self._L.to_numpy()
        return np.concatenate([L[: self.m_eq], L[self.m_eq + self.working.included()]])

    def solve(self, kick_start: Union[Result, np.ndarray, None] = None) -> Result:
        cfg = self.cfg
        self._reset()
        self._t0 = time.perf_counter()

        if not self.initialise(kick_start):
            return self._result()

        while True:
            if self.iterations >= cfg.iteration_limit:
                logging.warning(f"[ActiveSet] iteration limit {cfg.iteration_limit} reached")
                self.state = State.FAILED
                break
            if cfg.time_limit is not None and time.perf_counter() - self._t0 > cfg.time_limit:
                logging.warning(f"[ActiveSet] time limit {cfg.time_limit:.3g}s reached")
                self.state = State.FAILED
                break

            x_prev = self.x
            key_before = self.working.key()

            moved = self.perform_iteration()
            if self.state == State.INFEASIBLE:
                self._record(moved, key_before)
                break

            if not (np.all(np.isfinite(self._x.to_numpy())) and np.all(np.isfinite(self._L.to_numpy()))):
                logging.warning("[ActiveSet] non-finite iterate; restoring the previous point")
                self._x.fill_matching(x_prev)
                self.state = State.FAILED
                break

            again = self.needs_another_iteration()
            self._record(moved, key_before)
            if not again:
                break

        if cfg.verbose:
            print(f"✓ {self.state.name} after {self.iterations} iterations")
        return self._result()

    def close(self) -> None:
        self._x.close()
        self._L.close()

    def __enter__(self) -> "ActiveSetSolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Initialisation
    # -------------------------------------------------------------------------
    def _reset(self) -> None:
        self.working.exclude_all()
        self._x.fill_matching(np.zeros(self.n))
        self._L.fill_matching(np.zeros(self.m_eq + self.m_ineq))
        self.step_x = self.la.make_zero_vector(self.n)
        self.constraint_to_include = -1
        self.iterations = 0
        self.history = []
        self._alpha = math.nan
        self._suggested = (-1, -1)
        self.la.invalidate()

    def initialise(self, kick_start: Union[Result, np.ndarray, None] = None) -> bool:
        """Find a feasible starting point; False means the QP is infeasible."""
        self.working.exclude_all()

        feasible = False
        x_kick = None
        if kick_start is not None:
            if isinstance(kick_start, Result):
                usable = kick_start.state.is_approximate()
                x_kick = np.asarray(kick_start.x, dtype=float).ravel()
            else:
                usable = True
                x_kick = np.asarray(kick_start, dtype=float).ravel()
            if x_kick.size != self.n:
                raise ValueError(f"kick start has size {x_kick.size}, expected {self.n}")
            if usable and np.all(np.isfinite(x_kick)):
                self._x.fill_matching(x_kick)
                feasible = self.check_feasibility(False)
            else:
                x_kick = None

        if not feasible:
            ok, x, lam = self.phase1.solve(x_kick)
            status = self.phase1.info.status
            if ok:
                self._x.fill_matching(x)
                if self.m_ineq:
                    L = self._L.to_numpy()
                    L[self.m_eq :] = lam
                    self._L.fill_matching(L)
            elif status is not LPStatus.INFEASIBLE:
                # only an infeasible LP says anything about the QP
                logging.warning(f"[ActiveSet] Phase I LP ended {status.value}; no starting point")
                self.state = State.FAILED
                self._x.fill_matching(x)
                return False
            feasible = ok

        if feasible:
            self.init_solution()
        else:
            self.state = State.INFEASIBLE
            self._x.fill_matching(np.zeros(self.n))

        if self.cfg.debug:
            self._debug_slacks("Initial")
        return self.state.is_feasible()

    def init_solution(self) -> None:
        """Activate tight inequalities, trimming to at most n active rows."""
        x = self.x
        excluded = self.working.excluded()
        if excluded.size:
            slack = self.kkt.inequality_slack(x, excluded)
            for i, s in zip(excluded, slack):
                if s <= self.cfg.slack_tol:
                    self.working.include(int(i))

        while self.m_eq + self.working.count_included() > self.n and self.working.count_included() > 0:
            self.shrink()

        self.la.invalidate()
        self.state = State.FEASIBLE

    # -------------------------------------------------------------------------
    # Iteration
    # -------------------------------------------------------------------------
    def perform_iteration(self) -> bool:
        """One subproblem solve plus step. Returns True if x moved."""
        n, mE = self.n, self.m_eq
        self.constraint_to_include = -1
        self._alpha = math.nan

        while True:
            included = self.working.included()
            K = self.kkt.iteration_kkt(included)
            rhs = self.kkt.iteration_rhs(included)
            solved, sol = self.la.solve_kkt(K, rhs, key=tuple(included.tolist()))

            step = None
            if solved:
                step = sol[:n].copy()
                L = self._L.to_numpy()
                L[:mE] = sol[n : n + mE]
                L[mE + included] = sol[n + mE :]
                self._L.fill_matching(L)
            elif self.cfg.debug:
                logging.debug(f"[ActiveSet] KKT not solved for working set {included.tolist()}")

            moved = self.handle_subsolution(solved, step, included)
            if moved is not None:
                return moved

    def handle_subsolution(self, solved: bool, step_x, included) -> Optional[bool]:
        """
        Act on the subproblem outcome.

        Returns True if x moved, False if not, and None after a shrink when the
        subproblem has to be solved again.
        """
        cfg = self.cfg
        if solved:
            x = self.x
            self.step_x = self.la.subtract(step_x, x)
            d = self.step_x
            norm_x = self.la.norm2(x)
            norm_d = self.la.norm2(d)

            if cfg.debug:
                logging.debug(f"[ActiveSet] current: {x.tolist()}")
                logging.debug(f"[ActiveSet] step: {d.tolist()}")

            if cfg.solution.is_small(norm_x, norm_d):
                if cfg.debug:
                    logging.debug("[ActiveSet] step too small")
                self.state = State.FEASIBLE
                moved = False
            else:
                alpha = 1.0
                excluded = self.working.excluded()
                if excluded.size:
                    slack = self.kkt.inequality_slack(x, excluded)
                    denom = self.la.multiply(self.la.row_slice(self.problem.AI, excluded), d)
                    if cfg.debug:
                        ratios = self.la.divide(slack, denom)
                        logging.debug(f"[ActiveSet] candidate step lengths: {ratios.tolist()}")
                    alpha, blocking = k_ratio_test(
                        np.ascontiguousarray(slack),
                        np.ascontiguousarray(denom),
                        excluded.astype(np.int64),
                        norm_d,
                        cfg.slack_tol,
                        cfg.solution_tol,
                    )
                    alpha = float(alpha)
                    self.constraint_to_include = int(blocking)

                moved = alpha > 0.0
                if moved:
                    self._x.fill_matching(self.la.axpy(alpha, d, x))
                self._alpha = alpha
                self.state = State.APPROXIMATE

        elif len(included) >= 1:
            self.shrink()
            return None

        elif self.check_feasibility(False):
            self.state = State.FEASIBLE
            moved = False
        else:
            self.state = State.INFEASIBLE
            moved = False

        if cfg.debug:
            self._debug_slacks("Post iteration")
        return moved

    def needs_another_iteration(self) -> bool:
        to_include, to_exclude = -1, -1
        if self.m_ineq:
            to_include = self.suggest_constraint_to_include()
            if to_include == -1:
                to_exclude = self.suggest_constraint_to_exclude()
        self._suggested = (to_include, to_exclude)

        if self.cfg.debug:
            logging.debug(f"[ActiveSet] {self.working!r}")
            logging.debug(f"[ActiveSet] suggested include={to_include} exclude={to_exclude}")

        if to_include == -1 and to_exclude == -1:
            self.state = State.OPTIMAL
            return False

        if to_exclude != -1:
            self._exclude(to_exclude)
        if to_include != -1:
            self._include(to_include)
        self.state = State.APPROXIMATE
        return True

    def suggest_constraint_to_include(self) -> int:
        return self.constraint_to_include

    def suggest_constraint_to_exclude(self) -> int:
        included = self.working.included()
        if included.size == 0:
            return -1
        lam = self._L.to_numpy()[self.m_eq + included]
        return int(
            k_most_negative_multiplier(
                lam, included.astype(np.int64), self.working.last_included, self.cfg.solution_tol
            )
        )

    def shrink(self) -> None:
        """Drop the included row with the largest |multiplier|."""
        included = self.working.included()
        if included.size == 0:
            return
        lam = self._L.to_numpy()[self.m_eq + included]
        row = int(k_largest_abs_multiplier(lam, included.astype(np.int64)))
        if self.cfg.debug:
            logging.debug(f"[ActiveSet] shrink: excluding {row} (|λ|={abs(lam).max():.3e})")
        self._exclude(row)

    def _include(self, i: int) -> None:
        self.working.include(i)
        self.la.invalidate()

    def _exclude(self, i: int) -> None:
        self.working.exclude(i)
        self._L[self.m_eq + i] = 0.0
        self.la.invalidate()

    # -------------------------------------------------------------------------
    # Feasibility
    # -------------------------------------------------------------------------
    def check_feasibility(self, only_excluded: bool) -> bool:
        p, eps = self.problem, self.cfg.slack_tol
        x = self.x

        if not only_excluded:
            if self.m_eq:
                body = self.la.multiply(p.AE, x)
                if k_first_equality_violation(p.BE, body, eps) >= 0:
                    return False
            included = self.working.included()
            if included.size:
                body = self.kkt.inequality_body(x, included)
                if k_first_inequality_violation(p.BI[included], body, eps) >= 0:
                    return False

        excluded = self.working.excluded()
        if excluded.size:
            body = self.kkt.inequality_body(x, excluded)
            if k_first_inequality_violation(p.BI[excluded], body, eps) >= 0:
                return False
        return True

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------
    def _record(self, moved: bool, key_before: tuple) -> None:
        changed = self.working.key() != key_before
        if moved or changed:
            self.iterations += 1
        info = {
            "iteration": self.iterations,
            "objective": self.problem.objective(self.x),
            "alpha": self._alpha,
            "step_norm": self.la.norm2(self.step_x),
            "moved": bool(moved),
            "included": self.working.included().tolist(),
            "to_include": self._suggested[0],
            "to_exclude": self._suggested[1],
            "state": self.state.name,
        }
        self.history.append(info)
        if self.cfg.verbose:
            self._print_iteration(len(self.history) - 1, info)

    def _result(self) -> Result:
        x = self.x
        L = self._L.to_numpy()
        mask = np.ones(L.size, dtype=bool)
        mask[self.m_eq + self.working.excluded()] = False
        return Result(
            state=self.state,
            x=x,
            value=self.problem.objective(x),
            iterations=self.iterations,
            active_set=self.working.included(),
            multipliers=np.where(mask, L, 0.0),
        )

    def _debug_slacks(self, label: str) -> None:
        x = self.x
        logging.debug(f"[ActiveSet] {label} solution: {x.tolist()}")
        if self.m_eq:
            logging.debug(f"[ActiveSet] {label} E-slack: {self.kkt.equality_slack(x).tolist()}")
        if self.m_ineq:
            inc, exc = self.working.included(), self.working.excluded()
            if inc.size:
                logging.debug(
                    f"[ActiveSet] {label} I-included-slack: {self.kkt.inequality_slack(x, inc).tolist()}"
                )
            if exc.size:
                logging.debug(
                    f"[ActiveSet] {label} I-excluded-slack: {self.kkt.inequality_slack(x, exc).tolist()}"
                )

    def _print_iteration(self, k: int, info: Dict) -> None:
        if k == 0 or k % 20 == 0:
            print(
                f"{'k':>3}  {'it':>3} {'f':>13} {'α':>8} {'step':>10} "
                f"{'|W|':>4} {'+':>4} {'-':>4}  state"
            )
        alpha = info["alpha"]
        print(
            f"{k:>3}  {info['iteration']:>3} {info['objective']:>13.6e} "
            f"{(f'{alpha:.2e}' if math.isfinite(alpha) else 'nan'):>8} "
            f"{info['step_norm']:>10.2e} {len(info['included']):>4} "
            f"{info['to_include']:>4} {info['to_exclude']:>4}  {info['state']}"
        )
