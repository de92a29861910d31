"""
phase1.py

Initial feasible point for the active-set iteration.

The QP feasible set {x : AE x = BE, AI x ≤ BI} is rewritten with free
variables split as x = x⁺ − x⁻ and one slack s per inequality:

    minimise   gᵀx⁺ − gᵀx⁻
    subject to [AE  −AE  0] z = BE
               [AI  −AI  I] z = BI
               z = (x⁺, x⁻, s) ≥ 0

with g the QP gradient at the starting point, so the LP vertex leans
towards the QP descent direction. Rows with a negative right-hand side are
negated so the LP sees b ≥ 0. The LP is solved with HiGHS through
scipy.optimize.linprog.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy.optimize import linprog

from .blocks.aux import ASConfig, Builder
from .blocks.linalg import LinearAlgebra


# ======================================
# LP facade
# ======================================
class LPStatus(str, Enum):
    OPTIMAL = "optimal"
    INFEASIBLE = "infeasible"
    UNBOUNDED = "unbounded"
    FAILED = "failed"

    def is_feasible(self) -> bool:
        return self is LPStatus.OPTIMAL


# scipy.optimize.linprog status codes
_STATUS = {0: LPStatus.OPTIMAL, 2: LPStatus.INFEASIBLE, 3: LPStatus.UNBOUNDED}


@dataclass
class LPResult:
    state: LPStatus
    x: np.ndarray
    reduced_costs: np.ndarray
    message: str = ""

    def value(self, i: int) -> float:
        return float(self.x[i])

    def residual_costs(self) -> np.ndarray:
        """Reduced cost per LP column (split variables first, slacks last)."""
        return self.reduced_costs


class LinearProgram:
    """min costᵀz  s.t.  A z = b,  z ≥ 0."""

    def __init__(
        self,
        cost: np.ndarray,
        A_eq: Optional[np.ndarray],
        b_eq: Optional[np.ndarray],
        options: Optional[Dict[str, Any]] = None,
    ):
        self.cost = np.asarray(cost, dtype=float).ravel()
        self.A_eq = A_eq
        self.b_eq = b_eq
        self.options = dict(options or {})

    @staticmethod
    def builder(cost) -> "LinearProgramBuilder":
        return LinearProgramBuilder(cost)

    def solve(self) -> LPResult:
        nvar = self.cost.size
        res = linprog(
            self.cost,
            A_eq=self.A_eq,
            b_eq=self.b_eq,
            bounds=(0, None),
            method="highs",
            options=self.options,
        )
        state = _STATUS.get(res.status, LPStatus.FAILED)

        x = np.zeros(nvar) if res.x is None else np.asarray(res.x, dtype=float)
        lower = getattr(res, "lower", None)
        marg = getattr(lower, "marginals", None) if lower is not None else None
        rc = np.zeros(nvar) if marg is None else np.asarray(marg, dtype=float)
        return LPResult(state, x, rc, str(res.message))


class LinearProgramBuilder:
    def __init__(self, cost):
        self.cost = np.asarray(cost, dtype=float).ravel()
        self.A_eq: Optional[np.ndarray] = None
        self.b_eq: Optional[np.ndarray] = None

    def equalities(self, A, b) -> "LinearProgramBuilder":
        A = np.atleast_2d(np.asarray(A, dtype=float))
        b = np.asarray(b, dtype=float).ravel()
        if A.shape != (b.size, self.cost.size):
            raise ValueError(
                f"LP equality block has shape {A.shape}, expected ({b.size}, {self.cost.size})"
            )
        self.A_eq, self.b_eq = A, b
        return self

    def build(
        self,
        time_limit: Optional[float] = None,
        feas_tol: float = 1e-9,
        presolve: bool = True,
    ) -> LinearProgram:
        options: Dict[str, Any] = {
            "presolve": bool(presolve),
            "primal_feasibility_tolerance": float(feas_tol),
            "dual_feasibility_tolerance": float(feas_tol),
        }
        if time_limit is not None:
            options["time_limit"] = float(time_limit)
        return LinearProgram(self.cost, self.A_eq, self.b_eq, options)


# ======================================
# Phase I
# ======================================
@dataclass
class PhaseIInfo:
    status: LPStatus = LPStatus.FAILED
    lp_solves: int = 0
    fallback: bool = False
    messages: list = field(default_factory=list)


class PhaseI:
    """
    Auxiliary LP producing a feasible x and initial inequality multipliers.

    `solve(x0)` returns (feasible, x, lam_ineq). An infeasible LP is the
    definitive infeasibility signal for the QP.
    """

    def __init__(self, problem: Builder, la: LinearAlgebra, cfg: ASConfig):
        self.problem = problem
        self.la = la
        self.cfg = cfg
        self.info = PhaseIInfo()

    def _rows(self) -> Tuple[np.ndarray, np.ndarray]:
        p, la = self.problem, self.la
        n, mE, mI = p.n, p.m_eq, p.m_ineq

        blocks_A, blocks_b = [], []
        if mE:
            blocks_A.append(
                la.stack_right(la.stack_right(p.AE, la.negate(p.AE)), la.make_zero_matrix(mE, mI))
            )
            blocks_b.append(p.BE)
        if mI:
            blocks_A.append(
                la.stack_right(la.stack_right(p.AI, la.negate(p.AI)), la.identity(mI))
            )
            blocks_b.append(p.BI)

        A = np.vstack(blocks_A) if blocks_A else np.zeros((0, 2 * n + mI))
        b = np.concatenate(blocks_b) if blocks_b else np.zeros(0)

        # LP wants a non-negative rhs
        neg = b < 0.0
        A[neg] *= -1.0
        b[neg] *= -1.0
        return A, b

    def _solve_lp(self, cost: np.ndarray, A: np.ndarray, b: np.ndarray) -> LPResult:
        cfg = self.cfg
        lp = (
            LinearProgram.builder(cost)
            .equalities(A, b)
            .build(time_limit=cfg.lp_time_limit, feas_tol=cfg.lp_feas_tol, presolve=cfg.lp_presolve)
        )
        res = lp.solve()
        self.info.lp_solves += 1
        self.info.messages.append(res.message)
        if cfg.debug:
            logging.debug(f"[PhaseI] LP status={res.state.value}: {res.message}")
        return res

    def solve(self, x0: Optional[np.ndarray] = None) -> Tuple[bool, np.ndarray, np.ndarray]:
        p, la = self.problem, self.la
        n, mE, mI = p.n, p.m_eq, p.m_ineq
        self.info = PhaseIInfo()

        x_start = la.make_zero_vector(n) if x0 is None else np.array(x0, dtype=float)
        if mE + mI == 0:
            # nothing to satisfy
            self.info.status = LPStatus.OPTIMAL
            return True, x_start, la.make_zero_vector(0)

        # gradient at the kick start, or at the origin for a cold start
        g = la.subtract(la.multiply(p.Q, x_start), p.c) if x0 is not None else la.negate(p.c)
        cost = np.concatenate([g, la.negate(g), la.make_zero_vector(mI)])
        A, b = self._rows()

        res = self._solve_lp(cost, A, b)
        if not res.state.is_feasible() and np.any(cost):
            # the cost is only a hint; settle feasibility on its own
            logging.warning(
                f"[PhaseI] LP reported {res.state.value}; re-solving as a pure feasibility LP"
            )
            self.info.fallback = True
            res = self._solve_lp(la.make_zero_vector(cost.size), A, b)

        self.info.status = res.state
        if not res.state.is_feasible():
            return False, x_start, la.make_zero_vector(mI)

        z = res.x
        x = la.subtract(z[:n], z[n : 2 * n])
        lam = np.array(res.residual_costs()[2 * n : 2 * n + mI], dtype=float)
        return True, x, lam
