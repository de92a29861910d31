# aux.py
# Configuration, tolerances, solver states, problem container and result type
# shared by the active-set driver and its building blocks.

from __future__ import annotations

# =========================
# Standard library
# =========================
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import TYPE_CHECKING, Optional

# =========================
# Third-party
# =========================
import numpy as np

if TYPE_CHECKING:
    from ..solver import ActiveSetSolver


# ======================================
# Enums
# ======================================
class State(IntEnum):
    """Solver state, ordered from worst to best."""

    INFEASIBLE = 0
    FAILED = 1
    APPROXIMATE = 2
    FEASIBLE = 3
    OPTIMAL = 4

    def is_approximate(self) -> bool:
        return self >= State.APPROXIMATE

    def is_feasible(self) -> bool:
        return self >= State.FEASIBLE

    def is_optimal(self) -> bool:
        return self == State.OPTIMAL


# ======================================
# Tolerances
# ======================================
@dataclass(frozen=True)
class Tolerance:
    """
    Scalar comparison context.

    is_zero(v)          : |v| <= eps
    is_small(ref, v)    : v is zero relative to ref (absolute when ref is zero)
    is_different(a, b)  : a and b differ by more than eps relative to the larger
    """

    eps: float

    def is_zero(self, v: float) -> bool:
        return abs(v) <= self.eps

    def is_small(self, ref: float, v: float) -> bool:
        if self.is_zero(ref):
            return self.is_zero(v)
        return self.is_zero(v / ref)

    def is_different(self, a: float, b: float) -> bool:
        if a == b:
            return False
        return not self.is_small(max(abs(a), abs(b)), a - b)


# ======================================
# Global configuration
# ======================================
@dataclass
class ASConfig:
    """
    Configuration for the active-set QP solver.

    Notes
    -----
    • `slack_tol` drives every constraint-violation test (feasibility checks,
      inclusion of tight rows, the ratio test numerator).
    • `solution_tol` drives step-size and multiplier-sign tests.
    • A time limit of None disables the wall-clock check.
    """

    # ---------------- Tolerances ----------------
    slack_tol: float = 1e-8
    solution_tol: float = 1e-10
    rcond: float = 1e-12  # pivot threshold for the KKT factorisation

    # ---------------- Limits ----------------
    iteration_limit: int = 1000
    time_limit: Optional[float] = None  # seconds

    # ---------------- Output ----------------
    debug: bool = False  # trace iterates, slacks and working-set moves
    verbose: bool = False  # iteration table on stdout

    # ---------------- Storage ----------------
    segment_capacity: int = 16_384
    initial_capacity: int = 16
    allocator: str = "heap"  # {"heap","mmap"}

    # ---------------- Phase I (LP) ----------------
    lp_time_limit: Optional[float] = None
    lp_feas_tol: float = 1e-9
    lp_presolve: bool = True

    @property
    def solution(self) -> Tolerance:
        return Tolerance(self.solution_tol)


_EPS = float(np.finfo(float).eps)


def _validate_config(cfg: Optional[ASConfig]) -> ASConfig:
    """Return a copy of `cfg` with clamped values; raise on unknown choices."""
    cfg = ASConfig() if cfg is None else replace(cfg)

    cfg.slack_tol = max(float(cfg.slack_tol), _EPS)
    cfg.solution_tol = max(float(cfg.solution_tol), _EPS)
    cfg.rcond = min(max(float(cfg.rcond), 0.0), 1.0)
    cfg.iteration_limit = max(int(cfg.iteration_limit), 1)
    if cfg.time_limit is not None:
        cfg.time_limit = max(float(cfg.time_limit), 0.0)

    cfg.allocator = str(cfg.allocator).lower()
    if cfg.allocator not in ("heap", "mmap"):
        raise ValueError(f"Unknown allocator '{cfg.allocator}'. Use 'heap' or 'mmap'.")

    if cfg.lp_time_limit is not None:
        cfg.lp_time_limit = max(float(cfg.lp_time_limit), 0.0)
    # HiGHS rejects feasibility tolerances outside [1e-10, inf)
    cfg.lp_feas_tol = max(float(cfg.lp_feas_tol), 1e-10)
    return cfg


# ======================================
# Problem
# ======================================
def _frozen(a) -> np.ndarray:
    out = np.array(a, dtype=float, copy=True)
    out.setflags(write=False)
    return out


def _constraint_block(A, b, n: int, kind: str):
    if A is None and b is None:
        return _frozen(np.zeros((0, n))), _frozen(np.zeros(0))
    if A is None or b is None:
        raise ValueError(f"{kind} constraints need both A and b")
    A = np.atleast_2d(np.asarray(A, dtype=float))
    b = np.asarray(b, dtype=float).ravel()
    if A.size == 0:
        A = A.reshape(0, n)
    if A.ndim != 2 or A.shape[1] != n:
        raise ValueError(f"{kind} matrix has shape {A.shape}, expected (m, {n})")
    if b.size != A.shape[0]:
        raise ValueError(f"{kind} rhs has size {b.size}, expected {A.shape[0]}")
    return _frozen(A), _frozen(b)


@dataclass(frozen=True)
class Builder:
    """
    Immutable convex QP

        minimise   ½ xᵀQx − cᵀx
        subject to AE x = BE,  AI x ≤ BI

    `equalities` / `inequalities` return new builders; arrays are stored as
    read-only copies so one instance can back several solvers.
    """

    Q: np.ndarray
    c: np.ndarray
    AE: Optional[np.ndarray] = None
    BE: Optional[np.ndarray] = None
    AI: Optional[np.ndarray] = None
    BI: Optional[np.ndarray] = None

    def __post_init__(self):
        Q = np.atleast_2d(np.asarray(self.Q, dtype=float))
        if Q.ndim != 2 or Q.shape[0] != Q.shape[1] or Q.shape[0] == 0:
            raise ValueError(f"Q must be a non-empty square matrix, got shape {Q.shape}")
        n = Q.shape[0]
        if not np.allclose(Q, Q.T):
            raise ValueError("Q must be symmetric")
        c = np.asarray(self.c, dtype=float).ravel()
        if c.size != n:
            raise ValueError(f"c has size {c.size}, expected {n}")

        AE, BE = _constraint_block(self.AE, self.BE, n, "equality")
        AI, BI = _constraint_block(self.AI, self.BI, n, "inequality")

        object.__setattr__(self, "Q", _frozen(Q))
        object.__setattr__(self, "c", _frozen(c))
        object.__setattr__(self, "AE", AE)
        object.__setattr__(self, "BE", BE)
        object.__setattr__(self, "AI", AI)
        object.__setattr__(self, "BI", BI)

    def equalities(self, A, b) -> "Builder":
        return replace(self, AE=A, BE=b)

    def inequalities(self, A, b) -> "Builder":
        return replace(self, AI=A, BI=b)

    @property
    def n(self) -> int:
        return self.Q.shape[0]

    @property
    def m_eq(self) -> int:
        return self.AE.shape[0]

    @property
    def m_ineq(self) -> int:
        return self.AI.shape[0]

    def objective(self, x) -> float:
        x = np.asarray(x, dtype=float)
        return float(0.5 * x @ (self.Q @ x) - self.c @ x)

    def build(self, config: Optional[ASConfig] = None) -> "ActiveSetSolver":
        from ..solver import ActiveSetSolver

        return ActiveSetSolver(self, config)


# ======================================
# Result
# ======================================
@dataclass
class Result:
    state: State
    x: np.ndarray
    value: float
    iterations: int = 0
    active_set: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    multipliers: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __repr__(self) -> str:
        return (
            f"Result(state={self.state.name}, value={self.value:.6g}, "
            f"iterations={self.iterations}, active_set={self.active_set.tolist()})"
        )
