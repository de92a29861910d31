"""
Numba kernels for the inner scans of the active-set iteration.

The tolerance helpers mirror `Tolerance.is_zero / is_small / is_different`
in `blocks.aux` so that the compiled scans and the Python-side checks agree
exactly.
"""

from __future__ import annotations

import numpy as np
from numba import njit


# =============================================================================
# Tolerance predicates
# =============================================================================
@njit(cache=True)
def k_is_zero(val: float, eps: float) -> bool:
    return abs(val) <= eps


@njit(cache=True)
def k_is_small(ref: float, val: float, eps: float) -> bool:
    # small relative to ref; absolute when ref itself is zero
    if abs(ref) <= eps:
        return abs(val) <= eps
    return abs(val / ref) <= eps


@njit(cache=True)
def k_is_different(a: float, b: float, eps: float) -> bool:
    if a == b:
        return False
    ref = max(abs(a), abs(b))
    return not k_is_small(ref, a - b, eps)


# =============================================================================
# Step length
# =============================================================================
@njit(cache=True)
def k_ratio_test(
    slack: np.ndarray,
    denom: np.ndarray,
    rows: np.ndarray,
    step_norm: float,
    slack_eps: float,
    sol_eps: float,
):
    """
    Longest step α ∈ [0, 1] along d keeping every excluded row feasible.

    slack[i] = b_i - a_i·x and denom[i] = a_i·d for the excluded rows `rows`.
    Returns (alpha, row) where row is the blocking constraint or -1.
    """
    alpha = 1.0
    blocking = -1
    for i in range(slack.size):
        N = slack[i]
        D = denom[i]
        if not D > 0.0:
            # moving away from (or parallel to) the boundary
            continue
        val = 0.0 if k_is_small(D, N, slack_eps) else N / D
        if val >= 0.0 and val < alpha and not k_is_small(step_norm, D, sol_eps):
            alpha = val
            blocking = rows[i]
    return alpha, blocking


# =============================================================================
# Feasibility scans
# =============================================================================
@njit(cache=True)
def k_first_equality_violation(rhs: np.ndarray, body: np.ndarray, eps: float) -> int:
    for i in range(rhs.size):
        if k_is_different(rhs[i], body[i], eps):
            return i
    return -1


@njit(cache=True)
def k_first_inequality_violation(rhs: np.ndarray, body: np.ndarray, eps: float) -> int:
    for i in range(rhs.size):
        if body[i] > rhs[i] and k_is_different(rhs[i], body[i], eps):
            return i
    return -1


# =============================================================================
# Working-set selection
# =============================================================================
@njit(cache=True)
def k_most_negative_multiplier(
    lam: np.ndarray, rows: np.ndarray, last_included: int, sol_eps: float
) -> int:
    """
    Row with the most negative, non-zero multiplier among `rows`.

    The most recently included row is only a candidate when no other row
    qualifies. Returns -1 if nothing qualifies.
    """
    best = np.inf
    pick = -1
    pos_last = -1
    for i in range(lam.size):
        if rows[i] == last_included:
            pos_last = i
            continue
        v = lam[i]
        if v < 0.0 and v < best and not k_is_zero(v, sol_eps):
            best = v
            pick = i
    if pick < 0 and pos_last >= 0:
        v = lam[pos_last]
        if v < 0.0 and not k_is_zero(v, sol_eps):
            pick = pos_last
    if pick < 0:
        return -1
    return rows[pick]


@njit(cache=True)
def k_largest_abs_multiplier(lam: np.ndarray, rows: np.ndarray) -> int:
    # ties go to the later row
    pick = rows[0]
    best = 0.0
    for i in range(lam.size):
        v = abs(lam[i])
        if v >= best:
            best = v
            pick = rows[i]
    return pick
