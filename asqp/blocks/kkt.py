from __future__ import annotations

from typing import Sequence

import numpy as np

from .aux import Builder
from .linalg import LinearAlgebra


class KKTAssembler:
    """
    Builds the equality-constrained subproblem for a working set.

    For included inequality rows I the subproblem is

        [ Q  Aᵀ ] [ x* ]   [ c ]
        [ A  0  ] [ λ  ] = [ b ]

    with A = [AE; AI[I]] and b = [BE; BI[I]]. The first n entries of the
    solution are the subproblem minimiser (not a step); the driver recovers
    the direction as x* − x. Multipliers come out with λ ≥ 0 certifying an
    active inequality AI x ≤ BI.
    """

    def __init__(self, problem: Builder, la: LinearAlgebra):
        self.problem = problem
        self.la = la

    # ---- subproblem blocks ----
    def iteration_a(self, included: Sequence[int]) -> np.ndarray:
        p = self.problem
        return self.la.stack_below(p.AE, self.la.row_slice(p.AI, included))

    def iteration_b(self, included: Sequence[int]) -> np.ndarray:
        p = self.problem
        return self.la.stack_below(p.BE, p.BI[np.asarray(included, dtype=np.intp)])

    def iteration_c(self) -> np.ndarray:
        return self.problem.c

    def iteration_kkt(self, included: Sequence[int]) -> np.ndarray:
        A = self.iteration_a(included)
        m = A.shape[0]
        top = self.la.stack_right(self.problem.Q, self.la.transpose(A))
        bottom = self.la.stack_right(A, self.la.make_zero_matrix(m, m))
        return self.la.stack_below(top, bottom)

    def iteration_rhs(self, included: Sequence[int]) -> np.ndarray:
        return self.la.stack_below(self.iteration_c(), self.iteration_b(included))

    # ---- slack views ----
    def equality_slack(self, x) -> np.ndarray:
        p = self.problem
        return self.la.subtract(p.BE, self.la.multiply(p.AE, x))

    def inequality_body(self, x, rows: Sequence[int]) -> np.ndarray:
        return self.la.multiply(self.la.row_slice(self.problem.AI, rows), x)

    def inequality_slack(self, x, rows: Sequence[int]) -> np.ndarray:
        rows = np.asarray(rows, dtype=np.intp)
        return self.la.subtract(self.problem.BI[rows], self.inequality_body(x, rows))

    # ---- objective ----
    def gradient(self, x) -> np.ndarray:
        return self.la.subtract(self.la.multiply(self.problem.Q, x), self.problem.c)

    def reduced_gradient(self, x, included: Sequence[int], lam) -> np.ndarray:
        """Q x − c + Aᵀ λ for the working set `included`."""
        A = self.iteration_a(included)
        g = self.gradient(x)
        if A.shape[0] == 0:
            return g
        return self.la.axpy(1.0, self.la.multiply(self.la.transpose(A), lam), g)
