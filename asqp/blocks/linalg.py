from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Hashable, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg as la


# ---------------------- Abstract facade ----------------------
class LinearAlgebra:
    """
    Dense linear-algebra operations consumed by the active-set driver.

    Vectors are 1-D, matrices 2-D. `solve_kkt` returns (ok, solution) and
    never raises on a singular or ill-conditioned system.
    """

    name: str

    def make_zero_vector(self, n: int) -> np.ndarray:
        raise NotImplementedError

    def make_zero_matrix(self, rows: int, cols: int) -> np.ndarray:
        raise NotImplementedError

    def multiply(self, A, x) -> np.ndarray:
        raise NotImplementedError

    def subtract(self, a, b) -> np.ndarray:
        raise NotImplementedError

    def negate(self, a) -> np.ndarray:
        raise NotImplementedError

    def norm2(self, a) -> float:
        raise NotImplementedError

    def axpy(self, alpha: float, x, y) -> np.ndarray:
        raise NotImplementedError

    def divide(self, a, b) -> np.ndarray:
        raise NotImplementedError

    def row_slice(self, M, indices: Sequence[int]) -> np.ndarray:
        raise NotImplementedError

    def stack_below(self, top, bottom) -> np.ndarray:
        raise NotImplementedError

    def stack_right(self, left, right) -> np.ndarray:
        raise NotImplementedError

    def transpose(self, M) -> np.ndarray:
        raise NotImplementedError

    def identity(self, n: int) -> np.ndarray:
        raise NotImplementedError

    def solve_kkt(
        self, K, rhs, key: Optional[Hashable] = None
    ) -> Tuple[bool, Optional[np.ndarray]]:
        raise NotImplementedError

    def invalidate(self) -> None:
        raise NotImplementedError


@dataclass
class FactorCache:
    key: Optional[Hashable] = None
    lu_piv: Optional[Any] = None
    ok: bool = False
    hits: int = 0
    misses: int = 0


# ---------------------- Dense implementation ----------------------
class DenseLinearAlgebra(LinearAlgebra):
    """
    numpy / scipy.linalg implementation.

    The KKT matrix is factored with partial-pivoting LU. A factorisation whose
    smallest |U_ii| falls below rcond · max(max |U_ii|, 1) is treated as rank
    deficient. The factors for a working-set `key` are reused until
    `invalidate()` is called.
    """

    name = "dense_lu"

    def __init__(self, rcond: float = 1e-12, debug: bool = False):
        self.rcond = float(rcond)
        self.debug = bool(debug)
        self.cache = FactorCache()

    # ---- constructors ----
    def make_zero_vector(self, n: int) -> np.ndarray:
        return np.zeros(int(n), dtype=np.float64)

    def make_zero_matrix(self, rows: int, cols: int) -> np.ndarray:
        return np.zeros((int(rows), int(cols)), dtype=np.float64)

    def identity(self, n: int) -> np.ndarray:
        return np.eye(int(n), dtype=np.float64)

    # ---- elementwise / BLAS-1 ----
    def multiply(self, A, x) -> np.ndarray:
        return np.asarray(A, dtype=np.float64) @ np.asarray(x, dtype=np.float64)

    def subtract(self, a, b) -> np.ndarray:
        return np.subtract(a, b, dtype=np.float64)

    def negate(self, a) -> np.ndarray:
        return np.negative(a, dtype=np.float64)

    def norm2(self, a) -> float:
        a = np.asarray(a, dtype=np.float64)
        return float(np.linalg.norm(a)) if a.size else 0.0

    def axpy(self, alpha: float, x, y) -> np.ndarray:
        """y ← y + α·x in place; returns y."""
        y += alpha * np.asarray(x, dtype=np.float64)
        return y

    def divide(self, a, b) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.divide(a, b, dtype=np.float64)

    # ---- structure ----
    def row_slice(self, M, indices: Sequence[int]) -> np.ndarray:
        M = np.asarray(M, dtype=np.float64)
        idx = np.asarray(indices, dtype=np.intp)
        return M[idx]

    def stack_below(self, top, bottom) -> np.ndarray:
        top = np.asarray(top, dtype=np.float64)
        bottom = np.asarray(bottom, dtype=np.float64)
        if top.size == 0:
            return bottom.copy()
        if bottom.size == 0:
            return top.copy()
        if top.ndim == 1:
            return np.concatenate([top, bottom])
        return np.vstack([top, bottom])

    def stack_right(self, left, right) -> np.ndarray:
        return np.hstack(
            [np.asarray(left, dtype=np.float64), np.asarray(right, dtype=np.float64)]
        )

    def transpose(self, M) -> np.ndarray:
        return np.asarray(M, dtype=np.float64).T

    # ---- KKT solve ----
    def _factor(self, K: np.ndarray):
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", la.LinAlgWarning)
                lu, piv = la.lu_factor(K, check_finite=True)
        except (ValueError, la.LinAlgError) as e:
            if self.debug:
                logging.debug(f"[KKT] factorisation failed: {e}")
            return None

        d = np.abs(np.diag(lu))
        if d.size and d.min() <= self.rcond * max(d.max(), 1.0):
            if self.debug:
                logging.debug(
                    f"[KKT] rank deficient: min pivot={d.min():.3e}, max pivot={d.max():.3e}"
                )
            return None
        return lu, piv

    def solve_kkt(
        self, K, rhs, key: Optional[Hashable] = None
    ) -> Tuple[bool, Optional[np.ndarray]]:
        K = np.asarray(K, dtype=np.float64)
        rhs = np.asarray(rhs, dtype=np.float64)
        if K.ndim != 2 or K.shape[0] != K.shape[1] or K.shape[0] != rhs.shape[0]:
            raise ValueError(f"KKT shape mismatch: K {K.shape}, rhs {rhs.shape}")

        c = self.cache
        if key is not None and c.key == key:
            c.hits += 1
        else:
            c.misses += 1
            c.key = key
            c.lu_piv = self._factor(K)
            c.ok = c.lu_piv is not None

        if not c.ok:
            return False, None

        sol = la.lu_solve(c.lu_piv, rhs, check_finite=False)
        if not np.all(np.isfinite(sol)):
            if self.debug:
                logging.debug("[KKT] non-finite solution rejected")
            return False, None
        return True, sol

    def invalidate(self) -> None:
        self.cache.key = None
        self.cache.lu_piv = None
        self.cache.ok = False
