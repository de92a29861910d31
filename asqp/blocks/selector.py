from __future__ import annotations

from typing import Iterable, List

import numpy as np

from ..errors import OutOfBoundsError


class IndexSelector:
    """
    Partition of {0, ..., m-1} into included and excluded indices.

    Used as the working set of active inequalities. Tracks the index most
    recently moved into each side; a call that does not change membership
    leaves the tracking untouched. `included()` and `excluded()` are returned
    in ascending order.
    """

    def __init__(self, m: int):
        m = int(m)
        if m < 0:
            raise ValueError(f"IndexSelector size must be non-negative, got {m}")
        self.m = m
        self._mask = np.zeros(m, dtype=bool)
        self._last_included = -1
        self._last_excluded = -1

    def _check(self, i) -> int:
        i = int(i)
        if i < 0 or i >= self.m:
            raise OutOfBoundsError(i, self.m)
        return i

    # ---- mutation ----
    def include(self, i: int) -> None:
        i = self._check(i)
        if not self._mask[i]:
            self._mask[i] = True
            self._last_included = i

    def exclude(self, i: int) -> None:
        i = self._check(i)
        if self._mask[i]:
            self._mask[i] = False
            self._last_excluded = i

    def include_many(self, indices: Iterable[int]) -> None:
        for i in indices:
            self.include(i)

    def include_all(self) -> None:
        self._mask[:] = True
        self._last_included = self.m - 1 if self.m else -1

    def exclude_all(self) -> None:
        self._mask[:] = False
        self._last_included = -1
        self._last_excluded = -1

    # ---- queries ----
    def is_included(self, i: int) -> bool:
        return bool(self._mask[self._check(i)])

    def included(self) -> np.ndarray:
        return np.flatnonzero(self._mask)

    def excluded(self) -> np.ndarray:
        return np.flatnonzero(~self._mask)

    def count_included(self) -> int:
        return int(self._mask.sum())

    def count_excluded(self) -> int:
        return self.m - self.count_included()

    @property
    def last_included(self) -> int:
        return self._last_included

    @property
    def last_excluded(self) -> int:
        return self._last_excluded

    def key(self) -> tuple:
        """Hashable snapshot of the included set."""
        return tuple(self.included().tolist())

    def __len__(self) -> int:
        return self.m

    def __repr__(self) -> str:
        inc: List[int] = self.included().tolist()
        return f"IndexSelector(m={self.m}, included={inc})"
