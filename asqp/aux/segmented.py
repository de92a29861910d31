"""
segmented.py

Growable one-dimensional numeric buffer used as backing storage for the
solver's iterate and Lagrange multipliers.

Layout
------
- Below the segment capacity S the data lives in one contiguous block that
  doubles on overflow (C0 → 2·C0 → ... → S).
- Once that block holds exactly S elements, growth switches to a segmented
  layout: an ordered list of S-sized blocks, one more appended per overflow.
  Blocks already written are never copied again.
- Element i of a segmented vector lives at (i // S, i % S).

Blocks come from a pluggable allocator:
    * HeapAllocator   : plain numpy arrays
    * MappedAllocator : anonymous memory maps (outside the Python heap)

The container is append-only. Insertion or deletion in the middle raises
UnsupportedOperationError; indices at or beyond the logical length raise
OutOfBoundsError.
"""

from __future__ import annotations

import mmap
import operator
from collections.abc import MutableSequence
from typing import Iterable, Iterator, Optional

import numpy as np

from ..errors import OutOfBoundsError, UnsupportedOperationError

INITIAL_CAPACITY = 16
SEGMENT_CAPACITY = 16_384


# =============================================================================
# Allocators
# =============================================================================
class HeapAllocator:
    """Blocks are ordinary numpy arrays. Tracks the bytes it has handed out."""

    def __init__(self):
        self.live_bytes = 0

    def allocate(self, size: int, dtype) -> np.ndarray:
        block = np.zeros(size, dtype=dtype)
        self.live_bytes += block.nbytes
        return block

    def release(self, block: np.ndarray) -> None:
        self.live_bytes -= block.nbytes

    def collect(self) -> None:
        """Heap blocks are freed by numpy; nothing to do."""


class MappedAllocator(HeapAllocator):
    """
    Blocks backed by anonymous memory maps (zero-filled by the OS).

    `release` retires the mapping behind a block, `collect` unmaps every
    retired mapping. The owner calls `collect` once it no longer holds views
    on the released blocks; a view still alive makes it raise BufferError.
    """

    def __init__(self):
        super().__init__()
        self._maps = {}
        self._retired = []

    def allocate(self, size: int, dtype) -> np.ndarray:
        dtype = np.dtype(dtype)
        buf = mmap.mmap(-1, max(size * dtype.itemsize, mmap.PAGESIZE))
        block = np.frombuffer(buf, dtype=dtype, count=size)
        self._maps[id(block)] = buf
        self.live_bytes += block.nbytes
        return block

    def release(self, block: np.ndarray) -> None:
        self._retired.append(self._maps.pop(id(block)))
        self.live_bytes -= block.nbytes

    def collect(self) -> None:
        while self._retired:
            self._retired.pop().close()

    @property
    def open_maps(self) -> int:
        return len(self._maps) + len(self._retired)


_ALLOCATORS = {"heap": HeapAllocator, "mmap": MappedAllocator}


def make_allocator(kind: str) -> HeapAllocator:
    try:
        return _ALLOCATORS[kind]()
    except KeyError:
        raise ValueError(f"Unknown allocator '{kind}'. Use one of {sorted(_ALLOCATORS)}.") from None


# =============================================================================
# Segmented vector
# =============================================================================
class SegmentedVector(MutableSequence):
    """
    Append-only numeric list with O(1) random access.

    Parameters
    ----------
    segment_capacity : int
        Size S of each block once the vector is segmented.
    initial_capacity : int
        Size C0 of the first contiguous block. Must satisfy C0 < S and
        S = C0 · 2^k so that doubling lands exactly on S.
    allocator : HeapAllocator, optional
        Block source; defaults to a fresh HeapAllocator.
    dtype : numpy dtype
        Scalar type of the elements (float64 by default).
    """

    def __init__(
        self,
        segment_capacity: int = SEGMENT_CAPACITY,
        initial_capacity: int = INITIAL_CAPACITY,
        allocator: Optional[HeapAllocator] = None,
        dtype=np.float64,
    ):
        segment_capacity = int(segment_capacity)
        initial_capacity = int(initial_capacity)
        if initial_capacity <= 0 or initial_capacity >= segment_capacity:
            raise ValueError(
                f"Need 0 < initial_capacity < segment_capacity, got "
                f"{initial_capacity} and {segment_capacity}"
            )
        ratio, rem = divmod(segment_capacity, initial_capacity)
        if rem or (ratio & (ratio - 1)):
            raise ValueError(
                "segment_capacity must be initial_capacity times a power of two"
            )

        self.segment_capacity = segment_capacity
        self.initial_capacity = initial_capacity
        self.allocator = allocator if allocator is not None else HeapAllocator()
        self.dtype = np.dtype(dtype)

        self._blocks = [self.allocator.allocate(initial_capacity, self.dtype)]
        self._segmented = False
        self._count = 0
        self._closed = False

    # ------------------------------ factories ------------------------------
    @classmethod
    def primitive(cls, **kwargs) -> "SegmentedVector":
        return cls(allocator=HeapAllocator(), **kwargs)

    @classmethod
    def off_heap(cls, **kwargs) -> "SegmentedVector":
        return cls(allocator=MappedAllocator(), **kwargs)

    @classmethod
    def zeros(cls, n: int, **kwargs) -> "SegmentedVector":
        vec = cls(**kwargs)
        vec.extend(np.zeros(int(n), dtype=vec.dtype))
        return vec

    def _like(self) -> "SegmentedVector":
        return type(self)(
            self.segment_capacity,
            self.initial_capacity,
            allocator=self.allocator,
            dtype=self.dtype,
        )

    # ------------------------------ internals ------------------------------
    @property
    def capacity(self) -> int:
        if self._segmented:
            return len(self._blocks) * self.segment_capacity
        return self._blocks[0].size if self._blocks else 0

    @property
    def is_segmented(self) -> bool:
        return self._segmented

    def _check_index(self, index) -> int:
        i = operator.index(index)
        n = self._count
        j = i + n if i < 0 else i
        if j < 0 or j >= n:
            raise OutOfBoundsError(i, n)
        return j

    def _locate(self, index: int):
        if self._segmented:
            seg, off = divmod(index, self.segment_capacity)
            return self._blocks[seg], off
        return self._blocks[0], index

    def _views(self, start: int = 0, stop: Optional[int] = None) -> Iterator[np.ndarray]:
        """Yield writable views covering [start, stop), one per block touched."""
        stop = self._count if stop is None else stop
        if not self._segmented:
            if stop > start:
                yield self._blocks[0][start:stop]
            return
        S = self.segment_capacity
        pos = start
        while pos < stop:
            seg, off = divmod(pos, S)
            take = min(S - off, stop - pos)
            yield self._blocks[seg][off : off + take]
            pos += take

    def _store(self, index: int, values: np.ndarray) -> None:
        # values must fit in the block holding `index`
        block, off = self._locate(index)
        block[off : off + values.size] = values

    def _gather(self, start: int, stop: int) -> np.ndarray:
        parts = list(self._views(start, stop))
        if not parts:
            return np.empty(0, dtype=self.dtype)
        return np.concatenate(parts)

    def _ensure_capacity(self) -> None:
        if self._closed:
            raise ValueError("operation on a closed SegmentedVector")

        cap = self.capacity
        S = self.segment_capacity
        if self._count < cap:
            # fits, append in place
            return

        if cap % S == 0:
            # grow by one segment; the full contiguous block becomes segment 0
            self._segmented = True
            self._blocks.append(self.allocator.allocate(S, self.dtype))
        else:
            # still contiguous: double, copy, replace
            old = self._blocks[0]
            new = self.allocator.allocate(2 * cap, self.dtype)
            new[:cap] = old
            self._blocks[0] = new
            self.allocator.release(old)
            del old
            self.allocator.collect()

    # ------------------------------ sequence protocol ------------------------------
    def __len__(self) -> int:
        return self._count

    def __getitem__(self, index):
        if isinstance(index, slice):
            start, stop, step = index.indices(self._count)
            if step == 1:
                return self.sub_list(start, max(start, stop))
            out = self._like()
            out.extend(self.to_numpy()[index])
            return out
        block, off = self._locate(self._check_index(index))
        return block[off].item()

    def __setitem__(self, index, value) -> None:
        if isinstance(index, slice):
            raise UnsupportedOperationError("slice assignment")
        block, off = self._locate(self._check_index(index))
        block[off] = value

    def __delitem__(self, index) -> None:
        raise UnsupportedOperationError("delete")

    def __iter__(self) -> Iterator:
        for view in self._views():
            yield from view.tolist()

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        out = self.to_numpy()
        return out if dtype is None else out.astype(dtype, copy=False)

    def __repr__(self) -> str:
        return (
            f"SegmentedVector(len={self._count}, capacity={self.capacity}, "
            f"segmented={self._segmented}, dtype={self.dtype})"
        )

    def insert(self, index, value) -> None:
        raise UnsupportedOperationError("insert")

    def remove(self, value) -> None:
        raise UnsupportedOperationError("remove")

    def pop(self, index=-1):
        raise UnsupportedOperationError("pop")

    # ------------------------------ mutation ------------------------------
    def append(self, value) -> None:
        self._ensure_capacity()
        block, off = self._locate(self._count)
        block[off] = value
        self._count += 1

    def extend(self, values: Iterable) -> None:
        if isinstance(values, SegmentedVector):
            arr = values.to_numpy()
        else:
            if not isinstance(values, (np.ndarray, list, tuple)):
                values = list(values)
            arr = np.asarray(values, dtype=self.dtype).ravel()

        pos = 0
        while pos < arr.size:
            self._ensure_capacity()
            take = min(self.capacity - self._count, arr.size - pos)
            self._store(self._count, arr[pos : pos + take])
            self._count += take
            pos += take

    def add_to(self, index: int, addend) -> None:
        """In-place increment of an existing element."""
        block, off = self._locate(self._check_index(index))
        block[off] += addend

    def clear(self) -> None:
        """Logical reset; capacity (and the allocated blocks) are kept."""
        self._count = 0

    def fill_matching(self, other) -> None:
        """Overwrite the leading elements with `other` (no longer than self)."""
        if isinstance(other, SegmentedVector):
            values = other.to_numpy()
        else:
            values = np.asarray(other, dtype=self.dtype).ravel()
        if values.size > self._count:
            raise ValueError(
                f"fill_matching source has length {values.size}, target only {self._count}"
            )
        pos = 0
        for view in self._views(0, values.size):
            view[...] = values[pos : pos + view.size]
            pos += view.size

    # ------------------------------ views & reductions ------------------------------
    def sub_list(self, start: int, stop: int) -> "SegmentedVector":
        """Copy of the elements in [start, stop)."""
        if not (0 <= start <= stop <= self._count):
            raise OutOfBoundsError(stop if stop > self._count else start, self._count)
        out = self._like()
        out.extend(self._gather(start, stop))
        return out

    def to_numpy(self) -> np.ndarray:
        return self._gather(0, self._count)

    def norm(self) -> float:
        acc = 0.0
        for view in self._views():
            acc += float(np.vdot(view, view).real)
        return float(np.sqrt(acc))

    # ------------------------------ lifetime ------------------------------
    def close(self) -> None:
        """Release every block back to the allocator. Idempotent."""
        if self._closed:
            return
        while self._blocks:
            self.allocator.release(self._blocks.pop())
        self.allocator.collect()
        self._count = 0
        self._segmented = False
        self._closed = True

    def __enter__(self) -> "SegmentedVector":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
