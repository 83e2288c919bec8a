from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy import ndimage


class ConvergenceTracker:
    """Double-buffered "label changed" flags plus the per-iteration error count.

    ``prev`` holds the flags of the finished iteration and is only read during
    a sweep; ``next`` is written. ``swap`` is the iteration barrier.
    """

    def __init__(self, shape: Tuple[int, ...], footprint: np.ndarray):
        self.shape = tuple(int(s) for s in shape)
        self.footprint = np.asarray(footprint, dtype=bool)
        if self.footprint.ndim != len(self.shape):
            raise ValueError("footprint dimensionality does not match the image")
        self._radius = tuple(s // 2 for s in self.footprint.shape)
        n = int(np.prod(self.shape, dtype=np.int64))
        self.prev = np.ones(n, dtype=bool)
        self.next = np.zeros(n, dtype=bool)
        self.error_count = 0

    def reset(self):
        self.prev[:] = True
        self.next[:] = False
        self.error_count = 0

    def should_examine(self, index) -> bool:
        """True if this pixel or any in-bounds neighbour changed last iteration."""
        idx = tuple(int(i) for i in index)
        prev = self.prev.reshape(self.shape)
        if prev[idx]:
            return True
        lo = [max(0, i - r) for i, r in zip(idx, self._radius)]
        hi = [min(n, i + r + 1) for i, r, n in zip(idx, self._radius, self.shape)]
        window = prev[tuple(slice(a, b) for a, b in zip(lo, hi))]
        fp = self.footprint[tuple(
            slice(a - i + r, b - i + r) for a, b, i, r in zip(lo, hi, idx, self._radius)
        )]
        return bool(np.any(window & fp))

    def examine_mask(self) -> np.ndarray:
        """``should_examine`` for every pixel, as a flat boolean array."""
        prev = self.prev.reshape(self.shape)
        if prev.all() or prev.size == 0:
            return self.prev.copy()
        if not prev.any():
            return np.zeros_like(self.prev)
        grown = ndimage.binary_dilation(prev, structure=self.footprint, border_value=0)
        return grown.ravel()

    def record_change(self, index, changed: bool):
        flat = int(np.ravel_multi_index(tuple(int(i) for i in index), self.shape))
        self.next[flat] = bool(changed)
        if changed:
            self.error_count += 1

    def record_changes(self, changed: np.ndarray):
        """Bulk form of ``record_change`` for a whole sweep."""
        c = np.asarray(changed, dtype=bool).ravel()
        self.next[:] = c
        self.error_count += int(np.count_nonzero(c))

    def swap(self) -> int:
        """Publish this iteration's flags and return its error count."""
        errors = self.error_count
        self.prev, self.next = self.next, self.prev
        self.next[:] = False
        self.error_count = 0
        return errors
