from __future__ import annotations

import itertools
from typing import Sequence, Tuple

import numpy as np

from errors import ConfigurationError


# Default tiers for 3-D volumes, slice axis last (k -> z).
IN_SLICE_WEIGHT = 1.7
THROUGH_SLICE_WEIGHT = 1.5
DIAGONAL_SLICE_WEIGHT = 1.3


def normalize_radius(radius, ndim: int) -> Tuple[int, ...]:
    """Return the radius as a tuple of ``ndim`` non-negative ints.

    A scalar radius applies to every dimension.
    """
    if np.isscalar(radius):
        radius = (radius,) * ndim
    try:
        r = tuple(radius)
    except TypeError as exc:
        raise ConfigurationError(f"malformed neighborhood radius: {radius!r}") from exc
    if len(r) != ndim:
        raise ConfigurationError(
            f"neighborhood radius has {len(r)} entries, image has {ndim} dimensions"
        )
    out = []
    for x in r:
        if isinstance(x, (bool, np.bool_)) or not isinstance(x, (int, np.integer)):
            raise ConfigurationError(f"radius entries must be integers, got {x!r}")
        if x < 0:
            raise ConfigurationError(f"radius entries must be >= 0, got {x}")
        out.append(int(x))
    return tuple(out)


def kernel_shape(radius: Sequence[int]) -> Tuple[int, ...]:
    return tuple(2 * r + 1 for r in radius)


def default_weights(ndim: int, radius=1) -> np.ndarray:
    """Default neighbourhood weight table.

    For ndim >= 3 the last axis is the slice axis:

    - same slice (dk == 0): 1.7
    - same in-plane position, other slice: 1.5
    - everything else through-plane: 1.3

    For 1-D and 2-D images every offset lies in the slice and gets 1.7.
    The centre is 0. For radius 1 in 3-D this is the usual 3x3x3 table::

        k-1              k              k+1
        1.3 1.3 1.3      1.7 1.7 1.7    1.3 1.3 1.3
        1.3 1.5 1.3      1.7  0  1.7    1.3 1.5 1.3
        1.3 1.3 1.3      1.7 1.7 1.7    1.3 1.3 1.3
    """
    r = normalize_radius(radius, ndim)
    table = np.full(kernel_shape(r), IN_SLICE_WEIGHT, dtype=np.float64)
    if ndim >= 3:
        for off in itertools.product(*(range(-ri, ri + 1) for ri in r)):
            if off[-1] == 0:
                continue
            idx = tuple(o + ri for o, ri in zip(off, r))
            if all(o == 0 for o in off[:-1]):
                table[idx] = THROUGH_SLICE_WEIGHT
            else:
                table[idx] = DIAGONAL_SLICE_WEIGHT
    table[r] = 0.0
    return table


class WeightKernel:
    """Fixed-radius table of neighbour weights indexed by relative offset."""

    def __init__(self, weights, radius):
        w = np.asarray(weights, dtype=np.float64)
        if w.ndim == 1 and not np.isscalar(radius):
            r = normalize_radius(radius, len(tuple(radius)))
        elif w.ndim > 1:
            r = normalize_radius(radius, w.ndim)
        else:
            raise ConfigurationError(
                "a flat weight list needs a per-dimension radius to fix its shape"
            )
        shape = kernel_shape(r)
        expected = int(np.prod(shape))
        if w.size != expected:
            raise ConfigurationError(
                f"weight count {w.size} does not match radius {r} (expected {expected})"
            )
        if w.ndim > 1 and w.shape != shape:
            raise ConfigurationError(f"weight array shape {w.shape} does not match radius {r}")
        w = w.reshape(shape)
        if not np.all(np.isfinite(w)):
            raise ConfigurationError("weights must be finite")
        if np.any(w < 0):
            raise ConfigurationError("weights must be non-negative")
        if not np.array_equal(w, w[(slice(None, None, -1),) * w.ndim]):
            raise ConfigurationError("weights must be symmetric about the kernel centre")

        self.radius: Tuple[int, ...] = r
        self.shape: Tuple[int, ...] = shape
        self._table = w.copy()
        self._table[r] = 0.0
        self._table.setflags(write=False)

    @classmethod
    def default(cls, radius, ndim: int | None = None) -> "WeightKernel":
        if ndim is None:
            if np.isscalar(radius):
                raise ConfigurationError("ndim is required with a scalar radius")
            ndim = len(tuple(radius))
        r = normalize_radius(radius, ndim)
        return cls(default_weights(ndim, r), r)

    @property
    def ndim(self) -> int:
        return len(self.radius)

    @property
    def array(self) -> np.ndarray:
        """Kernel as an N-D array with the centre weight zeroed."""
        return self._table

    @property
    def footprint(self) -> np.ndarray:
        return np.ones(self.shape, dtype=bool)

    def weight(self, offset: Sequence[int]) -> float:
        off = tuple(int(o) for o in offset)
        if len(off) != self.ndim:
            raise ConfigurationError(f"offset {off} has wrong dimensionality for radius {self.radius}")
        if any(abs(o) > r for o, r in zip(off, self.radius)):
            raise ConfigurationError(f"offset {off} lies outside radius {self.radius}")
        return float(self._table[tuple(o + r for o, r in zip(off, self.radius))])

    def offsets(self) -> np.ndarray:
        """Non-centre offsets in C order, shaped (M, ndim)."""
        rng = [range(-r, r + 1) for r in self.radius]
        offs = [o for o in itertools.product(*rng) if any(o)]
        return np.asarray(offs, dtype=np.int64).reshape(-1, self.ndim)

    def neighbor_weights(self) -> np.ndarray:
        """Weights matching ``offsets()`` row for row."""
        offs = self.offsets()
        if offs.shape[0] == 0:
            return np.zeros((0,), dtype=np.float64)
        idx = tuple((offs + np.asarray(self.radius, dtype=np.int64)).T)
        return self._table[idx].astype(np.float64, copy=True)

    def tolist(self) -> list[float]:
        return self._table.ravel().tolist()

    def __repr__(self) -> str:
        return f"WeightKernel(radius={self.radius}, total={float(self._table.sum()):.4g})"
