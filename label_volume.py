from __future__ import annotations

from typing import Tuple

import numpy as np

from errors import DataError


class LabelVolume:
    """Per-pixel class labels plus the cached classifier distances.

    Labels are double-buffered: sweeps write ``next`` via ``set_label`` while
    neighbour reads go to ``current``; ``commit`` publishes the iteration.
    Distances are read-only once the volume exists.
    """

    def __init__(self, distances: np.ndarray, labels: np.ndarray):
        self._dist = np.array(distances, dtype=np.float64, order="C")
        self._dist.setflags(write=False)
        self.current = np.array(labels, dtype=np.int32, order="C")
        self.next = self.current.copy()

    @classmethod
    def from_distances(cls, distances: np.ndarray, initial_labels: np.ndarray | None = None) -> "LabelVolume":
        """Build from a ``shape + (C,)`` distance buffer.

        Without initial labels each pixel starts at the argmin class (lowest
        index on ties).
        """
        D = np.asarray(distances, dtype=np.float64)
        if D.ndim < 2:
            raise DataError(f"distance buffer must be shaped spatial + (n_classes,), got {D.shape}")
        if not np.all(np.isfinite(D)):
            raise DataError("distance buffer holds non-finite values")
        n_classes = D.shape[-1]
        if initial_labels is None:
            labels = np.argmin(D, axis=-1).astype(np.int32)
        else:
            labels = np.asarray(initial_labels)
            if not np.issubdtype(labels.dtype, np.integer):
                raise DataError(f"initial labels must be integers, got dtype {labels.dtype}")
            if labels.shape != D.shape[:-1]:
                raise DataError(
                    f"initial label image shape {labels.shape} does not match image extent {D.shape[:-1]}"
                )
            if labels.size and (labels.min() < 0 or labels.max() >= n_classes):
                raise DataError(f"initial labels must lie in [0, {n_classes})")
        return cls(D, labels)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.current.shape

    @property
    def size(self) -> int:
        return int(self.current.size)

    @property
    def n_classes(self) -> int:
        return int(self._dist.shape[-1])

    @property
    def distances(self) -> np.ndarray:
        return self._dist

    def label(self, index) -> int:
        return int(self.current[tuple(index)])

    def set_label(self, index, value: int):
        self.next[tuple(index)] = value

    def distance(self, index, cls: int) -> float:
        return float(self._dist[tuple(index) + (int(cls),)])

    def commit(self):
        self.current, self.next = self.next, self.current
        self.next[...] = self.current
