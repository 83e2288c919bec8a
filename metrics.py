from __future__ import annotations

import numpy as np
from scipy import ndimage


def _ensure_C(labels: np.ndarray, n_classes: int | None = None) -> int:
    if n_classes is None:
        n_classes = int(labels.max()) + 1 if labels.size else 0
    return n_classes


def class_counts(labels: np.ndarray, n_classes: int | None = None) -> np.ndarray:
    C = _ensure_C(labels, n_classes)
    lab = labels.ravel().astype(np.int64, copy=False)
    return np.bincount(lab, minlength=C).astype(np.int64)


def class_fractions(labels: np.ndarray, n_classes: int | None = None) -> np.ndarray:
    cnt = class_counts(labels, n_classes)
    if labels.size == 0:
        return cnt.astype(np.float64)
    return cnt.astype(np.float64) / float(labels.size)


def confusion_matrix(truth: np.ndarray, labels: np.ndarray, n_classes: int | None = None) -> np.ndarray:
    """Counts shaped (C, C); rows are true classes, columns assigned classes."""
    if truth.shape != labels.shape:
        raise ValueError(f"truth shape {truth.shape} != labels shape {labels.shape}")
    C = n_classes
    if C is None:
        C = max(_ensure_C(truth), _ensure_C(labels))
    t = truth.ravel().astype(np.int64, copy=False)
    l = labels.ravel().astype(np.int64, copy=False)
    cm = np.bincount(t * C + l, minlength=C * C)
    return cm.reshape(C, C).astype(np.int64)


def accuracy(truth: np.ndarray, labels: np.ndarray) -> float:
    if truth.shape != labels.shape:
        raise ValueError(f"truth shape {truth.shape} != labels shape {labels.shape}")
    if truth.size == 0:
        return float("nan")
    return float(np.count_nonzero(truth == labels)) / float(truth.size)


def changed_fraction(before: np.ndarray, after: np.ndarray) -> float:
    if before.size == 0:
        return 0.0
    return float(np.count_nonzero(before != after)) / float(before.size)


def mrf_energy(labels: np.ndarray, distances: np.ndarray, kernel: np.ndarray) -> dict[str, float]:
    """Global MRF energy of a labelling.

    - data: sum over pixels of the distance to the assigned class.
    - pairwise: sum of w(q - p) over unordered in-bounds pairs with different
      labels (each pair once; the kernel is symmetric).
    - total: data + pairwise.

    ``kernel`` is the N-D weight array with a zero centre (WeightKernel.array).
    """
    labels = np.asarray(labels)
    C = distances.shape[-1]
    lab = labels.astype(np.int64, copy=False)[..., None]
    data = float(np.take_along_axis(distances, lab, axis=-1).sum())

    pair2 = 0.0
    for c in range(C):
        own = labels == c
        if not own.any():
            continue
        mismatch = ndimage.correlate((labels != c).astype(np.float64), kernel,
                                     mode="constant", cval=0.0)
        pair2 += float(mismatch[own].sum())
    pairwise = 0.5 * pair2
    return {"data": data, "pairwise": pairwise, "total": data + pairwise}
