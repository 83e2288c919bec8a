"""
icm.py

Iterated Conditional Modes (ICM) labelling on a Markov Random Field.

Each iteration revisits every pixel whose neighbourhood changed in the
previous iteration and assigns the class c minimising

    energy(c) = distance(p, c) + sum_{q in N(p)} w(q - p) * [label(q) != c]

where N(p) holds the in-bounds neighbours of p inside the kernel radius and
ties go to the lowest class index. Updates are synchronous: all neighbour
reads see the labels as of the start of the iteration. Iteration stops when
at most ``error_tolerance`` pixels changed, or after ``max_iterations``.

Sweep backends
--------------

- "numba":   per-pixel njit loop over the flattened volume; with
             ``parallel=True`` the pixel loop is a prange. Each pixel writes
             only its own slot of the next-label and change arrays.
- "ndimage": whole-volume passes, one scipy.ndimage.shift per neighbour
             offset, with weights accumulated in the same order as the
             per-pixel loops.
- "python":  reference loop through the LabelVolume / ConvergenceTracker
             scalar API. Slow; meant for small volumes and checking.

Primary API
-----------

    from icm import ICMEngine

    engine = ICMEngine(n_classes=3, neighborhood_radius=(1, 1, 1), max_iterations=50)
    res = engine.run(features, classifier)
    res.labels, res.iterations, res.error_count, res.state
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

import numpy as np
from numba import njit, prange
from scipy import ndimage

from classifier import ClassifierPort, classify_image
from convergence import ConvergenceTracker
from errors import ConfigurationError, DataError
from label_volume import LabelVolume
from weights import WeightKernel, normalize_radius


INITIALIZING = "initializing"
ITERATING = "iterating"
CONVERGED = "converged"
ITERATION_LIMIT = "iteration_limit_reached"
INTERRUPTED = "interrupted"

BACKENDS = ("numba", "ndimage", "python")


def _icm_sweep(labels, dist, shape, strides, offsets, weights, examine, out, changed):
    """One synchronous ICM sweep over a flattened C-order volume.

    labels:  (n,) int32 labels at the start of the iteration (read only)
    dist:    (n, C) float64 classifier distances
    offsets: (M, ndim) neighbour offsets, weights: (M,)
    examine: (n,) bool gate; pixels outside it keep their label
    out:     (n,) int32 next labels, changed: (n,) bool
    """
    n = labels.shape[0]
    ndim = shape.shape[0]
    m = offsets.shape[0]
    n_classes = dist.shape[1]
    for p in prange(n):
        old = labels[p]
        if not examine[p]:
            out[p] = old
            changed[p] = False
            continue
        best = 0
        best_e = 0.0
        for c in range(n_classes):
            e = dist[p, c]
            for t in range(m):
                w = weights[t]
                if w == 0.0:
                    continue
                rem = np.int64(p)
                q = 0
                inside = True
                for d in range(ndim - 1, -1, -1):
                    nc = rem % shape[d] + offsets[t, d]
                    rem = rem // shape[d]
                    if nc < 0 or nc >= shape[d]:
                        inside = False
                        break
                    q += nc * strides[d]
                if inside and labels[q] != c:
                    e += w
            if c == 0 or e < best_e:
                best_e = e
                best = c
        out[p] = best
        changed[p] = best != old


_icm_sweep_serial = njit(_icm_sweep)
_icm_sweep_parallel = njit(parallel=True)(_icm_sweep)


def _c_strides(shape: Tuple[int, ...]) -> np.ndarray:
    strides = np.ones(len(shape), dtype=np.int64)
    for d in range(len(shape) - 2, -1, -1):
        strides[d] = strides[d + 1] * shape[d + 1]
    return strides


@dataclass
class ICMResult:
    labels: np.ndarray
    iterations: int
    error_count: int
    state: str
    error_history: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.int64))
    examined_history: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.int64))

    @property
    def converged(self) -> bool:
        return self.state == CONVERGED


class ICMEngine:
    """MRF labeller driven by Iterated Conditional Modes.

    - n_classes: number of classes (>= 1).
    - neighborhood_radius: int (same for every dimension) or one int per
      dimension.
    - weights: None for the default table, a WeightKernel, an N-D weight
      array, or a flat list (needs a per-dimension radius or a known image
      dimensionality).
    - max_iterations: iteration cap (>= 1).
    - error_tolerance: converged once at most this many pixels change.
    - backend: "numba", "ndimage" or "python".
    - parallel: run the numba sweep with prange.
    - verbose: print one line per iteration.

    The image dimensionality comes from a per-dimension radius or an N-D
    weight array when given; otherwise from the initial labels or the
    feature image itself. Vector-valued feature images therefore need one of
    the former.
    """

    def __init__(self,
                 n_classes: int,
                 neighborhood_radius=1,
                 weights=None,
                 max_iterations: int = 50,
                 error_tolerance: int = 0,
                 backend: str = "numba",
                 parallel: bool = False,
                 verbose: bool = False):
        if int(n_classes) < 1:
            raise ConfigurationError("n_classes must be >= 1")
        if int(max_iterations) < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        try:
            tol = float(error_tolerance)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"error_tolerance must be a number, got {error_tolerance!r}") from exc
        if not np.isfinite(tol) or tol < 0:
            raise ConfigurationError("error_tolerance must be a non-negative pixel count")
        if backend not in BACKENDS:
            raise ConfigurationError(f"backend must be one of {BACKENDS}, got {backend!r}")
        self.n_classes = int(n_classes)
        self.max_iterations = int(max_iterations)
        self.error_tolerance = int(tol) if tol.is_integer() else tol
        self.backend = backend
        self.parallel = bool(parallel)
        self.verbose = bool(verbose)
        self.neighborhood_radius = neighborhood_radius
        self.weights = weights

        # Resolve the kernel up front whenever the dimensionality is already known.
        self._kernel: Optional[WeightKernel] = None
        ndim = self._configured_ndim()
        if ndim is not None:
            self._kernel = self.kernel_for(ndim)

    def _configured_ndim(self) -> Optional[int]:
        if not np.isscalar(self.neighborhood_radius):
            try:
                return len(tuple(self.neighborhood_radius))
            except TypeError as exc:
                raise ConfigurationError(
                    f"malformed neighborhood radius: {self.neighborhood_radius!r}"
                ) from exc
        if isinstance(self.weights, WeightKernel):
            return self.weights.ndim
        if self.weights is not None and np.ndim(self.weights) > 1:
            return int(np.ndim(self.weights))
        return None

    def kernel_for(self, ndim: int) -> WeightKernel:
        """Weight kernel for an image of ``ndim`` dimensions.

        Raises ConfigurationError when the kernel does not match the
        configured neighborhood radius.
        """
        if self._kernel is not None:
            if self._kernel.ndim != ndim:
                raise ConfigurationError(
                    f"kernel is {self._kernel.ndim}-D but the image is {ndim}-D"
                )
            return self._kernel
        radius = normalize_radius(self.neighborhood_radius, ndim)
        if self.weights is None:
            return WeightKernel.default(radius)
        if isinstance(self.weights, WeightKernel):
            kernel = self.weights
        else:
            kernel = WeightKernel(self.weights, radius)
        if kernel.radius != radius:
            raise ConfigurationError(
                f"weight kernel radius {kernel.radius} does not match neighborhood radius {radius}"
            )
        return kernel

    def spatial_ndim(self, features: np.ndarray, initial_labels: np.ndarray | None = None) -> int:
        ndim = self._configured_ndim()
        if ndim is not None:
            return ndim
        if initial_labels is not None:
            return int(np.ndim(initial_labels))
        return int(np.ndim(features))

    def run(self,
            features: np.ndarray,
            classifier: ClassifierPort,
            initial_labels: np.ndarray | None = None,
            callback: Callable[[int, int], Optional[bool]] | None = None) -> ICMResult:
        """Classify every pixel once, then iterate ICM on the cached distances."""
        if getattr(classifier, "n_classes", self.n_classes) != self.n_classes:
            raise ConfigurationError(
                f"classifier has {classifier.n_classes} classes, labeller expects {self.n_classes}"
            )
        ndim = self.spatial_ndim(features, initial_labels)
        spatial_shape = tuple(np.shape(features)[:ndim])
        if initial_labels is not None and tuple(np.shape(initial_labels)) != spatial_shape:
            raise DataError(
                f"initial label image shape {np.shape(initial_labels)} does not match "
                f"feature image extent {spatial_shape}"
            )
        distances = classify_image(features, classifier, self.n_classes, spatial_shape)
        return self.run_distances(distances, initial_labels=initial_labels, callback=callback)

    def run_distances(self,
                      distances: np.ndarray,
                      initial_labels: np.ndarray | None = None,
                      callback: Callable[[int, int], Optional[bool]] | None = None) -> ICMResult:
        """Run ICM on a precomputed ``shape + (n_classes,)`` distance buffer.

        ``callback(iteration, error_count)`` runs after every committed
        iteration; returning False stops the run with state "interrupted".
        """
        D = np.asarray(distances)
        if D.ndim < 2 or D.shape[-1] != self.n_classes:
            raise DataError(
                f"distance buffer shape {D.shape} does not end in n_classes={self.n_classes}"
            )
        state = INITIALIZING
        kernel = self.kernel_for(D.ndim - 1)
        volume = LabelVolume.from_distances(D, initial_labels)
        tracker = ConvergenceTracker(volume.shape, kernel.footprint)
        tracker.reset()

        state = ITERATING
        iteration = 0
        errors = []
        examined = []
        while state == ITERATING:
            iteration += 1
            n_examined = self._sweep(volume, kernel, tracker)
            error_count = tracker.swap()
            volume.commit()
            errors.append(error_count)
            examined.append(n_examined)
            if self.verbose:
                print(f"iter={iteration} changed={error_count} examined={n_examined}/{volume.size}")

            if error_count <= self.error_tolerance:
                state = CONVERGED
            elif iteration >= self.max_iterations:
                state = ITERATION_LIMIT
            if callback is not None:
                keep_going = callback(iteration, error_count)
                if state == ITERATING and keep_going is False:
                    state = INTERRUPTED

        return ICMResult(
            labels=volume.current,
            iterations=iteration,
            error_count=errors[-1],
            state=state,
            error_history=np.asarray(errors, dtype=np.int64),
            examined_history=np.asarray(examined, dtype=np.int64),
        )

    def _sweep(self, volume: LabelVolume, kernel: WeightKernel, tracker: ConvergenceTracker) -> int:
        """Write the next labels and change flags; return the examined pixel count."""
        if self.backend == "python":
            return _sweep_python(volume, kernel, tracker)
        examine = tracker.examine_mask()
        if self.backend == "numba":
            changed = _sweep_numba(volume, kernel, examine, self.parallel)
        else:
            changed = _sweep_ndimage(volume, kernel, examine)
        tracker.record_changes(changed)
        return int(np.count_nonzero(examine))


def _sweep_numba(volume: LabelVolume, kernel: WeightKernel, examine: np.ndarray, parallel: bool) -> np.ndarray:
    n = volume.size
    shape = np.asarray(volume.shape, dtype=np.int64)
    changed = np.zeros(n, dtype=bool)
    sweep = _icm_sweep_parallel if parallel else _icm_sweep_serial
    sweep(volume.current.reshape(-1),
          volume.distances.reshape(n, volume.n_classes),
          shape,
          _c_strides(volume.shape),
          kernel.offsets(),
          kernel.neighbor_weights(),
          examine,
          volume.next.reshape(-1),
          changed)
    return changed


def _sweep_ndimage(volume: LabelVolume, kernel: WeightKernel, examine: np.ndarray) -> np.ndarray:
    labels = volume.current
    energy = np.array(volume.distances, dtype=np.float64)
    # Weights are added one offset at a time in kernel order, as in the
    # per-pixel loops, so near-tied energies round the same way.
    for off, w in zip(kernel.offsets(), kernel.neighbor_weights()):
        if w == 0.0 or any(abs(int(o)) >= n for o, n in zip(off, volume.shape)):
            continue
        # nb[p] = label(p + off); out-of-bounds neighbours read -1.
        nb = ndimage.shift(labels, -off, order=0, mode="constant", cval=-1)
        inside = nb >= 0
        for c in range(volume.n_classes):
            energy[..., c] += np.where(inside & (nb != c), w, 0.0)
    best = np.argmin(energy, axis=-1).astype(np.int32)
    gate = examine.reshape(volume.shape)
    volume.next[...] = np.where(gate, best, labels)
    return (volume.next != labels).ravel()


def _sweep_python(volume: LabelVolume, kernel: WeightKernel, tracker: ConvergenceTracker) -> int:
    offs = [tuple(int(x) for x in o) for o in kernel.offsets()]
    ws = kernel.neighbor_weights()
    shape = volume.shape
    examined = 0
    for index in np.ndindex(*shape):
        if not tracker.should_examine(index):
            tracker.record_change(index, False)
            continue
        examined += 1
        old = volume.label(index)
        best, best_e = 0, 0.0
        for c in range(volume.n_classes):
            e = volume.distance(index, c)
            for off, w in zip(offs, ws):
                if w == 0.0:
                    continue
                nb = tuple(i + o for i, o in zip(index, off))
                if any(j < 0 or j >= s for j, s in zip(nb, shape)):
                    continue
                if volume.label(nb) != c:
                    e += w
            if c == 0 or e < best_e:
                best, best_e = c, e
        volume.set_label(index, best)
        tracker.record_change(index, best != old)
    return examined
