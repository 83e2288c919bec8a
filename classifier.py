"""
classifier.py

Per-pixel data-fit distances consumed by the ICM labeller.

The labeller never trains or re-invokes a classifier: ``classify_image`` calls
it once per pixel (or once per batch) to seed the distance buffer, and all
later iterations only recompute the neighbour term.

Any object with ``n_classes`` and ``classify(pixel_features)`` satisfies
``ClassifierPort``. Classifiers that also provide ``classify_many`` are fed
all pixels at once.

    clf = GaussianClassifier(means=[[10.0], [50.0]], covariances=[[[4.0]], [[9.0]]])
    dist = classify_image(features, clf, n_classes=2, spatial_shape=labels.shape)
"""

from __future__ import annotations

from typing import Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from errors import ConfigurationError, DataError


@runtime_checkable
class ClassifierPort(Protocol):
    n_classes: int

    def classify(self, pixel_features) -> Sequence[float]:
        ...


def _as_feature_matrix(features: np.ndarray, spatial_shape: Tuple[int, ...]) -> np.ndarray:
    """Return features reshaped to (n_pixels, n_features).

    Accepts a scalar image of shape ``spatial_shape`` or a vector image of
    shape ``spatial_shape + (F,)``.
    """
    f = np.asarray(features)
    nd = len(spatial_shape)
    if f.shape[:nd] != tuple(spatial_shape) or f.ndim not in (nd, nd + 1):
        raise DataError(
            f"feature image shape {f.shape} does not match spatial extent {tuple(spatial_shape)}"
        )
    n = int(np.prod(spatial_shape, dtype=np.int64))
    return f.reshape(n, -1)


def classify_image(features: np.ndarray,
                   classifier: ClassifierPort,
                   n_classes: int,
                   spatial_shape: Tuple[int, ...]) -> np.ndarray:
    """Seed the distance buffer, shaped ``spatial_shape + (n_classes,)``.

    Raises DataError if any returned distance vector does not have exactly
    ``n_classes`` entries or holds non-finite values.
    """
    X = _as_feature_matrix(features, spatial_shape)
    n = X.shape[0]
    batch = getattr(classifier, "classify_many", None)
    if callable(batch):
        D = np.asarray(batch(X), dtype=np.float64)
        if D.ndim != 2 or D.shape[0] != n or D.shape[1] != n_classes:
            raise DataError(
                f"classifier returned distances of shape {D.shape}, expected ({n}, {n_classes})"
            )
    else:
        D = np.empty((n, n_classes), dtype=np.float64)
        for p in range(n):
            d = np.asarray(classifier.classify(X[p]), dtype=np.float64).ravel()
            if d.size != n_classes:
                raise DataError(
                    f"classifier returned {d.size} distances for pixel {p}, expected {n_classes}"
                )
            D[p] = d
    if not np.all(np.isfinite(D)):
        raise DataError("classifier returned non-finite distances")
    return D.reshape(tuple(spatial_shape) + (n_classes,))


class GaussianClassifier:
    """Mahalanobis distance to a set of known class means.

    Means are shaped (C, F); covariances (C, F, F). Identity covariances are
    used when none are given, which reduces to Euclidean distance.
    """

    def __init__(self, means, covariances=None):
        mu = np.asarray(means, dtype=np.float64)
        if mu.ndim == 1:
            mu = mu[:, None]
        if mu.ndim != 2 or mu.shape[0] < 1:
            raise ConfigurationError(f"class means must be shaped (C, F), got {mu.shape}")
        C, F = mu.shape
        if covariances is None:
            cov = np.broadcast_to(np.eye(F), (C, F, F)).copy()
        else:
            cov = np.asarray(covariances, dtype=np.float64).reshape(C, F, F)
        try:
            inv = np.linalg.inv(cov)
        except np.linalg.LinAlgError as exc:
            raise ConfigurationError("class covariance matrices must be invertible") from exc
        self.means = mu
        self.covariances = cov
        self._inv = inv

    @property
    def n_classes(self) -> int:
        return int(self.means.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.means.shape[1])

    def classify(self, pixel_features) -> np.ndarray:
        x = np.asarray(pixel_features, dtype=np.float64).reshape(1, -1)
        return self.classify_many(x)[0]

    def classify_many(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64).reshape(X.shape[0], -1)
        if X.shape[1] != self.n_features:
            raise DataError(f"pixels carry {X.shape[1]} features, classifier expects {self.n_features}")
        diff = X[:, None, :] - self.means[None, :, :]
        d2 = np.einsum("ncf,cfg,ncg->nc", diff, self._inv, diff)
        return np.sqrt(np.maximum(d2, 0.0))


class EstimatorClassifier:
    """Adapter for an already fitted scikit-learn estimator.

    Uses ``transform`` when the estimator has one (KMeans cluster distances),
    otherwise ``-log(predict_proba)``.
    """

    def __init__(self, estimator, eps: float = 1e-12):
        if not (hasattr(estimator, "transform") or hasattr(estimator, "predict_proba")):
            raise ConfigurationError("estimator needs transform() or predict_proba()")
        self.estimator = estimator
        self.eps = float(eps)

    @property
    def n_classes(self) -> int:
        if hasattr(self.estimator, "n_clusters"):
            return int(self.estimator.n_clusters)
        return int(len(self.estimator.classes_))

    def classify(self, pixel_features) -> np.ndarray:
        x = np.asarray(pixel_features, dtype=np.float64).reshape(1, -1)
        return self.classify_many(x)[0]

    def classify_many(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64).reshape(X.shape[0], -1)
        if hasattr(self.estimator, "transform"):
            return np.asarray(self.estimator.transform(X), dtype=np.float64)
        proba = np.asarray(self.estimator.predict_proba(X), dtype=np.float64)
        return -np.log(np.maximum(proba, self.eps))
