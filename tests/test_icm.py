from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from classifier import GaussianClassifier
from errors import ConfigurationError, DataError
from icm import CONVERGED, INTERRUPTED, ITERATION_LIMIT, ICMEngine
from weights import WeightKernel

BACKENDS = ["numba", "ndimage", "python"]

# 1-D, 5 pixels, 2 classes; pixel 2 prefers class 1, the rest class 0.
LINE_DIST = np.array([[0.0, 5.0], [0.0, 5.0], [5.0, 0.0], [0.0, 5.0], [0.0, 5.0]])


def _line_engine(w: float, backend: str = "numba", **kw) -> ICMEngine:
    return ICMEngine(n_classes=2, neighborhood_radius=(1,), weights=[w, 0.0, w],
                     backend=backend, **kw)


def _random_problem(shape=(9, 8, 7), n_classes=3, seed=0):
    rng = np.random.default_rng(seed)
    return rng.random(shape + (n_classes,)) * 3.0


def _blocks_with_salt(shape, period: int = 4):
    """Two half-volume classes split along axis 0 with isolated flipped pixels.

    Returns (distances, truth). Each salt pixel has the data term of the
    wrong class; neighbour pressure restores it in one iteration.
    """
    idx = np.indices(shape)
    truth = (idx[0] >= shape[0] // 2).astype(np.int32)
    salt = np.all(idx % period == period // 2, axis=0)
    seen = np.where(salt, 1 - truth, truth)
    D = np.ones(shape + (2,))
    D[..., 0][seen == 0] = 0.0
    D[..., 1][seen == 1] = 0.0
    return D, truth


def _oscillating_pair():
    # Two pixels, indifferent data term, opposite starting labels: the
    # synchronous update swaps them forever.
    return np.zeros((2, 2)), np.array([0, 1], dtype=np.int32)


@pytest.mark.parametrize("backend", BACKENDS)
def test_line_weak_neighbours_keep_preference(backend):
    # energy(0) at pixel 2 = 5 + 0, energy(1) = 0 + 2 * 1.0 -> stays 1
    res = _line_engine(1.0, backend).run_distances(LINE_DIST)
    assert res.labels.tolist() == [0, 0, 1, 0, 0]
    assert res.state == CONVERGED
    assert res.iterations == 1
    assert res.error_history.tolist() == [0]


@pytest.mark.parametrize("backend", BACKENDS)
def test_line_strong_neighbours_flip(backend):
    # energy(0) at pixel 2 = 5, energy(1) = 0 + 2 * 3.0 = 6 -> flips to 0
    res = _line_engine(3.0, backend).run_distances(LINE_DIST)
    assert res.labels.tolist() == [0, 0, 0, 0, 0]
    assert res.state == CONVERGED
    assert res.iterations == 2
    assert res.error_history.tolist() == [1, 0]
    # only the flipped pixel and its two neighbours are revisited
    assert res.examined_history.tolist() == [5, 3]


@pytest.mark.parametrize("backend", BACKENDS)
def test_line_tie_goes_to_lowest_class(backend):
    # energy(0) = 5, energy(1) = 0 + 2 * 2.5 = 5
    res = _line_engine(2.5, backend).run_distances(LINE_DIST)
    assert res.labels[2] == 0


@pytest.mark.parametrize("backend", BACKENDS)
def test_zero_kernel_converges_immediately(backend):
    D = _random_problem((6, 5), n_classes=4)
    eng = ICMEngine(n_classes=4, neighborhood_radius=(1, 1), weights=np.zeros((3, 3)), backend=backend)
    res = eng.run_distances(D)
    assert res.state == CONVERGED
    assert res.iterations == 1
    assert res.error_count == 0
    assert np.array_equal(res.labels, np.argmin(D, axis=-1))


def test_labels_stay_in_range_and_errors_bounded():
    D = _random_problem()
    res = ICMEngine(n_classes=3, neighborhood_radius=(1, 1, 1), max_iterations=100).run_distances(D)
    assert res.labels.shape == D.shape[:-1]
    assert res.labels.min() >= 0 and res.labels.max() < 3
    n = res.labels.size
    assert np.all(res.error_history >= 0) and np.all(res.error_history <= n)
    assert np.all(res.examined_history <= n)
    assert len(res.error_history) == res.iterations
    if res.state == CONVERGED:
        assert res.error_history[-1] == 0


def test_runs_are_deterministic():
    D = _random_problem(seed=5)
    eng = ICMEngine(n_classes=3, neighborhood_radius=1)
    a = eng.run_distances(D)
    b = eng.run_distances(D)
    assert np.array_equal(a.labels, b.labels)
    assert a.iterations == b.iterations
    assert a.error_count == b.error_count
    assert np.array_equal(a.error_history, b.error_history)


@pytest.mark.parametrize("backend", ["numba", "ndimage"])
def test_converged_labelling_is_a_fixed_point(backend):
    D, truth = _blocks_with_salt((10, 10, 8))
    eng = ICMEngine(n_classes=2, neighborhood_radius=(1, 1, 1), backend=backend)
    first = eng.run_distances(D)
    assert first.state == CONVERGED
    assert first.iterations == 2
    assert np.array_equal(first.labels, truth)
    again = eng.run_distances(D, initial_labels=first.labels)
    assert again.error_history[0] == 0
    assert again.iterations == 1
    assert np.array_equal(again.labels, first.labels)


@pytest.mark.parametrize("backend", BACKENDS)
def test_radius_larger_than_volume(backend):
    eng = ICMEngine(n_classes=2, neighborhood_radius=(3,), backend=backend)
    res = eng.run_distances(np.array([[1.0, 0.0]]))
    assert res.labels.tolist() == [1]
    assert res.state == CONVERGED
    # two pixels that each prefer the other's class swap every iteration
    res = eng.run_distances(np.array([[1.0, 0.0], [0.0, 0.5]]))
    assert res.state == ITERATION_LIMIT
    assert res.labels.shape == (2,)
    assert res.labels.min() >= 0 and res.labels.max() < 2


@pytest.mark.parametrize("backend", BACKENDS)
def test_iteration_limit_is_reported_not_raised(backend):
    D, init = _oscillating_pair()
    eng = ICMEngine(n_classes=2, neighborhood_radius=(1,), weights=[1.0, 0.0, 1.0],
                    max_iterations=5, backend=backend)
    res = eng.run_distances(D, initial_labels=init)
    assert res.state == ITERATION_LIMIT
    assert not res.converged
    assert res.iterations == 5
    assert res.error_count == 2
    # five swaps from [0, 1]
    assert res.labels.tolist() == [1, 0]


def test_error_tolerance_is_a_pixel_count():
    res = _line_engine(3.0, error_tolerance=1).run_distances(LINE_DIST)
    assert res.state == CONVERGED
    assert res.iterations == 1
    assert res.error_count == 1
    assert res.labels.tolist() == [0, 0, 0, 0, 0]


def test_callback_runs_at_barrier_and_can_interrupt():
    D, init = _oscillating_pair()
    seen = []

    def cb(iteration, errors):
        seen.append((iteration, errors))
        return iteration < 2

    eng = ICMEngine(n_classes=2, neighborhood_radius=(1,), weights=[1.0, 0.0, 1.0], max_iterations=50)
    res = eng.run_distances(D, initial_labels=init, callback=cb)
    assert res.state == INTERRUPTED
    assert res.iterations == 2
    assert seen == [(1, 2), (2, 2)]
    assert res.labels.tolist() == [0, 1]


def test_callback_does_not_override_convergence():
    res = _line_engine(1.0).run_distances(LINE_DIST, callback=lambda i, e: False)
    assert res.state == CONVERGED


def test_parallel_sweep_matches_serial():
    D = _random_problem((12, 11, 10), seed=2)
    serial = ICMEngine(n_classes=3, neighborhood_radius=1).run_distances(D)
    par = ICMEngine(n_classes=3, neighborhood_radius=1, parallel=True).run_distances(D)
    assert np.array_equal(serial.labels, par.labels)
    assert np.array_equal(serial.error_history, par.error_history)


def test_run_with_classifier_removes_salt():
    feats = np.zeros((7, 7))
    feats[3, 3] = 0.6
    clf = GaussianClassifier([[0.0], [1.0]])
    res = ICMEngine(n_classes=2, neighborhood_radius=1).run(feats, clf)
    assert np.all(res.labels == 0)
    assert res.error_history[0] == 1
    assert res.state == CONVERGED


def test_vector_features_need_a_per_dimension_radius():
    feats = np.zeros((5, 6, 2))
    feats[:, 3:, :] = 1.0
    clf = GaussianClassifier([[0.0, 0.0], [1.0, 1.0]])
    res = ICMEngine(n_classes=2, neighborhood_radius=(1, 1)).run(feats, clf)
    assert res.labels.shape == (5, 6)
    assert np.all(res.labels[:, :3] == 0) and np.all(res.labels[:, 3:] == 1)


def test_configuration_errors():
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=0)
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, max_iterations=0)
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, error_tolerance=-1)
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, error_tolerance="lots")
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, error_tolerance=None)
    assert ICMEngine(n_classes=2, error_tolerance="3").error_tolerance == 3
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, backend="cuda")
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, neighborhood_radius=(1, 1), weights=[1.0] * 27)
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, neighborhood_radius=(2, 2, 2), weights=WeightKernel.default((1, 1, 1)))
    with pytest.raises(ConfigurationError):
        ICMEngine(n_classes=2, neighborhood_radius=(1, -1))
    # scalar radius with a flat list is checked once the image is known
    eng = ICMEngine(n_classes=2, neighborhood_radius=1, weights=[1.0] * 27)
    with pytest.raises(ConfigurationError):
        eng.run_distances(np.zeros((4, 4, 2)))
    # a 3-D kernel cannot label a 2-D image
    eng = ICMEngine(n_classes=2, neighborhood_radius=(1, 1, 1))
    with pytest.raises(ConfigurationError):
        eng.run_distances(np.zeros((4, 4, 2)))


def test_data_errors():
    eng = ICMEngine(n_classes=3, neighborhood_radius=(1, 1))
    with pytest.raises(DataError):
        eng.run_distances(np.zeros((4, 4, 2)))
    with pytest.raises(DataError):
        eng.run_distances(np.zeros((4, 4, 3)), initial_labels=np.zeros((4, 5), dtype=np.int32))
    with pytest.raises(DataError):
        # fractional labels are rejected, not truncated
        ICMEngine(n_classes=2, neighborhood_radius=(1,)).run_distances(
            np.zeros((3, 2)), initial_labels=np.array([0.9, 1.7, 0.2]))

    class _Short:
        n_classes = 3

        def classify(self, x):
            return [0.0, 1.0]

    with pytest.raises(DataError):
        eng.run(np.zeros((4, 4)), _Short())
    with pytest.raises(DataError):
        eng.run(np.zeros((4, 4)), GaussianClassifier([[0.0], [1.0], [2.0]]),
                initial_labels=np.zeros((3, 3), dtype=np.int32))


if __name__ == "__main__":
    import inspect
    for name, fn in list(globals().items()):
        if not (name.startswith("test_") and callable(fn)):
            continue
        if "backend" in inspect.signature(fn).parameters:
            for b in BACKENDS:
                fn(b)
        else:
            fn()
    print("icm tests passed")
