from __future__ import annotations

import argparse
import time

import numpy as np
import yaml

from classifier import GaussianClassifier, classify_image
from errors import ConfigurationError
from icm import ICMEngine
from io_bridge import IOConfig, load_inputs, query_volume_shape, write_result, git_rev
from weights import normalize_radius
import metrics as M


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{path} does not hold a mapping")
    return cfg


def resolve_tolerance(cfg: dict, n_pixels: int) -> int:
    """Absolute pixel-count tolerance from ``error_tolerance`` or ``error_tolerance_fraction``."""
    frac = cfg.get("error_tolerance_fraction")
    if frac is not None:
        frac = float(frac)
        if not (0.0 <= frac <= 1.0):
            raise ConfigurationError("error_tolerance_fraction must lie in [0, 1]")
        return int(np.floor(frac * n_pixels))
    tol = int(cfg.get("error_tolerance", 0))
    if tol < 0:
        raise ConfigurationError("error_tolerance must be >= 0")
    return tol


def build_classifier(cfg: dict) -> GaussianClassifier:
    means = cfg.get("class_means")
    if means is None:
        raise ConfigurationError("class_means must be provided")
    clf = GaussianClassifier(means, cfg.get("class_covariances"))
    n_classes = int(cfg.get("n_classes", clf.n_classes))
    if n_classes != clf.n_classes:
        raise ConfigurationError(
            f"n_classes ({n_classes}) does not match the {clf.n_classes} class means given"
        )
    return clf


def infer_spatial_ndim(shape, n_features: int) -> int:
    """Spatial axes of a feature image; a trailing axis of length n_features is the feature axis."""
    shape = tuple(shape)
    if n_features > 1 or (len(shape) > 1 and shape[-1] == n_features):
        return len(shape) - 1
    return len(shape)


def run(cfg: dict) -> dict:
    verbose = bool(cfg.get("verbose", False))
    clf = build_classifier(cfg)

    spatial_ndim = cfg.get("spatial_ndim")
    io_cfg = IOConfig(
        features_path=str(cfg["features_path"]),
        features_key=cfg.get("features_key"),
        initial_labels_path=cfg.get("initial_labels_path"),
        initial_labels_key=cfg.get("initial_labels_key"),
        truth_path=cfg.get("truth_path"),
        truth_key=cfg.get("truth_key"),
        field_dtype=np.dtype(cfg.get("field_dtype", "float64")),
        bbox=cfg.get("bbox"),
    )
    if spatial_ndim is None:
        full = query_volume_shape(io_cfg.features_path, io_cfg.features_key)
        spatial_ndim = infer_spatial_ndim(full, clf.n_features)
    spatial_ndim = int(spatial_ndim)

    t0 = time.time()
    inputs = load_inputs(io_cfg, spatial_ndim)
    feats = inputs["features"]
    init = inputs["initial_labels"]
    truth = inputs["truth"]
    t_load = time.time()

    radius = normalize_radius(cfg.get("neighborhood_radius", 1), spatial_ndim)
    n_pixels = int(np.prod(feats.shape[:spatial_ndim], dtype=np.int64))
    engine = ICMEngine(
        n_classes=clf.n_classes,
        neighborhood_radius=radius,
        weights=cfg.get("weights"),
        max_iterations=int(cfg.get("max_iterations", 50)),
        error_tolerance=resolve_tolerance(cfg, n_pixels),
        backend=str(cfg.get("backend", "numba")),
        parallel=bool(cfg.get("parallel", False)),
        verbose=verbose,
    )
    kernel = engine.kernel_for(spatial_ndim)

    dist = classify_image(feats, clf, clf.n_classes, feats.shape[:spatial_ndim])
    seed = np.argmin(dist, axis=-1).astype(np.int32)
    t_classify = time.time()

    res = engine.run_distances(dist, initial_labels=init)
    t_icm = time.time()

    start = seed if init is None else init
    energy0 = M.mrf_energy(start, dist, kernel.array)
    energy1 = M.mrf_energy(res.labels, dist, kernel.array)

    out = {
        "labels": res.labels,
        "initial_labels": start,
        "error_history": res.error_history,
        "examined_history": res.examined_history,
        "class_counts": M.class_counts(res.labels, clf.n_classes),
        "weights": kernel.array,
        "neighborhood_radius": np.asarray(radius, dtype=np.int64),
        "n_classes": np.int32(clf.n_classes),
        "iterations": np.int32(res.iterations),
        "error_count": np.int64(res.error_count),
        "state": np.array(res.state),
    }
    summary = {
        "state": res.state,
        "iterations": int(res.iterations),
        "error_count": int(res.error_count),
        "changed_fraction": M.changed_fraction(start, res.labels),
        "energy_initial": energy0,
        "energy_final": energy1,
    }
    if truth is not None:
        out["confusion"] = M.confusion_matrix(truth, res.labels, clf.n_classes)
        summary["accuracy_initial"] = M.accuracy(truth, start)
        summary["accuracy_final"] = M.accuracy(truth, res.labels)

    meta = {
        "times": {
            "load": float(t_load - t0),
            "classify": float(t_classify - t_load),
            "icm": float(t_icm - t_classify),
        },
        "labeling": {
            "n_classes": clf.n_classes,
            "neighborhood_radius": list(radius),
            "max_iterations": engine.max_iterations,
            "error_tolerance": engine.error_tolerance,
            "backend": engine.backend,
            "parallel": engine.parallel,
            "weights": kernel.tolist(),
        },
        "result": summary,
        "git_rev": git_rev(),
        "config": cfg,
    }
    out_dir = cfg.get("output_dir", "./mrf_out")
    npz_path = write_result(out_dir, out, meta, stem=str(cfg.get("output_stem", "labels")))

    print(f"times: load={t_load-t0:.2f}s classify={t_classify-t_load:.2f}s icm={t_icm-t_classify:.2f}s "
          f"state={res.state} iterations={res.iterations} changed={res.error_count}")
    if truth is not None:
        print(f"accuracy: initial={summary['accuracy_initial']:.4f} final={summary['accuracy_final']:.4f}")
    summary["output_npz"] = npz_path
    return summary


def main(argv=None):
    ap = argparse.ArgumentParser(description="MRF/ICM refinement of a classified image.")
    ap.add_argument("--config", required=True)
    ap.add_argument("--output-dir", default=None, help="Override output_dir from the config.")
    ap.add_argument("--max-iterations", type=int, default=None)
    ap.add_argument("--backend", choices=["numba", "ndimage", "python"], default=None)
    ap.add_argument("--parallel", action="store_true", help="Run the numba sweep in parallel.")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    cfg = parse_config(args.config)
    if args.output_dir is not None:
        cfg["output_dir"] = args.output_dir
    if args.max_iterations is not None:
        cfg["max_iterations"] = args.max_iterations
    if args.backend is not None:
        cfg["backend"] = args.backend
    if args.parallel:
        cfg["parallel"] = True
    if args.verbose:
        cfg["verbose"] = True
    return run(cfg)


if __name__ == "__main__":
    main()
