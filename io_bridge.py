"""
io_bridge.py

Thin I/O wrapper for reading labeller inputs from NumPy files and writing
results.

- Volumes are plain ``.npy`` arrays or named arrays inside ``.npz`` archives.
- Feature images are either scalar (shape S) or vector valued (shape S + (F,),
  feature axis last).
- Label images are integer arrays of shape S.
- An optional bounding box crops every spatial axis before processing.

Primary API
-----------

    from io_bridge import IOConfig, load_inputs, write_result

    cfg = IOConfig(
        features_path="./t1_t2.npz",
        features_key="features",
        initial_labels_path=None,
        field_dtype=np.float32,
    )
    out = load_inputs(cfg, spatial_ndim=3)
    feats, init = out["features"], out["initial_labels"]

Notes
-----
- Arrays are memory-mapped where NumPy allows it and only the cropped region
  is materialised.
- The bounding box uses exclusive upper bounds: ((i0, i1), (j0, j1), ...).
"""

from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from errors import DataError


BBox = Sequence[Tuple[int, int]]


@dataclass
class IOConfig:
    """Configuration for load_inputs.

    - features_path: ``.npy`` or ``.npz`` holding the feature image
    - features_key: array name inside an ``.npz`` (first array if None)
    - initial_labels_path / initial_labels_key: optional starting labels
    - truth_path / truth_key: optional reference labels for accuracy reports
    - field_dtype: dtype for the returned feature image
    - bbox: optional per-axis (start, stop) crop applied to every volume
    """

    features_path: str
    features_key: Optional[str] = None
    initial_labels_path: Optional[str] = None
    initial_labels_key: Optional[str] = None
    truth_path: Optional[str] = None
    truth_key: Optional[str] = None
    field_dtype: np.dtype = np.float64
    bbox: Optional[BBox] = None


def load_array(path: str, key: Optional[str] = None) -> np.ndarray:
    """Load one array from ``.npy`` (memory-mapped) or ``.npz``."""
    if path.endswith(".npz"):
        with np.load(path) as d:
            if key is None:
                if not d.files:
                    raise DataError(f"{path} holds no arrays")
                key = d.files[0]
            if key not in d.files:
                raise DataError(f"{path} has no array named {key!r}; found {d.files}")
            return d[key]
    return np.load(path, mmap_mode="r")


def query_volume_shape(path: str, key: Optional[str] = None) -> Tuple[int, ...]:
    return tuple(int(s) for s in load_array(path, key).shape)


def _crop(arr: np.ndarray, bbox: Optional[BBox], spatial_ndim: int) -> np.ndarray:
    if bbox is None:
        return arr
    if len(bbox) != spatial_ndim:
        raise DataError(f"bbox has {len(bbox)} axes, volume has {spatial_ndim}")
    sl = []
    for (a, b), n in zip(bbox, arr.shape[:spatial_ndim]):
        a, b = int(a), int(b)
        if not (0 <= a < b <= n):
            raise DataError(f"bbox range ({a}, {b}) outside axis of length {n}")
        sl.append(slice(a, b))
    return arr[tuple(sl)]


def load_inputs(cfg: IOConfig, spatial_ndim: int) -> Dict[str, Optional[np.ndarray]]:
    """Load the feature image and the optional label images.

    Returns
    -------
    dict
        {
          'features':       S + (F,) or S, cfg.field_dtype
          'initial_labels': S int32, or None
          'truth':          S int32, or None
        }
    """
    feats = load_array(cfg.features_path, cfg.features_key)
    if feats.ndim not in (spatial_ndim, spatial_ndim + 1):
        raise DataError(
            f"feature image has {feats.ndim} axes, expected {spatial_ndim} or {spatial_ndim + 1}"
        )
    feats = np.array(_crop(feats, cfg.bbox, spatial_ndim), dtype=np.dtype(cfg.field_dtype))
    extent = feats.shape[:spatial_ndim]

    def _labels(path, key, what):
        if path is None:
            return None
        lab = load_array(path, key)
        lab = np.array(_crop(lab, cfg.bbox, spatial_ndim))
        if lab.shape != extent:
            raise DataError(f"{what} shape {lab.shape} does not match feature extent {extent}")
        if not np.issubdtype(lab.dtype, np.integer):
            raise DataError(f"{what} must be an integer image, got {lab.dtype}")
        return lab.astype(np.int32, copy=False)

    return {
        "features": feats,
        "initial_labels": _labels(cfg.initial_labels_path, cfg.initial_labels_key, "initial label image"),
        "truth": _labels(cfg.truth_path, cfg.truth_key, "truth image"),
    }


def git_rev() -> str:
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _jsonable(x):
    if isinstance(x, dict):
        return {str(k): _jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_jsonable(v) for v in x]
    if isinstance(x, np.ndarray):
        return x.tolist()
    if isinstance(x, np.generic):
        return x.item()
    return x


def write_result(out_dir: str, arrays: Dict[str, np.ndarray], meta: dict, stem: str = "labels") -> str:
    """Write ``<stem>.npz`` and its ``<stem>.meta.json`` sidecar; return the npz path."""
    os.makedirs(out_dir, exist_ok=True)
    npz_path = os.path.join(out_dir, f"{stem}.npz")
    np.savez(npz_path, **arrays)
    meta = dict(meta)
    meta["output_npz"] = os.path.basename(npz_path)
    with open(os.path.join(out_dir, f"{stem}.meta.json"), "w") as f:
        json.dump(_jsonable(meta), f, indent=2)
    return npz_path


def load_result(path: str) -> Dict[str, np.ndarray]:
    with np.load(path) as d:
        return {k: d[k] for k in d.files}


__all__ = ["IOConfig", "load_array", "load_inputs", "query_volume_shape", "write_result", "load_result", "git_rev"]
