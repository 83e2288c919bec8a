from __future__ import annotations

import argparse
import os

import numpy as np
import matplotlib
matplotlib.use("agg")
import matplotlib.pyplot as plt
from matplotlib import colors

from io_bridge import load_array, load_result


def _take_slice(arr: np.ndarray, axis: int, index: int | None) -> np.ndarray:
    """Return a 2-D view of an N-D image; 1-D images become a single row."""
    a = np.asarray(arr)
    if a.ndim == 1:
        return a[None, :]
    while a.ndim > 2:
        ax = min(axis, a.ndim - 1)
        i = a.shape[ax] // 2 if index is None else int(index)
        a = np.take(a, i, axis=ax)
    return a


def _label_cmap(n_classes: int):
    base = plt.get_cmap("tab10" if n_classes <= 10 else "tab20")
    cols = [base(i % base.N) for i in range(max(n_classes, 1))]
    return colors.ListedColormap(cols), colors.BoundaryNorm(np.arange(-0.5, n_classes + 0.5), len(cols))


def make_pngs(npz_path: str, outdir: str, features_path: str | None = None,
              axis: int = -1, index: int | None = None, prefix: str | None = None):
    d = load_result(npz_path)
    labels = d["labels"]
    n_classes = int(d["n_classes"]) if "n_classes" in d else int(labels.max()) + 1
    axis = axis % max(labels.ndim, 1)
    cmap, norm = _label_cmap(n_classes)

    os.makedirs(outdir, exist_ok=True)
    base = prefix or (os.path.splitext(os.path.basename(npz_path))[0])

    # 1) Feature / initial / final slices side by side
    panels = []
    if features_path is not None:
        f = load_array(features_path)
        if f.ndim == labels.ndim + 1:
            f = f[..., 0]
        panels.append(("features", _take_slice(f, axis, index), None))
    if "initial_labels" in d:
        panels.append(("initial labels", _take_slice(d["initial_labels"], axis, index), True))
    panels.append(("ICM labels", _take_slice(labels, axis, index), True))

    fig, axes = plt.subplots(1, len(panels), figsize=(4.5 * len(panels), 4), dpi=150)
    axes = np.atleast_1d(axes)
    for ax, (title, img, is_label) in zip(axes, panels):
        if is_label:
            im = ax.imshow(img, cmap=cmap, norm=norm, interpolation="nearest")
        else:
            im = ax.imshow(img, cmap="gray", interpolation="nearest")
        plt.colorbar(im, ax=ax, fraction=0.046)
        ax.set_title(title)
        ax.set_xticks([])
        ax.set_yticks([])
    fig.savefig(os.path.join(outdir, f"{base}_slices.png"), bbox_inches="tight")
    plt.close(fig)

    # 2) Changed pixels per iteration
    hist = d.get("error_history")
    if hist is not None and hist.size:
        fig, ax = plt.subplots(figsize=(6, 4), dpi=150)
        it = np.arange(1, hist.size + 1)
        ax.plot(it, np.maximum(hist, 0.5), marker="o", label="changed")
        exam = d.get("examined_history")
        if exam is not None and exam.size == hist.size:
            ax.plot(it, np.maximum(exam, 0.5), marker=".", label="examined")
        ax.set_yscale("log")
        ax.set_xlabel("iteration")
        ax.set_ylabel("pixels")
        ax.set_title(f"ICM convergence ({str(d.get('state', ''))})")
        ax.legend()
        fig.savefig(os.path.join(outdir, f"{base}_convergence.png"), bbox_inches="tight")
        plt.close(fig)

    print(f"Wrote PNGs to {outdir}")


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('--input', required=True, help='labels npz written by mrf_label.py')
    ap.add_argument('--features', default=None, help='feature image to show next to the labels')
    ap.add_argument('--outdir', default=None, help='output directory for PNGs (default next to input)')
    ap.add_argument('--axis', type=int, default=-1, help='axis to slice along for N-D images')
    ap.add_argument('--index', type=int, default=None, help='slice index (default middle)')
    args = ap.parse_args()

    outdir = args.outdir or os.path.dirname(args.input) or '.'
    make_pngs(args.input, outdir, features_path=args.features, axis=args.axis, index=args.index)


if __name__ == '__main__':
    main()
