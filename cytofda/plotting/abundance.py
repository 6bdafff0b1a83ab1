"""Figures for hypersphere results: t-SNE of centers, intensity heatmap, tol calibration."""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.colors import TwoSlopeNorm
from sklearn.manifold import TSNE

from cytofda.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle
from cytofda.plotting.utils import save_figure


def embed_centers(centers: np.ndarray, *, seed: int = 0, perplexity: float = 30.0) -> np.ndarray:
    """2D t-SNE of hypersphere centers; perplexity is capped for small inputs."""
    x = np.asarray(centers, dtype=float)
    n = x.shape[0]
    if n < 3:
        raise ValueError("Need at least 3 centers to embed.")
    perp = float(min(perplexity, max(1.0, (n - 1) / 3.0)))
    tsne = TSNE(n_components=2, perplexity=perp, init="pca", random_state=int(seed))
    return tsne.fit_transform(x)


def plot_logfc_embedding(
    embedding: np.ndarray,
    logfc: np.ndarray,
    out_path: Path,
    *,
    significant: np.ndarray | None = None,
    title: str = "",
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """Scatter of embedded centers colored by logFC; significant ones outlined."""
    xy = np.asarray(embedding, dtype=float)
    lfc = np.asarray(logfc, dtype=float)
    fig, ax = plt.subplots(figsize=style.figsize_embedding)
    finite = np.isfinite(lfc)
    ax.scatter(xy[~finite, 0], xy[~finite, 1], s=style.s_fg, color="0.85", rasterized=True)
    lim = float(np.nanmax(np.abs(lfc))) if finite.any() else 1.0
    lim = lim if lim > 0 else 1.0
    sc = ax.scatter(
        xy[finite, 0],
        xy[finite, 1],
        c=lfc[finite],
        cmap=style.diverging_cmap,
        norm=TwoSlopeNorm(vcenter=0.0, vmin=-lim, vmax=lim),
        s=style.s_fg,
        alpha=style.alpha_fg,
        linewidths=0.0,
        rasterized=True,
    )
    if significant is not None:
        sig = np.asarray(significant, dtype=bool)
        ax.scatter(
            xy[sig, 0],
            xy[sig, 1],
            s=style.s_fg * 3,
            facecolors="none",
            edgecolors="k",
            linewidths=0.6,
        )
    fig.colorbar(sc, ax=ax, shrink=style.colorbar_shrink, pad=style.colorbar_pad, label="logFC")
    ax.set_title(title, fontsize=style.title_fontsize)
    ax.set_xlabel("t-SNE1", fontsize=style.axis_label_fontsize)
    ax.set_ylabel("t-SNE2", fontsize=style.axis_label_fontsize)
    ax.set_xticks([])
    ax.set_yticks([])
    save_figure(fig, out_path, style=style)
    return out_path


def plot_intensity_heatmap(
    intensities: pd.DataFrame,
    out_path: Path,
    *,
    logfc: np.ndarray | None = None,
    title: str = "",
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """Center intensities of selected hyperspheres (rows), ordered by logFC when given."""
    data = intensities.copy()
    if logfc is not None:
        order = np.argsort(np.asarray(logfc, dtype=float), kind="mergesort")
        data = data.iloc[order]
    fig, ax = plt.subplots(figsize=style.figsize_heatmap)
    im = ax.imshow(data.to_numpy(dtype=float), aspect="auto", cmap=style.intensity_cmap)
    ax.set_xticks(np.arange(data.shape[1]))
    ax.set_xticklabels([str(c) for c in data.columns], rotation=90)
    ax.set_yticks([])
    ax.set_ylabel(f"hyperspheres (n={data.shape[0]})", fontsize=style.axis_label_fontsize)
    fig.colorbar(im, ax=ax, shrink=style.colorbar_shrink, pad=style.colorbar_pad, label="intensity")
    ax.set_title(title, fontsize=style.title_fontsize)
    fig.tight_layout()
    save_figure(fig, out_path, style=style)
    return out_path


def plot_neighbor_distances(
    distances: pd.DataFrame,
    out_path: Path,
    *,
    tol: float | None = None,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """Distribution of k-th neighbour distances per k, with the chosen radius."""
    fig, ax = plt.subplots(figsize=style.figsize_calibration)
    cols = list(distances.columns)
    values = [distances[c].dropna().to_numpy(dtype=float) for c in cols]
    ax.boxplot(values, showfliers=False)
    ax.set_xticks(np.arange(1, len(cols) + 1))
    ax.set_xticklabels(cols)
    ax.set_xlabel("neighbour rank", fontsize=style.axis_label_fontsize)
    ax.set_ylabel("distance to center", fontsize=style.axis_label_fontsize)
    if tol is not None:
        ax.axhline(float(tol), color="crimson", ls="--", lw=1.2, label="radius")
        ax.legend(loc="upper left", frameon=False)
    fig.tight_layout()
    save_figure(fig, out_path, style=style)
    return out_path
