"""Gate QC figures: channel histograms with bounds and polygon overlays."""

from __future__ import annotations

import math
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from cytofda.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle
from cytofda.plotting.utils import save_figure
from cytofda.preprocessing.gating import GateThresholds, PolygonGate, RangeGate


def plot_gate_qc(
    events: pd.DataFrame,
    gates: GateThresholds,
    out_path: Path,
    *,
    title: str = "",
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path | None:
    """One panel per gate, drawn on the events each gate receives.

    Outlier gates are shown with their fitted bounds. Returns None when there
    are no gates.
    """
    fitted = gates.fitted(events)
    if not fitted.gates:
        return None
    n = len(fitted.gates)
    ncols = min(n, 3)
    nrows = int(math.ceil(n / ncols))
    w, h = style.figsize_histogram
    fig, axes = plt.subplots(nrows, ncols, figsize=(w * ncols, h * nrows), squeeze=False)
    mask = np.ones(len(events), dtype=bool)
    for ax, gate in zip(axes.ravel(), fitted.gates):
        seen = events.loc[mask]
        if isinstance(gate, PolygonGate):
            ax.scatter(
                seen[gate.x_channel],
                seen[gate.y_channel],
                s=1.0,
                alpha=0.3,
                color="0.4",
                rasterized=True,
            )
            verts = np.asarray(gate.vertices + (gate.vertices[0],), dtype=float)
            ax.plot(verts[:, 0], verts[:, 1], color="crimson", lw=1.2)
            ax.set_xlabel(gate.x_channel)
            ax.set_ylabel(gate.y_channel)
        else:
            channel = getattr(gate, "channel", None)
            if channel is not None:
                x = seen[channel].to_numpy(dtype=float)
                ax.hist(x[np.isfinite(x)], bins=style.hist_bins, color="0.5")
                ax.set_xlabel(channel)
                ax.set_ylabel("events")
            if isinstance(gate, RangeGate):
                for bound in (gate.low, gate.high):
                    if bound is not None:
                        ax.axvline(float(bound), color="crimson", lw=1.2, ls="--")
        kept = gate.apply(events) & mask
        ax.set_title(
            f"{gate.name}\n{int(kept.sum())}/{int(mask.sum())} kept",
            fontsize=style.title_fontsize,
        )
        mask = kept
    for ax in axes.ravel()[n:]:
        ax.axis("off")
    if title:
        fig.suptitle(title, fontsize=style.title_fontsize)
    fig.tight_layout()
    save_figure(fig, out_path, style=style)
    return out_path
