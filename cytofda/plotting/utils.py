"""Shared plotting utilities used by figure factories."""

from __future__ import annotations

from pathlib import Path

import matplotlib.figure
import matplotlib.pyplot as plt

from cytofda.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle


def sanitize_label(label: str, max_len: int = 40) -> str:
    """Filesystem-safe stem for a channel or contrast name."""
    clean = "".join(ch if (ch.isalnum() or ch == "_") else "_" for ch in str(label))
    clean = clean.strip("_") or "figure"
    return clean[:max_len]


def save_figure(
    fig: matplotlib.figure.Figure,
    out_path: Path,
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
    bbox_tight: bool = False,
    close: bool = True,
) -> None:
    """Save figure deterministically and optionally close it."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    save_kwargs: dict[str, object] = {
        "dpi": style.dpi,
        "facecolor": "white",
        "pad_inches": 0.02,
    }
    if bbox_tight:
        save_kwargs["bbox_inches"] = "tight"
    fig.savefig(out_path, **save_kwargs)
    if close:
        plt.close(fig)
