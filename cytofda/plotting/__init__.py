"""Plotting API for cytofda pipelines."""

from cytofda.plotting.abundance import (
    embed_centers,
    plot_intensity_heatmap,
    plot_logfc_embedding,
    plot_neighbor_distances,
)
from cytofda.plotting.gates import plot_gate_qc
from cytofda.plotting.styles import (
    DEFAULT_PLOT_STYLE,
    PlotStyle,
    apply_plot_style,
    plot_style_dict,
)
from cytofda.plotting.utils import sanitize_label, save_figure

__all__ = [
    "PlotStyle",
    "DEFAULT_PLOT_STYLE",
    "apply_plot_style",
    "plot_style_dict",
    "save_figure",
    "sanitize_label",
    "plot_gate_qc",
    "embed_centers",
    "plot_logfc_embedding",
    "plot_intensity_heatmap",
    "plot_neighbor_distances",
]
