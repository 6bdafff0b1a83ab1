"""Per-file preprocessing: transform, gate, curate."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from cytofda.preprocessing.channels import curate_channels
from cytofda.preprocessing.gating import GateThresholds, apply_gates
from cytofda.preprocessing.transforms import TransformParams, apply_transform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreprocessResult:
    events: np.ndarray
    markers: tuple[str, ...]
    mask: np.ndarray
    gate_report: pd.DataFrame

    @property
    def n_retained(self) -> int:
        return int(self.events.shape[0])


def preprocess_events(
    events: pd.DataFrame,
    transform: TransformParams,
    gates: GateThresholds,
    markers: list[str] | tuple[str, ...] | None = None,
) -> PreprocessResult:
    """Transform, gate and curate one file's events.

    Pure: parameters come in by value and `events` is not modified.
    """
    if events.empty:
        raise ValueError("No events to preprocess.")
    transformed = apply_transform(events, transform)
    mask, report = apply_gates(transformed, gates)
    marker_cols = curate_channels(transformed.columns, keep=markers)
    kept = transformed.loc[mask, marker_cols].to_numpy(dtype=float)
    logger.info(
        "Preprocessed %d events -> %d retained, %d markers",
        len(events),
        kept.shape[0],
        len(marker_cols),
    )
    return PreprocessResult(
        events=kept,
        markers=tuple(marker_cols),
        mask=mask,
        gate_report=report,
    )
