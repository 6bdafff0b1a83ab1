"""Quality-control gates for transformed events.

Every gate exposes `apply(events) -> mask` over a channel-named DataFrame,
returning True for retained events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, runtime_checkable

import numpy as np
import pandas as pd
from matplotlib.path import Path

from cytofda.core.types import ConfigurationError

logger = logging.getLogger(__name__)

OUTLIER_SIDES = ("both", "lower", "higher")


@runtime_checkable
class Gate(Protocol):
    name: str

    def apply(self, events: pd.DataFrame) -> np.ndarray:
        ...


def _column(events: pd.DataFrame, channel: str) -> np.ndarray:
    if channel not in events.columns:
        raise KeyError(f"Gate channel '{channel}' not found in events.")
    return events[channel].to_numpy(dtype=float)


@dataclass(frozen=True)
class RangeGate:
    """Inclusive [low, high] bounds on one channel; either bound may be open."""

    channel: str
    low: float | None = None
    high: float | None = None
    name: str = ""

    def __post_init__(self) -> None:
        if self.low is None and self.high is None:
            raise ConfigurationError(f"RangeGate on '{self.channel}' needs low and/or high.")
        if self.low is not None and self.high is not None and self.low > self.high:
            raise ConfigurationError(
                f"RangeGate on '{self.channel}': low ({self.low}) exceeds high ({self.high})."
            )
        if not self.name:
            object.__setattr__(self, "name", f"range:{self.channel}")

    def apply(self, events: pd.DataFrame) -> np.ndarray:
        x = _column(events, self.channel)
        mask = np.isfinite(x)
        if self.low is not None:
            mask &= x >= float(self.low)
        if self.high is not None:
            mask &= x <= float(self.high)
        return mask


@dataclass(frozen=True)
class PolygonGate:
    """Events inside a polygon drawn on two channels."""

    x_channel: str
    y_channel: str
    vertices: tuple[tuple[float, float], ...]
    name: str = ""

    def __post_init__(self) -> None:
        verts = tuple((float(x), float(y)) for x, y in self.vertices)
        if len(verts) < 3:
            raise ConfigurationError("PolygonGate requires at least 3 vertices.")
        object.__setattr__(self, "vertices", verts)
        if not self.name:
            object.__setattr__(self, "name", f"polygon:{self.x_channel}/{self.y_channel}")

    def apply(self, events: pd.DataFrame) -> np.ndarray:
        pts = np.column_stack([_column(events, self.x_channel), _column(events, self.y_channel)])
        path = Path(np.asarray(self.vertices, dtype=float), closed=False)
        return np.asarray(path.contains_points(pts), dtype=bool)


@dataclass(frozen=True)
class OutlierGate:
    """Drop events more than `nmads` median absolute deviations from the median."""

    channel: str
    nmads: float = 3.0
    side: str = "both"
    name: str = ""

    def __post_init__(self) -> None:
        if self.side not in OUTLIER_SIDES:
            raise ConfigurationError(f"OutlierGate side must be one of {OUTLIER_SIDES}.")
        if not float(self.nmads) > 0:
            raise ConfigurationError("OutlierGate nmads must be positive.")
        if not self.name:
            object.__setattr__(self, "name", f"outlier:{self.channel}")

    def thresholds(self, values: np.ndarray) -> tuple[float | None, float | None]:
        x = np.asarray(values, dtype=float)
        x = x[np.isfinite(x)]
        if x.size == 0:
            raise ValueError(f"No finite values on '{self.channel}' to derive outlier bounds.")
        med = float(np.median(x))
        mad = 1.4826 * float(np.median(np.abs(x - med)))
        low = med - float(self.nmads) * mad if self.side in ("both", "lower") else None
        high = med + float(self.nmads) * mad if self.side in ("both", "higher") else None
        return low, high

    def fit(self, events: pd.DataFrame) -> RangeGate:
        """Freeze the data-derived bounds into a reusable RangeGate."""
        low, high = self.thresholds(_column(events, self.channel))
        return RangeGate(channel=self.channel, low=low, high=high, name=self.name)

    def apply(self, events: pd.DataFrame) -> np.ndarray:
        return self.fit(events).apply(events)


@dataclass(frozen=True)
class GateThresholds:
    """Ordered gates applied to every file."""

    gates: tuple[Gate, ...] = field(default_factory=tuple)

    def fitted(self, events: pd.DataFrame) -> "GateThresholds":
        """Replace outlier gates by their bounds on `events` (e.g. pooled files)."""
        frozen: list[Gate] = []
        mask = np.ones(len(events), dtype=bool)
        for gate in self.gates:
            if isinstance(gate, OutlierGate):
                gate = gate.fit(events.loc[mask])
            mask &= gate.apply(events)
            frozen.append(gate)
        return GateThresholds(gates=tuple(frozen))


def gate_from_config(entry: dict[str, Any]) -> Gate:
    kind = str(entry.get("type", "")).strip().lower()
    name = str(entry.get("name", ""))
    if kind == "range":
        return RangeGate(
            channel=str(entry["channel"]), low=entry.get("low"), high=entry.get("high"), name=name
        )
    if kind == "polygon":
        return PolygonGate(
            x_channel=str(entry["x_channel"]),
            y_channel=str(entry["y_channel"]),
            vertices=tuple(tuple(v) for v in entry["vertices"]),
            name=name,
        )
    if kind == "outlier":
        return OutlierGate(
            channel=str(entry["channel"]),
            nmads=float(entry.get("nmads", 3.0)),
            side=str(entry.get("side", "both")),
            name=name,
        )
    raise ConfigurationError(f"Unknown gate type '{entry.get('type')}'. Use range, polygon or outlier.")


def gates_from_config(specs: Iterable[dict[str, Any]]) -> GateThresholds:
    return GateThresholds(gates=tuple(gate_from_config(s) for s in specs))


def apply_gates(events: pd.DataFrame, gates: GateThresholds) -> tuple[np.ndarray, pd.DataFrame]:
    """Apply gates in order; returns the retained mask and a per-gate report."""
    mask = np.ones(len(events), dtype=bool)
    rows = []
    for gate in gates.gates:
        n_before = int(mask.sum())
        if isinstance(gate, OutlierGate):
            # Bounds come from the events that survived the previous gates.
            gate = gate.fit(events.loc[mask])
        mask &= gate.apply(events)
        n_after = int(mask.sum())
        rows.append(
            {
                "gate": gate.name,
                "n_before": n_before,
                "n_after": n_after,
                "frac_retained": float(n_after / n_before) if n_before else float("nan"),
            }
        )
        logger.debug("Gate %s: %d -> %d events", gate.name, n_before, n_after)
    return mask, pd.DataFrame(rows, columns=["gate", "n_before", "n_after", "frac_retained"])
