"""Intensity transformations for mass cytometry channels.

- arcsinh(x / cofactor), the usual CyTOF transform (cofactor 5).
- Logicle (Parks, Roederer & Moore 2006; Moore & Parks 2012), evaluated by
  inverting the closed-form biexponential on a dense monotone grid.

Parameters are estimated once (`estimate_transform_params`) and passed by
value into `apply_transform`, which is pure.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from cytofda.core.types import ConfigurationError

logger = logging.getLogger(__name__)

TRANSFORM_METHODS = ("arcsinh", "logicle", "none")
_GRID_SIZE = 20001


@dataclass(frozen=True)
class LogicleParams:
    T: float = 262144.0
    W: float = 0.5
    M: float = 4.5
    A: float = 0.0

    def validate(self) -> "LogicleParams":
        if not self.T > 0:
            raise ConfigurationError(f"Logicle T must be positive, got {self.T}.")
        if not self.M > 0:
            raise ConfigurationError(f"Logicle M must be positive, got {self.M}.")
        if self.W < 0 or 2.0 * self.W > self.M:
            raise ConfigurationError(f"Logicle W must lie in [0, M/2], got W={self.W}, M={self.M}.")
        if self.A < -self.W or self.A + self.W > self.M - self.W:
            raise ConfigurationError(f"Logicle A out of range: A={self.A}.")
        return self


@dataclass(frozen=True)
class TransformParams:
    """Transformation applied to each listed channel."""

    method: str = "arcsinh"
    cofactor: float = 5.0
    channels: tuple[str, ...] | None = None
    logicle: Mapping[str, LogicleParams] = field(default_factory=dict)

    def __post_init__(self) -> None:
        method = str(self.method).strip().lower()
        if method not in TRANSFORM_METHODS:
            raise ConfigurationError(
                f"Unsupported transform '{self.method}'. Use one of {TRANSFORM_METHODS}."
            )
        object.__setattr__(self, "method", method)
        if method == "arcsinh" and not float(self.cofactor) > 0:
            raise ConfigurationError(f"cofactor must be positive, got {self.cofactor}.")


def arcsinh_transform(values: np.ndarray, cofactor: float = 5.0) -> np.ndarray:
    c = float(cofactor)
    if c <= 0:
        raise ConfigurationError(f"cofactor must be positive, got {cofactor}.")
    return np.arcsinh(np.asarray(values, dtype=float) / c)


def _solve_d(b: float, w: float) -> float:
    """Root of 2 * (ln d - ln b) + w * (b + d) on (0, b]."""
    if w == 0:
        return b

    def f(d: float) -> float:
        return 2.0 * (math.log(d) - math.log(b)) + w * (b + d)

    return float(brentq(f, 1e-300, b, xtol=1e-14, maxiter=500))


def _biexponential(y: np.ndarray, p: LogicleParams) -> np.ndarray:
    """Data value for logicle scale position y in [0, 1] (vectorised inverse)."""
    total = p.M + p.A
    w = p.W / total
    x2 = p.A / total
    x1 = x2 + w
    x0 = x2 + 2.0 * w
    b = total * math.log(10.0)
    d = _solve_d(b, w)
    c_a = math.exp(x0 * (b + d))
    mf_a = math.exp(b * x1) - c_a / math.exp(d * x1)
    a = p.T / ((math.exp(b) - mf_a) - c_a / math.exp(d))
    c = c_a * a
    f = -mf_a * a

    y_arr = np.asarray(y, dtype=float)
    negative = y_arr < x1
    reflected = np.where(negative, 2.0 * x1 - y_arr, y_arr)
    out = (a * np.exp(b * reflected) + f) - c * np.exp(-d * reflected)
    return np.where(negative, -out, out)


def logicle_transform(values: np.ndarray, params: LogicleParams) -> np.ndarray:
    """Logicle display scale, reported on [0, M] for data in the (bottom, T] range."""
    p = params.validate()
    grid = np.linspace(-0.25, 1.1, _GRID_SIZE)
    data_at = _biexponential(grid, p)
    x = np.asarray(values, dtype=float)
    y = np.interp(x.ravel(), data_at, grid).reshape(x.shape)
    return y * p.M


def estimate_logicle_params(values: np.ndarray, M: float = 4.5, A: float = 0.0) -> LogicleParams:
    """T from the data maximum and W from the 5% quantile of negative values."""
    x = np.asarray(values, dtype=float).ravel()
    x = x[np.isfinite(x)]
    if x.size == 0:
        raise ValueError("Cannot estimate logicle parameters from empty data.")
    t = float(np.max(x))
    if t <= 0:
        raise ConfigurationError("Logicle T must be positive; channel has no positive values.")
    neg = x[x < 0]
    if neg.size:
        r = abs(float(np.quantile(neg, 0.05))) + np.finfo(float).eps
        w = (M - math.log10(t / r)) / 2.0
    else:
        w = 0.5
    w = float(min(max(w, 0.0), M / 2.0 - 0.01, 2.0))
    return LogicleParams(T=t, W=w, M=float(M), A=float(A)).validate()


def default_transform_channels(channels: Iterable[str]) -> tuple[str, ...]:
    skip = {"time", "event_length", "eventlength"}
    return tuple(c for c in channels if str(c).strip().lower() not in skip)


def estimate_transform_params(
    events: pd.DataFrame,
    *,
    method: str = "arcsinh",
    cofactor: float = 5.0,
    channels: Iterable[str] | None = None,
) -> TransformParams:
    """Fit transform parameters once (e.g. on pooled events of all files)."""
    chans = tuple(channels) if channels is not None else default_transform_channels(events.columns)
    missing = [c for c in chans if c not in events.columns]
    if missing:
        raise KeyError(f"Channels not found in events: {', '.join(missing)}")
    params = TransformParams(method=method, cofactor=cofactor, channels=chans)
    if params.method != "logicle":
        return params
    fitted = {c: estimate_logicle_params(events[c].to_numpy(dtype=float)) for c in chans}
    for c, p in fitted.items():
        logger.debug("Logicle %s: T=%.1f W=%.3f M=%.1f A=%.1f", c, p.T, p.W, p.M, p.A)
    return replace(params, logicle=fitted)


def apply_transform(events: pd.DataFrame, params: TransformParams) -> pd.DataFrame:
    """Return a transformed copy of `events`; untouched channels are kept as-is."""
    out = events.copy()
    if params.method == "none":
        return out
    chans = params.channels if params.channels is not None else default_transform_channels(events.columns)
    for c in chans:
        if c not in out.columns:
            raise KeyError(f"Channel '{c}' not found in events.")
        raw = out[c].to_numpy(dtype=float)
        if params.method == "arcsinh":
            out[c] = arcsinh_transform(raw, params.cofactor)
        else:
            if c not in params.logicle:
                raise ConfigurationError(f"No logicle parameters for channel '{c}'.")
            out[c] = logicle_transform(raw, params.logicle[c])
    return out
