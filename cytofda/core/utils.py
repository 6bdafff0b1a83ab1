"""Small pure helpers for core computations."""

from __future__ import annotations

import numpy as np


def finite_2d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be 2D, received shape {arr.shape}.")
    if not np.isfinite(arr).all():
        raise ValueError(f"{name} contains NaN/inf values.")
    return arr


def pvalues_1d(name: str, values: np.ndarray) -> np.ndarray:
    """Validate p-values; NaN marks an untestable entry and is allowed."""
    arr = np.asarray(values, dtype=float).ravel()
    finite = np.isfinite(arr)
    if np.any(np.isinf(arr)):
        raise ValueError(f"{name} must not contain inf.")
    if np.any((arr[finite] < 0.0) | (arr[finite] > 1.0)):
        raise ValueError(f"{name} must be in [0,1] or NaN.")
    return arr
