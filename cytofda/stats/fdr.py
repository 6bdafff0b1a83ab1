"""False discovery rate control for overlapping hypersphere tests."""

from __future__ import annotations

import logging

import numpy as np
from sklearn.neighbors import NearestNeighbors

from cytofda.core.types import ConfigurationError
from cytofda.core.utils import finite_2d, pvalues_1d

logger = logging.getLogger(__name__)

KERNELS = ("tricube", "gaussian")
DEFAULT_NEIGHBORS = 50


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Unweighted Benjamini-Hochberg; NaN p-values stay NaN."""
    p = pvalues_1d("pvals", pvals)
    return weighted_bh(p, np.ones(p.size, dtype=float))


def _kernel(scaled: np.ndarray, kernel: str) -> np.ndarray:
    if kernel == "tricube":
        return np.clip(1.0 - scaled**3, 0.0, None) ** 3
    return np.exp(-0.5 * scaled**2)


def default_bandwidth(centers: np.ndarray, neighbors: int = DEFAULT_NEIGHBORS) -> float:
    """Median distance from each center to its `neighbors`-th nearest other center."""
    ctr = finite_2d("centers", centers)
    n = ctr.shape[0]
    k = min(int(neighbors), n - 1)
    if k < 1:
        return 0.0
    nn = NearestNeighbors(n_neighbors=k + 1, metric="euclidean")
    nn.fit(ctr)
    dist, _ = nn.kneighbors(ctr, return_distance=True)
    return float(np.median(dist[:, k]))


def density_weights(
    centers: np.ndarray,
    *,
    neighbors: int = DEFAULT_NEIGHBORS,
    bandwidth: float | None = None,
    kernel: str = "tricube",
) -> np.ndarray:
    """Inverse local density of hypersphere centers.

    The kernel is 1 at distance zero and the center itself is included, so
    every density is >= 1 and every weight lies in (0, 1]. An isolated center
    therefore gets weight 1 rather than an unbounded one.
    """
    ctr = finite_2d("centers", centers)
    kern = str(kernel).strip().lower()
    if kern not in KERNELS:
        raise ConfigurationError(f"Unsupported kernel '{kernel}'. Use one of {KERNELS}.")
    if int(neighbors) < 1:
        raise ConfigurationError("neighbors must be >= 1.")
    n = ctr.shape[0]
    if n == 0:
        return np.zeros(0, dtype=float)
    if n == 1:
        return np.ones(1, dtype=float)

    if bandwidth is None:
        h = default_bandwidth(ctr, neighbors)
    else:
        h = float(bandwidth)
        if not np.isfinite(h) or h <= 0.0:
            raise ConfigurationError("bandwidth must be positive.")
    if h <= 0.0:
        # Every k-th neighbour coincides with its center; only duplicates share density.
        h = float(np.finfo(float).eps)

    reach = h if kern == "tricube" else 3.0 * h
    nn = NearestNeighbors(radius=reach, metric="euclidean")
    nn.fit(ctr)
    dists, _ = nn.radius_neighbors(ctr, return_distance=True)
    density = np.array(
        [float(np.sum(_kernel(np.asarray(d, dtype=float) / h, kern))) for d in dists],
        dtype=float,
    )
    density = np.maximum(density, 1.0)
    logger.debug("Density weights: bandwidth=%.4g kernel=%s", h, kern)
    return 1.0 / density


def weighted_bh(pvalues: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg step-up with weighted ranks.

    q_i = p_i * sum(w) / cumsum(w) along ascending p (ties in input order),
    then a running minimum from the largest p downward, capped at 1.
    NaN p-values are excluded and returned as NaN.
    """
    p = pvalues_1d("pvalues", pvalues)
    w = np.asarray(weights, dtype=float).ravel()
    if w.size != p.size:
        raise ValueError("weights length must match pvalues.")
    q = np.full(p.size, np.nan, dtype=float)
    valid = np.isfinite(p)
    if not np.any(valid):
        return q
    w_valid = w[valid]
    if not np.isfinite(w_valid).all() or np.any(w_valid <= 0.0):
        raise ValueError("weights must be positive and finite for testable entries.")

    p_valid = p[valid]
    order = np.argsort(p_valid, kind="mergesort")
    p_sorted = p_valid[order]
    w_sorted = w_valid[order]
    adj = p_sorted * (float(np.sum(w_sorted)) / np.cumsum(w_sorted))
    adj = np.minimum.accumulate(adj[::-1])[::-1]
    adj = np.clip(adj, 0.0, 1.0)
    out = np.empty_like(adj)
    out[order] = adj
    q[valid] = out
    return q


def spatial_fdr(
    centers: np.ndarray,
    pvalues: np.ndarray,
    *,
    neighbors: int = DEFAULT_NEIGHBORS,
    bandwidth: float | None = None,
    kernel: str = "tricube",
) -> np.ndarray:
    """Density-weighted FDR for p-values attached to hypersphere centers."""
    ctr = finite_2d("centers", centers)
    p = pvalues_1d("pvalues", pvalues)
    if p.size != ctr.shape[0]:
        raise ValueError("pvalues length must match the number of centers.")
    weights = density_weights(ctr, neighbors=neighbors, bandwidth=bandwidth, kernel=kernel)
    return weighted_bh(p, weights)
