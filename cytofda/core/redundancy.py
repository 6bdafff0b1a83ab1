"""Non-redundant hypersphere selection for display summaries."""

from __future__ import annotations

import numpy as np
from sklearn.neighbors import NearestNeighbors

from cytofda.core.types import ConfigurationError
from cytofda.core.utils import finite_2d, pvalues_1d


def sphere_overlap(distance: np.ndarray | float, radius: float) -> np.ndarray:
    """Linear overlap fraction of two radius-`radius` spheres `distance` apart."""
    r = float(radius)
    if r <= 0.0:
        raise ConfigurationError("radius must be positive.")
    d = np.asarray(distance, dtype=float)
    return np.clip(1.0 - d / (2.0 * r), 0.0, 1.0)


def find_first_spheres(
    centers: np.ndarray,
    pvalues: np.ndarray,
    radius: float,
    *,
    significant: np.ndarray | None = None,
    max_overlap: float = 0.5,
) -> np.ndarray:
    """Greedily keep the most significant sphere of each overlapping cluster.

    Candidates are visited in stable ascending p-value order; a candidate is
    kept when its overlap with every already-kept sphere is <= `max_overlap`.
    Entries with NaN p-values are never kept.
    """
    ctr = finite_2d("centers", centers)
    p = pvalues_1d("pvalues", pvalues)
    if p.size != ctr.shape[0]:
        raise ValueError("pvalues length must match the number of centers.")
    frac = float(max_overlap)
    if not 0.0 <= frac < 1.0:
        raise ConfigurationError("max_overlap must lie in [0, 1).")

    candidate = np.isfinite(p)
    if significant is not None:
        sig = np.asarray(significant, dtype=bool).ravel()
        if sig.size != p.size:
            raise ValueError("significant length must match pvalues.")
        candidate &= sig

    keep = np.zeros(p.size, dtype=bool)
    idx = np.flatnonzero(candidate)
    if idx.size == 0:
        return keep

    if float(radius) <= 0.0:
        raise ConfigurationError("radius must be positive.")
    # Overlap above max_overlap <=> distance below this cutoff.
    cutoff = 2.0 * float(radius) * (1.0 - frac)
    nn = NearestNeighbors(radius=cutoff, metric="euclidean")
    nn.fit(ctr[idx])
    neighborhoods = nn.radius_neighbors(ctr[idx], return_distance=True)

    order = np.argsort(p[idx], kind="mergesort")
    blocked = np.zeros(idx.size, dtype=bool)
    dists, nbrs = neighborhoods
    for local in order:
        if blocked[local]:
            continue
        keep[idx[local]] = True
        close = nbrs[local][dists[local] < cutoff]
        blocked[close] = True
    return keep
