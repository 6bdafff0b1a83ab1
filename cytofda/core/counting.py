"""Hypersphere construction and per-sample cell counting."""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

import numpy as np
import pandas as pd
from sklearn.neighbors import KDTree, NearestNeighbors

from cytofda.core.types import AbundanceTable, ConfigurationError, EventStore, PooledCells

logger = logging.getLogger(__name__)


def prepare_cell_data(
    store: EventStore,
    *,
    max_cells_per_sample: int | None = None,
    seed: int = 0,
) -> PooledCells:
    """Downsample every sample and pool the retained events.

    Sampling is seeded per sample and keeps the original row order, so the
    pooled matrix is reproducible for a fixed `seed`.
    """
    if not store.events:
        raise ConfigurationError("Event store must contain at least one sample.")
    if max_cells_per_sample is not None and int(max_cells_per_sample) <= 0:
        raise ConfigurationError("max_cells_per_sample must be positive.")

    n_markers = store.n_markers
    rng = np.random.default_rng(int(seed))
    per_sample: dict[str, np.ndarray] = {}
    for name in store.sample_names:
        mat = np.asarray(store.events[name], dtype=float)
        if mat.ndim != 2 or mat.shape[1] != n_markers:
            raise ConfigurationError(
                f"Sample '{name}' has shape {mat.shape}; expected (N, {n_markers})."
            )
        if not np.isfinite(mat).all():
            raise ValueError(f"Sample '{name}' contains NaN/inf intensities.")
        n = mat.shape[0]
        if max_cells_per_sample is not None and n > int(max_cells_per_sample):
            chosen = np.sort(rng.choice(n, size=int(max_cells_per_sample), replace=False))
            mat = mat[chosen]
            logger.debug("Downsampled %s from %d to %d cells", name, n, mat.shape[0])
        per_sample[name] = mat

    pooled = np.vstack([per_sample[s] for s in per_sample]) if per_sample else np.zeros((0, n_markers))
    sample_index = np.concatenate(
        [np.full(per_sample[s].shape[0], i, dtype=np.int32) for i, s in enumerate(per_sample)]
    )
    logger.info("Pooled %d cells from %d samples", pooled.shape[0], len(per_sample))
    return PooledCells(
        pooled=pooled,
        sample_index=sample_index,
        per_sample=per_sample,
        markers=store.markers,
        totals={s: int(store.totals[s]) for s in per_sample},
        sample_meta=store.sample_meta,
    )


def select_centers(pooled: np.ndarray, downsample: int = 10) -> np.ndarray:
    """Return row indices of the pooled events used as hypersphere centers."""
    step = int(downsample)
    if step < 1:
        raise ConfigurationError("downsample must be >= 1.")
    n = int(np.asarray(pooled).shape[0])
    return np.arange(0, n, step, dtype=np.int64)


def hypersphere_radius(tol: float, n_markers: int, scale_by_dimension: bool = False) -> float:
    tol_f = float(tol)
    if not np.isfinite(tol_f) or tol_f <= 0.0:
        raise ConfigurationError(f"tol must be a positive finite number, got {tol}.")
    if scale_by_dimension:
        return tol_f * math.sqrt(int(n_markers))
    return tol_f


def _count_within(events: np.ndarray, centers: np.ndarray, radius: float, leaf_size: int) -> np.ndarray:
    if events.shape[0] == 0:
        return np.zeros(centers.shape[0], dtype=np.int64)
    tree = KDTree(events, leaf_size=int(leaf_size))
    return np.asarray(tree.query_radius(centers, r=radius, count_only=True), dtype=np.int64)


def count_cells(
    cells: EventStore | PooledCells,
    *,
    tol: float,
    downsample: int = 10,
    centers: np.ndarray | None = None,
    scale_by_dimension: bool = False,
    max_cells_per_sample: int | None = None,
    seed: int = 0,
    n_jobs: int = 1,
    leaf_size: int = 40,
) -> AbundanceTable:
    """Count, per sample, the cells within `radius` of every hypersphere center.

    Centers default to every `downsample`-th pooled cell. A cell is counted
    when its Euclidean distance to the center is <= radius.
    """
    if isinstance(cells, EventStore):
        pooled_cells = prepare_cell_data(
            cells, max_cells_per_sample=max_cells_per_sample, seed=seed
        )
    else:
        pooled_cells = cells

    n_markers = len(pooled_cells.markers)
    radius = hypersphere_radius(tol, n_markers, scale_by_dimension)

    if centers is None:
        center_idx = select_centers(pooled_cells.pooled, downsample)
        center_xy = pooled_cells.pooled[center_idx]
    else:
        center_xy = np.asarray(centers, dtype=float)
        center_idx = None
        if center_xy.ndim != 2:
            raise ConfigurationError("centers must be a 2D array.")
    if center_xy.shape[1] != n_markers:
        raise ConfigurationError(
            f"centers have {center_xy.shape[1]} dimensions but events have {n_markers}."
        )

    names = pooled_cells.sample_names
    jobs = max(1, int(n_jobs))

    def _one(name: str) -> np.ndarray:
        return _count_within(pooled_cells.per_sample[name], center_xy, radius, leaf_size)

    if jobs == 1 or len(names) == 1:
        columns = [_one(name) for name in names]
    else:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            columns = list(pool.map(_one, names))

    counts = (
        np.column_stack(columns).astype(np.int64)
        if columns
        else np.zeros((center_xy.shape[0], 0), dtype=np.int64)
    )
    logger.info(
        "Counted %d hyperspheres across %d samples (radius=%.4g)",
        counts.shape[0],
        counts.shape[1],
        radius,
    )
    totals = np.array([pooled_cells.totals[s] for s in names], dtype=np.int64)
    sample_meta = pooled_cells.sample_meta
    if sample_meta is not None:
        sample_meta = sample_meta.loc[names]
    return AbundanceTable(
        counts=counts,
        centers=center_xy.copy(),
        radius=radius,
        sample_names=tuple(names),
        markers=tuple(pooled_cells.markers),
        totals=totals,
        sample_meta=sample_meta,
        center_cell=center_idx,
        metadata={
            "tol": float(tol),
            "downsample": int(downsample),
            "scale_by_dimension": bool(scale_by_dimension),
            "source_index": np.arange(counts.shape[0]),
        },
    )


def neighbor_distances(
    pooled: np.ndarray,
    centers: np.ndarray,
    ks: Iterable[int] = (5, 10, 20, 50),
    *,
    exclude_self: bool = True,
) -> pd.DataFrame:
    """Distance from each center to its k-th nearest pooled cell.

    Used to calibrate `tol`: a radius below these distances leaves dense
    regions split into near-empty hyperspheres.
    """
    pts = np.asarray(pooled, dtype=float)
    ctr = np.asarray(centers, dtype=float)
    if pts.ndim != 2 or ctr.ndim != 2 or pts.shape[1] != ctr.shape[1]:
        raise ConfigurationError("pooled and centers must be 2D with matching dimensions.")
    k_list = sorted({int(k) for k in ks})
    if not k_list or k_list[0] < 1:
        raise ConfigurationError("ks must contain positive integers.")
    offset = 1 if exclude_self else 0
    k_max = min(k_list[-1] + offset, pts.shape[0])
    nn = NearestNeighbors(n_neighbors=k_max, metric="euclidean")
    nn.fit(pts)
    dist, _ = nn.kneighbors(ctr, return_distance=True)
    out: dict[str, np.ndarray] = {}
    for k in k_list:
        col = k - 1 + offset
        out[f"k{k}"] = dist[:, col] if col < dist.shape[1] else np.full(ctr.shape[0], np.nan)
    return pd.DataFrame(out)


def filter_hyperspheres(
    table: AbundanceTable,
    *,
    min_ave_log_cpm: float | None = None,
    min_total_count: int = 1,
    prior_count: float = 2.0,
) -> tuple[AbundanceTable, np.ndarray]:
    """Drop low-abundance hyperspheres before testing; returns (table, keep mask)."""
    from cytofda.stats.glm import average_log_cpm

    keep = table.counts.sum(axis=1) >= int(min_total_count)
    if min_ave_log_cpm is not None:
        ave = average_log_cpm(table.counts, table.totals, prior_count=prior_count)
        keep &= ave >= float(min_ave_log_cpm)
    logger.info("Kept %d of %d hyperspheres after abundance filter", int(keep.sum()), keep.size)
    return table.subset(keep), keep
