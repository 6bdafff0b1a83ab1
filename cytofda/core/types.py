"""Typed containers for events, pooled cells and hypersphere abundance tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import anndata as ad
import numpy as np
import pandas as pd


class ConfigurationError(ValueError):
    """Invalid analysis parameters or inconsistent inputs."""


@dataclass(frozen=True)
class EventStore:
    """Per-sample marker intensities (rows = cells, columns = markers).

    - `totals`: cells per sample before any downsampling.
    - `sample_meta`: indexed by sample name; holds `group` and optionally `batch`.
    """

    events: dict[str, np.ndarray]
    markers: tuple[str, ...]
    totals: dict[str, int] = field(default_factory=dict)
    sample_meta: pd.DataFrame | None = None

    def __post_init__(self) -> None:
        if not self.events:
            raise ConfigurationError("Event store must contain at least one sample.")
        n_markers = len(self.markers)
        for name, mat in self.events.items():
            arr = np.asarray(mat)
            if arr.ndim != 2:
                raise ConfigurationError(
                    f"Events for sample '{name}' must be 2D, got shape {arr.shape}."
                )
            if arr.shape[1] != n_markers:
                raise ConfigurationError(
                    f"Sample '{name}' has {arr.shape[1]} markers, expected {n_markers}."
                )
        if not self.totals:
            object.__setattr__(
                self,
                "totals",
                {name: int(np.asarray(m).shape[0]) for name, m in self.events.items()},
            )
        missing = [s for s in self.events if s not in self.totals]
        if missing:
            raise ConfigurationError(f"Missing totals for samples: {', '.join(missing)}")

    @property
    def sample_names(self) -> list[str]:
        return list(self.events.keys())

    @property
    def n_markers(self) -> int:
        return len(self.markers)

    @classmethod
    def from_arrays(
        cls,
        events: Mapping[str, np.ndarray],
        markers: list[str] | tuple[str, ...] | None = None,
        sample_meta: pd.DataFrame | None = None,
    ) -> "EventStore":
        ev = {str(k): np.asarray(v, dtype=float) for k, v in events.items()}
        if markers is None:
            first = next(iter(ev.values())) if ev else np.zeros((0, 0))
            markers = [f"m{i}" for i in range(first.shape[1] if first.ndim == 2 else 0)]
        return cls(events=ev, markers=tuple(str(m) for m in markers), sample_meta=sample_meta)


@dataclass(frozen=True)
class PooledCells:
    """Downsampled per-sample events and their row-wise pooling."""

    pooled: np.ndarray
    sample_index: np.ndarray
    per_sample: dict[str, np.ndarray]
    markers: tuple[str, ...]
    totals: dict[str, int]
    sample_meta: pd.DataFrame | None = None

    @property
    def sample_names(self) -> list[str]:
        return list(self.per_sample.keys())


@dataclass(frozen=True)
class AbundanceTable:
    """Hypersphere-by-sample counts plus the center coordinates.

    - `counts`: (n_hyperspheres, n_samples) integer counts.
    - `centers`: (n_hyperspheres, n_markers) center intensities.
    - `radius`: distance threshold shared by every hypersphere.
    """

    counts: np.ndarray
    centers: np.ndarray
    radius: float
    sample_names: tuple[str, ...]
    markers: tuple[str, ...]
    totals: np.ndarray
    sample_meta: pd.DataFrame | None = None
    center_cell: np.ndarray | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        counts = np.asarray(self.counts)
        centers = np.asarray(self.centers, dtype=float)
        if counts.ndim != 2 or centers.ndim != 2:
            raise ValueError("counts and centers must be 2D arrays.")
        if counts.shape[0] != centers.shape[0]:
            raise ValueError(
                f"counts has {counts.shape[0]} hyperspheres but centers has {centers.shape[0]}."
            )
        if counts.shape[1] != len(self.sample_names):
            raise ValueError("counts columns must match sample_names.")
        if centers.shape[1] != len(self.markers):
            raise ValueError("centers columns must match markers.")
        if np.asarray(self.totals).shape != (len(self.sample_names),):
            raise ValueError("totals must hold one value per sample.")
        if self.sample_meta is not None:
            idx = [str(s) for s in self.sample_meta.index]
            if idx != list(self.sample_names):
                raise ValueError("sample_meta index must match sample_names in order.")

    @property
    def n_hyperspheres(self) -> int:
        return int(self.counts.shape[0])

    @property
    def n_samples(self) -> int:
        return int(self.counts.shape[1])

    def subset(self, keep: np.ndarray) -> "AbundanceTable":
        """Return a new table restricted to hyperspheres where `keep` is true."""
        mask = np.asarray(keep)
        if mask.dtype != bool:
            raise TypeError(f"keep must be a boolean mask, got dtype {mask.dtype}.")
        if mask.shape != (self.n_hyperspheres,):
            raise ValueError("keep mask length must equal the number of hyperspheres.")
        meta = dict(self.metadata)
        meta["source_index"] = np.asarray(
            meta.get("source_index", np.arange(self.n_hyperspheres))
        )[mask]
        return AbundanceTable(
            counts=self.counts[mask],
            centers=self.centers[mask],
            radius=self.radius,
            sample_names=self.sample_names,
            markers=self.markers,
            totals=self.totals,
            sample_meta=self.sample_meta,
            center_cell=None if self.center_cell is None else self.center_cell[mask],
            metadata=meta,
        )

    def counts_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.counts, columns=list(self.sample_names))

    def intensities_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.centers, columns=list(self.markers))

    def to_anndata(self) -> ad.AnnData:
        """Rows are hyperspheres, columns are samples."""
        var = (
            self.sample_meta.copy()
            if self.sample_meta is not None
            else pd.DataFrame(index=list(self.sample_names))
        )
        var.index = [str(s) for s in self.sample_names]
        var["total_cells"] = np.asarray(self.totals, dtype=np.int64)
        obs = pd.DataFrame(index=[f"h{i}" for i in range(self.n_hyperspheres)])
        if "source_index" in self.metadata:
            obs["source_index"] = np.asarray(self.metadata["source_index"], dtype=np.int64)
        adata = ad.AnnData(X=np.asarray(self.counts, dtype=np.int64), obs=obs, var=var)
        adata.obsm["intensities"] = np.asarray(self.centers, dtype=float)
        adata.uns["radius"] = float(self.radius)
        adata.uns["markers"] = list(self.markers)
        return adata

    @classmethod
    def from_anndata(cls, adata: ad.AnnData) -> "AbundanceTable":
        if "intensities" not in adata.obsm:
            raise KeyError("adata.obsm['intensities'] is required.")
        var = adata.var.copy()
        totals = var.pop("total_cells").to_numpy(dtype=np.int64)
        meta: dict[str, Any] = {}
        if "source_index" in adata.obs.columns:
            meta["source_index"] = adata.obs["source_index"].to_numpy(dtype=np.int64)
        return cls(
            counts=np.asarray(adata.X, dtype=np.int64),
            centers=np.asarray(adata.obsm["intensities"], dtype=float),
            radius=float(adata.uns["radius"]),
            sample_names=tuple(str(s) for s in adata.var_names),
            markers=tuple(str(m) for m in adata.uns["markers"]),
            totals=totals,
            sample_meta=var if var.shape[1] > 0 else None,
            metadata=meta,
        )
