"""Pipeline I/O, logging, and utility helpers."""

from __future__ import annotations

import json
import logging
import warnings
from pathlib import Path
from typing import Any

import anndata as ad
import fcsparser
import numpy as np
import pandas as pd

from cytofda.core.types import ConfigurationError
from cytofda.preprocessing.channels import resolve_channels

logger = logging.getLogger(__name__)

SAMPLE_SHEET_COLUMNS = ("sample", "path", "group")


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True, default=_json_default)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, Path):
        return obj.as_posix()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def setup_logger(log_path: Path, logger_name: str) -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    for h in list(logger.handlers):
        h.close()
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def read_fcs(path: str | Path) -> tuple[dict[str, Any], pd.DataFrame]:
    """Read one FCS file; columns use $PnS marker names where the file has them."""
    fcs_path = Path(path)
    if not fcs_path.exists():
        raise FileNotFoundError(f"FCS file not found: {fcs_path}")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        meta, data = fcsparser.parse(
            fcs_path.as_posix(), reformat_meta=True, channel_naming="$PnS"
        )
    events = pd.DataFrame(data).astype(float)
    events.columns = [str(c).strip() for c in events.columns]
    if events.columns.duplicated().any():
        dup = sorted(set(events.columns[events.columns.duplicated()]))
        raise ValueError(f"Duplicate channel names in {fcs_path.name}: {', '.join(dup)}")
    logger.info("Read %s: %d events x %d channels", fcs_path.name, events.shape[0], events.shape[1])
    return dict(meta), events


def load_sample_sheet(path: str | Path) -> pd.DataFrame:
    """CSV with sample, path and group columns (plus optional batch); indexed by sample.

    Relative file paths are resolved against the sheet's folder.
    """
    sheet_path = Path(path)
    if not sheet_path.exists():
        raise FileNotFoundError(f"Sample sheet not found: {sheet_path}")
    sheet = pd.read_csv(sheet_path, dtype=str)
    sheet.columns = [str(c).strip().lower() for c in sheet.columns]
    missing = [c for c in SAMPLE_SHEET_COLUMNS if c not in sheet.columns]
    if missing:
        raise ConfigurationError(
            f"Sample sheet '{sheet_path}' is missing columns: {', '.join(missing)}"
        )
    if sheet.empty:
        raise ConfigurationError(f"Sample sheet '{sheet_path}' lists no samples.")
    if sheet[list(SAMPLE_SHEET_COLUMNS)].isna().any().any():
        raise ConfigurationError(f"Sample sheet '{sheet_path}' has empty sample/path/group cells.")
    dup = sheet["sample"][sheet["sample"].duplicated()].tolist()
    if dup:
        raise ConfigurationError(f"Duplicate sample names in sample sheet: {', '.join(dup)}")
    base = sheet_path.resolve().parent
    sheet["path"] = [
        p if Path(p).is_absolute() else (base / p).as_posix() for p in sheet["path"]
    ]
    return sheet.set_index("sample", drop=False).rename_axis(None)


def write_events(
    path: str | Path,
    events: np.ndarray,
    markers: tuple[str, ...] | list[str],
    sample: str,
) -> Path:
    """Write one sample's pre-processed events as .h5ad."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    x = np.asarray(events, dtype=np.float64)
    if x.ndim != 2 or x.shape[1] != len(markers):
        raise ValueError("events must be (n_cells, n_markers) matching markers.")
    obs = pd.DataFrame(
        {"sample": [str(sample)] * x.shape[0]},
        index=[f"{sample}_{i}" for i in range(x.shape[0])],
    )
    adata = ad.AnnData(X=x, obs=obs, var=pd.DataFrame(index=[str(m) for m in markers]))
    adata.uns["sample"] = str(sample)
    adata.write_h5ad(out)
    return out


def read_events(path: str | Path, markers: tuple[str, ...] | list[str] | None = None) -> pd.DataFrame:
    """Load a sample's events from .h5ad or .fcs as a channel-named DataFrame."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Events file not found: {p}")
    if p.suffix.lower() == ".h5ad":
        adata = ad.read_h5ad(p)
        x = adata.X.toarray() if hasattr(adata.X, "toarray") else np.asarray(adata.X)
        events = pd.DataFrame(np.asarray(x, dtype=float), columns=[str(v) for v in adata.var_names])
    elif p.suffix.lower() == ".fcs":
        _, events = read_fcs(p)
    else:
        raise ConfigurationError(f"Unsupported events file '{p.name}'. Use .h5ad or .fcs.")
    if markers is not None:
        events = events[resolve_channels(markers, events.columns)]
    return events
