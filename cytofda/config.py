"""Configuration loading utilities for cytofda pipelines."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cytofda.core.types import ConfigurationError
from cytofda.preprocessing.gating import GateThresholds, gates_from_config
from cytofda.preprocessing.transforms import TRANSFORM_METHODS
from cytofda.stats.fdr import DEFAULT_NEIGHBORS, KERNELS
from cytofda.stats.glm import DEFAULT_NO_REPLICATE_DISPERSION


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _optional_markers(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigurationError("'markers' must be a list of channel names.")
    return tuple(str(m) for m in value)


@dataclass(frozen=True)
class PreprocessConfig:
    """Settings for `run_preprocessing`."""

    sample_sheet: str
    outdir: str = "."
    transform: str = "arcsinh"
    cofactor: float = 5.0
    transform_channels: tuple[str, ...] | None = None
    gates: GateThresholds = field(default_factory=GateThresholds)
    markers: tuple[str, ...] | None = None
    pool_gate_fit: bool = False

    @classmethod
    def from_dict(cls, cfg: dict[str, Any], base_dir: Path | None = None) -> "PreprocessConfig":
        if "sample_sheet" not in cfg:
            raise ConfigurationError("Preprocess config requires 'sample_sheet'.")
        method = str(cfg.get("transform", "arcsinh")).strip().lower()
        if method not in TRANSFORM_METHODS:
            raise ConfigurationError(
                f"Unsupported transform '{method}'. Use one of {TRANSFORM_METHODS}."
            )
        return cls(
            sample_sheet=_resolve(cfg["sample_sheet"], base_dir),
            outdir=_resolve(cfg.get("outdir", "."), base_dir),
            transform=method,
            cofactor=float(cfg.get("cofactor", 5.0)),
            transform_channels=_optional_markers(cfg.get("transform_channels")),
            gates=gates_from_config(cfg.get("gates", [])),
            markers=_optional_markers(cfg.get("markers")),
            pool_gate_fit=bool(cfg.get("pool_gate_fit", False)),
        )


@dataclass(frozen=True)
class AnalysisConfig:
    """Settings for `run_analysis`."""

    sample_sheet: str
    contrasts: dict[str, str]
    outdir: str = "."
    markers: tuple[str, ...] | None = None
    tol: float = 0.5
    downsample: int = 10
    scale_by_dimension: bool = False
    max_cells_per_sample: int | None = None
    seed: int = 0
    n_jobs: int = 1
    min_ave_log_cpm: float | None = None
    formula: str = "0 + group"
    n_latent: int = 0
    dispersion: float | None = None
    no_replicate_dispersion: float = DEFAULT_NO_REPLICATE_DISPERSION
    fdr_neighbors: int = DEFAULT_NEIGHBORS
    fdr_bandwidth: float | None = None
    fdr_kernel: str = "tricube"
    rescue: tuple[str, str] | None = None
    q_threshold: float = 0.05
    max_overlap: float = 0.5
    make_figures: bool = True

    @classmethod
    def from_dict(cls, cfg: dict[str, Any], base_dir: Path | None = None) -> "AnalysisConfig":
        if "sample_sheet" not in cfg:
            raise ConfigurationError("Analysis config requires 'sample_sheet'.")
        contrasts = cfg.get("contrasts")
        if not isinstance(contrasts, dict) or not contrasts:
            raise ConfigurationError("'contrasts' must be a non-empty object of name -> expression.")
        rescue = cfg.get("rescue")
        if rescue is not None:
            if not isinstance(rescue, (list, tuple)) or len(rescue) != 2:
                raise ConfigurationError("'rescue' must name exactly two contrasts.")
            missing = [r for r in rescue if r not in contrasts]
            if missing:
                raise ConfigurationError(f"Rescue contrasts not defined: {', '.join(missing)}")
            rescue = (str(rescue[0]), str(rescue[1]))
        kernel = str(cfg.get("fdr_kernel", "tricube")).strip().lower()
        if kernel not in KERNELS:
            raise ConfigurationError(f"fdr_kernel must be one of {KERNELS}.")
        q = float(cfg.get("q_threshold", 0.05))
        if not 0.0 < q <= 1.0:
            raise ConfigurationError("q_threshold must lie in (0, 1].")
        return cls(
            sample_sheet=_resolve(cfg["sample_sheet"], base_dir),
            contrasts={str(k): str(v) for k, v in contrasts.items()},
            outdir=_resolve(cfg.get("outdir", "."), base_dir),
            markers=_optional_markers(cfg.get("markers")),
            tol=float(cfg.get("tol", 0.5)),
            downsample=int(cfg.get("downsample", 10)),
            scale_by_dimension=bool(cfg.get("scale_by_dimension", False)),
            max_cells_per_sample=_optional_int(cfg.get("max_cells_per_sample")),
            seed=int(cfg.get("seed", 0)),
            n_jobs=int(cfg.get("n_jobs", 1)),
            min_ave_log_cpm=_optional_float(cfg.get("min_ave_log_cpm")),
            formula=str(cfg.get("formula", "0 + group")),
            n_latent=int(cfg.get("n_latent", 0)),
            dispersion=_optional_float(cfg.get("dispersion")),
            no_replicate_dispersion=float(
                cfg.get("no_replicate_dispersion", DEFAULT_NO_REPLICATE_DISPERSION)
            ),
            fdr_neighbors=int(cfg.get("fdr_neighbors", DEFAULT_NEIGHBORS)),
            fdr_bandwidth=_optional_float(cfg.get("fdr_bandwidth")),
            fdr_kernel=kernel,
            rescue=rescue,
            q_threshold=q,
            max_overlap=float(cfg.get("max_overlap", 0.5)),
            make_figures=bool(cfg.get("make_figures", True)),
        )


def _resolve(value: Any, base_dir: Path | None) -> str:
    p = Path(str(value))
    if base_dir is not None and not p.is_absolute():
        p = base_dir / p
    return p.as_posix()


def load_preprocess_config(path: str | Path) -> PreprocessConfig:
    """Relative paths in the config resolve against the config file's folder."""
    return PreprocessConfig.from_dict(load_json_config(path), base_dir=Path(path).resolve().parent)


def load_analysis_config(path: str | Path) -> AnalysisConfig:
    return AnalysisConfig.from_dict(load_json_config(path), base_dir=Path(path).resolve().parent)
