"""Config-driven preprocessing and differential abundance runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd

from cytofda._version import __version__
from cytofda.config import AnalysisConfig, PreprocessConfig, load_analysis_config, load_preprocess_config
from cytofda.core.counting import count_cells, filter_hyperspheres, neighbor_distances, prepare_cell_data
from cytofda.core.redundancy import find_first_spheres
from cytofda.core.types import ConfigurationError, EventStore
from cytofda.pipeline.io import (
    ensure_dir,
    load_sample_sheet,
    read_events,
    read_fcs,
    setup_logger,
    write_events,
    write_json,
)
from cytofda.plotting import (
    apply_plot_style,
    embed_centers,
    plot_gate_qc,
    plot_intensity_heatmap,
    plot_logfc_embedding,
    plot_neighbor_distances,
    plot_style_dict,
    sanitize_label,
)
from cytofda.preprocessing.pipeline import preprocess_events
from cytofda.preprocessing.transforms import apply_transform, estimate_transform_params
from cytofda.stats.fdr import bh_fdr, spatial_fdr
from cytofda.stats.glm import STATUS_OK, estimate_latent_factors, fit_contrasts, make_design
from cytofda.stats.rescue import rescue_test


def _prepare_dirs(outdir: Path) -> tuple[Path, Path, Path]:
    results_dir = outdir / "results"
    figures_dir = outdir / "figures"
    logs_dir = outdir / "logs"
    ensure_dir(results_dir)
    ensure_dir(figures_dir)
    ensure_dir(logs_dir)
    return results_dir, figures_dir, logs_dir


def run_preprocessing(config_path: str | Path) -> dict[str, Any]:
    cfg = load_preprocess_config(config_path)
    return preprocess_samples(cfg)


def preprocess_samples(cfg: PreprocessConfig) -> dict[str, Any]:
    """Transform, gate and curate every FCS file on the sample sheet.

    Writes one .h5ad per sample under results/events/ and a new sample sheet
    pointing at them, ready for `run_analysis`.
    """
    outdir = Path(cfg.outdir)
    results_dir, figures_dir, logs_dir = _prepare_dirs(outdir)
    logger = setup_logger(logs_dir / "cytofda_preprocess.log", "cytofda")
    apply_plot_style()

    sheet = load_sample_sheet(cfg.sample_sheet)
    raw: dict[str, pd.DataFrame] = {}
    for sample, row in sheet.iterrows():
        _, raw[str(sample)] = read_fcs(row["path"])
        logger.info("Sample %s: %d events", sample, len(raw[str(sample)]))

    pooled_raw = pd.concat(raw.values(), axis=0, ignore_index=True, join="inner")
    transform = estimate_transform_params(
        pooled_raw,
        method=cfg.transform,
        cofactor=cfg.cofactor,
        channels=cfg.transform_channels,
    )
    logger.info("Transform: %s on %d channels", transform.method, len(transform.channels or ()))

    gates = cfg.gates
    if cfg.pool_gate_fit and gates.gates:
        gates = gates.fitted(apply_transform(pooled_raw, transform))
        logger.info("Gate bounds fitted on %d pooled events", len(pooled_raw))

    reports: list[pd.DataFrame] = []
    out_rows: list[dict[str, Any]] = []
    markers: tuple[str, ...] | None = None
    retained: dict[str, int] = {}
    for sample, events in raw.items():
        res = preprocess_events(events, transform, gates, markers=cfg.markers)
        if markers is None:
            markers = res.markers
        elif res.markers != markers:
            raise ConfigurationError(
                f"Sample '{sample}' yields markers {res.markers}; expected {markers}. "
                "List 'markers' explicitly in the config."
            )
        if res.n_retained == 0:
            raise ValueError(f"Gating removed every event of sample '{sample}'.")
        path = write_events(results_dir / "events" / f"{sample}.h5ad", res.events, res.markers, sample)
        retained[sample] = res.n_retained
        report = res.gate_report.copy()
        report.insert(0, "sample", sample)
        reports.append(report)
        row = sheet.loc[sample].to_dict()
        row["path"] = path.resolve().as_posix()
        row["n_raw"] = int(len(events))
        row["n_retained"] = res.n_retained
        out_rows.append(row)
        if gates.gates:
            plot_gate_qc(
                apply_transform(events, transform),
                gates,
                figures_dir / f"gates_{sanitize_label(sample)}.png",
                title=str(sample),
            )
        logger.info("Sample %s: %d of %d events retained", sample, res.n_retained, len(events))

    sheet_out = results_dir / "preprocessed_samples.csv"
    pd.DataFrame(out_rows).to_csv(sheet_out, index=False)
    if reports:
        pd.concat(reports, ignore_index=True).to_csv(results_dir / "gate_report.csv", index=False)
    summary = {
        "version": __version__,
        "n_samples": len(raw),
        "markers": list(markers or ()),
        "transform": transform.method,
        "cofactor": transform.cofactor,
        "gates": [g.name for g in gates.gates],
        "retained": retained,
        "sample_sheet": sheet_out.as_posix(),
    }
    write_json(results_dir / "preprocess_summary.json", summary)
    logger.info("Preprocessing complete. Results in %s", results_dir.as_posix())
    return summary


def _load_event_store(cfg: AnalysisConfig, sheet: pd.DataFrame) -> EventStore:
    events: dict[str, np.ndarray] = {}
    markers: tuple[str, ...] | None = cfg.markers
    for sample, row in sheet.iterrows():
        frame = read_events(row["path"], markers=markers)
        cols = tuple(str(c) for c in frame.columns)
        if markers is None:
            markers = cols
        elif cfg.markers is None and cols != markers:
            raise ConfigurationError(
                f"Sample '{sample}' has channels {cols}; expected {markers}. "
                "List 'markers' explicitly in the config."
            )
        events[str(sample)] = frame.to_numpy(dtype=float)
    return EventStore.from_arrays(events, markers=markers, sample_meta=sheet)


def run_analysis(config_path: str | Path) -> dict[str, Any]:
    cfg = load_analysis_config(config_path)
    return analyze_samples(cfg)


def analyze_samples(cfg: AnalysisConfig) -> dict[str, Any]:
    """Count, test, correct and select hyperspheres for every configured contrast."""
    outdir = Path(cfg.outdir)
    results_dir, figures_dir, logs_dir = _prepare_dirs(outdir)
    logger = setup_logger(logs_dir / "cytofda_analysis.log", "cytofda")

    sheet = load_sample_sheet(cfg.sample_sheet)
    store = _load_event_store(cfg, sheet)
    logger.info("Loaded %d samples with %d markers", len(store.sample_names), store.n_markers)

    pooled = prepare_cell_data(store, max_cells_per_sample=cfg.max_cells_per_sample, seed=cfg.seed)
    table = count_cells(
        pooled,
        tol=cfg.tol,
        downsample=cfg.downsample,
        scale_by_dimension=cfg.scale_by_dimension,
        n_jobs=cfg.n_jobs,
    )
    distances = neighbor_distances(pooled.pooled, table.centers)
    distances.to_csv(results_dir / "neighbor_distances.csv", index=False)

    table, _ = filter_hyperspheres(table, min_ave_log_cpm=cfg.min_ave_log_cpm)
    if table.n_hyperspheres == 0:
        raise ValueError("No hyperspheres left after abundance filtering; lower min_ave_log_cpm.")
    table.to_anndata().write_h5ad(results_dir / "abundance.h5ad")

    design = make_design(table.sample_meta, cfg.formula)
    if cfg.n_latent > 0:
        latent = estimate_latent_factors(table.counts, table.totals, design, cfg.n_latent)
        design = make_design(table.sample_meta, cfg.formula, latent=latent)
        latent.to_csv(results_dir / "latent_factors.csv")
    design.to_csv(results_dir / "design.csv")
    logger.info("Design columns: %s", ", ".join(str(c) for c in design.columns))

    results = fit_contrasts(
        table,
        design,
        cfg.contrasts,
        dispersion=cfg.dispersion,
        no_replicate_dispersion=cfg.no_replicate_dispersion,
    )

    hypersphere_id = np.asarray(table.metadata["source_index"], dtype=np.int64)
    intensities = table.intensities_frame()
    fdr_kwargs = {
        "neighbors": cfg.fdr_neighbors,
        "bandwidth": cfg.fdr_bandwidth,
        "kernel": cfg.fdr_kernel,
    }
    per_contrast: dict[str, dict[str, int]] = {}
    selections: dict[str, np.ndarray] = {}
    for name, res in results.items():
        pvalues = res["PValue"].to_numpy(dtype=float)
        res["FDR"] = spatial_fdr(table.centers, pvalues, **fdr_kwargs)
        res["FDR_BH"] = bh_fdr(pvalues)
        significant = (res["FDR"] <= cfg.q_threshold).to_numpy()
        selected = find_first_spheres(
            table.centers,
            res["PValue"].to_numpy(dtype=float),
            table.radius,
            significant=significant,
            max_overlap=cfg.max_overlap,
        )
        selections[name] = selected
        res.insert(0, "hypersphere", hypersphere_id)
        stem = sanitize_label(name)
        res.to_csv(results_dir / f"contrast_{stem}.csv", index=False)
        chosen = pd.concat([res.loc[selected], intensities.loc[selected]], axis=1)
        chosen.to_csv(results_dir / f"nonredundant_{stem}.csv", index=False)
        per_contrast[name] = {
            "tested": int((res["status"] == STATUS_OK).sum()),
            "significant": int(significant.sum()),
            "nonredundant": int(selected.sum()),
        }
        logger.info(
            "Contrast %s: %d significant at q<=%.3g, %d non-redundant",
            name,
            per_contrast[name]["significant"],
            cfg.q_threshold,
            per_contrast[name]["nonredundant"],
        )

    rescue_summary: dict[str, Any] | None = None
    if cfg.rescue is not None:
        a, b = cfg.rescue
        rescued = rescue_test(table.centers, results[a], results[b], **fdr_kwargs)
        rescued.insert(0, "hypersphere", hypersphere_id)
        rescued.to_csv(results_dir / "rescue.csv", index=False)
        rescue_summary = {
            "contrasts": [a, b],
            "significant": int((rescued["FDR"] <= cfg.q_threshold).sum()),
        }
        logger.info("Rescue %s / %s: %d significant", a, b, rescue_summary["significant"])

    if cfg.make_figures:
        apply_plot_style()
        plot_neighbor_distances(distances, figures_dir / "neighbor_distances.png", tol=table.radius)
        if table.n_hyperspheres >= 3:
            embedding = embed_centers(table.centers, seed=cfg.seed)
            for name, res in results.items():
                stem = sanitize_label(name)
                plot_logfc_embedding(
                    embedding,
                    res["logFC"].to_numpy(dtype=float),
                    figures_dir / f"tsne_{stem}.png",
                    significant=(res["FDR"] <= cfg.q_threshold).to_numpy(),
                    title=name,
                )
                if selections[name].any():
                    plot_intensity_heatmap(
                        intensities.loc[selections[name]],
                        figures_dir / f"heatmap_{stem}.png",
                        logfc=res.loc[selections[name], "logFC"].to_numpy(dtype=float),
                        title=name,
                    )
        else:
            logger.warning("Too few hyperspheres (%d) for t-SNE; skipping.", table.n_hyperspheres)

    summary = {
        "version": __version__,
        "n_samples": table.n_samples,
        "markers": list(table.markers),
        "radius": table.radius,
        "n_hyperspheres": table.n_hyperspheres,
        "contrasts": per_contrast,
        "rescue": rescue_summary,
        "q_threshold": cfg.q_threshold,
        "plot_style": plot_style_dict() if cfg.make_figures else None,
    }
    write_json(results_dir / "analysis_summary.json", summary)
    logger.info("Analysis complete. Results in %s", results_dir.as_posix())
    return summary
