from __future__ import annotations

import json
import os
from pathlib import Path

import anndata as ad
import matplotlib
import numpy as np
import pandas as pd

os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use("Agg", force=True)

from cytofda.core.types import AbundanceTable
from cytofda.pipeline import run as pipeline_run

GROUPS = {"c1": "ctrl", "c2": "ctrl", "s1": "stim", "s2": "stim"}


def _raw_events(sample: str, seed: int) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    n = 200
    # Stimulated samples carry more CD3-high cells.
    frac_t = 0.7 if GROUPS[sample] == "stim" else 0.3
    n_t = int(n * frac_t)
    cd3 = np.concatenate([rng.normal(100.0, 5.0, n_t), rng.normal(5.0, 1.0, n - n_t)])
    cd4 = np.concatenate([rng.normal(5.0, 1.0, n_t), rng.normal(100.0, 5.0, n - n_t)])
    length = np.full(n, 30.0)
    length[:5] = 300.0
    return pd.DataFrame(
        {
            "Time": np.arange(n, dtype=float),
            "Event_length": length,
            "DNA1": rng.normal(500.0, 10.0, n),
            "CD3": cd3,
            "CD4": cd4,
        }
    )


def _write_inputs(tmp_path: Path) -> tuple[Path, Path]:
    sheet = tmp_path / "samples.csv"
    pd.DataFrame(
        [{"sample": s, "path": f"fcs/{s}.fcs", "group": g} for s, g in GROUPS.items()]
    ).to_csv(sheet, index=False)

    pre_cfg = tmp_path / "preprocess.json"
    pre_cfg.write_text(
        json.dumps(
            {
                "sample_sheet": "samples.csv",
                "outdir": "pre",
                "transform": "arcsinh",
                "cofactor": 5.0,
                "gates": [
                    {"type": "range", "channel": "Event_length", "low": 10, "high": 75},
                    {"type": "outlier", "channel": "DNA1", "nmads": 4.0},
                ],
            }
        ),
        encoding="utf-8",
    )
    ana_cfg = tmp_path / "analysis.json"
    ana_cfg.write_text(
        json.dumps(
            {
                "sample_sheet": "pre/results/preprocessed_samples.csv",
                "outdir": "ana",
                "tol": 0.5,
                "downsample": 8,
                "contrasts": {"stim_vs_ctrl": "stim - ctrl", "ctrl_vs_stim": "ctrl - stim"},
                "rescue": ["stim_vs_ctrl", "ctrl_vs_stim"],
                "fdr_neighbors": 10,
            }
        ),
        encoding="utf-8",
    )
    return pre_cfg, ana_cfg


def test_preprocess_then_analyze(monkeypatch, tmp_path: Path):
    raw = {s: _raw_events(s, i) for i, s in enumerate(GROUPS)}

    def _fake_read_fcs(path):
        return {}, raw[Path(path).stem].copy()

    monkeypatch.setattr(pipeline_run, "read_fcs", _fake_read_fcs)
    pre_cfg, ana_cfg = _write_inputs(tmp_path)

    pre = pipeline_run.run_preprocessing(pre_cfg)
    pre_results = tmp_path / "pre" / "results"
    assert pre["markers"] == ["CD3", "CD4"]
    assert pre["n_samples"] == 4
    assert all(n <= 195 for n in pre["retained"].values())
    for s in GROUPS:
        assert (pre_results / "events" / f"{s}.h5ad").exists()
        assert (tmp_path / "pre" / "figures" / f"gates_{s}.png").exists()
    report = pd.read_csv(pre_results / "gate_report.csv")
    assert set(report["sample"]) == set(GROUPS)
    pre_log = (tmp_path / "pre" / "logs" / "cytofda_preprocess.log").read_text(encoding="utf-8")
    # Library modules log into the run file too.
    assert "Preprocessed 200 events" in pre_log

    summary = pipeline_run.run_analysis(ana_cfg)
    results = tmp_path / "ana" / "results"
    figures = tmp_path / "ana" / "figures"
    assert summary["n_samples"] == 4
    assert summary["markers"] == ["CD3", "CD4"]
    assert set(summary["contrasts"]) == {"stim_vs_ctrl", "ctrl_vs_stim"}

    res = pd.read_csv(results / "contrast_stim_vs_ctrl.csv")
    for col in ("hypersphere", "logFC", "logCPM", "F", "PValue", "status", "FDR", "FDR_BH"):
        assert col in res.columns
    tested = res[res["status"] == "ok"]
    assert len(tested) > 0
    assert (tested["FDR"] >= tested["PValue"] - 1e-12).all()

    rescued = pd.read_csv(results / "rescue.csv")
    # Opposite contrasts never agree in sign.
    assert (rescued["PValue"].dropna() == 1.0).all()

    table = AbundanceTable.from_anndata(ad.read_h5ad(results / "abundance.h5ad"))
    assert table.n_samples == 4
    assert table.n_hyperspheres == len(res)
    assert (results / "nonredundant_stim_vs_ctrl.csv").exists()
    assert (results / "analysis_summary.json").exists()
    assert (figures / "neighbor_distances.png").exists()
    assert (figures / "tsne_stim_vs_ctrl.png").exists()
    ana_log = (tmp_path / "ana" / "logs" / "cytofda_analysis.log").read_text(encoding="utf-8")
    assert "after abundance filter" in ana_log
    assert "Pooled" in ana_log
