from __future__ import annotations

import importlib.util
import sys
from pathlib import Path

from cytofda import cli


def _load_script_module(script_name: str):
    root = Path(__file__).resolve().parents[1]
    script_path = root / "scripts" / script_name
    spec = importlib.util.spec_from_file_location(script_name.replace(".py", ""), script_path)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Unable to load script module: {script_path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_cli_dispatches_preprocess(monkeypatch, capsys):
    called: list[str] = []

    def _fake_run(config_path: str) -> dict:
        called.append(config_path)
        return {"n_samples": 2, "sample_sheet": "out.csv"}

    monkeypatch.setattr(cli, "run_preprocessing", _fake_run)
    rc = cli.main(["preprocess", "--config", "tiny.json"])
    assert rc == 0
    assert called == ["tiny.json"]
    assert "samples=2" in capsys.readouterr().out


def test_cli_dispatches_analyze(monkeypatch, capsys):
    called: list[str] = []

    def _fake_run(config_path: str) -> dict:
        called.append(config_path)
        return {"n_hyperspheres": 10, "contrasts": {"c": {"significant": 2, "nonredundant": 1}}}

    monkeypatch.setattr(cli, "run_analysis", _fake_run)
    rc = cli.main(["analyze", "--config", "a.json"])
    assert rc == 0
    assert called == ["a.json"]
    assert "c: significant=2 nonredundant=1" in capsys.readouterr().out


def test_run_analysis_script_calls_pipeline(monkeypatch):
    module = _load_script_module("run_analysis.py")
    called: list[str] = []
    monkeypatch.setattr(module, "run_analysis", lambda cfg: called.append(cfg))
    monkeypatch.setattr(sys, "argv", ["run_analysis.py", "--config", "tiny.json"])
    assert module.main() == 0
    assert called == ["tiny.json"]


def test_run_preprocessing_script_calls_pipeline(monkeypatch):
    module = _load_script_module("run_preprocessing.py")
    called: list[str] = []
    monkeypatch.setattr(module, "run_preprocessing", lambda cfg: called.append(cfg))
    monkeypatch.setattr(sys, "argv", ["run_preprocessing.py", "--config", "p.json"])
    assert module.main() == 0
    assert called == ["p.json"]
