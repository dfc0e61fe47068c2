import json
from importlib import import_module
from pathlib import Path

import pandas as pd

from conftest import make_returns

cli = import_module("robust_cvar_backtest.backtest.cli")


def _run(tmp_path: Path, *extra: str) -> Path:
    csv_path = tmp_path / "returns.csv"
    make_returns(n_days=200).to_csv(csv_path, index_label="date")
    out = tmp_path / "out"
    cli.main(
        [
            "--csv",
            str(csv_path),
            "--out",
            str(out),
            "--estimators",
            "baseline,huber",
            "--strategies",
            "min_variance",
            "--policies",
            "monthly",
            "--window-size",
            "60",
            "--max-weight",
            "0.4",
            "--log-level",
            "warning",
            *extra,
        ]
    )
    return out


def test_cli_writes_run_artifacts(tmp_path: Path) -> None:
    out = _run(tmp_path)

    manifest = json.loads((out / "run_config.json").read_text(encoding="utf-8"))
    assert manifest["schema_version"] == cli.SCHEMA_VERSION
    assert manifest["config"]["window_size"] == 60
    assert manifest["config"]["estimators"] == ["baseline", "huber"]
    assert sorted(manifest["runs"]) == [
        "baseline_min_variance_monthly_l0",
        "huber_min_variance_monthly_l0",
    ]

    weights = pd.read_csv(out / "runs" / "baseline_min_variance_monthly_l0" / "weights.csv")
    assert list(weights.columns[:3]) == ["date", "executed", "turnover"]
    series = pd.read_csv(out / "runs" / "huber_min_variance_monthly_l0" / "series.csv")
    assert list(series.columns) == ["date", "return", "wealth"]

    metrics = pd.read_csv(out / "metrics.csv")
    # two strategy runs plus the equal-weight benchmark
    assert len(metrics) == 3
    assert "equal_weight" in set(metrics["estimator"])
    assert not (out / "failures.csv").exists()


def test_cli_json_event_log(tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    _run(tmp_path, "--log-json", str(log_path), "--no-benchmark")
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert lines
    record = json.loads(lines[0])
    assert {"run", "date", "executed", "turnover", "weights"} <= set(record)
    metrics = pd.read_csv(tmp_path / "out" / "metrics.csv")
    assert len(metrics) == 2


def test_cli_flags_override_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "run.yaml"
    config_path.write_text("window_size: 30\ncost_bps: 25\n")
    csv_path = tmp_path / "returns.csv"
    make_returns(n_days=120).to_csv(csv_path, index_label="date")
    cfg = cli.resolve_config(["--config", str(config_path), "--csv", str(csv_path), "--window-size", "45"])
    assert cfg.window_size == 45
    assert cfg.cost_bps == 25.0
    assert cfg.max_workers is None


def test_cli_writes_estimator_diagnostics(tmp_path: Path) -> None:
    out = _run(tmp_path, "--no-benchmark")

    diagnostics = pd.read_csv(out / "diagnostics.csv")
    assert list(diagnostics["estimator"]) == ["baseline", "huber"]
    assert {"nu", "rel_diff_vs_baseline"} <= set(diagnostics.columns)
    by_name = diagnostics.set_index("estimator")
    assert by_name.loc["baseline", "rel_diff_vs_baseline"] == 0.0
    assert by_name.loc["huber", "rel_diff_vs_baseline"] > 0.0

    metrics = pd.read_csv(out / "metrics.csv")
    assert "weight_stability" in metrics.columns
    assert (metrics["weight_stability"] >= 0.0).all()
