"""Command line entry point running a backtest sweep over a return panel."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Any, Dict, Iterable, List, Mapping, Optional, TextIO

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
import yaml

from robust_cvar_backtest import __version__
from robust_cvar_backtest.data.loader import load_returns
from robust_cvar_backtest.estimators import Estimator
from robust_cvar_backtest.errors import BacktestError
from robust_cvar_backtest.metrics import estimator_diagnostics, metrics_table
from robust_cvar_backtest.optimizer import OptimizerConfig, Strategy

from .backtest import BENCHMARK_KEY, BacktestResult, RebalancePolicy, equal_weight_benchmark
from .sweep import SweepGrid, SweepResult, run_grid

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"


class RunConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    csv: str
    out: str = "bt_out"
    estimators: List[str] = Field(default_factory=lambda: [e.value for e in Estimator])
    strategies: List[str] = Field(default_factory=lambda: [s.value for s in Strategy])
    alphas: List[float] = Field(default_factory=lambda: [0.95, 0.99])
    policies: List[str] = Field(default_factory=lambda: [p.value for p in RebalancePolicy])
    bands: List[float] = Field(default_factory=lambda: [0.02, 0.05, 0.10])
    turnover_penalties: List[float] = Field(default_factory=lambda: [0.0])
    window_size: int = Field(ge=2, default=756)
    cost_bps: float = Field(ge=0.0, default=10.0)
    max_weight: float = Field(gt=0.0, le=1.0, default=0.30)
    min_assets: int = Field(ge=1, default=1)
    max_workers: Optional[int] = Field(default=None, ge=1)
    benchmark: bool = True
    benchmark_cost_bps: float = Field(ge=0.0, default=6.0)
    lp_time_limit: float = Field(gt=0.0, default=60.0)
    rf: float = 0.0
    log_level: str = "INFO"
    log_json: Optional[str] = None

    @field_validator("estimators")
    @classmethod
    def _known_estimators(cls, values: List[str]) -> List[str]:
        return [Estimator.parse(v).value for v in values]

    @field_validator("strategies")
    @classmethod
    def _known_strategies(cls, values: List[str]) -> List[str]:
        return [Strategy.parse(v).value for v in values]

    @field_validator("policies")
    @classmethod
    def _known_policies(cls, values: List[str]) -> List[str]:
        return [RebalancePolicy.parse(v).value for v in values]

    @field_validator("alphas")
    @classmethod
    def _alpha_range(cls, values: List[float]) -> List[float]:
        for alpha in values:
            if not 0.0 < alpha < 1.0:
                raise ValueError(f"alpha {alpha} must lie in (0, 1)")
        return values

    @field_validator("bands", "turnover_penalties")
    @classmethod
    def _non_negative(cls, values: List[float]) -> List[float]:
        if any(v < 0.0 for v in values):
            raise ValueError("values must be non-negative")
        return values

    @field_validator("log_level")
    @classmethod
    def _level_name(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level '{value}'")
        return level

    def grid(self) -> SweepGrid:
        return SweepGrid(
            estimators=tuple(self.estimators),
            strategies=tuple(self.strategies),
            alphas=tuple(self.alphas),
            policies=tuple(self.policies),
            bands=tuple(self.bands),
            turnover_penalties=tuple(self.turnover_penalties),
        )


class _JsonlWriter:
    """Write JSON objects line-by-line to a file handle."""

    def __init__(self, handle: TextIO) -> None:
        self._handle = handle

    def write(self, payload: Mapping[str, Any]) -> None:
        json.dump(payload, self._handle, sort_keys=True, default=str)
        self._handle.write("\n")
        self._handle.flush()

    def close(self) -> None:
        try:
            self._handle.flush()
        finally:
            self._handle.close()


def _load_run_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Run config must be YAML or JSON")
    if not isinstance(data, dict):
        raise ValueError("Run config must evaluate to a mapping")
    return {str(key).replace("-", "_"): value for key, value in data.items()}


def _csv_list(text: str) -> List[str]:
    return [item.strip() for item in text.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    """Construct the argument parser for the sweep CLI."""

    parser = argparse.ArgumentParser(
        prog="robust-cvar-backtest",
        description="Rolling-window backtests across estimators, strategies and rebalance policies",
    )
    parser.add_argument("--config", type=str, default=None, help="YAML/JSON file containing run parameters")
    parser.add_argument("--csv", type=str, default=None, help="CSV of daily returns with a date column")
    parser.add_argument("--out", type=str, default=None, help="Output directory")
    parser.add_argument("--estimators", type=_csv_list, default=None, help="Comma list: baseline,huber,tyler")
    parser.add_argument("--strategies", type=_csv_list, default=None, help="Comma list: min_cvar,min_variance")
    parser.add_argument("--alphas", type=_csv_list, default=None, help="Comma list of CVaR confidence levels")
    parser.add_argument("--policies", type=_csv_list, default=None, help="Comma list: monthly,bands")
    parser.add_argument("--bands", type=_csv_list, default=None, help="Comma list of tolerance bands")
    parser.add_argument(
        "--turnover-penalties",
        dest="turnover_penalties",
        type=_csv_list,
        default=None,
        help="Comma list of L1 turnover penalties",
    )
    parser.add_argument("--window-size", dest="window_size", type=int, default=None)
    parser.add_argument("--cost-bps", dest="cost_bps", type=float, default=None)
    parser.add_argument("--max-weight", dest="max_weight", type=float, default=None)
    parser.add_argument("--min-assets", dest="min_assets", type=int, default=None)
    parser.add_argument(
        "--max-workers",
        dest="max_workers",
        type=int,
        default=None,
        help="Process pool size; runs sequentially when omitted",
    )
    parser.add_argument(
        "--benchmark",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include the equal-weight buy-and-hold benchmark",
    )
    parser.add_argument("--benchmark-cost-bps", dest="benchmark_cost_bps", type=float, default=None)
    parser.add_argument("--lp-time-limit", dest="lp_time_limit", type=float, default=None)
    parser.add_argument("--rf", type=float, default=None, help="Annual risk-free rate for ratios")
    parser.add_argument("--log-level", dest="log_level", type=str, default=None)
    parser.add_argument(
        "--log-json",
        dest="log_json",
        type=str,
        default=None,
        help="Write one JSON record per rebalance event to this path",
    )
    return parser


def resolve_config(argv: Iterable[str]) -> RunConfig:
    """Merge config-file values with explicit flags and validate the result."""

    parsed = build_parser().parse_args(args=list(argv))
    blob: Dict[str, Any] = {}
    if parsed.config:
        blob.update(_load_run_config(Path(parsed.config)))
    for name, value in vars(parsed).items():
        if name != "config" and value is not None:
            blob[name] = value
    try:
        return RunConfig.model_validate(blob)
    except ValidationError as exc:
        lines = []
        for err in exc.errors():
            loc = ".".join(map(str, err.get("loc", []))) or "<root>"
            lines.append(f"{loc}: {err.get('msg')}")
        raise SystemExit("Invalid config:\n  " + "\n  ".join(lines))


def _write_run_outputs(out_dir: Path, name: str, result: BacktestResult) -> None:
    run_dir = out_dir / "runs" / name
    run_dir.mkdir(parents=True, exist_ok=True)
    result.weights_frame().to_csv(run_dir / "weights.csv", index=False)
    result.series_frame().to_csv(run_dir / "series.csv")


def _write_event_log(path: Path, sweep: SweepResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    writer = _JsonlWriter(path.open("w", encoding="utf-8"))
    try:
        for key, result in sweep.results.items():
            for event in result.events:
                record = event.to_record(result.assets)
                record["run"] = key.label()
                writer.write(record)
    finally:
        writer.close()


def _write_diagnostics(out_dir: Path, returns: pd.DataFrame, cfg: RunConfig) -> None:
    window = returns.iloc[-cfg.window_size :].to_numpy(dtype=float)
    try:
        table = estimator_diagnostics(window, cfg.estimators)
    except BacktestError as exc:
        logger.warning("Skipping estimator diagnostics on the last window: %s", exc)
        return
    table.to_csv(out_dir / "diagnostics.csv", index=False)
    for row in table.itertuples(index=False):
        logger.info(
            "%s: nu = %d, relative difference to baseline = %.2f%%",
            row.estimator,
            row.nu,
            100.0 * row.rel_diff_vs_baseline,
        )


def _write_run_manifest(out_dir: Path, cfg: RunConfig, sweep: SweepResult) -> None:
    manifest: Dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "package_version": __version__,
        "python_version": sys.version,
        "config": cfg.model_dump(),
        "runs": [key.label() for key in sweep.results],
        "failures": [failure.describe() for failure in sweep.failures.values()],
    }
    (out_dir / "run_config.json").write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")


def main(args: Optional[Iterable[str]] = None) -> None:
    argv = list(args) if args is not None else sys.argv[1:]
    cfg = resolve_config(argv)
    logging.basicConfig(level=getattr(logging, cfg.log_level), format=LOG_FORMAT)

    returns = load_returns(Path(cfg.csv), min_assets=cfg.min_assets)
    out_dir = Path(cfg.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Loaded %d days x %d assets from %s", returns.shape[0], returns.shape[1], cfg.csv)

    sweep = run_grid(
        returns,
        cfg.grid(),
        window_size=cfg.window_size,
        cost_bps=cfg.cost_bps,
        max_weight=cfg.max_weight,
        min_assets=cfg.min_assets,
        optimizer_config=OptimizerConfig(lp_time_limit=cfg.lp_time_limit),
        max_workers=cfg.max_workers,
    )
    for key, result in sweep.results.items():
        _write_run_outputs(out_dir, key.label(), result)

    extra: Dict[Any, BacktestResult] = {}
    if cfg.benchmark:
        evaluation = returns.iloc[cfg.window_size - 1 :]
        bench = equal_weight_benchmark(evaluation, cost_bps=cfg.benchmark_cost_bps)
        _write_run_outputs(out_dir, BENCHMARK_KEY.label(), bench)
        extra[BENCHMARK_KEY] = bench

    table = metrics_table(sweep.results, rf=cfg.rf, extra=extra)
    table.to_csv(out_dir / "metrics.csv", index=False)
    if sweep.failures:
        failures = pd.DataFrame(
            [
                {**key._asdict(), "error_type": f.error_type, "message": f.message}
                for key, f in sweep.failures.items()
            ]
        )
        failures.to_csv(out_dir / "failures.csv", index=False)
    if cfg.log_json:
        _write_event_log(Path(cfg.log_json), sweep)
    _write_diagnostics(out_dir, returns, cfg)
    _write_run_manifest(out_dir, cfg, sweep)
    logger.info("Wrote %d runs (%d failed) to %s", len(sweep.results), len(sweep.failures), out_dir)


if __name__ == "__main__":  # pragma: no cover
    main()
