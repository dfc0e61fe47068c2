"""Cross-product of backtest runs executed as independent tasks."""
from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
import itertools
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from robust_cvar_backtest.errors import BacktestError, ConfigurationError, RunFailure
from robust_cvar_backtest.estimators import Estimator, EstimatorConfig
from robust_cvar_backtest.optimizer import OptimizerConfig, Strategy

from .backtest import BacktestConfig, BacktestResult, RebalancePolicy, RunKey, backtest_strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepGrid:
    """Experiment axes; min-variance runs ignore ``alphas`` and monthly runs ignore ``bands``."""

    estimators: Tuple[Estimator, ...] = (Estimator.BASELINE, Estimator.HUBER, Estimator.TYLER)
    strategies: Tuple[Strategy, ...] = (Strategy.MIN_CVAR, Strategy.MIN_VARIANCE)
    alphas: Tuple[float, ...] = (0.95, 0.99)
    policies: Tuple[RebalancePolicy, ...] = (RebalancePolicy.MONTHLY, RebalancePolicy.BANDS)
    bands: Tuple[float, ...] = (0.02, 0.05, 0.10)
    turnover_penalties: Tuple[float, ...] = (0.0,)

    def __post_init__(self) -> None:
        object.__setattr__(self, "estimators", tuple(Estimator.parse(e) for e in self.estimators))
        object.__setattr__(self, "strategies", tuple(Strategy.parse(s) for s in self.strategies))
        object.__setattr__(self, "policies", tuple(RebalancePolicy.parse(p) for p in self.policies))
        object.__setattr__(self, "alphas", tuple(float(a) for a in self.alphas))
        object.__setattr__(self, "bands", tuple(float(b) for b in self.bands))
        object.__setattr__(self, "turnover_penalties", tuple(float(x) for x in self.turnover_penalties))
        if not self.estimators or not self.strategies or not self.policies:
            raise ConfigurationError("estimators, strategies and policies must not be empty")
        if Strategy.MIN_CVAR in self.strategies and not self.alphas:
            raise ConfigurationError("min_cvar runs need at least one alpha")
        if RebalancePolicy.BANDS in self.policies and not self.bands:
            raise ConfigurationError("band policies need at least one band")
        if not self.turnover_penalties:
            raise ConfigurationError("turnover_penalties must not be empty")


@dataclass(frozen=True)
class SweepResult:
    """Write-once collection of per-run results keyed by :class:`RunKey`."""

    results: Mapping[RunKey, BacktestResult]
    failures: Mapping[RunKey, RunFailure]

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, key: RunKey) -> BacktestResult:
        return self.results[key]

    def keys(self) -> List[RunKey]:
        return list(self.results)


def enumerate_runs(grid: SweepGrid) -> List[RunKey]:
    keys: List[RunKey] = []
    for estimator, strategy in itertools.product(grid.estimators, grid.strategies):
        alphas = grid.alphas if strategy is Strategy.MIN_CVAR else (0.0,)
        for alpha, policy, lam in itertools.product(alphas, grid.policies, grid.turnover_penalties):
            bands = grid.bands if policy is RebalancePolicy.BANDS else (0.0,)
            for band in bands:
                keys.append(RunKey(estimator.value, strategy.value, alpha, policy.value, band, lam))
    return keys


def config_for_key(key: RunKey, **shared: Any) -> BacktestConfig:
    params: Dict[str, Any] = dict(
        estimator=key.estimator,
        strategy=key.strategy,
        policy=key.policy,
        turnover_penalty=key.turnover_penalty,
    )
    if key.alpha:
        params["alpha"] = key.alpha
    if RebalancePolicy.parse(key.policy) is RebalancePolicy.BANDS:
        params["band"] = key.band
    params.update(shared)
    return BacktestConfig(**params)


def _run_one(
    key: RunKey,
    returns: Any,
    shared: Mapping[str, Any],
    optimizer_config: Optional[OptimizerConfig],
    estimator_config: Optional[EstimatorConfig],
) -> Union[BacktestResult, RunFailure]:
    try:
        config = config_for_key(key, **shared)
        return backtest_strategy(
            returns,
            config,
            optimizer_config=optimizer_config,
            estimator_config=estimator_config,
        )
    except BacktestError as exc:
        logger.error("Run %s aborted: %s", key, exc)
        return RunFailure(key=key, error_type=type(exc).__name__, message=str(exc))


def run_sweep(
    returns: Any,
    keys: Iterable[RunKey],
    *,
    window_size: int = 756,
    cost_bps: float = 10.0,
    max_weight: float = 0.30,
    min_assets: int = 1,
    optimizer_config: Optional[OptimizerConfig] = None,
    estimator_config: Optional[EstimatorConfig] = None,
    max_workers: Optional[int] = None,
) -> SweepResult:
    """Run every key independently and merge the outcomes once all tasks finished.

    With ``max_workers`` greater than one the runs are dispatched to a
    process pool; each task owns its state, so the merged mapping is the same
    as in a sequential sweep.
    """

    key_list = list(dict.fromkeys(keys))
    shared = dict(window_size=window_size, cost_bps=cost_bps, max_weight=max_weight, min_assets=min_assets)
    # reject unknown identifiers before any computation starts
    for key in key_list:
        config_for_key(key, **shared)

    if max_workers is not None and max_workers <= 0:
        raise ConfigurationError("max_workers must be positive when provided")

    outcomes: List[Union[BacktestResult, RunFailure]]
    if max_workers is None or max_workers == 1 or len(key_list) <= 1:
        outcomes = [
            _run_one(key, returns, shared, optimizer_config, estimator_config) for key in key_list
        ]
    else:
        with ProcessPoolExecutor(max_workers=max_workers) as pool:
            futures = [
                pool.submit(_run_one, key, returns, shared, optimizer_config, estimator_config)
                for key in key_list
            ]
            outcomes = [future.result() for future in futures]

    results: Dict[RunKey, BacktestResult] = {}
    failures: Dict[RunKey, RunFailure] = {}
    for key, outcome in zip(key_list, outcomes):
        if isinstance(outcome, RunFailure):
            failures[key] = outcome
        else:
            results[key] = outcome
    logger.info("Sweep finished: %d runs succeeded, %d failed", len(results), len(failures))
    return SweepResult(results=MappingProxyType(results), failures=MappingProxyType(failures))


def run_grid(returns: Any, grid: Optional[SweepGrid] = None, **kwargs: Any) -> SweepResult:
    return run_sweep(returns, enumerate_runs(grid or SweepGrid()), **kwargs)


__all__ = [
    "SweepGrid",
    "SweepResult",
    "config_for_key",
    "enumerate_runs",
    "run_grid",
    "run_sweep",
]
