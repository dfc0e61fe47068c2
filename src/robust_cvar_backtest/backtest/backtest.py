from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from robust_cvar_backtest.errors import ConfigurationError, DataError
from robust_cvar_backtest.estimators import Estimator, EstimatorConfig, estimate
from robust_cvar_backtest.optimizer import (
    OptimizationRequest,
    OptimizationResult,
    OptimizerConfig,
    Strategy,
    optimize,
)
from robust_cvar_backtest.utils import Choice, l1_distance, renormalize, uniform_weights

logger = logging.getLogger(__name__)

TRADING_DAYS = 252


class RebalancePolicy(Choice):
    MONTHLY = "monthly"
    BANDS = "bands"

    @classmethod
    def aliases(cls):
        return {
            "fixed": "monthly",
            "fixed_schedule": "monthly",
            "schedule": "monthly",
            "band": "bands",
            "tolerance_band": "bands",
        }


class RunKey(NamedTuple):
    """Parameter tuple identifying one independent backtest run."""

    estimator: str
    strategy: str
    alpha: float
    policy: str
    band: float
    turnover_penalty: float

    def label(self) -> str:
        parts = [self.estimator, self.strategy]
        if self.alpha:
            parts.append(f"a{self.alpha:g}")
        parts.append(self.policy)
        if self.band:
            parts.append(f"b{self.band:g}")
        parts.append(f"l{self.turnover_penalty:g}")
        return "_".join(parts)


@dataclass(frozen=True)
class BacktestConfig:
    """Parameters of a single run; enums accept their string identifiers."""

    estimator: Estimator = Estimator.BASELINE
    strategy: Strategy = Strategy.MIN_CVAR
    alpha: float = 0.95
    policy: RebalancePolicy = RebalancePolicy.MONTHLY
    band: float = 0.05
    turnover_penalty: float = 0.0
    window_size: int = 756
    cost_bps: float = 10.0
    max_weight: float = 0.30
    min_assets: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "estimator", Estimator.parse(self.estimator))
        object.__setattr__(self, "strategy", Strategy.parse(self.strategy))
        object.__setattr__(self, "policy", RebalancePolicy.parse(self.policy))
        if self.strategy is Strategy.MIN_CVAR and not (0.0 < self.alpha < 1.0):
            raise ConfigurationError("alpha must lie in (0, 1)")
        if self.policy is RebalancePolicy.BANDS and self.band < 0.0:
            raise ConfigurationError("band must be non-negative")
        if self.turnover_penalty < 0.0 or not math.isfinite(self.turnover_penalty):
            raise ConfigurationError("turnover_penalty must be a finite non-negative number")
        if self.window_size < 2:
            raise ConfigurationError("window_size must be at least 2")
        if self.cost_bps < 0.0:
            raise ConfigurationError("cost_bps must be non-negative")
        if not (0.0 < self.max_weight <= 1.0):
            raise ConfigurationError("max_weight must lie in (0, 1]")
        if self.min_assets < 1:
            raise ConfigurationError("min_assets must be at least 1")

    @property
    def key(self) -> RunKey:
        return RunKey(
            estimator=self.estimator.value,
            strategy=self.strategy.value,
            alpha=float(self.alpha) if self.strategy is Strategy.MIN_CVAR else 0.0,
            policy=self.policy.value,
            band=float(self.band) if self.policy is RebalancePolicy.BANDS else 0.0,
            turnover_penalty=float(self.turnover_penalty),
        )

    @property
    def cost_rate(self) -> float:
        return self.cost_bps / 10_000.0


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class RebalanceEvent:
    """Outcome of one rebalance date; ``weights`` are the strategic weights after it."""

    date: Any
    executed: bool
    turnover: float
    weights: np.ndarray
    target: Optional[np.ndarray] = None
    objective: float = math.nan
    turnover_penalty: float = 0.0
    status: str = "optimal"

    def __post_init__(self) -> None:
        object.__setattr__(self, "weights", _frozen(self.weights))
        if self.target is not None:
            object.__setattr__(self, "target", _frozen(self.target))

    def to_record(self, assets: Sequence[str]) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "date": str(pd.Timestamp(self.date).date()) if _is_datelike(self.date) else self.date,
            "executed": bool(self.executed),
            "turnover": float(self.turnover),
            "objective": None if not math.isfinite(self.objective) else float(self.objective),
            "turnover_penalty": float(self.turnover_penalty),
            "status": self.status,
        }
        record["weights"] = {name: float(w) for name, w in zip(assets, self.weights)}
        return record


@dataclass
class BacktestState:
    """Mutable state owned by exactly one run."""

    w_strategic: np.ndarray
    w_current: np.ndarray
    value: float = 1.0
    has_rebalanced: bool = False
    returns: List[float] = field(default_factory=list)
    wealth: List[float] = field(default_factory=list)
    events: List[RebalanceEvent] = field(default_factory=list)

    @classmethod
    def initial(cls, n_assets: int) -> "BacktestState":
        start = uniform_weights(n_assets)
        return cls(w_strategic=start.copy(), w_current=start.copy())

    def execute(self, target: np.ndarray, cost_rate: float) -> float:
        """Trade from the strategic weights to ``target``; returns the L1 turnover."""

        target = np.asarray(target, dtype=float)
        traded = turnover(self.w_strategic, target)
        self.value *= 1.0 - cost_rate * traded
        self.w_strategic = target.copy()
        self.w_current = target.copy()
        self.has_rebalanced = True
        return traded

    def step(self, day_returns: np.ndarray) -> float:
        """Book one day: wealth on entry, portfolio return, then weight drift."""

        self.wealth.append(self.value)
        port_ret = float(self.w_current @ day_returns)
        self.value *= 1.0 + port_ret
        self.returns.append(port_ret)
        self.w_current = renormalize(self.w_current * (1.0 + day_returns))
        return port_ret


@dataclass(frozen=True)
class BacktestResult:
    """Immutable per-run output handed to reporting collaborators."""

    key: Tuple[Any, ...]
    assets: Tuple[str, ...]
    dates: Tuple[Any, ...]
    returns: np.ndarray
    wealth: np.ndarray
    events: Tuple[RebalanceEvent, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "returns", _frozen(self.returns))
        object.__setattr__(self, "wealth", _frozen(self.wealth))
        if not (len(self.dates) == self.returns.size == self.wealth.size):
            raise ValueError("dates, returns and wealth must be aligned")

    @property
    def turnover_series(self) -> np.ndarray:
        return np.array([event.turnover for event in self.events], dtype=float)

    @property
    def n_executed(self) -> int:
        return sum(1 for event in self.events if event.executed)

    @property
    def final_wealth(self) -> float:
        if self.returns.size == 0:
            return 1.0
        return float(self.wealth[-1] * (1.0 + self.returns[-1]))

    def weights_frame(self) -> pd.DataFrame:
        """One row per rebalance date: date, executed flag, turnover, asset weights."""

        rows = []
        for event in self.events:
            row: Dict[str, Any] = {
                "date": event.date,
                "executed": event.executed,
                "turnover": event.turnover,
            }
            row.update({name: float(w) for name, w in zip(self.assets, event.weights)})
            rows.append(row)
        return pd.DataFrame(rows, columns=["date", "executed", "turnover", *self.assets])

    def series_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"return": self.returns, "wealth": self.wealth},
            index=pd.Index(list(self.dates), name="date"),
        )


def _is_datelike(value: Any) -> bool:
    return isinstance(value, (pd.Timestamp, np.datetime64)) or hasattr(value, "year")


def _prepare_returns(
    returns: Any,
    dates: Optional[Sequence[Any]] = None,
    assets: Optional[Sequence[str]] = None,
) -> Tuple[np.ndarray, List[Any], List[str]]:
    if isinstance(returns, pd.DataFrame):
        matrix = returns.to_numpy(dtype=float)
        date_list = list(returns.index) if dates is None else list(dates)
        names = [str(col) for col in returns.columns] if assets is None else list(assets)
    else:
        matrix = np.asarray(returns, dtype=float)
        if matrix.ndim == 1:
            matrix = matrix.reshape(-1, 1)
        if dates is None:
            raise DataError("dates must be supplied alongside a raw return matrix")
        date_list = list(dates)
        names = list(assets) if assets is not None else [f"asset_{i}" for i in range(matrix.shape[1])]
    if matrix.ndim != 2 or matrix.size == 0:
        raise DataError("returns must be a non-empty T x p matrix")
    if len(date_list) != matrix.shape[0]:
        raise DataError("dates length must match the number of return rows")
    if len(names) != matrix.shape[1]:
        raise DataError("asset names must match the number of return columns")
    if not np.all(np.isfinite(matrix)):
        raise DataError("returns contain missing or non-finite values")
    return matrix, date_list, names


def rebalance_positions(dates: Sequence[Any], window_size: int) -> List[int]:
    """Row positions of the last trading date of each month once a full window exists."""

    if window_size < 1:
        raise ConfigurationError("window_size must be positive")
    try:
        index = pd.DatetimeIndex(pd.to_datetime(list(dates)))
    except (TypeError, ValueError) as exc:
        raise DataError("rebalance scheduling requires date-like index values") from exc
    if len(index) < window_size:
        return []
    if not index.is_monotonic_increasing:
        raise DataError("dates must be sorted in increasing order")
    start = window_size - 1
    months = index.year * 12 + index.month
    positions = []
    for pos in range(start, len(index)):
        if pos == len(index) - 1 or months[pos + 1] != months[pos]:
            positions.append(pos)
    return positions


def rebalance_dates(dates: Sequence[Any], window_size: int) -> List[Any]:
    """Last trading date of every calendar month in ``dates[window_size - 1:]``."""

    values = list(dates)
    return [values[pos] for pos in rebalance_positions(values, window_size)]


def needs_rebalance(strategic: np.ndarray, target: np.ndarray, band: float) -> bool:
    """Tolerance-band rule: trade only when some weight moved by more than ``band``."""

    diff = np.abs(np.asarray(strategic, dtype=float) - np.asarray(target, dtype=float))
    return bool(np.max(diff) > band)


def effective_penalty(has_rebalanced: bool, turnover_penalty: float) -> float:
    """Turnover penalty in force: zero until the run has executed its first rebalance."""

    return float(turnover_penalty) if has_rebalanced else 0.0


def turnover(previous: Optional[np.ndarray], current: np.ndarray) -> float:
    """Compute the L1 turnover between two weight vectors."""

    if previous is None:
        return float(np.abs(np.asarray(current, dtype=float)).sum())
    return l1_distance(previous, current)


def _rebalance(
    state: BacktestState,
    window: np.ndarray,
    date: Any,
    config: BacktestConfig,
    optimizer_config: Optional[OptimizerConfig],
    estimator_config: Optional[EstimatorConfig],
) -> RebalanceEvent:
    moments = estimate(window, config.estimator, estimator_config)
    lam_eff = effective_penalty(state.has_rebalanced, config.turnover_penalty)
    request = OptimizationRequest(
        config.strategy,
        max_weight=config.max_weight,
        alpha=config.alpha,
        prev_weights=state.w_strategic.copy(),
        turnover_penalty=lam_eff,
        covariance=moments.covariance if config.strategy is Strategy.MIN_VARIANCE else None,
        scenarios=window if config.strategy is Strategy.MIN_CVAR else None,
    )
    result: OptimizationResult = optimize(request, optimizer_config)

    if not result.success:
        logger.warning("No usable target on %s (%s); keeping strategic weights", date, result.status)
        return RebalanceEvent(
            date=date,
            executed=False,
            turnover=0.0,
            weights=state.w_strategic,
            target=None,
            objective=math.inf,
            turnover_penalty=lam_eff,
            status=result.status,
        )

    target = result.weights
    if config.policy is RebalancePolicy.MONTHLY:
        execute = True
    elif config.policy is RebalancePolicy.BANDS:
        execute = needs_rebalance(state.w_strategic, target, config.band)
    else:  # pragma: no cover
        raise AssertionError(f"unhandled policy {config.policy!r}")

    traded = state.execute(target, config.cost_rate) if execute else 0.0
    return RebalanceEvent(
        date=date,
        executed=execute,
        turnover=traded,
        weights=state.w_strategic,
        target=target,
        objective=result.objective,
        turnover_penalty=lam_eff,
        status=result.status,
    )


def backtest_strategy(
    returns: Any,
    config: Optional[BacktestConfig] = None,
    *,
    dates: Optional[Sequence[Any]] = None,
    assets: Optional[Sequence[str]] = None,
    optimizer_config: Optional[OptimizerConfig] = None,
    estimator_config: Optional[EstimatorConfig] = None,
    **overrides: Any,
) -> BacktestResult:
    """Run one rolling-window backtest.

    ``returns`` is a pandas frame (date index, one column per asset) or a raw
    ``T x p`` matrix together with ``dates``. Keyword overrides are merged into
    ``config`` (``backtest_strategy(df, strategy="min_variance", window_size=504)``).
    """

    if config is None:
        config = BacktestConfig(**overrides)
    elif overrides:
        params = {name: getattr(config, name) for name in BacktestConfig.__dataclass_fields__}
        params.update(overrides)
        config = BacktestConfig(**params)

    R, date_list, names = _prepare_returns(returns, dates, assets)
    n_days, n_assets = R.shape
    key = config.key
    if n_assets < config.min_assets:
        raise DataError(f"universe has {n_assets} assets, fewer than the required {config.min_assets}")
    if config.window_size <= n_assets:
        raise DataError(
            f"estimation window of {config.window_size} days is too short for {n_assets} assets"
        )
    if n_days < config.window_size:
        raise DataError(f"series of {n_days} days is shorter than the {config.window_size}-day window")

    schedule: Set[int] = set(rebalance_positions(date_list, config.window_size))
    state = BacktestState.initial(n_assets)
    logger.info("Running backtest %s over %d rebalance dates", key, len(schedule))

    for t in range(config.window_size - 1, n_days):
        if t in schedule:
            window = R[t - config.window_size + 1 : t + 1]
            state.events.append(_rebalance(state, window, date_list[t], config, optimizer_config, estimator_config))
        state.step(R[t])

    executed = sum(1 for event in state.events if event.executed)
    logger.info(
        "Finished backtest %s: %d/%d rebalances executed, final value %.4f",
        key,
        executed,
        len(state.events),
        state.value,
    )
    return BacktestResult(
        key=key,
        assets=tuple(names),
        dates=tuple(date_list[config.window_size - 1 :]),
        returns=np.asarray(state.returns, dtype=float),
        wealth=np.asarray(state.wealth, dtype=float),
        events=tuple(state.events),
    )


BENCHMARK_KEY = RunKey("equal_weight", "buy_and_hold", 0.0, "annual", 0.0, 0.0)


def equal_weight_benchmark(
    returns: Any,
    cost_bps: float = 6.0,
    rebalance_every: int = TRADING_DAYS,
    *,
    dates: Optional[Sequence[Any]] = None,
    assets: Optional[Sequence[str]] = None,
) -> BacktestResult:
    """Equal-weight buy-and-hold, reset to 1/p every ``rebalance_every`` days."""

    if rebalance_every <= 0:
        raise ConfigurationError("rebalance_every must be positive")
    if cost_bps < 0.0:
        raise ConfigurationError("cost_bps must be non-negative")
    R, date_list, names = _prepare_returns(returns, dates, assets)
    n_days, n_assets = R.shape
    equal = uniform_weights(n_assets)
    state = BacktestState.initial(n_assets)
    cost_rate = cost_bps / 10_000.0
    last = -1

    for t in range(n_days):
        if t - last >= rebalance_every:
            traded = turnover(state.w_current, equal)
            state.value *= 1.0 - cost_rate * traded
            state.w_current = equal.copy()
            state.w_strategic = equal.copy()
            last = t
            state.events.append(
                RebalanceEvent(date=date_list[t], executed=True, turnover=traded, weights=equal, target=equal)
            )
        state.step(R[t])

    return BacktestResult(
        key=BENCHMARK_KEY,
        assets=tuple(names),
        dates=tuple(date_list),
        returns=np.asarray(state.returns, dtype=float),
        wealth=np.asarray(state.wealth, dtype=float),
        events=tuple(state.events),
    )


__all__ = [
    "BENCHMARK_KEY",
    "BacktestConfig",
    "BacktestResult",
    "BacktestState",
    "RebalanceEvent",
    "RebalancePolicy",
    "RunKey",
    "backtest_strategy",
    "effective_penalty",
    "equal_weight_benchmark",
    "needs_rebalance",
    "rebalance_dates",
    "rebalance_positions",
    "turnover",
]
