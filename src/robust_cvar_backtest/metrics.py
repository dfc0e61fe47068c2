"""Performance statistics computed from backtest outputs."""
from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .estimators import Estimator, EstimatorConfig, estimate, fit_multivariate_t, relative_difference

TRADING_DAYS = 252


def value_at_risk(returns: np.ndarray, alpha: float) -> float:
    """Historical VaR at confidence ``alpha`` reported as a positive loss."""

    arr = np.asarray(returns, dtype=float)
    if arr.size == 0:
        return math.nan
    return float(-np.quantile(arr, 1.0 - alpha))


def conditional_value_at_risk(returns: np.ndarray, alpha: float) -> float:
    """Mean loss over the returns at or below the VaR threshold."""

    arr = np.asarray(returns, dtype=float)
    if arr.size == 0:
        return math.nan
    threshold = np.quantile(arr, 1.0 - alpha)
    tail = arr[arr <= threshold]
    return float(-tail.mean())


def sharpe_ratio(returns: np.ndarray, rf: float = 0.0, periods_per_year: int = TRADING_DAYS) -> float:
    arr = np.asarray(returns, dtype=float)
    if arr.size < 2:
        return 0.0
    excess = arr - rf / periods_per_year
    vol = float(np.std(excess, ddof=1))
    if vol <= 1e-12:
        return 0.0
    return float(math.sqrt(periods_per_year) * excess.mean() / vol)


def sortino_ratio(returns: np.ndarray, rf: float = 0.0, periods_per_year: int = TRADING_DAYS) -> float:
    arr = np.asarray(returns, dtype=float)
    if arr.size < 2:
        return 0.0
    excess = arr - rf / periods_per_year
    downside = excess[excess < 0]
    downside_std = float(np.std(downside, ddof=1)) if downside.size > 1 else 0.0
    if downside_std <= 1e-12:
        return 0.0
    return float(math.sqrt(periods_per_year) * excess.mean() / downside_std)


def _drawdowns(wealth: np.ndarray) -> np.ndarray:
    equity = np.asarray(wealth, dtype=float)
    running_peak = np.maximum.accumulate(equity)
    return 1.0 - np.divide(
        equity,
        running_peak,
        out=np.ones_like(equity),
        where=running_peak > 0,
    )


def max_drawdown(wealth: np.ndarray) -> float:
    """Return the maximum drawdown for the supplied equity curve."""

    equity = np.asarray(wealth, dtype=float)
    if equity.size == 0:
        return 0.0
    return float(np.max(_drawdowns(equity)))


def ulcer_index(wealth: np.ndarray) -> float:
    equity = np.asarray(wealth, dtype=float)
    if equity.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(_drawdowns(equity) ** 2)))


def annualized_turnover(
    turnover_series: Sequence[float], n_periods: int, periods_per_year: int = TRADING_DAYS
) -> float:
    if n_periods <= 0:
        return 0.0
    return float(np.sum(turnover_series)) * periods_per_year / n_periods


def weight_stability(weights: np.ndarray) -> np.ndarray:
    """Per-asset standard deviation of the weight path (rows are dates)."""

    mat = np.atleast_2d(np.asarray(weights, dtype=float))
    if mat.shape[0] < 2:
        return np.zeros(mat.shape[1])
    return np.std(mat, axis=0, ddof=1)


def compute_metrics(
    returns: np.ndarray,
    wealth: np.ndarray,
    turnover_series: Sequence[float],
    *,
    alpha_levels: Sequence[float] = (0.95, 0.99),
    periods_per_year: int = TRADING_DAYS,
    rf: float = 0.0,
) -> Dict[str, float]:
    rets = np.asarray(returns, dtype=float)
    equity = np.asarray(wealth, dtype=float)
    turns = np.asarray(turnover_series, dtype=float)
    std = float(np.std(rets, ddof=1)) if rets.size > 1 else 0.0
    metrics: Dict[str, float] = {
        "mean_return": float(rets.mean()) if rets.size else math.nan,
        "std_return": std,
        "ann_return": float(rets.mean() * periods_per_year) if rets.size else math.nan,
        "ann_volatility": std * math.sqrt(periods_per_year),
        "sharpe": sharpe_ratio(rets, rf=rf, periods_per_year=periods_per_year),
        "sortino": sortino_ratio(rets, rf=rf, periods_per_year=periods_per_year),
        "max_drawdown": max_drawdown(equity),
        "ulcer_index": ulcer_index(equity),
        "ann_turnover": annualized_turnover(turns, rets.size, periods_per_year),
        "n_rebalances": int(np.count_nonzero(turns > 0)),
    }
    for alpha in alpha_levels:
        tag = int(round(alpha * 100))
        metrics[f"var_{tag}"] = value_at_risk(rets, alpha)
        metrics[f"cvar_{tag}"] = conditional_value_at_risk(rets, alpha)
    if equity.size:
        final = float(equity[-1] * (1.0 + rets[-1])) if rets.size == equity.size else float(equity[-1])
        metrics["final_wealth"] = final
        metrics["total_return"] = final - 1.0
    return metrics


def compare_exante_expost(
    predicted_cvar: Sequence[float],
    realized_returns: Sequence[Sequence[float]],
    alpha: float,
) -> Dict[str, float]:
    """Bias and RMSE of predicted CVaR against CVaR realised in the following period."""

    predicted = np.asarray(predicted_cvar, dtype=float)
    if predicted.size != len(realized_returns):
        raise ValueError("predicted and realised sequences must have the same length")
    realized = np.array(
        [
            conditional_value_at_risk(np.asarray(block, dtype=float), alpha) if len(block) else 0.0
            for block in realized_returns
        ],
        dtype=float,
    )
    err = predicted - realized
    return {"bias": float(err.mean()), "rmse": float(np.sqrt(np.mean(err ** 2)))}


def _tail_forecast_errors(result: Any, alpha: float) -> Dict[str, float]:
    """Predicted CVaR at each executed rebalance against the CVaR realised until the next one."""

    positions = {date: pos for pos, date in enumerate(result.dates)}
    executed = [event for event in result.events if event.executed]
    predicted: List[float] = []
    realized: List[np.ndarray] = []
    for i, event in enumerate(executed):
        if not math.isfinite(event.objective):
            continue
        # the allocation earns returns from its own date up to the day before the next trade
        start = positions[event.date]
        stop = positions[executed[i + 1].date] if i + 1 < len(executed) else len(result.dates)
        block = np.asarray(result.returns[start:stop], dtype=float)
        if block.size:
            predicted.append(event.objective)
            realized.append(block)
    if not predicted:
        return {}
    errors = compare_exante_expost(predicted, realized, alpha)
    return {"cvar_forecast_bias": errors["bias"], "cvar_forecast_rmse": errors["rmse"]}


def metrics_table(
    results: Mapping[Any, Any],
    *,
    rf: float = 0.0,
    alpha_levels: Sequence[float] = (0.95, 0.99),
    extra: Optional[Mapping[Any, Any]] = None,
) -> pd.DataFrame:
    """One row per run with its key fields and :func:`compute_metrics` output."""

    rows = []
    merged = dict(results)
    if extra:
        merged.update(extra)
    for key, result in merged.items():
        row: Dict[str, Any] = dict(key._asdict()) if hasattr(key, "_asdict") else {"run": str(key)}
        row.update(
            compute_metrics(
                result.returns,
                result.wealth,
                result.turnover_series,
                alpha_levels=alpha_levels,
                rf=rf,
            )
        )
        if result.events:
            path = np.vstack([event.weights for event in result.events])
            row["weight_stability"] = float(np.mean(weight_stability(path)))
        if getattr(key, "strategy", None) == "min_cvar" and getattr(key, "alpha", 0.0):
            row.update(_tail_forecast_errors(result, key.alpha))
        rows.append(row)
    return pd.DataFrame(rows)


def estimator_diagnostics(
    window: Any,
    estimators: Iterable[Any] = tuple(Estimator),
    config: Optional[EstimatorConfig] = None,
) -> pd.DataFrame:
    """Tail and covariance diagnostics of each estimator on one return window.

    ``nu`` is the Student-t degrees of freedom that best explains the window;
    ``rel_diff_vs_baseline`` is the Frobenius distance of each covariance to
    the OAS baseline, relative to the baseline.
    """

    X = np.asarray(window, dtype=float)
    nu = fit_multivariate_t(X)
    reference = estimate(X, Estimator.BASELINE, config).covariance
    rows = []
    for policy in estimators:
        moments = estimate(X, policy, config)
        rows.append(
            {
                "estimator": moments.estimator.value,
                "nu": nu,
                "shrinkage": moments.shrinkage,
                "iterations": moments.iterations,
                "converged": moments.converged,
                "mean_variance": float(np.mean(np.diag(moments.covariance))),
                "rel_diff_vs_baseline": relative_difference(reference, moments.covariance),
            }
        )
    return pd.DataFrame(rows)


__all__ = [
    "annualized_turnover",
    "compare_exante_expost",
    "compute_metrics",
    "conditional_value_at_risk",
    "estimator_diagnostics",
    "max_drawdown",
    "metrics_table",
    "sharpe_ratio",
    "sortino_ratio",
    "ulcer_index",
    "value_at_risk",
    "weight_stability",
]
