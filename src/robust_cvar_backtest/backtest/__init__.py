"""Backtesting utilities for the robust CVaR study."""

from .backtest import (
    BacktestConfig,
    BacktestResult,
    RebalancePolicy,
    RunKey,
    backtest_strategy,
    equal_weight_benchmark,
    rebalance_dates,
    turnover,
)
from .sweep import SweepGrid, SweepResult, run_grid, run_sweep

__all__ = [
    "BacktestConfig",
    "BacktestResult",
    "RebalancePolicy",
    "RunKey",
    "SweepGrid",
    "SweepResult",
    "backtest_strategy",
    "equal_weight_benchmark",
    "rebalance_dates",
    "run_grid",
    "run_sweep",
    "turnover",
]
