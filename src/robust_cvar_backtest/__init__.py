"""Robust CVaR backtest public API."""
from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:  # runtime package version
    __version__ = version("robust-cvar-backtest")
except PackageNotFoundError:  # editable/dev env
    __version__ = "0.0.0+local"

from .constraints import PortfolioConstraints
from .errors import (
    BacktestError,
    ConfigurationError,
    ConvergenceWarning,
    DataError,
    InsufficientSampleError,
    NumericalError,
    RunFailure,
)
from .estimators import EstimatedMoments, Estimator, EstimatorConfig, estimate
from .optimizer import (
    OptimizationRequest,
    OptimizationResult,
    OptimizerConfig,
    Strategy,
    min_cvar,
    min_variance,
    optimize,
)
from .backtest.backtest import (
    BacktestConfig,
    BacktestResult,
    RebalancePolicy,
    RunKey,
    backtest_strategy,
    equal_weight_benchmark,
)
from .backtest.sweep import SweepGrid, SweepResult, enumerate_runs, run_grid, run_sweep

__all__ = [
    "BacktestConfig",
    "BacktestError",
    "BacktestResult",
    "ConfigurationError",
    "ConvergenceWarning",
    "DataError",
    "EstimatedMoments",
    "Estimator",
    "EstimatorConfig",
    "InsufficientSampleError",
    "NumericalError",
    "OptimizationRequest",
    "OptimizationResult",
    "OptimizerConfig",
    "PortfolioConstraints",
    "RebalancePolicy",
    "RunFailure",
    "RunKey",
    "Strategy",
    "SweepGrid",
    "SweepResult",
    "__version__",
    "backtest_strategy",
    "enumerate_runs",
    "equal_weight_benchmark",
    "estimate",
    "min_cvar",
    "min_variance",
    "optimize",
    "run_grid",
    "run_sweep",
]
