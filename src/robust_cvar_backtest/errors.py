"""Exception and warning taxonomy shared across estimation, optimisation and backtests."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple


class BacktestError(Exception):
    """Base class for errors raised by :mod:`robust_cvar_backtest`."""


class DataError(BacktestError, ValueError):
    """Fatal input problem: short windows, too few assets, malformed series."""


class NumericalError(BacktestError, ArithmeticError):
    """A matrix could not be inverted even after regularisation."""


class InsufficientSampleError(DataError, NumericalError):
    """Estimation window holds no more observations than assets (T <= p)."""


class ConfigurationError(BacktestError, ValueError):
    """Unknown estimator/strategy/policy identifier or invalid run parameter."""


class ConvergenceWarning(UserWarning):
    """An iterative estimator exhausted its budget; the last iterate is used."""


@dataclass(frozen=True)
class RunFailure:
    """A run that aborted on a fatal error, keyed by its parameter tuple."""

    key: Tuple[Any, ...]
    error_type: str
    message: str

    def describe(self) -> str:
        return f"{self.error_type} in run {self.key}: {self.message}"


__all__ = [
    "BacktestError",
    "ConfigurationError",
    "ConvergenceWarning",
    "DataError",
    "InsufficientSampleError",
    "NumericalError",
    "RunFailure",
]
