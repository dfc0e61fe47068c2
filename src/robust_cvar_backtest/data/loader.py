"""Return-series loaders for the backtest boundary.

The loaders only read and validate an already quality-controlled panel;
downloading and cleaning prices belongs to the market-data side.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from robust_cvar_backtest.errors import DataError


@dataclass
class LoaderConfig:
    """Runtime options for :func:`load_returns`."""

    min_assets: int = 1
    dropna: str = "none"
    assets: Optional[Sequence[str]] = None


class LoaderError(DataError):
    """Raised when the loader encounters malformed input."""


def _read_frame(path: Path) -> pd.DataFrame:
    if path.suffix.lower() in {".parquet", ".pq"}:
        frame = pd.read_parquet(path)
    else:
        frame = pd.read_csv(path)
    if frame.empty or frame.columns.size < 2:
        raise LoaderError(f"{path} must hold a date column and at least one asset column")
    lower_cols = [str(col).lower() for col in frame.columns]
    date_col = frame.columns[lower_cols.index("date")] if "date" in lower_cols else frame.columns[0]
    try:
        index = pd.DatetimeIndex(pd.to_datetime(frame[date_col]), name="date")
    except (TypeError, ValueError) as exc:
        raise LoaderError(f"column '{date_col}' does not hold dates") from exc
    return frame.drop(columns=[date_col]).set_index(index)


def _filter_assets(frame: pd.DataFrame, assets: Optional[Sequence[str]]) -> pd.DataFrame:
    if not assets:
        return frame
    wanted = [str(asset) for asset in assets]
    missing = [name for name in wanted if name not in frame.columns]
    if missing:
        raise LoaderError(f"Requested assets missing from file: {', '.join(missing)}")
    return frame[wanted]


def _apply_dropna(frame: pd.DataFrame, dropna: str) -> pd.DataFrame:
    mode = dropna.lower()
    if mode not in {"none", "any", "all"}:
        raise LoaderError("dropna must be 'none', 'any', or 'all'")
    if mode == "none":
        return frame
    return frame.dropna(how=mode)


def validate_returns(frame: pd.DataFrame, min_assets: int = 1) -> pd.DataFrame:
    """Check a return panel: numeric, complete, strictly increasing unique dates."""

    if frame.index.has_duplicates:
        dupes = frame.index[frame.index.duplicated()].unique()
        offenders = ", ".join(str(ts.date()) for ts in dupes[:5])
        raise LoaderError(f"returns contain duplicate dates ({offenders})")
    frame = frame.sort_index()
    try:
        frame = frame.astype(float)
    except (TypeError, ValueError) as exc:
        raise LoaderError("returns must be numeric") from exc
    if frame.isna().to_numpy().any():
        raise LoaderError("returns contain missing values; clean the panel or pass dropna")
    if not np.all(np.isfinite(frame.to_numpy())):
        raise LoaderError("returns contain non-finite values")
    if frame.shape[1] < min_assets:
        raise DataError(
            f"Insufficient assets: {frame.shape[1]} available, at least {min_assets} required"
        )
    frame.columns = [str(col) for col in frame.columns]
    return frame


def load_returns(
    path: Union[str, Path],
    min_assets: Optional[int] = None,
    config: Optional[LoaderConfig] = None,
) -> pd.DataFrame:
    """Load a ``date`` + one-column-per-asset return panel as a date-indexed frame.

    ``min_assets`` overrides the value carried by ``config``.
    """

    cfg = config or LoaderConfig()
    source = Path(path)
    if not source.exists():
        raise FileNotFoundError(f"Returns file not found: {source}")
    frame = _read_frame(source)
    frame = _filter_assets(frame, cfg.assets)
    frame = _apply_dropna(frame, cfg.dropna)
    required = cfg.min_assets if min_assets is None else int(min_assets)
    return validate_returns(frame, min_assets=required)


def to_log_returns(prices: pd.DataFrame) -> pd.DataFrame:
    """Daily log returns of a price panel; the first row is dropped."""

    values = prices.astype(float)
    if (values <= 0).to_numpy().any():
        raise LoaderError("prices must be strictly positive to take logarithms")
    return np.log(values).diff().iloc[1:]


__all__ = [
    "LoaderConfig",
    "LoaderError",
    "load_returns",
    "to_log_returns",
    "validate_returns",
]
