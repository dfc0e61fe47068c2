"""Pytest configuration helpers for the test suite."""
from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

_HERE = Path(__file__).resolve()
_PKG_ROOT = _HERE.parents[1]
_SRC = _PKG_ROOT / "src"

if _SRC.is_dir():
    p = str(_SRC)
    if p not in sys.path:
        sys.path.insert(0, p)


def make_returns(
    n_days: int = 320,
    vols: tuple = (0.010, 0.015, 0.020, 0.030),
    seed: int = 7,
    start: str = "2020-01-01",
) -> pd.DataFrame:
    """Business-day frame of independent Gaussian returns with distinct volatilities."""

    rng = np.random.default_rng(seed)
    vols_arr = np.asarray(vols, dtype=float)
    data = rng.normal(0.0003, vols_arr, size=(n_days, vols_arr.size))
    index = pd.bdate_range(start, periods=n_days, name="date")
    return pd.DataFrame(data, index=index, columns=[f"A{i}" for i in range(vols_arr.size)])


@pytest.fixture
def returns_frame() -> pd.DataFrame:
    return make_returns()


@pytest.fixture
def write_returns_csv(tmp_path: Path):
    def _write(frame: pd.DataFrame, name: str = "returns.csv") -> Path:
        path = tmp_path / name
        frame.to_csv(path, index_label="date")
        return path

    return _write
