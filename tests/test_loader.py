from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from robust_cvar_backtest.data import LoaderConfig, LoaderError, load_returns, to_log_returns
from robust_cvar_backtest.errors import DataError


def test_load_returns_round_trip(returns_frame, write_returns_csv):
    path = write_returns_csv(returns_frame)
    loaded = load_returns(path)
    assert isinstance(loaded.index, pd.DatetimeIndex)
    assert list(loaded.columns) == list(returns_frame.columns)
    np.testing.assert_allclose(loaded.to_numpy(), returns_frame.to_numpy())


def test_unsorted_dates_are_sorted(tmp_path: Path):
    path = tmp_path / "r.csv"
    path.write_text("date,A,B\n2020-01-03,0.01,0.02\n2020-01-02,0.00,0.01\n")
    loaded = load_returns(path)
    assert loaded.index.is_monotonic_increasing
    assert loaded.iloc[0]["A"] == 0.0


def test_duplicate_dates_rejected(tmp_path: Path):
    path = tmp_path / "r.csv"
    path.write_text("date,A\n2020-01-02,0.01\n2020-01-02,0.02\n")
    with pytest.raises(LoaderError) as excinfo:
        load_returns(path)
    assert "duplicate" in str(excinfo.value)
    assert isinstance(excinfo.value, DataError)


def test_missing_values_rejected_unless_dropped(tmp_path: Path):
    path = tmp_path / "r.csv"
    path.write_text("date,A,B\n2020-01-02,0.01,\n2020-01-03,0.02,0.01\n")
    with pytest.raises(DataError):
        load_returns(path)
    cleaned = load_returns(path, config=LoaderConfig(dropna="any"))
    assert len(cleaned) == 1


def test_non_numeric_column_rejected(tmp_path: Path):
    path = tmp_path / "r.csv"
    path.write_text("date,A,B\n2020-01-02,0.01,abc\n")
    with pytest.raises(DataError):
        load_returns(path)


def test_min_assets_enforced(returns_frame, write_returns_csv):
    path = write_returns_csv(returns_frame)
    with pytest.raises(DataError):
        load_returns(path, min_assets=10)


def test_asset_subset(returns_frame, write_returns_csv):
    path = write_returns_csv(returns_frame)
    loaded = load_returns(path, config=LoaderConfig(assets=["A2", "A0"]))
    assert list(loaded.columns) == ["A2", "A0"]
    with pytest.raises(LoaderError):
        load_returns(path, config=LoaderConfig(assets=["ZZZ"]))


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_returns(tmp_path / "nope.csv")


def test_to_log_returns():
    prices = pd.DataFrame({"A": [100.0, 110.0, 99.0]}, index=pd.bdate_range("2020-01-01", periods=3))
    logs = to_log_returns(prices)
    assert len(logs) == 2
    assert logs.iloc[0, 0] == pytest.approx(np.log(1.1))
    with pytest.raises(LoaderError):
        to_log_returns(prices * 0.0)
