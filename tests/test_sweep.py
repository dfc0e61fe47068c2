from importlib import import_module

import numpy as np
import pytest

from robust_cvar_backtest.errors import ConfigurationError, RunFailure

bt = import_module("robust_cvar_backtest.backtest.backtest")
sweep = import_module("robust_cvar_backtest.backtest.sweep")


def test_enumerate_runs_covers_the_grid():
    keys = sweep.enumerate_runs(sweep.SweepGrid())
    # 3 estimators x (2 alphas for min_cvar + 1 for min_variance) x (1 monthly + 3 bands)
    assert len(keys) == 3 * 3 * 4
    assert len(set(keys)) == len(keys)
    assert all(k.alpha == 0.0 for k in keys if k.strategy == "min_variance")
    assert all(k.band == 0.0 for k in keys if k.policy == "monthly")


def test_grid_rejects_unknown_identifiers():
    with pytest.raises(ConfigurationError):
        sweep.SweepGrid(estimators=("baseline", "mcd"))


def test_unknown_identifier_fails_before_any_run(returns_frame, monkeypatch):
    calls = []
    monkeypatch.setattr(sweep, "backtest_strategy", lambda *a, **k: calls.append(a))
    bad = bt.RunKey("baseline", "min_cvar", 0.95, "weekly", 0.0, 0.0)
    good = bt.RunKey("baseline", "min_cvar", 0.95, "monthly", 0.0, 0.0)
    with pytest.raises(ConfigurationError):
        sweep.run_sweep(returns_frame, [good, bad], window_size=60)
    assert calls == []


def test_config_for_key_round_trips(returns_frame):
    key = bt.RunKey("huber", "min_cvar", 0.99, "bands", 0.02, 0.001)
    cfg = sweep.config_for_key(key, window_size=60)
    assert cfg.key == key
    assert cfg.window_size == 60


def _small_grid():
    return sweep.SweepGrid(
        estimators=("baseline", "tyler"),
        strategies=("min_cvar", "min_variance"),
        alphas=(0.95,),
        policies=("monthly", "bands"),
        bands=(0.05,),
    )


def test_parallel_sweep_matches_sequential(returns_frame):
    keys = sweep.enumerate_runs(_small_grid())
    kwargs = dict(window_size=60, max_weight=0.4)
    sequential = sweep.run_sweep(returns_frame, keys, **kwargs)
    parallel = sweep.run_sweep(returns_frame, keys, max_workers=2, **kwargs)

    assert sequential.keys() == parallel.keys() == keys
    for key in keys:
        np.testing.assert_allclose(parallel[key].wealth, sequential[key].wealth, rtol=1e-10)
        np.testing.assert_allclose(
            parallel[key].turnover_series, sequential[key].turnover_series, atol=1e-10
        )


def test_results_mapping_is_read_only(returns_frame):
    grid = sweep.SweepGrid(estimators=("baseline",), strategies=("min_variance",), policies=("monthly",))
    keys = sweep.enumerate_runs(grid)
    result = sweep.run_sweep(returns_frame, keys, window_size=60, max_weight=0.4)
    with pytest.raises(TypeError):
        result.results[keys[0]] = None


def test_fatal_run_is_recorded_and_others_continue(returns_frame):
    keys = sweep.enumerate_runs(
        sweep.SweepGrid(estimators=("baseline", "huber"), strategies=("min_variance",), policies=("monthly",))
    )
    # a window no longer than the asset count is fatal for every run
    result = sweep.run_sweep(returns_frame.iloc[:, :3], keys, window_size=3)
    assert len(result) == 0
    assert set(result.failures) == set(keys)
    failure = result.failures[keys[0]]
    assert isinstance(failure, RunFailure)
    assert failure.error_type == "DataError"
    assert "window" in failure.describe()


def test_run_grid_uses_defaults(returns_frame, monkeypatch):
    seen = []

    def _fake(returns, config, **kwargs):
        seen.append(config.key)
        raise bt.DataError("stop")

    monkeypatch.setattr(sweep, "backtest_strategy", _fake)
    result = sweep.run_grid(returns_frame, window_size=60)
    assert len(seen) == len(sweep.enumerate_runs(sweep.SweepGrid()))
    assert len(result.failures) == len(seen)


def test_max_workers_must_be_positive(returns_frame):
    keys = sweep.enumerate_runs(_small_grid())
    with pytest.raises(ConfigurationError):
        sweep.run_sweep(returns_frame, keys, window_size=60, max_workers=0)
