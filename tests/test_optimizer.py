import logging
import math

import numpy as np
import pytest

from robust_cvar_backtest.constraints import PortfolioConstraints
from robust_cvar_backtest.errors import ConfigurationError
from robust_cvar_backtest.optimizer import (
    OptimizationRequest,
    OptimizationResult,
    OptimizerConfig,
    Strategy,
    min_cvar,
    min_variance,
    optimize,
)


def _cov(vols, corr=0.0):
    vols = np.asarray(vols, dtype=float)
    c = np.full((vols.size, vols.size), corr)
    np.fill_diagonal(c, 1.0)
    return np.outer(vols, vols) * c


def test_single_asset_variance():
    sigma = np.array([[0.04]])
    res = min_variance(sigma)
    assert res.success
    np.testing.assert_allclose(res.weights, [1.0])
    assert res.objective == pytest.approx(0.04)


def test_two_uncorrelated_equal_variance_assets_split_evenly():
    res = min_variance(np.diag([0.03, 0.03]), max_weight=0.5)
    assert res.success
    np.testing.assert_allclose(res.weights, [0.5, 0.5], atol=1e-6)


def test_min_variance_matches_closed_form_when_unconstrained():
    sigma = _cov([0.10, 0.20, 0.30], corr=0.2)
    inv = np.linalg.inv(sigma)
    expected = inv @ np.ones(3) / (np.ones(3) @ inv @ np.ones(3))
    res = min_variance(sigma)
    np.testing.assert_allclose(res.weights, expected, atol=1e-5)


@pytest.mark.parametrize("seed", range(5))
def test_weights_respect_budget_and_box(seed):
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(8, 8))
    sigma = A @ A.T / 8 * 1e-4 + np.eye(8) * 1e-6
    scenarios = rng.normal(0.0, 0.01, size=(120, 8))
    box = PortfolioConstraints(max_weight=0.3)
    for res in (
        min_variance(sigma, max_weight=0.3),
        min_cvar(scenarios, 0.95, max_weight=0.3),
    ):
        assert res.success
        assert box.is_feasible(res.weights)


def test_min_cvar_single_asset_equals_mean_of_worst_losses():
    rng = np.random.default_rng(4)
    r = rng.normal(0.0, 0.01, size=(100, 1))
    res = min_cvar(r, 0.95)
    assert res.success
    np.testing.assert_allclose(res.weights, [1.0])
    worst = np.sort(-r[:, 0])[-5:]
    assert res.objective == pytest.approx(worst.mean(), rel=1e-6)


def test_min_cvar_avoids_the_risky_asset():
    rng = np.random.default_rng(5)
    safe = np.full((200, 1), 0.0002)
    risky = rng.normal(0.0, 0.02, size=(200, 1))
    res = min_cvar(np.hstack([safe, risky]), 0.99)
    np.testing.assert_allclose(res.weights, [1.0, 0.0], atol=1e-8)


def test_infeasible_cap_degrades_to_zero_weights(caplog):
    sigma = np.eye(3) * 0.01
    with caplog.at_level(logging.WARNING, logger="robust_cvar_backtest.optimizer"):
        res = min_variance(sigma, max_weight=0.2)
    assert not res.success
    assert math.isinf(res.objective)
    np.testing.assert_array_equal(res.weights, np.zeros(3))
    assert res.status == "infeasible"
    assert any("did not converge" in rec.message for rec in caplog.records)


def test_min_cvar_infeasible_cap():
    res = min_cvar(np.random.default_rng(0).normal(size=(50, 4)) * 0.01, 0.95, max_weight=0.2)
    assert not res.success
    assert res.weights.sum() == 0.0


def test_warm_start_with_penalty_is_idempotent():
    rng = np.random.default_rng(6)
    scenarios = rng.normal(0.0, [0.01, 0.02, 0.015], size=(250, 3))
    first = min_cvar(scenarios, 0.95)
    again = min_cvar(scenarios, 0.95, prev_weights=first.weights, turnover_penalty=0.01)
    np.testing.assert_allclose(again.weights, first.weights, atol=1e-7)
    assert again.turnover < 1e-6
    assert again.penalty == pytest.approx(0.01 * again.turnover)


def test_min_variance_warm_start_with_penalty_is_idempotent():
    sigma = _cov([0.01, 0.02, 0.03, 0.04], corr=0.3)
    first = min_variance(sigma, max_weight=0.6)
    again = min_variance(sigma, max_weight=0.6, prev_weights=first.weights, turnover_penalty=1e-4)
    assert again.success
    np.testing.assert_allclose(again.weights, first.weights, atol=1e-6)
    assert again.turnover < 1e-6


def test_large_penalty_locks_in_previous_weights():
    sigma = _cov([0.01, 0.02, 0.03, 0.04], corr=0.1)
    prev = np.array([0.40, 0.30, 0.20, 0.10])
    scale = float(np.mean(np.diag(sigma)))
    res = min_variance(sigma, prev_weights=prev, turnover_penalty=100.0 * scale)
    assert res.success
    # a heavy penalty makes staying put optimal: zero turnover is the expected answer
    np.testing.assert_allclose(res.weights, prev, atol=1e-5)
    assert res.turnover < 1e-4


def test_zero_penalty_ignores_previous_weights():
    sigma = _cov([0.01, 0.02, 0.03, 0.04])
    free = min_variance(sigma)
    anchored = min_variance(sigma, prev_weights=np.full(4, 0.25), turnover_penalty=0.0)
    np.testing.assert_allclose(anchored.weights, free.weights, atol=1e-6)
    assert anchored.penalty == 0.0


def test_penalty_reduces_turnover():
    rng = np.random.default_rng(7)
    scenarios = rng.normal(0.0, [0.01, 0.02, 0.03], size=(300, 3))
    prev = np.array([0.2, 0.3, 0.5])
    free = min_cvar(scenarios, 0.95, prev_weights=prev)
    penalised = min_cvar(scenarios, 0.95, prev_weights=prev, turnover_penalty=0.002)
    assert penalised.turnover <= free.turnover + 1e-9


def test_reported_objective_excludes_penalty():
    sigma = _cov([0.01, 0.02])
    prev = np.array([0.5, 0.5])
    res = min_variance(sigma, prev_weights=prev, turnover_penalty=1e-5)
    assert res.objective == pytest.approx(float(res.weights @ sigma @ res.weights))


def test_request_validation():
    with pytest.raises(ConfigurationError):
        OptimizationRequest("min_cvar", alpha=1.0, scenarios=np.zeros((5, 2)))
    with pytest.raises(ConfigurationError):
        OptimizationRequest("min_variance")
    with pytest.raises(ConfigurationError):
        OptimizationRequest("min_variance", covariance=np.eye(2), prev_weights=np.ones(3) / 3)
    with pytest.raises(ConfigurationError):
        OptimizationRequest("min_variance", covariance=np.eye(2), turnover_penalty=-1.0)
    with pytest.raises(ConfigurationError):
        OptimizationRequest("max_sharpe", covariance=np.eye(2))


def test_optimize_dispatches_on_strategy():
    request = OptimizationRequest(Strategy.MIN_VARIANCE, covariance=np.diag([0.01, 0.04]))
    res = optimize(request)
    assert isinstance(res, OptimizationResult)
    assert res.weights[0] > res.weights[1]
    assert not request.penalized


def test_optimizer_config_overrides():
    cfg = OptimizerConfig.from_overrides({"lp_time_limit": 5.0})
    assert cfg.lp_time_limit == 5.0
    assert cfg.qp_max_iter == OptimizerConfig().qp_max_iter
    with pytest.raises(ConfigurationError):
        OptimizerConfig(lp_time_limit=0.0)


def test_indefinite_covariance_is_projected():
    sigma = np.array([[0.04, 0.05], [0.05, 0.04]])
    assert np.linalg.eigvalsh(sigma).min() < 0
    res = min_variance(sigma)
    assert res.success
    assert PortfolioConstraints().is_feasible(res.weights)
    assert res.objective >= 0.0
