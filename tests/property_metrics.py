"""Property-based regression tests for key quantitative invariants."""

from __future__ import annotations

import numpy as np
import pytest

hypothesis = pytest.importorskip("hypothesis")
from hypothesis import given, settings  # type: ignore
from hypothesis import strategies as st  # type: ignore


HYPOTHESIS_EXAMPLES = 50

from robust_cvar_backtest.constraints import PortfolioConstraints
from robust_cvar_backtest.estimators import oas_shrinkage
from robust_cvar_backtest.metrics import conditional_value_at_risk, max_drawdown, value_at_risk
from robust_cvar_backtest.utils import l1_distance, renormalize

_returns = st.lists(
    st.floats(min_value=-0.2, max_value=0.2, allow_nan=False, allow_infinity=False),
    min_size=5,
    max_size=200,
)
_weights = st.lists(
    st.floats(min_value=0.0, max_value=10.0, allow_nan=False, allow_infinity=False),
    min_size=2,
    max_size=8,
)


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(_returns)
def test_cvar_dominates_var(values):
    r = np.asarray(values)
    assert conditional_value_at_risk(r, 0.95) >= value_at_risk(r, 0.95) - 1e-12


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(_returns)
def test_drawdown_bounded(values):
    wealth = np.cumprod(1.0 + np.asarray(values))
    dd = max_drawdown(wealth)
    assert 0.0 <= dd <= 1.0


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(_weights)
def test_renormalize_sums_to_one(values):
    w = renormalize(np.asarray(values))
    assert np.isclose(w.sum(), 1.0)
    assert np.all(w >= 0.0)


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(_weights, _weights)
def test_turnover_between_portfolios_is_at_most_two(a, b):
    n = min(len(a), len(b))
    wa = renormalize(np.asarray(a[:n]))
    wb = renormalize(np.asarray(b[:n]))
    t = l1_distance(wa, wb)
    assert 0.0 <= t <= 2.0 + 1e-12
    assert t == l1_distance(wb, wa)


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(_weights, st.floats(min_value=0.5, max_value=1.0))
def test_clean_weights_feasible(values, cap):
    box = PortfolioConstraints(max_weight=cap)
    w = box.clean(renormalize(np.asarray(values)))
    assert np.isclose(w.sum(), 1.0)
    assert np.all(w >= 0.0)
    assert w.max() <= cap + 1e-6
    assert box.is_feasible(w)


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(st.integers(min_value=3, max_value=60), st.integers(min_value=1, max_value=6), st.integers(0, 2**16))
def test_oas_intensity_in_unit_interval(n, p, seed):
    X = np.random.default_rng(seed).standard_t(3, size=(n, p))
    sigma, rho = oas_shrinkage(X)
    assert 0.0 <= rho <= 1.0
    np.testing.assert_allclose(sigma, sigma.T)
    assert np.linalg.eigvalsh(sigma).min() >= -1e-10
