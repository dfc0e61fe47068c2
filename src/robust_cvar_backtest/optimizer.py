"""Long-only convex allocation with an exact L1 turnover penalty.

Both objective families share the same feasible set (``sum(w) == 1``,
``0 <= w <= max_weight``) and the same turnover linearisation: auxiliary
variables ``z >= 0`` with ``z_i >= w_i - w_prev_i`` and ``z_i >= w_prev_i - w_i``
so that ``lambda * sum(z)`` equals the L1 penalty at the optimum.

A solver that stops without an optimal status does not raise; the result
carries a zero weight vector, an infinite objective and ``success=False`` so a
long backtest can skip the date and carry on.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import math
from time import perf_counter
from typing import Any, Dict, Optional

import numpy as np
from scipy import sparse
from scipy.optimize import Bounds, LinearConstraint, linprog, minimize

from .constraints import PortfolioConstraints
from .errors import ConfigurationError
from .utils import Choice, l1_distance, nearest_psd, symmetrize, uniform_weights

logger = logging.getLogger(__name__)


class Strategy(Choice):
    MIN_CVAR = "min_cvar"
    MIN_VARIANCE = "min_variance"

    @classmethod
    def aliases(cls):
        return {
            "mincvar": "min_cvar",
            "cvar": "min_cvar",
            "minvar": "min_variance",
            "variance": "min_variance",
        }


@dataclass
class OptimizerConfig:
    """Solver budgets shared by the LP and QP formulations."""

    lp_time_limit: float = 60.0
    qp_max_iter: int = 1000
    qp_ftol: float = 1e-12

    def __post_init__(self) -> None:
        if self.lp_time_limit <= 0.0:
            raise ConfigurationError("lp_time_limit must be positive")
        if self.qp_max_iter <= 0:
            raise ConfigurationError("qp_max_iter must be positive")
        if self.qp_ftol <= 0.0:
            raise ConfigurationError("qp_ftol must be positive")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "OptimizerConfig":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        return cls(**base)


@dataclass
class OptimizationRequest:
    """Everything one allocation decision needs.

    ``covariance`` feeds the variance objective, ``scenarios`` (T x p) the
    tail-risk objective. ``prev_weights`` plus a positive
    ``turnover_penalty`` switch on the L1 penalty.
    """

    strategy: Strategy
    max_weight: float = 1.0
    alpha: float = 0.95
    prev_weights: Optional[np.ndarray] = None
    turnover_penalty: float = 0.0
    covariance: Optional[np.ndarray] = None
    scenarios: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.strategy = Strategy.parse(self.strategy)
        if self.turnover_penalty < 0.0 or not math.isfinite(self.turnover_penalty):
            raise ConfigurationError("turnover_penalty must be a finite non-negative number")
        if self.strategy is Strategy.MIN_CVAR:
            if not (0.0 < self.alpha < 1.0):
                raise ConfigurationError("alpha must lie in (0, 1)")
            if self.scenarios is None:
                raise ConfigurationError("min_cvar requires a scenario matrix")
            self.scenarios = np.atleast_2d(np.asarray(self.scenarios, dtype=float))
            n_assets = self.scenarios.shape[1]
        else:
            if self.covariance is None:
                raise ConfigurationError("min_variance requires a covariance matrix")
            self.covariance = np.atleast_2d(np.asarray(self.covariance, dtype=float))
            if self.covariance.shape[0] != self.covariance.shape[1]:
                raise ConfigurationError("covariance must be square")
            n_assets = self.covariance.shape[0]
        if self.prev_weights is not None:
            self.prev_weights = np.asarray(self.prev_weights, dtype=float).ravel()
            if self.prev_weights.size != n_assets:
                raise ConfigurationError("prev_weights dimension mismatch")
        self.constraints = PortfolioConstraints(max_weight=float(self.max_weight))

    @property
    def n_assets(self) -> int:
        if self.strategy is Strategy.MIN_CVAR:
            return int(self.scenarios.shape[1])
        return int(self.covariance.shape[0])

    @property
    def penalized(self) -> bool:
        return self.prev_weights is not None and self.turnover_penalty > 0.0


@dataclass
class OptimizationResult:
    """Structured result returned by :func:`optimize`."""

    weights: np.ndarray
    objective: float
    penalty: float
    turnover: float
    success: bool
    status: str
    message: str = ""
    solve_time: float = 0.0

    def __post_init__(self) -> None:
        self.weights = np.asarray(self.weights, dtype=float)
        self.success = bool(self.success)

    @classmethod
    def failed(cls, n_assets: int, status: str, message: str, solve_time: float = 0.0) -> "OptimizationResult":
        return cls(
            weights=np.zeros(n_assets, dtype=float),
            objective=math.inf,
            penalty=0.0,
            turnover=0.0,
            success=False,
            status=status,
            message=message,
            solve_time=solve_time,
        )


def _degrade(label: str, n_assets: int, status: str, message: str, started: float) -> OptimizationResult:
    logger.warning("%s optimization did not converge: %s (%s)", label, status, message)
    return OptimizationResult.failed(n_assets, status, message, perf_counter() - started)


def _finish(
    weights: np.ndarray,
    objective: float,
    request: OptimizationRequest,
    status: str,
    message: str,
    started: float,
) -> OptimizationResult:
    prev = request.prev_weights
    turnover_val = l1_distance(weights, prev) if prev is not None else 0.0
    penalty = request.turnover_penalty * turnover_val if request.penalized else 0.0
    return OptimizationResult(
        weights=weights,
        objective=float(objective),
        penalty=float(penalty),
        turnover=float(turnover_val),
        success=True,
        status=status,
        message=message,
        solve_time=perf_counter() - started,
    )


def min_cvar(
    scenarios: np.ndarray,
    alpha: float,
    *,
    prev_weights: Optional[np.ndarray] = None,
    turnover_penalty: float = 0.0,
    max_weight: float = 1.0,
    config: Optional[OptimizerConfig] = None,
) -> OptimizationResult:
    """Minimise empirical CVaR at confidence ``alpha`` over the window's scenarios.

    Rockafellar-Uryasev linear program in ``[w, zeta, u, z]``::

        min  zeta + 1/((1-alpha) T) sum(u) + lambda sum(z)
        s.t. u_t >= -r_t . w - zeta,  u >= 0
             z_i >= w_i - w_prev_i,  z_i >= w_prev_i - w_i,  z >= 0
             sum(w) = 1,  0 <= w <= max_weight
    """

    request = OptimizationRequest(
        Strategy.MIN_CVAR,
        max_weight=max_weight,
        alpha=alpha,
        prev_weights=prev_weights,
        turnover_penalty=turnover_penalty,
        scenarios=scenarios,
    )
    return _solve_min_cvar(request, config or OptimizerConfig())


def _solve_min_cvar(request: OptimizationRequest, cfg: OptimizerConfig) -> OptimizationResult:
    started = perf_counter()
    R = request.scenarios
    T, p = R.shape
    if not np.all(np.isfinite(R)):
        return _degrade("Min-CVaR", p, "invalid_input", "scenario matrix contains non-finite values", started)
    if not request.constraints.admits(p):
        return _degrade("Min-CVaR", p, "infeasible", "max_weight too small for a fully invested portfolio", started)

    penalized = request.penalized
    n_z = p if penalized else 0
    n_vars = p + 1 + T + n_z
    tail_coef = 1.0 / ((1.0 - request.alpha) * T)

    c = np.zeros(n_vars)
    c[p] = 1.0
    c[p + 1 : p + 1 + T] = tail_coef
    if penalized:
        c[p + 1 + T :] = request.turnover_penalty

    # u_t >= -r_t . w - zeta   <=>   -r_t . w - zeta - u_t <= 0
    blocks = [[sparse.csr_matrix(-R), sparse.csr_matrix(-np.ones((T, 1))), -sparse.identity(T, format="csr")]]
    if penalized:
        blocks[0].append(sparse.csr_matrix((T, p)))
    b_ub = [np.zeros(T)]
    if penalized:
        eye = sparse.identity(p, format="csr")
        zero_col = sparse.csr_matrix((p, 1))
        zero_u = sparse.csr_matrix((p, T))
        # w - z <= w_prev  and  -w - z <= -w_prev
        blocks.append([eye, zero_col, zero_u, -eye])
        blocks.append([-eye, zero_col, zero_u, -eye])
        b_ub.extend([request.prev_weights, -request.prev_weights])
    A_ub = sparse.bmat(blocks, format="csr")

    A_eq = sparse.csr_matrix(np.concatenate([np.ones(p), np.zeros(n_vars - p)]).reshape(1, -1))
    bounds = (
        [(0.0, request.max_weight)] * p
        + [(None, None)]
        + [(0.0, None)] * T
        + [(0.0, None)] * n_z
    )

    try:
        res = linprog(
            c,
            A_ub=A_ub,
            b_ub=np.concatenate(b_ub),
            A_eq=A_eq,
            b_eq=np.array([1.0]),
            bounds=bounds,
            method="highs",
            options={"time_limit": cfg.lp_time_limit},
        )
    except ValueError as exc:
        return _degrade("Min-CVaR", p, "solver_error", str(exc), started)

    if res.status != 0 or res.x is None:
        return _degrade("Min-CVaR", p, f"status_{res.status}", str(res.message), started)

    weights = request.constraints.clean(res.x[:p])
    if not request.constraints.is_feasible(weights):
        return _degrade("Min-CVaR", p, "infeasible_solution", "solution violates the weight box", started)
    zeta = float(res.x[p])
    cvar = zeta + tail_coef * float(np.sum(res.x[p + 1 : p + 1 + T]))
    return _finish(weights, cvar, request, "optimal", str(res.message), started)


def min_variance(
    covariance: np.ndarray,
    *,
    prev_weights: Optional[np.ndarray] = None,
    turnover_penalty: float = 0.0,
    max_weight: float = 1.0,
    config: Optional[OptimizerConfig] = None,
) -> OptimizationResult:
    """Minimise ``w' Sigma w`` (plus ``lambda * sum(z)`` when a penalty is active)."""

    request = OptimizationRequest(
        Strategy.MIN_VARIANCE,
        max_weight=max_weight,
        prev_weights=prev_weights,
        turnover_penalty=turnover_penalty,
        covariance=covariance,
    )
    return _solve_min_variance(request, config or OptimizerConfig())


def _solve_min_variance(request: OptimizationRequest, cfg: OptimizerConfig) -> OptimizationResult:
    started = perf_counter()
    cov = symmetrize(request.covariance)
    p = cov.shape[0]
    if not np.all(np.isfinite(cov)):
        return _degrade("Min-Var", p, "invalid_input", "covariance contains non-finite values", started)
    if np.linalg.eigvalsh(cov).min() < 0.0:
        cov = nearest_psd(cov)
    if not request.constraints.admits(p):
        return _degrade("Min-Var", p, "infeasible", "max_weight too small for a fully invested portfolio", started)

    # objective and penalty share one positive scale, so the minimiser is unchanged
    scale = float(np.mean(np.diag(cov)))
    if not np.isfinite(scale) or scale <= 0.0:
        scale = 1.0
    cov_s = cov / scale
    lam_s = request.turnover_penalty / scale
    box = request.constraints

    if request.prev_weights is not None:
        w0 = box.clean(request.prev_weights)
    else:
        w0 = box.clean(uniform_weights(p))

    if request.penalized:
        prev = request.prev_weights

        def objective(x: np.ndarray) -> float:
            w = x[:p]
            return float(w @ cov_s @ w + lam_s * np.sum(x[p:]))

        def gradient(x: np.ndarray) -> np.ndarray:
            return np.concatenate([2.0 * cov_s @ x[:p], np.full(p, lam_s)])

        eye = np.eye(p)
        constraints = [
            LinearConstraint(np.concatenate([np.ones(p), np.zeros(p)]).reshape(1, -1), 1.0, 1.0),
            # -w + z >= -w_prev  and  w + z >= w_prev
            LinearConstraint(np.hstack([-eye, eye]), -prev, np.inf),
            LinearConstraint(np.hstack([eye, eye]), prev, np.inf),
        ]
        bounds = Bounds(
            np.concatenate([np.zeros(p), np.zeros(p)]),
            np.concatenate([np.full(p, request.max_weight), np.full(p, np.inf)]),
        )
        x0 = np.concatenate([w0, np.abs(w0 - prev)])
    else:

        def objective(x: np.ndarray) -> float:
            return float(x @ cov_s @ x)

        def gradient(x: np.ndarray) -> np.ndarray:
            return 2.0 * cov_s @ x

        constraints = [LinearConstraint(np.ones((1, p)), 1.0, 1.0)]
        bounds = Bounds(np.zeros(p), np.full(p, request.max_weight))
        x0 = w0

    res = minimize(
        objective,
        x0,
        jac=gradient,
        method="SLSQP",
        bounds=bounds,
        constraints=constraints,
        options={"maxiter": cfg.qp_max_iter, "ftol": cfg.qp_ftol, "disp": False},
    )
    if not res.success or res.x is None or not np.all(np.isfinite(res.x)):
        return _degrade("Min-Var", p, f"status_{res.status}", str(res.message), started)

    weights = box.clean(res.x[:p])
    if not box.is_feasible(weights):
        return _degrade("Min-Var", p, "infeasible_solution", "solution violates the weight box", started)
    variance = float(weights @ cov @ weights)
    return _finish(weights, variance, request, "optimal", str(res.message), started)


def optimize(request: OptimizationRequest, config: Optional[OptimizerConfig] = None) -> OptimizationResult:
    """Solve ``request`` with the formulation matching its strategy."""

    cfg = config or OptimizerConfig()
    if request.strategy is Strategy.MIN_CVAR:
        return _solve_min_cvar(request, cfg)
    if request.strategy is Strategy.MIN_VARIANCE:
        return _solve_min_variance(request, cfg)
    raise AssertionError(f"unhandled strategy {request.strategy!r}")  # pragma: no cover


__all__ = [
    "OptimizationRequest",
    "OptimizationResult",
    "OptimizerConfig",
    "Strategy",
    "min_cvar",
    "min_variance",
    "optimize",
]
