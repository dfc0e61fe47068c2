"""Robust moment estimators for rolling return windows.

Three policies are available through :func:`estimate`:

* ``baseline`` - sample mean with Oracle Approximating Shrinkage (OAS) of the
  sample covariance toward a scaled identity.
* ``huber`` - per-asset Huber M-estimate of the mean; OAS applied to the
  residuals without re-centering.
* ``tyler`` - median centering, Tyler's scatter fixed point rescaled to the
  data's variance, blended with a fixed weight toward a scaled identity.

The fixed-point iterations are exposed as pure step functions
(:func:`huber_step`, :func:`tyler_step`) so the convergence loops can be
replayed and tested one iteration at a time.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from time import perf_counter
from typing import Iterable, Optional, Tuple
import warnings

import numpy as np
from scipy import stats
from scipy.special import gammaln

from .errors import (
    ConfigurationError,
    ConvergenceWarning,
    DataError,
    InsufficientSampleError,
    NumericalError,
)
from .utils import Choice, symmetrize

logger = logging.getLogger(__name__)

HUBER_K = 1.345
TYLER_SHRINKAGE = 0.1


class Estimator(Choice):
    BASELINE = "baseline"
    HUBER = "huber"
    TYLER = "tyler"

    @classmethod
    def aliases(cls):
        return {"lw": "baseline", "oas": "baseline", "ledoit_wolf": "baseline"}


@dataclass(frozen=True)
class EstimatorConfig:
    """Tuning constants for the iterative estimators."""

    huber_k: float = HUBER_K
    huber_max_iter: int = 100
    huber_tol: float = 1e-6
    tyler_max_iter: int = 500
    tyler_tol: float = 1e-6
    tyler_max_seconds: Optional[float] = None
    tyler_shrinkage: float = TYLER_SHRINKAGE
    ridge: float = 1e-8
    ridge_retries: int = 3

    def __post_init__(self) -> None:
        if self.huber_k <= 0.0:
            raise ConfigurationError("huber_k must be positive")
        if self.huber_max_iter <= 0 or self.tyler_max_iter <= 0:
            raise ConfigurationError("iteration caps must be positive")
        if self.huber_tol <= 0.0 or self.tyler_tol <= 0.0:
            raise ConfigurationError("tolerances must be positive")
        if self.tyler_max_seconds is not None and self.tyler_max_seconds <= 0.0:
            raise ConfigurationError("tyler_max_seconds must be positive when provided")
        if not (0.0 <= self.tyler_shrinkage <= 1.0):
            raise ConfigurationError("tyler_shrinkage must lie in [0, 1]")
        if self.ridge <= 0.0:
            raise ConfigurationError("ridge must be positive")
        if self.ridge_retries < 0:
            raise ConfigurationError("ridge_retries must be non-negative")


@dataclass(frozen=True)
class EstimatedMoments:
    """Mean vector and covariance estimated from one return window."""

    mean: np.ndarray
    covariance: np.ndarray
    shrinkage: Optional[float] = None
    estimator: Estimator = Estimator.BASELINE
    iterations: int = 0
    converged: bool = True
    n_obs: int = field(default=0)

    def __post_init__(self) -> None:
        mean = np.array(self.mean, dtype=float, copy=True).ravel()
        cov = np.array(self.covariance, dtype=float, copy=True)
        if cov.shape != (mean.size, mean.size):
            raise ValueError("covariance shape must match the mean vector")
        mean.setflags(write=False)
        cov.setflags(write=False)
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "covariance", cov)

    @property
    def n_assets(self) -> int:
        return int(self.mean.size)


def _warn_convergence(message: str) -> None:
    logger.warning(message)
    warnings.warn(message, ConvergenceWarning, stacklevel=3)


# ---- OAS ----
def _oas_from_scatter(S: np.ndarray, n: int) -> Tuple[np.ndarray, float]:
    p = S.shape[0]
    tr_S = float(np.trace(S))
    tau = tr_S / p
    tr_S2 = float(np.sum(S * S))
    num = (1.0 - 2.0 / p) * tr_S2 + tr_S ** 2 / p
    den = (n + 1.0 - 2.0 / p) * (tr_S2 - tr_S ** 2 / p ** 2)
    if den <= 1e-300:
        # S is already proportional to the identity target
        rho = 1.0
    else:
        rho = min(1.0, max(0.0, num / den))
    sigma = (1.0 - rho) * S + rho * tau * np.eye(p)
    return symmetrize(sigma), float(rho)


def oas_shrinkage(X: np.ndarray) -> Tuple[np.ndarray, float]:
    """OAS covariance of ``X`` (rows are observations) and its shrinkage intensity."""

    X = np.asarray(X, dtype=float)
    n, _ = X.shape
    if n < 2:
        raise InsufficientSampleError("OAS needs at least two observations")
    S = np.cov(X, rowvar=False, ddof=1).reshape(X.shape[1], X.shape[1])
    return _oas_from_scatter(S, n)


def oas_shrinkage_precentered(X_centered: np.ndarray) -> Tuple[np.ndarray, float]:
    """OAS on residuals that were already centered by a robust location; no re-centering."""

    Xc = np.asarray(X_centered, dtype=float)
    n, _ = Xc.shape
    if n < 2:
        raise InsufficientSampleError("OAS needs at least two observations")
    S = (Xc.T @ Xc) / (n - 1)
    return _oas_from_scatter(S, n)


# ---- Huber ----
def huber_step(mu: float, x: np.ndarray, scale: float, k: float = HUBER_K) -> float:
    """One reweighting pass of the Huber location estimate."""

    z = np.abs((x - mu) / scale)
    weights = np.ones_like(z)
    np.divide(k, z, out=weights, where=z > k)
    return float(np.sum(weights * x) / np.sum(weights))


def huber_mean(
    x: np.ndarray,
    k: float = HUBER_K,
    max_iter: int = 100,
    tol: float = 1e-6,
) -> Tuple[float, int, bool]:
    """Huber M-estimate of location; returns ``(mu, iterations, converged)``."""

    x = np.asarray(x, dtype=float).ravel()
    mu = float(np.median(x))
    scale = float(stats.median_abs_deviation(x, scale="normal"))
    if not np.isfinite(scale) or scale < 1e-10:
        return mu, 0, True

    for iteration in range(1, max_iter + 1):
        mu_new = huber_step(mu, x, scale, k)
        if abs(mu_new - mu) < tol:
            return mu_new, iteration, True
        mu = mu_new

    _warn_convergence(f"Huber mean did not converge after {max_iter} iterations")
    return mu, max_iter, False


# ---- Tyler ----
def _trace_normalize(mat: np.ndarray) -> np.ndarray:
    p = mat.shape[0]
    tr = float(np.trace(mat))
    if not np.isfinite(tr) or tr <= 0.0:
        raise NumericalError("scatter matrix has non-positive trace")
    return symmetrize(mat * (p / tr))


def _regularized_inverse(shape: np.ndarray, ridge: float, retries: int) -> np.ndarray:
    p = shape.shape[0]
    level = float(np.trace(shape)) / p
    candidate = shape
    for attempt in range(retries + 1):
        inv = None
        if np.linalg.cond(candidate) < 1e14:
            try:
                inv = np.linalg.inv(candidate)
            except np.linalg.LinAlgError:
                inv = None
        if inv is not None and np.all(np.isfinite(inv)):
            if attempt:
                logger.debug("Tyler inverse regularised with ridge %.3g", ridge * 10 ** (attempt - 1))
            return inv
        candidate = shape + ridge * (10 ** attempt) * level * np.eye(p)
    raise NumericalError("Tyler scatter matrix is singular after ridge regularisation")


def tyler_step(
    shape: np.ndarray,
    X_centered: np.ndarray,
    *,
    ridge: float = 1e-8,
    retries: int = 3,
) -> Tuple[np.ndarray, float]:
    """Apply one Tyler fixed-point update; returns ``(next_shape, relative_change)``.

    Rows whose Mahalanobis norm vanishes carry no direction and are skipped.
    The returned matrix has trace equal to ``p``.
    """

    Xc = np.asarray(X_centered, dtype=float)
    n, p = Xc.shape
    inv = _regularized_inverse(shape, ridge, retries)
    d2 = np.einsum("ij,jk,ik->i", Xc, inv, Xc)
    keep = d2 > 1e-300
    if not np.any(keep):
        raise NumericalError("all observations coincide with the location estimate")
    Xk = Xc[keep]
    scatter = (Xk / d2[keep, None]).T @ Xk * (p / n)
    nxt = _trace_normalize(scatter)
    base = float(np.linalg.norm(shape, "fro"))
    change = float(np.linalg.norm(nxt - shape, "fro")) / max(base, 1e-300)
    return nxt, change


def tyler_shape(
    X_centered: np.ndarray,
    max_iter: int = 500,
    tol: float = 1e-6,
    *,
    max_seconds: Optional[float] = None,
    ridge: float = 1e-8,
    retries: int = 3,
) -> Tuple[np.ndarray, int, bool]:
    """Tyler's M-estimator of scatter with trace normalised to ``p``."""

    Xc = np.asarray(X_centered, dtype=float)
    n, p = Xc.shape
    init = np.cov(Xc, rowvar=False, ddof=0).reshape(p, p)
    shape = _trace_normalize(init) if np.trace(init) > 0 else np.eye(p)
    start = perf_counter()

    for iteration in range(1, max_iter + 1):
        shape_new, change = tyler_step(shape, Xc, ridge=ridge, retries=retries)
        shape = shape_new
        if change < tol:
            logger.debug("Tyler estimator converged in %d iterations", iteration)
            return shape, iteration, True
        if max_seconds is not None and perf_counter() - start >= max_seconds:
            _warn_convergence(f"Tyler estimator stopped by its {max_seconds:.3g}s budget after {iteration} iterations")
            return shape, iteration, False

    _warn_convergence(f"Tyler estimator did not converge after {max_iter} iterations")
    return shape, max_iter, False


# ---- dispatch ----
def _validate_window(window: np.ndarray) -> np.ndarray:
    X = np.asarray(window, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2 or X.shape[1] == 0:
        raise DataError("return window must be a non-empty T x p matrix")
    if not np.all(np.isfinite(X)):
        raise DataError("return window contains non-finite values")
    n, p = X.shape
    if n <= p:
        raise InsufficientSampleError(
            f"window of {n} observations cannot estimate {p} assets (need T > p)"
        )
    return X


def estimate(
    window: np.ndarray,
    policy: Estimator | str = Estimator.BASELINE,
    config: Optional[EstimatorConfig] = None,
) -> EstimatedMoments:
    """Estimate the mean vector and covariance of ``window`` under ``policy``."""

    cfg = config or EstimatorConfig()
    kind = Estimator.parse(policy)
    X = _validate_window(window)
    n, p = X.shape

    if kind is Estimator.BASELINE:
        mu = X.mean(axis=0)
        sigma, rho = oas_shrinkage(X)
        logger.debug("OAS: shrinkage intensity rho = %.4f", rho)
        return EstimatedMoments(mu, sigma, shrinkage=rho, estimator=kind, n_obs=n)

    if kind is Estimator.HUBER:
        fits = [
            huber_mean(X[:, j], k=cfg.huber_k, max_iter=cfg.huber_max_iter, tol=cfg.huber_tol)
            for j in range(p)
        ]
        mu = np.array([fit[0] for fit in fits])
        sigma, rho = oas_shrinkage_precentered(X - mu)
        iterations = max(fit[1] for fit in fits)
        logger.debug("HUBER: shrinkage intensity rho = %.4f, max iterations %d", rho, iterations)
        return EstimatedMoments(
            mu,
            sigma,
            shrinkage=rho,
            estimator=kind,
            iterations=iterations,
            converged=all(fit[2] for fit in fits),
            n_obs=n,
        )

    if kind is Estimator.TYLER:
        mu = np.median(X, axis=0)
        Xc = X - mu
        shape, iterations, converged = tyler_shape(
            Xc,
            max_iter=cfg.tyler_max_iter,
            tol=cfg.tyler_tol,
            max_seconds=cfg.tyler_max_seconds,
            ridge=cfg.ridge,
            retries=cfg.ridge_retries,
        )
        scale = float(np.mean(np.diag(np.cov(Xc, rowvar=False, ddof=0).reshape(p, p))))
        delta = cfg.tyler_shrinkage
        sigma = (1.0 - delta) * scale * shape + delta * scale * np.eye(p)
        logger.debug(
            "TYLER: %d iterations, rescaled by %.6g, shrinkage delta = %.2f",
            iterations,
            scale,
            delta,
        )
        return EstimatedMoments(
            mu,
            symmetrize(sigma),
            shrinkage=delta,
            estimator=kind,
            iterations=iterations,
            converged=converged,
            n_obs=n,
        )

    raise AssertionError(f"unhandled estimator {kind!r}")  # pragma: no cover


# ---- diagnostics ----
def _mvt_loglik(X: np.ndarray, mu: np.ndarray, inv: np.ndarray, logdet: float, nu: float) -> float:
    n, p = X.shape
    diff = X - mu
    d2 = np.einsum("ij,jk,ik->i", diff, inv, diff)
    const = gammaln((nu + p) / 2.0) - gammaln(nu / 2.0) - 0.5 * p * math.log(nu * math.pi)
    return float(n * (const - 0.5 * logdet) - 0.5 * (nu + p) * np.sum(np.log1p(d2 / nu)))


def fit_multivariate_t(X: np.ndarray, nu_grid: Iterable[int] = range(3, 16)) -> int:
    """Grid-search the Student-t degrees of freedom that best explains ``X``.

    Uses the sample mean and covariance as location/scatter; the result is a
    tail-heaviness diagnostic rather than a full maximum-likelihood fit.
    """

    X = _validate_window(X)
    mu = X.mean(axis=0)
    cov = np.cov(X, rowvar=False).reshape(X.shape[1], X.shape[1])
    sign, logdet = np.linalg.slogdet(cov)
    if sign <= 0:
        raise NumericalError("sample covariance is not positive definite")
    inv = np.linalg.inv(cov)
    best_nu, best_ll = 0, -np.inf
    for nu in nu_grid:
        ll = _mvt_loglik(X, mu, inv, logdet, float(nu))
        if ll > best_ll:
            best_nu, best_ll = int(nu), ll
    return best_nu


def relative_difference(cov_a: np.ndarray, cov_b: np.ndarray) -> float:
    """Frobenius distance between two covariance estimates, relative to the first."""

    a = np.asarray(cov_a, dtype=float)
    b = np.asarray(cov_b, dtype=float)
    if a.shape != b.shape:
        raise ValueError("covariance matrices must share the same shape")
    denom = float(np.linalg.norm(a, "fro"))
    if denom <= 0.0:
        raise ValueError("reference covariance must be non-zero")
    return float(np.linalg.norm(a - b, "fro")) / denom


__all__ = [
    "EstimatedMoments",
    "Estimator",
    "EstimatorConfig",
    "estimate",
    "fit_multivariate_t",
    "huber_mean",
    "huber_step",
    "oas_shrinkage",
    "oas_shrinkage_precentered",
    "relative_difference",
    "tyler_shape",
    "tyler_step",
]
