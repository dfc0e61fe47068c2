from __future__ import annotations

from enum import Enum
from typing import Any, Dict

import numpy as np

from .errors import ConfigurationError


def symmetrize(mat: np.ndarray) -> np.ndarray:
    mat = np.asarray(mat, dtype=float)
    return 0.5 * (mat + mat.T)


def nearest_psd(cov: np.ndarray, eps: float = 1e-10) -> np.ndarray:
    """Fast symmetric eigenvalue clip to nearest PSD matrix."""

    cov = symmetrize(cov)
    w, v = np.linalg.eigh(cov)
    w = np.clip(w, eps, None)
    psd = (v * w) @ v.T
    return symmetrize(psd)


def uniform_weights(n_assets: int) -> np.ndarray:
    if n_assets <= 0:
        raise ValueError("n_assets must be positive")
    return np.full(n_assets, 1.0 / n_assets, dtype=float)


def l1_distance(a: np.ndarray, b: np.ndarray) -> float:
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    if a_arr.shape != b_arr.shape:
        raise ValueError("weight vectors must share the same shape")
    return float(np.abs(a_arr - b_arr).sum())


def renormalize(weights: np.ndarray) -> np.ndarray:
    """Rescale a non-negative vector to sum to one; uniform when it sums to zero."""

    w = np.asarray(weights, dtype=float)
    total = float(w.sum())
    if not np.isfinite(total) or total <= 1e-12:
        return uniform_weights(w.size)
    return w / total


class Choice(str, Enum):
    """String-valued enum whose ``parse`` rejects unknown identifiers early."""

    @classmethod
    def aliases(cls) -> Dict[str, str]:
        return {}

    @classmethod
    def parse(cls, value: Any) -> "Choice":
        if isinstance(value, cls):
            return value
        key = str(getattr(value, "value", value)).strip().lower().replace("-", "_")
        key = cls.aliases().get(key, key)
        for member in cls:
            if member.value == key:
                return member
        options = ", ".join(member.value for member in cls)
        raise ConfigurationError(f"Unknown {cls.__name__.lower()} '{value}'; expected one of {options}")
