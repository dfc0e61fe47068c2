from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from .errors import ConfigurationError

WEIGHT_TOLERANCE = 1e-6
PROJECTION_STEPS = 100


@dataclass(frozen=True)
class PortfolioConstraints:
    """Long-only budget constraint with a per-asset cap."""

    max_weight: float = 1.0
    min_weight: float = 0.0

    def __post_init__(self) -> None:
        if not (0.0 < self.max_weight <= 1.0):
            raise ConfigurationError("max_weight must lie in (0, 1]")
        if self.min_weight < 0.0 or self.min_weight > self.max_weight:
            raise ConfigurationError("min_weight must lie in [0, max_weight]")

    def bounds(self, n_assets: int) -> List[Tuple[float, float]]:
        return [(self.min_weight, self.max_weight)] * n_assets

    def admits(self, n_assets: int) -> bool:
        """Whether a fully-invested portfolio exists for ``n_assets`` assets."""

        return (
            n_assets * self.max_weight >= 1.0 - WEIGHT_TOLERANCE
            and n_assets * self.min_weight <= 1.0 + WEIGHT_TOLERANCE
        )

    def is_feasible(self, weights: np.ndarray, tol: float = WEIGHT_TOLERANCE) -> bool:
        w = np.asarray(weights, dtype=float)
        if w.ndim != 1 or not np.all(np.isfinite(w)):
            return False
        if abs(float(w.sum()) - 1.0) > tol:
            return False
        if np.any(w < self.min_weight - tol):
            return False
        return not np.any(w > self.max_weight + tol)

    def clean(self, weights: np.ndarray) -> np.ndarray:
        """Euclidean projection of ``weights`` onto the box intersected with the budget.

        Solves ``sum(clip(w - tau, min_weight, max_weight)) == 1`` for the shift
        ``tau`` by bisection. When the box admits no fully invested portfolio
        the weights are clipped and rescaled instead.
        """

        w = np.asarray(weights, dtype=float)
        if not self.admits(w.size):
            clipped = np.clip(w, self.min_weight, self.max_weight)
            total = float(clipped.sum())
            return clipped / total if total > 0.0 else clipped
        # sum(clip(w - tau)) falls from n * max_weight to n * min_weight over [lo, hi]
        lo = float(np.min(w)) - self.max_weight
        hi = float(np.max(w)) - self.min_weight
        for _ in range(PROJECTION_STEPS):
            tau = 0.5 * (lo + hi)
            if np.clip(w - tau, self.min_weight, self.max_weight).sum() > 1.0:
                lo = tau
            else:
                hi = tau
        return np.clip(w - 0.5 * (lo + hi), self.min_weight, self.max_weight)


__all__ = ["PortfolioConstraints", "WEIGHT_TOLERANCE"]
