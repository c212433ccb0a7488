"""
stats.py — Numeric primitives used by the trend predictions.

Computes:
- Least-squares linear fit over indexed points (closed-form sums)
- Trailing moving average over the last k points
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np


# ── Helpers ─────────────────────────────────────────────────────────

def _safe_float(val) -> Optional[float]:
    """Convert to float or return None for missing/NaN/inf."""
    try:
        v = float(val)
        return None if np.isnan(v) or np.isinf(v) else v
    except (TypeError, ValueError):
        return None


def _sanitize(obj):
    """Recursively coerce numpy scalars to JSON-safe Python types."""
    if isinstance(obj, dict):
        return {k: _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_sanitize(v) for v in obj]
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, (np.floating, float)):
        v = float(obj)
        return None if (np.isnan(v) or np.isinf(v)) else v
    return obj


# ── Linear Regression ───────────────────────────────────────────────

@dataclass(frozen=True)
class LinearFit:
    """y = intercept + slope * x"""

    intercept: float
    slope: float

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * float(x)


def linear_regression(points: List[Dict[str, Any]]) -> LinearFit:
    """
    Fit y = a + b·x over points [{"x", "y"}] by least squares.

    x is expected to be a 1-based sequence index. With fewer than two points
    the fit is flat at the last known y (0 when there are none). A zero
    denominator gives slope 0.
    """
    if not points or len(points) < 2:
        last = points[-1]["y"] if points else 0
        return LinearFit(intercept=float(last or 0), slope=0.0)

    x = np.array([float(p["x"]) for p in points])
    y = np.array([float(p["y"]) for p in points])
    n = len(points)

    sum_x, sum_y = x.sum(), y.sum()
    sum_xy, sum_xx = (x * y).sum(), (x * x).sum()

    denom = n * sum_xx - sum_x * sum_x
    slope = 0.0 if denom == 0 else float((n * sum_xy - sum_x * sum_y) / denom)
    intercept = float((sum_y - slope * sum_x) / n)
    return LinearFit(intercept=intercept, slope=slope)


# ── Moving Average ──────────────────────────────────────────────────

def moving_average(points: List[Dict[str, Any]], k: int = 3) -> Optional[float]:
    """Mean y of the last ``k`` points; fewer points use what exists; none gives None."""
    if not points:
        return None
    window = points[-k:] if k > 0 else points
    return float(np.mean([float(p["y"]) for p in window]))
