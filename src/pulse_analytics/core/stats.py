"""
Statistics primitives.

Pure functions used by discovery, validation and forecasting:

    pearson          - correlation coefficient over finite pairs
    significance     - two-sided p-value for r with n samples
    confidence       - 0-100 score from accuracy + trials (or p + n before trials)
    classify_strength- display label for |r|
    compare_buckets  - in-bucket vs out-of-bucket effect with point-biserial r
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy import stats as sp_stats

from .exceptions import DegenerateInput, InsufficientData

MIN_PAIRS = 3


def _finite_pairs(xs: Sequence[float], ys: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    if len(xs) != len(ys):
        raise DegenerateInput(
            f"Series length mismatch: {len(xs)} vs {len(ys)}",
            details={"len_x": len(xs), "len_y": len(ys)},
        )
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    mask = np.isfinite(x) & np.isfinite(y)
    return x[mask], y[mask]


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """
    Pearson correlation coefficient.

    Pairs where either value is missing or non-finite are dropped first.
    Returns 0.0 when either series has zero variance.

    Raises:
        InsufficientData: fewer than 3 valid pairs
    """
    x, y = _finite_pairs(xs, ys)
    n = len(x)
    if n < MIN_PAIRS:
        raise InsufficientData(
            f"Need at least {MIN_PAIRS} valid pairs, got {n}",
            details={"n": n},
        )

    dx = x - x.mean()
    dy = y - y.mean()
    denom = math.sqrt(float(np.dot(dx, dx)) * float(np.dot(dy, dy)))
    if denom == 0.0:
        return 0.0

    r = float(np.dot(dx, dy)) / denom
    return max(-1.0, min(1.0, r))


def significance(r: float, n: int) -> float:
    """
    Two-sided p-value for a Pearson r over n samples (Student-t, n-2 dof).
    """
    if n < MIN_PAIRS or not math.isfinite(r):
        return 1.0
    r_abs = min(abs(r), 1.0)
    if r_abs >= 1.0:
        return 0.0
    t = r_abs * math.sqrt((n - 2) / (1.0 - r_abs * r_abs))
    p = 2.0 * float(sp_stats.t.sf(t, n - 2))
    return max(0.0, min(1.0, p))


def confidence(
    accuracy: float,
    trials: int,
    *,
    p_value: Optional[float] = None,
    sample_size: Optional[int] = None,
    trial_saturation: int = 100,
    sample_saturation: int = 30,
) -> float:
    """
    Confidence score in [0, 100].

    Once a pattern has been validated at least once the score is driven by
    accuracy (70%) and trial count (30%). Before that it is seeded from the
    discovery statistics: significance (70%) and sample size (30%).
    """
    if trials > 0:
        score = 0.7 * accuracy + 0.3 * 100.0 * min(trials / trial_saturation, 1.0)
    elif p_value is not None and sample_size is not None:
        score = 100.0 * (0.7 * (1.0 - p_value) + 0.3 * min(sample_size / sample_saturation, 1.0))
    else:
        score = 0.0
    return round(max(0.0, min(100.0, score)), 2)


def classify_strength(r: float) -> str:
    r_abs = abs(r)
    if r_abs >= 0.7:
        return "strong"
    if r_abs >= 0.4:
        return "moderate"
    if r_abs >= 0.2:
        return "weak"
    return "very_weak"


@dataclass
class BucketComparison:
    """Result of comparing an outcome inside vs outside a factor bucket."""

    in_bucket_n: int
    out_bucket_n: int
    in_mean: float
    out_mean: float
    change_pct: float
    r: float
    p_value: float

    @property
    def sample_size(self) -> int:
        return self.in_bucket_n + self.out_bucket_n


def compare_buckets(values: Sequence[float], mask: Sequence[bool]) -> BucketComparison:
    """
    Compare ``values`` where ``mask`` is true against the rest.

    The correlation is the point-biserial r (Pearson against the 0/1
    indicator), so the same significance test applies.

    Raises:
        InsufficientData: either side empty or fewer than 3 values overall
    """
    y = np.asarray(values, dtype=float)
    m = np.asarray(mask, dtype=bool)
    finite = np.isfinite(y)
    y, m = y[finite], m[finite]

    in_vals = y[m]
    out_vals = y[~m]
    if len(in_vals) == 0 or len(out_vals) == 0:
        raise InsufficientData(
            "Bucket comparison needs values on both sides",
            details={"in": int(len(in_vals)), "out": int(len(out_vals))},
        )

    in_mean = float(in_vals.mean())
    out_mean = float(out_vals.mean())
    change = (in_mean - out_mean) / out_mean * 100.0 if out_mean != 0 else 0.0

    r = pearson(m.astype(float), y)
    return BucketComparison(
        in_bucket_n=int(len(in_vals)),
        out_bucket_n=int(len(out_vals)),
        in_mean=in_mean,
        out_mean=out_mean,
        change_pct=change,
        r=r,
        p_value=significance(r, len(y)),
    )
