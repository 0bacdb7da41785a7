"""Utility functions for calculating score statistics."""

import math
from dataclasses import dataclass
from typing import Sequence

# Variance below this is treated as a degenerate (single-score) distribution
VARIANCE_EPSILON = 1e-9


@dataclass(frozen=True)
class ScoreStats:
    """Descriptive statistics of a set of raw scores."""

    count: int = 0
    mean: float = 0.0
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0

    @classmethod
    def from_sums(
        cls,
        count: int,
        total: float,
        sq_total: float,
        min_val: float | None,
        max_val: float | None,
    ) -> "ScoreStats":
        mean, std_dev = summarize_sums(count, total, sq_total)
        return cls(
            count=count,
            mean=mean,
            std_dev=std_dev,
            min=float(min_val) if min_val is not None else 0.0,
            max=float(max_val) if max_val is not None else 0.0,
        )


def summarize_sums(count: int, total: float, sq_total: float) -> tuple[float, float]:
    """
    Derive mean and sample standard deviation from running sums.

    Args:
        count: Number of scores
        total: Sum of scores
        sq_total: Sum of squared scores

    Returns:
        (mean, std_dev). Both are 0.0 for an empty set; std_dev is 0.0 for a
        single score, matching PostgreSQL's STDDEV fallback.
    """
    if not count:
        return 0.0, 0.0

    mean = total / count
    if count < 2:
        return mean, 0.0

    variance = (sq_total - total * total / count) / (count - 1)
    if variance < VARIANCE_EPSILON:
        return mean, 0.0
    return mean, math.sqrt(variance)


def percentile_grid(points: int = 101) -> list[float]:
    """Evenly spaced percentiles from 0 to 100 inclusive."""
    if points < 2:
        return []
    step = 100.0 / (points - 1)
    return [round(i * step, 6) for i in range(points)]


def interpolation_positions(n: int, p: float) -> tuple[int, int, float]:
    """(lower index, upper index, upper weight) of the p-th percentile among n sorted values."""
    index = (p / 100.0) * (n - 1)
    lower = int(index)
    upper = min(lower + 1, n - 1)
    return lower, upper, index - lower


def percentile_value(sorted_data: Sequence[float], p: float) -> float:
    """Linearly interpolated p-th percentile (0-100) of ascending data."""
    n = len(sorted_data)
    if n == 0:
        return 0.0

    lower, upper, weight = interpolation_positions(n, p)
    if lower == upper:
        return float(sorted_data[lower])
    return sorted_data[lower] * (1 - weight) + sorted_data[upper] * weight


def build_percentile_distribution(sorted_data: Sequence[float], points: int = 101) -> list[dict[str, float]]:
    """
    Build an ascending percentile -> score lookup table.

    Args:
        sorted_data: Scores in ascending order
        points: Number of evenly spaced percentiles between 0 and 100 inclusive

    Returns:
        List of {"percentile": p, "score": s}, empty when there is no data
    """
    if not sorted_data:
        return []
    return [
        {"percentile": p, "score": round(percentile_value(sorted_data, p), 4)}
        for p in percentile_grid(points)
    ]


# Beasley-Springer-Moro rational approximation coefficients
_BSM_A = (
    -3.969683028665376e1,
    2.209460984245205e2,
    -2.759285104469687e2,
    1.383577518672690e2,
    -3.066479806614716e1,
    2.506628277459239e0,
)
_BSM_B = (
    -5.447609879822406e1,
    1.615858368580409e2,
    -1.556989798598866e2,
    6.680131188771972e1,
    -1.328068155288572e1,
)
_BSM_C = (
    -7.784894002430293e-3,
    -3.223964580411365e-1,
    -2.400758277161838e0,
    -2.549732539343734e0,
    4.374664141464968e0,
    2.938163982698783e0,
)
_BSM_D = (
    7.784695709041462e-3,
    3.224671290700398e-1,
    2.445134137142996e0,
    3.754408661907416e0,
)
_BSM_LOW = 0.02425
_BSM_HIGH = 1 - _BSM_LOW


def inverse_normal_cdf(u: float) -> float:
    """Standard normal quantile for probability u in (0, 1)."""
    a, b, c, d = _BSM_A, _BSM_B, _BSM_C, _BSM_D

    if u < _BSM_LOW:
        q = math.sqrt(-2 * math.log(u))
        return (((((c[0] * q + c[1]) * q + c[2]) * q + c[3]) * q + c[4]) * q + c[5]) / (
            (((d[0] * q + d[1]) * q + d[2]) * q + d[3]) * q + 1
        )

    if u <= _BSM_HIGH:
        q = u - 0.5
        r = q * q
        return (
            (((((a[0] * r + a[1]) * r + a[2]) * r + a[3]) * r + a[4]) * r + a[5])
            * q
            / (((((b[0] * r + b[1]) * r + b[2]) * r + b[3]) * r + b[4]) * r + 1)
        )

    q = math.sqrt(-2 * math.log(1 - u))
    return -(((((c[0] * q + c[1]) * q + c[2]) * q + c[3]) * q + c[4]) * q + c[5]) / (
        (((d[0] * q + d[1]) * q + d[2]) * q + d[3]) * q + 1
    )


def round_half_up(value: float, digits: int = 2) -> float:
    """Round to `digits` places with halves going toward positive infinity."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor
