"""
Pluggable normalization formula engine.

Different competitive exams normalize shift scores differently:
- z_score: shift z-score rescaled onto the exam-wide mean/stddev
- percentile: rank-in-shift percentile scaled to the exam's maximum marks
- modified_z: shift z-score mapped onto a fixed target mean/stddev
- equating: equipercentile equating against the exam-wide distribution
- raw: no normalization
- custom: admin-configured linear blend of raw and z-score results

Every formula is a pure function of NormalizationParams. Degenerate inputs
(zero spread, single-candidate shifts) fall back to the raw score.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.models import NormalizationMethod
from app.utils.statistics_utils import inverse_normal_cdf, round_half_up

DEFAULT_METHOD = NormalizationMethod.Z_SCORE.value


@dataclass(frozen=True)
class NormalizationParams:
    """Everything a formula needs to normalize one raw score."""

    raw_score: float
    shift_mean: float = 0.0
    shift_std_dev: float = 0.0
    global_mean: float = 0.0
    global_std_dev: float = 0.0
    max_marks: float = 0.0
    total_in_shift: int = 0
    rank_in_shift: int = 1
    # Ascending [{"percentile": p, "score": s}, ...] for equating
    global_distribution: list[dict[str, float]] | None = None
    config: dict[str, Any] | None = None


FormulaFn = Callable[[NormalizationParams], float]


def _config_number(config: dict[str, Any] | None, key: str, default: float) -> float:
    if not config:
        return default
    value = config.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def shift_percentile_rank(p: NormalizationParams) -> float:
    """Percentile (0-100) of rank_in_shift among total_in_shift candidates."""
    return ((p.total_in_shift - p.rank_in_shift) / (p.total_in_shift - 1)) * 100


def z_score(p: NormalizationParams) -> float:
    if not p.shift_std_dev:
        return p.raw_score
    z = (p.raw_score - p.shift_mean) / p.shift_std_dev
    return z * p.global_std_dev + p.global_mean


def percentile(p: NormalizationParams) -> float:
    if p.total_in_shift <= 1:
        return p.raw_score
    return (shift_percentile_rank(p) / 100) * p.max_marks


def modified_z(p: NormalizationParams) -> float:
    if not p.shift_std_dev:
        return p.raw_score
    target_mean = _config_number(p.config, "targetMean", 50.0)
    target_std_dev = _config_number(p.config, "targetStdDev", 15.0)
    z = (p.raw_score - p.shift_mean) / p.shift_std_dev
    return z * target_std_dev + target_mean


def interpolate_percentile(target: float, distribution: list[dict[str, float]]) -> float:
    """
    Score at `target` percentile in an ascending percentile -> score table.

    Percentiles at or beyond the table's ends clamp to the boundary scores.
    """
    first, last = distribution[0], distribution[-1]
    if target <= first["percentile"]:
        return first["score"]
    if target >= last["percentile"]:
        return last["score"]

    left, right = 0, len(distribution) - 1
    while left < right - 1:
        mid = (left + right) // 2
        mid_percentile = distribution[mid]["percentile"]
        if mid_percentile == target:
            return distribution[mid]["score"]
        if mid_percentile < target:
            left = mid
        else:
            right = mid

    p1, s1 = distribution[left]["percentile"], distribution[left]["score"]
    p2, s2 = distribution[right]["percentile"], distribution[right]["score"]
    return s1 + (s2 - s1) * (target - p1) / (p2 - p1)


def equating(p: NormalizationParams) -> float:
    if p.total_in_shift <= 1:
        return p.raw_score

    rank_percentile = shift_percentile_rank(p)

    if p.global_distribution:
        return interpolate_percentile(rank_percentile, p.global_distribution)

    # Parametric fallback: place the shift percentile on a normal curve
    u = max(0.001, min(0.999, rank_percentile / 100))
    return inverse_normal_cdf(u) * p.global_std_dev + p.global_mean


def raw(p: NormalizationParams) -> float:
    return p.raw_score


def custom(p: NormalizationParams) -> float:
    params = (p.config or {}).get("customParams") or {}
    a = _config_number(params, "rawWeight", 0.0)
    b = _config_number(params, "zWeight", 1.0)
    c = _config_number(params, "offset", 0.0)

    result = a * p.raw_score + b * z_score(p) + c

    max_score = _config_number(p.config, "maxNormalizedScore", math.inf)
    min_score = _config_number(p.config, "minNormalizedScore", -math.inf)
    return max(min_score, min(max_score, result))


FORMULAS: dict[str, FormulaFn] = {
    NormalizationMethod.Z_SCORE.value: z_score,
    NormalizationMethod.PERCENTILE.value: percentile,
    NormalizationMethod.MODIFIED_Z.value: modified_z,
    NormalizationMethod.EQUATING.value: equating,
    NormalizationMethod.RAW.value: raw,
    NormalizationMethod.CUSTOM.value: custom,
}

METHOD_LABELS: dict[str, str] = {
    NormalizationMethod.Z_SCORE.value: "Z-Score (SSC Standard)",
    NormalizationMethod.PERCENTILE.value: "Percentile-Based (RRB)",
    NormalizationMethod.MODIFIED_Z.value: "Modified Z-Score (IBPS)",
    NormalizationMethod.EQUATING.value: "Equipercentile (NTA)",
    NormalizationMethod.RAW.value: "No Normalization",
    NormalizationMethod.CUSTOM.value: "Custom Formula",
}


def resolve_method(method: str | None) -> str:
    """Return `method` if registered, otherwise the z_score default."""
    if method in FORMULAS:
        return method  # type: ignore[return-value]
    return DEFAULT_METHOD


def get_normalized_score(method: str | None, params: NormalizationParams) -> float:
    """
    Normalize one raw score with the named formula, rounded to 2 decimals.

    Unknown method names use z_score. Never raises: a non-finite result
    falls back to the raw score.
    """
    fn = FORMULAS[resolve_method(method)]
    try:
        result = fn(params)
    except (ArithmeticError, KeyError, TypeError, ValueError):
        result = params.raw_score

    if not math.isfinite(result):
        return params.raw_score
    return round_half_up(result, 2)


def get_method_label(method: str) -> str:
    return METHOD_LABELS.get(method, method)


def get_available_formulas() -> list[dict[str, str]]:
    return [{"value": key, "label": get_method_label(key)} for key in FORMULAS]
