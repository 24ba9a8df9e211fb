"""Rolling windows and cross-population normalization.

Pure functions with no I/O. Every stat the sync jobs persist goes through
here so that rounding and degenerate-population rules live in one place:

- Rolling averages cover the current week plus up to two prior weeks and
  shrink near the start of the season instead of padding with zeros.
- Z-scores use the population standard deviation with the subject included.
  A flat population (std 0) normalizes to 0.
- Min-max scaling of a flat population (zero range) yields None, meaning the
  metric does not discriminate between subjects that week.
- Normalized values are rounded to 3 decimals, rolling averages to 2.
"""

import statistics
from collections.abc import Hashable, Iterable, Mapping
from enum import StrEnum
from typing import TypeVar

K = TypeVar("K", bound=Hashable)

# =============================================================================
# Constants
# =============================================================================

ROLLING_WEEKS = 3
ROLLING_DECIMALS = 2
NORMALIZED_DECIMALS = 3
RECENT_STATS_DECIMALS = 2

# Variance flag: std / max(mean, MIN_MEAN_FOR_VARIANCE) > INCONSISTENCY_THRESHOLD
INCONSISTENCY_THRESHOLD = 0.5
MIN_MEAN_FOR_VARIANCE = 0.1


class NormalizationMethod(StrEnum):
    """How a metric is rescaled against its same-week population."""

    Z_SCORE = "z_score"
    MIN_MAX = "min_max"


# =============================================================================
# Rolling windows
# =============================================================================


def prior_window(week: int, size: int = ROLLING_WEEKS) -> range:
    """Prior weeks that feed a rolling value for ``week``.

    The window is ``max(1, week - (size - 1)) .. week - 1``; the current week
    is added by the caller. Week 1 has no prior weeks.

    Example:
        >>> list(prior_window(4))
        [2, 3]
        >>> list(prior_window(1))
        []
    """
    if week < 1:
        raise ValueError(f"week must be >= 1, got {week}")
    return range(max(1, week - (size - 1)), week)


def rolling_average(
    current: float | None, prior: Iterable[float | None]
) -> float | None:
    """Average the current value with whatever prior-window values exist.

    Args:
        current: Raw value for the current week.
        prior: Raw values for the prior window (missing weeks may be None
            or simply absent).

    Returns:
        Mean rounded to 2 decimals, or None when there is nothing to average.
    """
    values = [float(v) for v in prior if v is not None]
    if current is not None:
        values.append(float(current))
    if not values:
        return None
    return round(statistics.fmean(values), ROLLING_DECIMALS)


# =============================================================================
# Population statistics
# =============================================================================


def population_stats(values: Iterable[float]) -> tuple[float, float]:
    """Return (mean, population std) of a non-empty population."""
    data = [float(v) for v in values]
    if not data:
        raise ValueError("population is empty")
    return statistics.mean(data), statistics.pstdev(data)


def z_score(value: float, population: Iterable[float]) -> float:
    """(value - mean) / std over a population that includes ``value``.

    Returns 0.0 for a flat population.
    """
    mean, std = population_stats(population)
    if std == 0:
        return 0.0
    return round((value - mean) / std, NORMALIZED_DECIMALS)


def min_max(value: float, population: Iterable[float]) -> float | None:
    """(value - min) / (max - min), or None for a zero-range population."""
    data = [float(v) for v in population]
    if not data:
        raise ValueError("population is empty")
    low, high = min(data), max(data)
    if high == low:
        return None
    return round((value - low) / (high - low), NORMALIZED_DECIMALS)


def normalize(
    value: float, population: Iterable[float], method: NormalizationMethod
) -> float | None:
    if method is NormalizationMethod.Z_SCORE:
        return z_score(value, population)
    return min_max(value, population)


def normalize_population(
    rows: Mapping[K, Mapping[str, float | None]],
    metrics: Mapping[str, NormalizationMethod],
) -> dict[K, dict[str, float | None]]:
    """Normalize each metric independently across a population.

    Args:
        rows: Subject key -> raw metric values. A subject may lack a value
            for any metric.
        metrics: Metric name -> normalization method.

    Returns:
        Subject key -> metric name -> normalized value. A subject without a
        raw value for a metric gets None for that metric only; the other
        subjects are normalized against the values that exist.
    """
    result: dict[K, dict[str, float | None]] = {key: {} for key in rows}

    for metric, method in metrics.items():
        population = [
            float(values[metric])
            for values in rows.values()
            if values.get(metric) is not None
        ]
        for key, values in rows.items():
            raw = values.get(metric)
            if raw is None or not population:
                result[key][metric] = None
            else:
                result[key][metric] = normalize(float(raw), population, method)

    return result


# =============================================================================
# Recent form
# =============================================================================


def recent_stats(points: Iterable[float | None]) -> tuple[float | None, float | None]:
    """Mean and population std of recent fantasy points, rounded to 2 dp."""
    data = [float(p) for p in points if p is not None]
    if not data:
        return None, None
    mean, std = population_stats(data)
    return round(mean, RECENT_STATS_DECIMALS), round(std, RECENT_STATS_DECIMALS)


def coefficient_of_variation(mean: float, std: float) -> float:
    """std relative to the mean, with the mean floored to avoid blow-ups."""
    return std / max(mean, MIN_MEAN_FOR_VARIANCE)


def is_inconsistent(mean: float | None, std: float | None) -> bool:
    """True when recent output swings widely relative to its average."""
    if mean is None or std is None:
        return False
    return coefficient_of_variation(mean, std) > INCONSISTENCY_THRESHOLD


def clip(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
