from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class ControlLimits:
    mean: float
    stddev: float
    ucl: float
    lcl: float


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    return math.fsum(values) / len(values)


def sample_stddev(values: Sequence[float]) -> float:
    """Sample standard deviation with an (n-1) divisor; 0.0 below two values."""
    if len(values) < 2:
        return 0.0
    center = mean(values)
    squared = math.fsum((value - center) ** 2 for value in values)
    return math.sqrt(squared / (len(values) - 1))


def control_limits(
    values: Sequence[float],
    *,
    sigma: float = 3.0,
    fallback_mean: float = 0.0,
    min_samples: int = 2,
) -> ControlLimits:
    """Shewhart-style control band over `values`.

    Below `min_samples` values there is no meaningful spread, so the band
    collapses onto `fallback_mean`. The lower limit is clamped at zero because
    scores are never negative.
    """
    if len(values) < max(min_samples, 1):
        return ControlLimits(mean=fallback_mean, stddev=0.0, ucl=fallback_mean, lcl=max(0.0, fallback_mean))
    center = mean(values)
    spread = sample_stddev(values)
    return ControlLimits(
        mean=center,
        stddev=spread,
        ucl=center + sigma * spread,
        lcl=max(0.0, center - sigma * spread),
    )
