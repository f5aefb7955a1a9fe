"""NULL-safe numeric helpers shared by every engine.

Rounding is half away from zero, the way the reporting database rounds
``numeric`` values, not Python's banker's rounding.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: float | None, digits: int = 2) -> float:
    """Round ``value`` to ``digits`` places, half away from zero. None -> 0."""
    if value is None or not math.isfinite(value):
        return 0.0
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0 when the denominator is not positive."""
    if denominator <= 0:
        return 0.0
    return numerator / denominator


def percentage(part: float, whole: float, digits: int = 2) -> float:
    """Share of ``part`` in ``whole`` as a rounded percentage (0 if whole <= 0)."""
    return round_half_up(safe_ratio(part, whole) * 100, digits)


def evolution_percentage(current: float, previous: float, digits: int = 1) -> float:
    """Period-over-period change in percent; 0 when there is no baseline."""
    if previous <= 0:
        return 0.0
    return round_half_up((current - previous) / previous * 100, digits)


def ttc_cost(weighted_average_price: float, vat_rate: float) -> float:
    """Cost basis including VAT: wap * (1 + VAT/100)."""
    return weighted_average_price * (1 + vat_rate / 100)
