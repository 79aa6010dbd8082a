"""Reachline — Defensive Numeric Normalizers.

Every number read from an upstream payload or a stored row goes through one
of these. Nothing returned here is ever NaN, infinite, or a string.
"""

import math
from typing import Any, Optional


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            n = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return n if math.isfinite(n) else None


def to_finite_number_or_null(value: Any) -> Optional[int]:
    """Reach-like fields: absence is meaningful, so keep it as None."""
    n = _to_float(value)
    if n is None:
        return None
    return max(0, int(math.floor(n)))


def to_finite_number_or_zero(value: Any) -> int:
    """Count-like fields: absence means no activity."""
    n = to_finite_number_or_null(value)
    return 0 if n is None else n


def entry_value(entry: Any) -> Any:
    """Raw value of a Graph series entry in either shape.

    Time-series entries carry `value`; total-value entries carry
    `total_value: {value}`.
    """
    if not isinstance(entry, dict):
        return None
    total = entry.get("total_value")
    if isinstance(total, dict) and "value" in total:
        return total.get("value")
    return entry.get("value")
