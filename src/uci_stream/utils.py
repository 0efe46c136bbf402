import math
import time


def to_finite(value: object) -> float | None:
    """Coerce a client supplied value to a finite float.

    Args:
        value: Anything decoded from a request payload

    Returns:
        The value as a float, or None when it is missing, not numeric or not finite
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def clamp_number(value: object, *, min_value: float, max_value: float, fallback: float) -> float:
    """Clamp a value to [min_value, max_value], using fallback when it is not a finite number."""
    num = to_finite(value)
    if num is None:
        return fallback
    return max(min_value, min(max_value, num))


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000
