"""
Condition evaluation.
"""

import math
from typing import Any, Optional

EQUALS_TOLERANCE = 1e-3


def to_number(value: Any) -> Optional[float]:
    """
    Coerce a value to float.

    Numbers and numeric strings are accepted. None, booleans, NaN and
    anything that does not parse return None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def evaluate(
    current_value: Any,
    operator: str,
    threshold: Any,
    secondary_threshold: Any = None,
) -> bool:
    """
    Check a value against a rule condition.

    Args:
        current_value: Observed value
        operator: One of above, below, equals, change, increase, decrease, between
        threshold: Primary threshold
        secondary_threshold: Upper bound for ``between``

    Returns:
        True if the condition holds. Invalid input or an unknown operator
        yields False.
    """
    current = to_number(current_value)
    limit = to_number(threshold)
    if current is None or limit is None:
        return False

    if operator == "above":
        return current > limit
    if operator == "below":
        return current < limit
    if operator == "equals":
        return abs(current - limit) < EQUALS_TOLERANCE
    if operator == "change":
        return abs(current) > limit
    if operator == "increase":
        return current > limit
    if operator == "decrease":
        return current < -limit
    if operator == "between":
        upper = to_number(secondary_threshold)
        if upper is None:
            return False
        return limit <= current <= upper

    return False
