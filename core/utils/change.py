"""
Change Detection

Relative change between a new value and the last value pushed to clients,
used by every differential broadcast policy.
"""


def relative_change(current: float, previous: float) -> float:
    """
    |current - previous| / |previous|

    A move away from a zero baseline counts as an infinite change.

    Examples:
        >>> relative_change(51.0, 50.0)
        0.02
        >>> relative_change(0.0, 0.0)
        0.0
    """
    if previous == 0:
        return 0.0 if current == 0 else float("inf")
    return abs(current - previous) / abs(previous)
