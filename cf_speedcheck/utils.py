"""Utility functions for speedtest calculations"""

from typing import Sequence

from .exceptions import InvalidInputError


def _require_values(values: Sequence[float], name: str) -> None:
    if not values:
        raise InvalidInputError(f"Cannot compute {name} of an empty sample set")


def average(values: Sequence[float]) -> float:
    """Arithmetic mean of a non-empty sample set."""
    _require_values(values, "average")
    return sum(values) / len(values)


def median(values: Sequence[float]) -> float:
    """
    Calculate the median of a sample set.

    Args:
        values: Non-empty list of numeric values (not modified)

    Returns:
        The middle value for odd lengths, the mean of the two central values otherwise
    """
    _require_values(values, "median")
    sorted_vals = sorted(values)
    half = len(sorted_vals) // 2
    if len(sorted_vals) % 2:
        return sorted_vals[half]
    return (sorted_vals[half - 1] + sorted_vals[half]) / 2


def percentile(values: Sequence[float], perc: float = 0.5) -> float:
    """
    Calculate percentile from a list of values.

    Args:
        values: Non-empty list of numeric values (not modified)
        perc: Percentile value between 0 and 1, or 0-100 (default: 0.5 for median)
              If > 1, assumes 0-100 range and converts to 0-1

    Returns:
        The value at fractional rank (n - 1) * perc, linearly interpolated
        between its neighbours. When the upper neighbour does not exist the
        lower element is returned as-is.
    """
    _require_values(values, "percentile")
    if perc < 0 or perc > 100:
        raise InvalidInputError(f"Percentile must be within 0-1 or 0-100, got {perc}")

    # Convert from 0-100 range to 0-1 if needed
    if perc > 1:
        perc = perc / 100.0

    sorted_vals = sorted(values)
    idx = (len(sorted_vals) - 1) * perc
    base = int(idx)
    rem = idx - base

    if base + 1 >= len(sorted_vals):
        return sorted_vals[base]
    return sorted_vals[base] + rem * (sorted_vals[base + 1] - sorted_vals[base])


def jitter(values: Sequence[float]) -> float:
    """
    Mean absolute difference between consecutive samples, in collection order.

    Order matters here: sorting first would hide the variation over time.
    A single sample has no consecutive pair and gives 0.0.
    """
    _require_values(values, "jitter")
    if len(values) < 2:
        return 0.0
    deltas = [abs(values[i] - values[i + 1]) for i in range(len(values) - 1)]
    return average(deltas)


def measure_speed(bytes_size: int, duration_ms: float) -> float:
    """
    Convert a transfer into megabits per second.

    Args:
        bytes_size: Number of payload bytes transferred
        duration_ms: Transfer duration in milliseconds (must be positive)

    Returns:
        Rate in Mbps
    """
    if duration_ms is None or duration_ms <= 0:
        raise InvalidInputError(f"Transfer duration must be positive, got {duration_ms}")
    return (bytes_size * 8) / (duration_ms / 1000) / 1e6
