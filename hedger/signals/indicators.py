"""Technical indicators over price and volume series.

All functions take plain sequences of floats (oldest first) and return
floats. Percent changes are returned as fractions: 0.02 means +2%.
Functions raise ``ValueError`` when the series is too short.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

import numpy as np

TREND_THRESHOLD = 0.01


def _require(values: Sequence[float], n: int, what: str = "data points") -> np.ndarray:
    if len(values) < n:
        raise ValueError(f"Not enough {what}. Need {n}, got {len(values)}")
    return np.asarray(values, dtype=float)


def sma(prices: Sequence[float], period: int) -> float:
    """Simple moving average of the last *period* prices."""
    arr = _require(prices, period)
    return float(arr[-period:].mean())


def price_change(current: float, previous: float) -> float:
    if previous == 0:
        raise ValueError("Previous price cannot be zero")
    return (current - previous) / previous


def price_change_over_period(prices: Sequence[float]) -> float:
    arr = _require(prices, 2, "price points")
    return price_change(float(arr[-1]), float(arr[0]))


def volatility(prices: Sequence[float]) -> float:
    """Population standard deviation of prices."""
    arr = _require(prices, 2, "price points")
    return float(arr.std())


def is_volume_spike(current: float, average: float, threshold: float = 2.0) -> bool:
    return current > average * threshold


def detect_breakout(
    current: float, history: Sequence[float], threshold: float = 0.02
) -> tuple[bool, Optional[str], float]:
    """Compare *current* with the SMA of up to the last 20 historical prices.

    Returns (breakout, direction, magnitude) where direction is "up",
    "down" or None.
    """
    if not history:
        return False, None, 0.0
    avg = sma(history, min(20, len(history)))
    change = price_change(current, avg)
    magnitude = abs(change)
    if magnitude > threshold:
        return True, "up" if change > 0 else "down", magnitude
    return False, None, magnitude


def detect_trend(
    prices: Sequence[float], short_period: int = 10, long_period: int = 30
) -> str:
    """Return "uptrend", "downtrend" or "sideways"."""
    if len(prices) < long_period:
        return "sideways"
    short_ma = sma(prices, short_period)
    long_ma = sma(prices, long_period)
    diff = (short_ma - long_ma) / long_ma
    if diff > TREND_THRESHOLD:
        return "uptrend"
    if diff < -TREND_THRESHOLD:
        return "downtrend"
    return "sideways"
