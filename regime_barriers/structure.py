"""
Market structure helpers for barrier snapping.

- Significant levels: highs/lows binned at a fixed price tolerance; a bin
  counts once it has at least `min_touches` members.
- Swing levels: 2-bar fractal highs and lows.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


def find_significant_level(
    prices: Sequence[float],
    target: float,
    tolerance: float = 0.001,
    search_radius: float = 0.01,
    min_touches: int = 3,
) -> Optional[float]:
    """
    Most-touched price bin within `search_radius` of `target`.

    Args:
        prices: Candidate prices (recent highs or lows)
        target: Price the level should be near
        tolerance: Bin width
        search_radius: Max fractional distance from target
        min_touches: Touches required for the level to count

    Returns:
        Bin price, or None if no bin near target has enough touches
    """
    if target <= 0 or tolerance <= 0:
        return None

    arr = np.asarray(prices, dtype=float)
    arr = arr[np.isfinite(arr)]
    if len(arr) == 0:
        return None

    # Round half up onto the integer bin grid
    bins = np.floor(arr / tolerance + 0.5).astype(np.int64)

    counts = {}
    for b in bins:
        counts[b] = counts.get(b, 0) + 1

    best_level = None
    max_count = 0
    for b, count in counts.items():
        level = b * tolerance
        if abs(level - target) / target < search_radius and count > max_count:
            best_level = float(level)
            max_count = count

    return best_level if max_count >= min_touches else None


def find_swing_levels(candles: pd.DataFrame) -> Tuple[List[float], List[float]]:
    """
    Swing highs and swing lows.

    A swing high is a high strictly above the two highs on each side;
    swing lows mirror that on the lows.

    Returns:
        (swing_highs, swing_lows), oldest first
    """
    if len(candles) < 5:
        return [], []

    high = candles['high'].to_numpy(dtype=float)
    low = candles['low'].to_numpy(dtype=float)

    swing_highs = []
    swing_lows = []
    for i in range(2, len(candles) - 2):
        neighbours = [i - 2, i - 1, i + 1, i + 2]
        if all(high[i] > high[j] for j in neighbours):
            swing_highs.append(float(high[i]))
        if all(low[i] < low[j] for j in neighbours):
            swing_lows.append(float(low[i]))

    return swing_highs, swing_lows


def nearest_level(levels: Sequence[float], price: float, max_distance: float) -> Optional[float]:
    """Closest level within max_distance (fraction of price), or None."""
    best = None
    best_gap = None
    for level in levels:
        gap = abs(price - level)
        if gap < price * max_distance and (best_gap is None or gap < best_gap):
            best = level
            best_gap = gap
    return best
