"""Business logic for pricing and stock signals."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(slots=True)
class PriceStats:
    min_price: int
    max_price: int
    avg_price: float
    spread: int
    data_points: int


def percent_change(new: int | None, old: int | None) -> float | None:
    if new is None or old in (None, 0):
        return None
    return (new - old) / max(old, 1)


def discount_percentage(price: int | None, compare_at: int | None) -> float:
    if not price or not compare_at or compare_at <= 0 or price >= compare_at:
        return 0.0
    return (compare_at - price) / compare_at


def velocity_score(out_of_stock: int, total: int) -> float:
    """Share of listings currently sold out; a stand-in for sell-through."""
    if total <= 0:
        return 0.0
    return out_of_stock / total


def stock_rate(in_stock: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(in_stock / total * 100, 1)


def price_stats(prices: Sequence[int]) -> PriceStats | None:
    if not prices:
        return None
    arr = np.array(prices, dtype=float)
    return PriceStats(
        min_price=int(arr.min()),
        max_price=int(arr.max()),
        avg_price=round(float(arr.mean()), 2),
        spread=int(arr.max() - arr.min()),
        data_points=len(prices),
    )
