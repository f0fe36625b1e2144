"""Ranking logic for brands and price movements."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence


@dataclass(slots=True)
class BrandMetrics:
    brand_id: int
    brand_name: str
    retailer_count: int
    sku_count: int
    in_stock_count: int
    out_of_stock_count: int
    stock_rate: float
    avg_price_cents: float
    min_price_cents: int
    max_price_cents: int
    velocity: float


@dataclass(slots=True)
class TrendingEntry:
    rank: int
    metrics: BrandMetrics


@dataclass(slots=True)
class PriceChange:
    inventory_id: int
    retailer_id: int
    retailer_name: str
    product_id: int
    product_name: str
    brand_id: int
    brand_name: str
    current_price_cents: int
    previous_price_cents: int
    price_changed_at: datetime
    change_percent: float
    direction: str


def rank_trending(metrics: Sequence[BrandMetrics], limit: int = 10) -> list[TrendingEntry]:
    """Order brands by distribution breadth.

    Velocity rides along as a secondary signal and deliberately does not
    affect the order.
    """
    ordered = sorted(metrics, key=lambda m: (-m.retailer_count, -m.sku_count, m.brand_id))
    return [TrendingEntry(rank=idx, metrics=m) for idx, m in enumerate(ordered[:limit], start=1)]


def top_price_changes(changes: Sequence[PriceChange], limit: int = 50) -> list[PriceChange]:
    ordered = sorted(changes, key=lambda c: (-abs(c.change_percent), c.inventory_id))
    return ordered[:limit]
