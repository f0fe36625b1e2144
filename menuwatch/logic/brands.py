"""Read-only brand queries over current inventory."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from menuwatch.db.tables import brands, current_inventory, products, retailers
from menuwatch.logic.analytics import STATEWIDE
from menuwatch.logic.ranking import BrandMetrics, TrendingEntry, rank_trending
from menuwatch.logic.signals import price_stats, stock_rate, velocity_score
from menuwatch.utils.dates import utc_now


@dataclass(slots=True)
class TrendingReport:
    region: str
    period: str
    generated_at: datetime
    brands: list[TrendingEntry]


@dataclass(slots=True)
class BrandDetail:
    brand: dict[str, Any]
    region: str
    metrics: BrandMetrics
    retailers: list[dict[str, Any]] = field(default_factory=list)


def trending_brands(
    engine: Engine,
    *,
    region: str | None = None,
    period: str = "weekly",
    category: str | None = None,
    limit: int = 10,
) -> TrendingReport:
    with engine.connect() as conn:
        rows = _load_inventory(conn, region=region, category=category)
        names = _brand_names(conn, {row["brand_id"] for row in rows})
    metrics = build_metrics(rows, names)
    return TrendingReport(
        region=region or STATEWIDE,
        period=period,
        generated_at=utc_now(),
        brands=rank_trending(metrics, limit),
    )


def brand_detail(engine: Engine, brand_id: int, *, region: str | None = None) -> BrandDetail | None:
    """Metrics and carrying retailers for one brand; a merged brand reports its target."""
    with engine.connect() as conn:
        brand = conn.execute(select(brands).where(brands.c.id == brand_id)).mappings().first()
        while brand is not None and brand["merged_into_id"] is not None:
            brand = conn.execute(select(brands).where(brands.c.id == brand["merged_into_id"])).mappings().first()
        if brand is None:
            return None
        brand_id = brand["id"]
        rows = _load_inventory(conn, brand_ids=[brand_id], region=region)
    metrics = build_metrics(rows, {brand_id: brand["name"]})
    carrying: dict[int, dict[str, Any]] = {}
    for row in rows:
        carrying.setdefault(
            row["retailer_id"],
            {"id": row["retailer_id"], "name": row["retailer_name"], "region": row["region"]},
        )
    return BrandDetail(
        brand=dict(brand),
        region=region or STATEWIDE,
        metrics=metrics[0] if metrics else _empty_metrics(brand_id, brand["name"]),
        retailers=sorted(carrying.values(), key=lambda r: r["name"]),
    )


def compare_brands(engine: Engine, brand_ids: Sequence[int], *, region: str | None = None) -> list[BrandMetrics]:
    """Metrics per requested brand, in request order. Unknown and merged ids are left out."""
    with engine.connect() as conn:
        names = _brand_names(conn, set(brand_ids))
        rows = _load_inventory(conn, brand_ids=list(names), region=region)
    by_brand = {m.brand_id: m for m in build_metrics(rows, names)}
    return [by_brand.get(bid) or _empty_metrics(bid, names[bid]) for bid in brand_ids if bid in names]


def build_metrics(rows: Iterable[dict[str, Any]], names: dict[int, str]) -> list[BrandMetrics]:
    grouped: dict[int, list[dict[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[row["brand_id"]].append(row)
    metrics: list[BrandMetrics] = []
    for brand_id, brand_rows in grouped.items():
        total = len(brand_rows)
        in_stock = sum(1 for row in brand_rows if row["in_stock"])
        stats = price_stats([row["current_price_cents"] for row in brand_rows])
        metrics.append(
            BrandMetrics(
                brand_id=brand_id,
                brand_name=names.get(brand_id, ""),
                retailer_count=len({row["retailer_id"] for row in brand_rows}),
                sku_count=total,
                in_stock_count=in_stock,
                out_of_stock_count=total - in_stock,
                stock_rate=stock_rate(in_stock, total),
                avg_price_cents=stats.avg_price,
                min_price_cents=stats.min_price,
                max_price_cents=stats.max_price,
                velocity=round(velocity_score(total - in_stock, total), 4),
            )
        )
    return metrics


def _empty_metrics(brand_id: int, name: str) -> BrandMetrics:
    return BrandMetrics(brand_id, name, 0, 0, 0, 0, 0.0, 0.0, 0, 0, 0.0)


def _load_inventory(
    conn: Connection,
    *,
    brand_ids: list[int] | None = None,
    region: str | None = None,
    category: str | None = None,
) -> list[dict[str, Any]]:
    stmt = (
        select(
            current_inventory.c.brand_id,
            current_inventory.c.retailer_id,
            current_inventory.c.current_price_cents,
            current_inventory.c.in_stock,
            retailers.c.name.label("retailer_name"),
            retailers.c.region,
        )
        .select_from(current_inventory)
        .join(retailers, retailers.c.id == current_inventory.c.retailer_id)
        .where(retailers.c.is_active.is_(True))
    )
    if brand_ids is not None:
        stmt = stmt.where(current_inventory.c.brand_id.in_(brand_ids))
    if region and region != STATEWIDE:
        stmt = stmt.where(retailers.c.region == region)
    if category:
        stmt = stmt.join(products, products.c.id == current_inventory.c.product_id).where(
            products.c.category == category
        )
    return [dict(row) for row in conn.execute(stmt).mappings()]


def _brand_names(conn: Connection, brand_ids: set[int]) -> dict[int, str]:
    if not brand_ids:
        return {}
    rows = conn.execute(
        select(brands.c.id, brands.c.name).where(brands.c.id.in_(brand_ids), brands.c.merged_into_id.is_(None))
    )
    return {row.id: row.name for row in rows}
