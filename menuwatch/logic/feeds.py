"""Price-change, out-of-stock, inventory event and price-history feeds."""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine

from menuwatch.db.tables import brands, current_inventory, inventory_events, products, retailers
from menuwatch.ingest.snapshots import SnapshotLog, follow_merges
from menuwatch.logic.analytics import STATEWIDE
from menuwatch.logic.ranking import PriceChange, top_price_changes
from menuwatch.logic.signals import percent_change, price_stats
from menuwatch.utils.dates import utc_now

PRICE_FEED_DEFAULT_HOURS = int(os.environ.get("PRICE_FEED_DEFAULT_HOURS", 24))


def _enriched_inventory():
    return (
        select(
            current_inventory,
            retailers.c.name.label("retailer_name"),
            retailers.c.region,
            products.c.name.label("product_name"),
            products.c.category,
            brands.c.name.label("brand_name"),
        )
        .select_from(current_inventory)
        .join(retailers, retailers.c.id == current_inventory.c.retailer_id)
        .join(products, products.c.id == current_inventory.c.product_id)
        .join(brands, brands.c.id == current_inventory.c.brand_id)
        .where(retailers.c.is_active.is_(True))
    )


def price_change_feed(
    engine: Engine,
    *,
    hours: int | None = None,
    limit: int = 50,
    now: datetime | None = None,
) -> list[PriceChange]:
    cutoff = (now or utc_now()) - timedelta(hours=hours or PRICE_FEED_DEFAULT_HOURS)
    stmt = _enriched_inventory().where(
        current_inventory.c.previous_price_cents.is_not(None),
        current_inventory.c.price_changed_at >= cutoff,
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    changes: list[PriceChange] = []
    for row in rows:
        delta = percent_change(row["current_price_cents"], row["previous_price_cents"]) or 0.0
        change_percent = round(delta * 100, 1)
        changes.append(
            PriceChange(
                inventory_id=row["id"],
                retailer_id=row["retailer_id"],
                retailer_name=row["retailer_name"],
                product_id=row["product_id"],
                product_name=row["product_name"],
                brand_id=row["brand_id"],
                brand_name=row["brand_name"],
                current_price_cents=row["current_price_cents"],
                previous_price_cents=row["previous_price_cents"],
                price_changed_at=row["price_changed_at"],
                change_percent=change_percent,
                direction="up" if change_percent > 0 else "down",
            )
        )
    return top_price_changes(changes, limit)


def out_of_stock_feed(
    engine: Engine,
    *,
    brand_id: int | None = None,
    region: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    stmt = _enriched_inventory().where(current_inventory.c.in_stock.is_(False))
    if brand_id is not None:
        stmt = stmt.where(current_inventory.c.brand_id == brand_id)
    if region and region != STATEWIDE:
        stmt = stmt.where(retailers.c.region == region)
    stmt = stmt.order_by(
        current_inventory.c.out_of_stock_since.desc().nulls_last(), current_inventory.c.id
    ).limit(limit)
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(stmt).mappings()]


def inventory_events_feed(
    engine: Engine,
    *,
    event_types: Sequence[str] | None = None,
    region: str | None = None,
    retailer_id: int | None = None,
    product_id: int | None = None,
    since: datetime | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Newest-first inventory events with retailer, product and brand names."""
    stmt = (
        select(
            inventory_events,
            retailers.c.name.label("retailer_name"),
            retailers.c.region,
            products.c.name.label("product_name"),
            brands.c.name.label("brand_name"),
        )
        .select_from(inventory_events)
        .join(retailers, retailers.c.id == inventory_events.c.retailer_id)
        .join(products, products.c.id == inventory_events.c.product_id)
        .join(brands, brands.c.id == inventory_events.c.brand_id)
    )
    if event_types:
        stmt = stmt.where(inventory_events.c.event_type.in_(list(event_types)))
    if region and region != STATEWIDE:
        stmt = stmt.where(retailers.c.region == region)
    if retailer_id is not None:
        stmt = stmt.where(inventory_events.c.retailer_id == retailer_id)
    if product_id is not None:
        stmt = stmt.where(inventory_events.c.product_id == product_id)
    if since is not None:
        stmt = stmt.where(inventory_events.c.occurred_at >= since)
    stmt = stmt.order_by(inventory_events.c.occurred_at.desc(), inventory_events.c.id.desc()).limit(limit)
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(stmt).mappings()]


def price_history(
    engine: Engine,
    product_id: int,
    *,
    retailer_id: int | None = None,
    days: int = 30,
    limit: int = 100,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    with engine.connect() as conn:
        canonical = follow_merges(conn, [product_id]).get(product_id)
        if canonical is None:
            return None
        product_id = canonical[0]
        product = conn.execute(
            select(
                products.c.id,
                products.c.name,
                products.c.category,
                products.c.strain,
                brands.c.id.label("brand_id"),
                brands.c.name.label("brand_name"),
            )
            .select_from(products)
            .join(brands, brands.c.id == products.c.brand_id)
            .where(products.c.id == product_id)
        ).mappings().first()
    if product is None:
        return None
    since = (now or utc_now()) - timedelta(days=days)
    snapshots = SnapshotLog(engine).history(product_id, retailer_id=retailer_id, since=since, limit=limit)
    timeline = [
        {
            "scraped_at": s["scraped_at"],
            "retailer_id": s["retailer_id"],
            "price_cents": s["price_cents"],
            "original_price_cents": s["original_price_cents"],
            "is_on_sale": s["is_on_sale"],
            "discount_percent": s["discount_percent"],
            "in_stock": s["in_stock"],
        }
        for s in reversed(snapshots)
    ]
    stats = price_stats([s["price_cents"] for s in snapshots])
    return {
        "product": dict(product),
        "timeline": timeline,
        "stats": stats,
        "period_days": days,
    }
