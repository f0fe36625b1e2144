"""Periodic brand analytics roll-up."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import pandas as pd
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from menuwatch.db.tables import brand_analytics, current_inventory, products, retailers
from menuwatch.errors import ConflictError
from menuwatch.utils.dates import PERIODS, utc_now
from menuwatch.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

STATEWIDE = "statewide"


def compute_brand_analytics(
    engine: Engine,
    period: str,
    period_start: datetime,
    period_end: datetime,
    *,
    now: datetime | None = None,
) -> int:
    """Recompute ``brand_analytics`` for one period key from current inventory.

    Writes one row per (brand, region) that has at least one inventory row,
    plus a ``statewide`` row per brand. Re-running for the same key rewrites
    the same rows and drops rows whose pair no longer has inventory. Returns
    the number of rows written.
    """
    if period not in PERIODS:
        raise ValueError(f"Unknown period {period!r}")
    if period_end <= period_start:
        raise ValueError("period_end must be after period_start")
    frame = load_inventory_frame(engine)
    written: set[tuple[int, str]] = set()
    if frame.empty:
        logger.info("No inventory to roll up for %s %s", period, period_start)
        groups = []
    else:
        groups = [
            (STATEWIDE, frame.groupby("brand_id")),
            (None, frame.groupby(["brand_id", "region"])),
        ]
    computed_at = now or utc_now()
    for fixed_region, grouped in groups:
        for key, rows in grouped:
            if fixed_region is None:
                brand_id, region = key
            else:
                brand_id = key[0] if isinstance(key, tuple) else key
                region = fixed_region
            values = summarize_rows(rows)
            values.update(period_end=period_end, computed_at=computed_at)
            _upsert_row(engine, int(brand_id), str(region), period, period_start, values)
            written.add((int(brand_id), str(region)))
    pruned = _prune_rows(engine, period, period_start, written)
    logger.info(
        "Computed %s brand analytics rows for %s starting %s, pruned %s",
        len(written),
        period,
        period_start,
        pruned,
    )
    return len(written)


def load_inventory_frame(engine: Engine) -> pd.DataFrame:
    stmt = (
        select(
            current_inventory.c.brand_id,
            current_inventory.c.retailer_id,
            retailers.c.region,
            products.c.category,
            current_inventory.c.current_price_cents,
            current_inventory.c.in_stock,
            current_inventory.c.days_on_menu,
        )
        .select_from(current_inventory)
        .join(retailers, retailers.c.id == current_inventory.c.retailer_id)
        .join(products, products.c.id == current_inventory.c.product_id)
        .where(retailers.c.is_active.is_(True))
    )
    with engine.connect() as conn:
        rows = [dict(row) for row in conn.execute(stmt).mappings()]
    return pd.DataFrame(rows)


def summarize_rows(rows: pd.DataFrame) -> dict[str, Any]:
    prices = rows["current_price_cents"]
    return {
        "total_retailers_carrying": int(rows["retailer_id"].nunique()),
        "total_skus_listed": int(len(rows)),
        "avg_price_cents": round(float(prices.mean()), 2),
        "min_price_cents": int(prices.min()),
        "max_price_cents": int(prices.max()),
        "out_of_stock_count": int((~rows["in_stock"].astype(bool)).sum()),
        "avg_days_on_menu": round(float(rows["days_on_menu"].mean()), 2),
        "category_breakdown": {str(k): int(v) for k, v in rows["category"].value_counts().sort_index().items()},
    }


@retry_on_conflict
def _upsert_row(
    engine: Engine,
    brand_id: int,
    region: str,
    period: str,
    period_start: datetime,
    values: dict[str, Any],
) -> None:
    with engine.begin() as conn:
        existing_id = _find_row(conn, brand_id, region, period, period_start)
        if existing_id is not None:
            conn.execute(update(brand_analytics).where(brand_analytics.c.id == existing_id).values(**values))
            return
        try:
            conn.execute(
                insert(brand_analytics).values(
                    brand_id=brand_id, region=region, period=period, period_start=period_start, **values
                )
            )
        except IntegrityError as exc:
            raise ConflictError(f"Analytics row for brand {brand_id} {region} {period} written concurrently") from exc


def _find_row(conn: Connection, brand_id: int, region: str, period: str, period_start: datetime) -> int | None:
    return conn.execute(
        select(brand_analytics.c.id)
        .where(
            brand_analytics.c.brand_id == brand_id,
            brand_analytics.c.region == region,
            brand_analytics.c.period == period,
            brand_analytics.c.period_start == period_start,
        )
        .with_for_update()
    ).scalar_one_or_none()


def _prune_rows(engine: Engine, period: str, period_start: datetime, keep: set[tuple[int, str]]) -> int:
    with engine.begin() as conn:
        rows = conn.execute(
            select(brand_analytics.c.id, brand_analytics.c.brand_id, brand_analytics.c.region).where(
                brand_analytics.c.period == period,
                brand_analytics.c.period_start == period_start,
            )
        ).all()
        stale = [row.id for row in rows if (row.brand_id, row.region) not in keep]
        if stale:
            conn.execute(delete(brand_analytics).where(brand_analytics.c.id.in_(stale)))
    return len(stale)


def list_brand_analytics(
    engine: Engine,
    *,
    brand_id: int | None = None,
    region: str | None = None,
    period: str | None = None,
) -> list[dict[str, Any]]:
    stmt = select(brand_analytics)
    if brand_id is not None:
        stmt = stmt.where(brand_analytics.c.brand_id == brand_id)
    if region is not None:
        stmt = stmt.where(brand_analytics.c.region == region)
    if period is not None:
        stmt = stmt.where(brand_analytics.c.period == period)
    stmt = stmt.order_by(brand_analytics.c.period_start.desc(), brand_analytics.c.brand_id, brand_analytics.c.region)
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(stmt).mappings()]
