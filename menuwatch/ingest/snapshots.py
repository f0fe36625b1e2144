"""Append-only log of menu observations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, insert, or_, select
from sqlalchemy.engine import Connection, Engine

from menuwatch.db.tables import current_inventory, menu_snapshots, products
from menuwatch.errors import NormalizationError
from menuwatch.ingest.models import ResolvedIdentity, ScrapedItem, SnapshotRecord
from menuwatch.logic.signals import discount_percentage
from menuwatch.utils.dates import to_utc_naive, utc_now

_RECORD_COLUMNS = (
    menu_snapshots.c.id,
    menu_snapshots.c.retailer_id,
    menu_snapshots.c.product_id,
    products.c.brand_id,
    menu_snapshots.c.batch_id,
    menu_snapshots.c.scraped_at,
    menu_snapshots.c.price_cents,
    menu_snapshots.c.in_stock,
)


class SnapshotLog:
    """Writes and reads ``menu_snapshots``. Rows are never updated or deleted.

    Reads resolve products folded by a brand merge to the product they were
    merged into, so the log itself keeps the ids it was written with.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append(
        self,
        identity: ResolvedIdentity,
        retailer_id: int,
        item: ScrapedItem,
        batch_id: str,
        *,
        now: datetime | None = None,
    ) -> SnapshotRecord:
        price_cents = _price_to_cents(item.price)
        if price_cents is None:
            raise NormalizationError(f"Invalid price {item.price!r} for {item.raw_product_name!r}", field="price")
        original_cents = _price_to_cents(item.original_price)
        discount = discount_percentage(price_cents, original_cents)
        scraped_at = to_utc_naive(item.scraped_at)
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(menu_snapshots)
                .values(
                    retailer_id=retailer_id,
                    product_id=identity.product_id,
                    batch_id=batch_id,
                    scraped_at=scraped_at,
                    ingested_at=now or utc_now(),
                    price_cents=price_cents,
                    original_price_cents=original_cents,
                    is_on_sale=discount > 0,
                    discount_percent=round(discount * 100) if original_cents else None,
                    in_stock=bool(item.in_stock),
                    source_url=item.source_url,
                    source_platform=item.source_platform,
                    raw_product_name=item.raw_product_name,
                    raw_brand_name=item.raw_brand_name,
                    raw_category=item.raw_category,
                )
                .returning(menu_snapshots.c.id)
            )
            snapshot_id = int(result.scalar_one())
        return SnapshotRecord(
            id=snapshot_id,
            retailer_id=retailer_id,
            product_id=identity.product_id,
            brand_id=identity.brand_id,
            batch_id=batch_id,
            scraped_at=scraped_at,
            price_cents=price_cents,
            in_stock=bool(item.in_stock),
        )

    def get(self, snapshot_id: int) -> SnapshotRecord | None:
        records = self._records(menu_snapshots.c.id == snapshot_id)
        return records[0] if records else None

    def for_batch(self, batch_id: str, retailer_id: int | None = None) -> list[SnapshotRecord]:
        clauses = [menu_snapshots.c.batch_id == batch_id]
        if retailer_id is not None:
            clauses.append(menu_snapshots.c.retailer_id == retailer_id)
        return self._records(*clauses)

    def pending(self, retailer_id: int | None = None) -> list[SnapshotRecord]:
        """Snapshots newer than the materialized state of their pair.

        Observations of merged products were folded into their twin at merge
        time and are not replayed.
        """
        stmt = (
            select(*_RECORD_COLUMNS)
            .select_from(menu_snapshots)
            .join(products, products.c.id == menu_snapshots.c.product_id)
            .outerjoin(
                current_inventory,
                and_(
                    current_inventory.c.retailer_id == menu_snapshots.c.retailer_id,
                    current_inventory.c.product_id == menu_snapshots.c.product_id,
                ),
            )
            .where(
                or_(
                    current_inventory.c.id.is_(None),
                    menu_snapshots.c.scraped_at > current_inventory.c.last_scraped_at,
                ),
                products.c.merged_into_id.is_(None),
            )
            .order_by(menu_snapshots.c.scraped_at, menu_snapshots.c.id)
        )
        if retailer_id is not None:
            stmt = stmt.where(menu_snapshots.c.retailer_id == retailer_id)
        with self.engine.connect() as conn:
            return [SnapshotRecord(**row) for row in conn.execute(stmt).mappings()]

    def history(
        self,
        product_id: int,
        *,
        retailer_id: int | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Newest-first observations of one product, including products merged into it."""
        with self.engine.connect() as conn:
            product_ids = merged_product_ids(conn, product_id)
        stmt = select(menu_snapshots).where(menu_snapshots.c.product_id.in_(product_ids))
        if retailer_id is not None:
            stmt = stmt.where(menu_snapshots.c.retailer_id == retailer_id)
        if since is not None:
            stmt = stmt.where(menu_snapshots.c.scraped_at >= since)
        stmt = stmt.order_by(menu_snapshots.c.scraped_at.desc(), menu_snapshots.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def _records(self, *clauses: Any) -> list[SnapshotRecord]:
        stmt = (
            select(*_RECORD_COLUMNS, products.c.merged_into_id)
            .select_from(menu_snapshots)
            .join(products, products.c.id == menu_snapshots.c.product_id)
            .where(*clauses)
            .order_by(menu_snapshots.c.scraped_at, menu_snapshots.c.id)
        )
        with self.engine.connect() as conn:
            rows = [dict(row) for row in conn.execute(stmt).mappings()]
            merged = {row["product_id"] for row in rows if row["merged_into_id"] is not None}
            targets = follow_merges(conn, merged) if merged else {}
        records = []
        for row in rows:
            del row["merged_into_id"]
            if row["product_id"] in targets:
                row["product_id"], row["brand_id"] = targets[row["product_id"]]
            records.append(SnapshotRecord(**row))
        return records


def follow_merges(conn: Connection, product_ids: Iterable[int]) -> dict[int, tuple[int, int]]:
    """Map each product id to the (product_id, brand_id) it currently lives under."""
    resolved: dict[int, tuple[int, int]] = {}
    for product_id in product_ids:
        current = product_id
        while True:
            row = conn.execute(
                select(products.c.id, products.c.brand_id, products.c.merged_into_id).where(products.c.id == current)
            ).first()
            if row is None:
                break
            if row.merged_into_id is None:
                resolved[product_id] = (row.id, row.brand_id)
                break
            current = row.merged_into_id
    return resolved


def merged_product_ids(conn: Connection, product_id: int) -> list[int]:
    """``product_id`` plus every product folded into it, directly or not."""
    found = [product_id]
    frontier = [product_id]
    while frontier:
        frontier = list(conn.execute(select(products.c.id).where(products.c.merged_into_id.in_(frontier))).scalars())
        found.extend(frontier)
    return found


def _price_to_cents(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        cents = round(float(value) * 100)
    except (TypeError, ValueError, OverflowError):
        return None
    return cents if cents >= 0 else None
