"""Current inventory materialization with price and stock delta detection."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from menuwatch.db.tables import current_inventory, inventory_events
from menuwatch.errors import ConflictError, MaterializationError
from menuwatch.ingest.models import SnapshotRecord
from menuwatch.ingest.snapshots import SnapshotLog
from menuwatch.logic.signals import percent_change
from menuwatch.utils.dates import utc_now
from menuwatch.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

EVENT_TYPES = ("new_product", "restock", "sold_out", "price_drop", "price_increase", "removed")
PRICE_EVENT_MIN_PERCENT = float(os.environ.get("PRICE_EVENT_MIN_PERCENT", 1.0))
REMOVED_AFTER = timedelta(minutes=int(os.environ.get("REMOVED_AFTER_MINUTES", 60)))


def days_between(start: datetime, end: datetime) -> int:
    return max(0, (end - start) // ONE_DAY)


def diff_state(existing: Mapping[str, Any], snapshot: SnapshotRecord, now: datetime) -> dict[str, Any]:
    """Column updates that move ``existing`` to the state observed in ``snapshot``.

    Price and stock transition fields are only present when the observed
    value differs from the materialized one, so replaying an observation
    never records a second change.
    """
    changes: dict[str, Any] = {
        "last_updated_at": now,
        "last_scraped_at": snapshot.scraped_at,
        "last_snapshot_id": snapshot.id,
        "days_on_menu": max(existing["days_on_menu"], days_between(existing["first_seen_at"], now)),
    }
    if snapshot.price_cents != existing["current_price_cents"]:
        changes["previous_price_cents"] = existing["current_price_cents"]
        changes["price_changed_at"] = now
        changes["current_price_cents"] = snapshot.price_cents
    if snapshot.in_stock and not existing["in_stock"]:
        changes["in_stock"] = True
        changes["last_in_stock_at"] = now
        changes["out_of_stock_since"] = None
    elif not snapshot.in_stock and existing["in_stock"]:
        changes["in_stock"] = False
        changes["out_of_stock_since"] = now
    return changes


def detect_events(existing: Mapping[str, Any] | None, snapshot: SnapshotRecord) -> list[dict[str, Any]]:
    """Inventory events for the transition from ``existing`` to ``snapshot``.

    ``existing`` is None for a listing seen for the first time. Price events
    are only raised while the listing stays in stock and the move is larger
    than ``PRICE_EVENT_MIN_PERCENT``.
    """
    if existing is None:
        return [
            _event(snapshot, "new_product", None, {"price_cents": snapshot.price_cents, "in_stock": snapshot.in_stock})
        ]
    events = []
    if snapshot.in_stock and not existing["in_stock"]:
        events.append(
            _event(
                snapshot,
                "restock",
                {"in_stock": False, "out_of_stock_since": _iso(existing["out_of_stock_since"])},
                {"in_stock": True, "price_cents": snapshot.price_cents},
            )
        )
    elif not snapshot.in_stock and existing["in_stock"]:
        events.append(
            _event(
                snapshot,
                "sold_out",
                {"in_stock": True, "last_in_stock_at": _iso(existing["last_in_stock_at"])},
                {"in_stock": False},
            )
        )
    previous = existing["current_price_cents"]
    if snapshot.in_stock and existing["in_stock"] and snapshot.price_cents != previous:
        change = percent_change(snapshot.price_cents, previous)
        if change is not None and abs(change * 100) > PRICE_EVENT_MIN_PERCENT:
            events.append(
                _event(
                    snapshot,
                    "price_drop" if snapshot.price_cents < previous else "price_increase",
                    {"price_cents": previous},
                    {"price_cents": snapshot.price_cents},
                    details={"change_percent": round(change * 100, 1)},
                )
            )
    return events


def _event(
    snapshot: SnapshotRecord,
    event_type: str,
    previous_value: dict[str, Any] | None,
    new_value: dict[str, Any] | None,
    *,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "retailer_id": snapshot.retailer_id,
        "product_id": snapshot.product_id,
        "brand_id": snapshot.brand_id,
        "event_type": event_type,
        "previous_value": previous_value,
        "new_value": new_value,
        "details": details,
        "batch_id": snapshot.batch_id,
        "snapshot_id": snapshot.id,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _record_events(conn: Connection, events: list[dict[str, Any]], now: datetime) -> None:
    if events:
        conn.execute(insert(inventory_events), [{**event, "occurred_at": now} for event in events])


def _find_row(conn: Connection, retailer_id: int, product_id: int) -> Mapping[str, Any] | None:
    return conn.execute(
        select(current_inventory)
        .where(current_inventory.c.retailer_id == retailer_id, current_inventory.c.product_id == product_id)
        .with_for_update()
    ).mappings().first()


class InventoryMaterializer:
    """Keeps ``current_inventory`` at one row per (retailer, product).

    Every comparison is made against the materialized row rather than the
    previous snapshot, so replays and late redeliveries leave the row as is.
    """

    def __init__(self, engine: Engine, snapshot_log: SnapshotLog | None = None) -> None:
        self.engine = engine
        self.snapshot_log = snapshot_log or SnapshotLog(engine)

    def apply(self, snapshot: SnapshotRecord, *, now: datetime | None = None) -> dict[str, Any]:
        try:
            return self._apply(snapshot, now or utc_now())
        except (ConflictError, SQLAlchemyError) as exc:
            raise MaterializationError(
                f"Could not materialize snapshot {snapshot.id}: {exc}", snapshot_id=snapshot.id
            ) from exc

    def replay(
        self,
        *,
        batch_id: str | None = None,
        retailer_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Re-apply logged snapshots, e.g. after a materialization failure.

        Without ``batch_id`` only snapshots newer than their pair's state are
        replayed.
        """
        if batch_id is not None:
            snapshots = self.snapshot_log.for_batch(batch_id, retailer_id)
        else:
            snapshots = self.snapshot_log.pending(retailer_id)
        for snapshot in snapshots:
            self.apply(snapshot, now=now)
        logger.info("Replayed %s snapshots (batch=%s retailer=%s)", len(snapshots), batch_id, retailer_id)
        return len(snapshots)

    @retry_on_conflict
    def _apply(self, snapshot: SnapshotRecord, now: datetime) -> dict[str, Any]:
        with self.engine.begin() as conn:
            existing = _find_row(conn, snapshot.retailer_id, snapshot.product_id)
            if existing is None:
                values = {
                    "retailer_id": snapshot.retailer_id,
                    "product_id": snapshot.product_id,
                    "brand_id": snapshot.brand_id,
                    "current_price_cents": snapshot.price_cents,
                    "previous_price_cents": None,
                    "price_changed_at": None,
                    "in_stock": snapshot.in_stock,
                    "last_in_stock_at": now if snapshot.in_stock else None,
                    "out_of_stock_since": None,
                    "days_on_menu": 0,
                    "first_seen_at": snapshot.scraped_at,
                    "last_updated_at": now,
                    "last_scraped_at": snapshot.scraped_at,
                    "last_snapshot_id": snapshot.id,
                }
                try:
                    result = conn.execute(insert(current_inventory).values(**values).returning(current_inventory.c.id))
                except IntegrityError as exc:
                    raise ConflictError(
                        f"Inventory row for retailer {snapshot.retailer_id} product {snapshot.product_id} "
                        "was created concurrently"
                    ) from exc
                _record_events(conn, detect_events(None, snapshot), now)
                return {"id": int(result.scalar_one()), **values}
            if existing["last_snapshot_id"] == snapshot.id:
                return dict(existing)
            if snapshot.scraped_at < existing["last_scraped_at"]:
                logger.info(
                    "Skipping stale snapshot %s for retailer %s product %s",
                    snapshot.id,
                    snapshot.retailer_id,
                    snapshot.product_id,
                )
                return dict(existing)
            changes = diff_state(existing, snapshot, now)
            conn.execute(update(current_inventory).where(current_inventory.c.id == existing["id"]).values(**changes))
            _record_events(conn, detect_events(existing, snapshot), now)
        return {**existing, **changes}

    def detect_removed(
        self,
        retailer_id: int,
        seen_product_ids: Iterable[int],
        *,
        batch_id: str,
        now: datetime | None = None,
    ) -> int:
        """Record ``removed`` events for listings missing from a complete menu scrape.

        A listing only counts once it has gone unrefreshed for ``REMOVED_AFTER``,
        and each disappearance is recorded once. Returns the number of events.
        """
        now = now or utc_now()
        seen = set(seen_product_ids)
        with self.engine.begin() as conn:
            stale = [
                row
                for row in conn.execute(
                    select(current_inventory).where(
                        current_inventory.c.retailer_id == retailer_id,
                        current_inventory.c.last_updated_at < now - REMOVED_AFTER,
                    )
                ).mappings()
                if row["product_id"] not in seen
            ]
            if not stale:
                return 0
            last_removed = dict(
                conn.execute(
                    select(inventory_events.c.product_id, func.max(inventory_events.c.occurred_at))
                    .where(
                        inventory_events.c.retailer_id == retailer_id,
                        inventory_events.c.event_type == "removed",
                        inventory_events.c.product_id.in_([row["product_id"] for row in stale]),
                    )
                    .group_by(inventory_events.c.product_id)
                ).all()
            )
            events = [
                {
                    "retailer_id": retailer_id,
                    "product_id": row["product_id"],
                    "brand_id": row["brand_id"],
                    "event_type": "removed",
                    "previous_value": {
                        "price_cents": row["current_price_cents"],
                        "in_stock": row["in_stock"],
                        "last_updated_at": _iso(row["last_updated_at"]),
                    },
                    "new_value": None,
                    "details": None,
                    "batch_id": batch_id,
                    "snapshot_id": None,
                }
                for row in stale
                if last_removed.get(row["product_id"]) is None
                or last_removed[row["product_id"]] < row["last_updated_at"]
            ]
            _record_events(conn, events, now)
        if events:
            logger.info("Retailer %s: %s listings removed from menu", retailer_id, len(events))
        return len(events)
