from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from menuwatch.db.tables import (
    current_inventory,
    dead_letters,
    inventory_events,
    menu_snapshots,
    retailers,
    scrape_jobs,
)
from menuwatch.errors import ConflictError
from menuwatch.ingest.models import RetailerResult
from menuwatch.ingest.pipeline import BatchIngestor


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


def _jobs(engine):
    with engine.connect() as conn:
        return conn.execute(select(scrape_jobs).order_by(scrape_jobs.c.id)).mappings().all()


def test_ok_batch_materializes_inventory(seeded_engine, make_item, now):
    results = [
        RetailerResult(
            retailer_id=1,
            status="ok",
            items=[
                make_item(),
                make_item(raw_product_name="Gelato Pre-Roll 1g", raw_category="Pre-Rolls", price=12),
            ],
        ),
        RetailerResult(retailer_id=3, status="ok", items=[make_item(source_platform="jane")]),
    ]
    summary = BatchIngestor(seeded_engine).ingest_batch("batch-1", results, now=now)

    assert summary.processed == 3
    assert summary.failed == 0
    assert summary.dead_lettered_retailers == []
    assert _count(seeded_engine, menu_snapshots) == 3
    assert _count(seeded_engine, current_inventory) == 3
    assert [job["status"] for job in _jobs(seeded_engine)] == ["completed", "completed"]
    with seeded_engine.connect() as conn:
        sources = conn.execute(select(retailers.c.menu_sources).where(retailers.c.id == 1)).scalar_one()
    assert sources[0]["scrape_status"] == "completed"
    assert sources[0]["last_scraped_at"] == now.isoformat()


def test_reingesting_batch_keeps_one_row_per_pair(seeded_engine, make_item, now):
    ingestor = BatchIngestor(seeded_engine)
    results = [RetailerResult(retailer_id=1, status="ok", items=[make_item(price=45)])]
    ingestor.ingest_batch("batch-1", results, now=now)
    ingestor.ingest_batch("batch-1", results, now=now + timedelta(minutes=5))
    with seeded_engine.connect() as conn:
        (row,) = conn.execute(select(current_inventory)).mappings().all()
    assert row["previous_price_cents"] is None
    assert row["price_changed_at"] is None
    assert _count(seeded_engine, menu_snapshots) == 2


def test_error_result_goes_to_dead_letters(seeded_engine, now):
    results = [
        RetailerResult(
            retailer_id=2,
            status="error",
            error="Too many requests",
            status_code=429,
            retries=3,
            first_attempt_at=now - timedelta(minutes=10),
            last_attempt_at=now,
            raw_response="<html>slow down</html>",
            source_platform="dutchie",
            source_url="https://conbud.com/stores/conbud-les/products",
        )
    ]
    summary = BatchIngestor(seeded_engine).ingest_batch("batch-1", results, now=now)

    assert summary.dead_lettered_retailers == [2]
    with seeded_engine.connect() as conn:
        (entry,) = conn.execute(select(dead_letters)).mappings().all()
    assert entry["error_type"] == "rate_limit"
    assert entry["total_retries"] == 3
    assert entry["raw_response"] == "<html>slow down</html>"
    assert entry["first_attempt_at"] == now - timedelta(minutes=10)
    (job,) = _jobs(seeded_engine)
    assert job["status"] == "failed"
    assert job["error_message"] == "Too many requests"


def test_bad_item_is_diverted_and_batch_continues(seeded_engine, make_item, now):
    results = [
        RetailerResult(
            retailer_id=1,
            status="ok",
            items=[make_item(raw_brand_name="   "), make_item(), make_item(raw_product_name="Cart 1g", price="free")],
        ),
        RetailerResult(retailer_id=2, status="ok", items=[make_item()]),
    ]
    summary = BatchIngestor(seeded_engine).ingest_batch("batch-1", results, now=now)

    assert summary.processed == 2
    assert summary.failed == 2
    assert summary.dead_lettered_retailers == [1]
    with seeded_engine.connect() as conn:
        entries = conn.execute(select(dead_letters)).mappings().all()
    assert len(entries) == 1
    assert entries[0]["retailer_id"] == 1
    assert entries[0]["error_type"] == "parse_error"
    assert entries[0]["error_message"].startswith("Could not parse item 'Cart 1g'")
    assert [job["status"] for job in _jobs(seeded_engine)] == ["partial", "completed"]
    assert _count(seeded_engine, current_inventory) == 2


def test_database_failure_aborts_rest_of_retailer(seeded_engine, make_item, now, monkeypatch):
    ingestor = BatchIngestor(seeded_engine)
    real_append = ingestor.snapshot_log.append
    calls = []

    def flaky_append(*args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise OperationalError("INSERT INTO menu_snapshots", {}, Exception("disk I/O error"))
        return real_append(*args, **kwargs)

    monkeypatch.setattr(ingestor.snapshot_log, "append", flaky_append)
    items = [make_item(raw_product_name=f"Blue Dream {n}g") for n in (1, 2, 3)]
    summary = ingestor.ingest_batch(
        "batch-1",
        [RetailerResult(1, "ok", items=items), RetailerResult(2, "ok", items=[make_item()])],
        now=now,
    )

    assert summary.processed == 2
    assert summary.failed == 2
    with seeded_engine.connect() as conn:
        (entry,) = conn.execute(select(dead_letters)).mappings().all()
    assert entry["error_message"].startswith("Ingestion aborted after 1 of 3 items")
    assert [job["status"] for job in _jobs(seeded_engine)] == ["partial", "completed"]


def test_materialization_failure_is_diverted(seeded_engine, make_item, now, monkeypatch):
    ingestor = BatchIngestor(seeded_engine)

    def conflicted(snapshot, now):
        raise ConflictError("still colliding")

    monkeypatch.setattr(ingestor.materializer, "_apply", conflicted)
    summary = ingestor.ingest_batch("batch-1", [RetailerResult(1, "ok", items=[make_item()])], now=now)

    assert summary.failed == 1
    assert _count(seeded_engine, menu_snapshots) == 1
    assert _count(seeded_engine, current_inventory) == 0
    with seeded_engine.connect() as conn:
        (entry,) = conn.execute(select(dead_letters)).mappings().all()
    assert entry["error_message"].startswith("Could not materialize snapshot")
    assert entry["error_type"] == "unknown"


def test_identity_conflict_is_diverted_and_batch_continues(seeded_engine, make_item, now, monkeypatch):
    ingestor = BatchIngestor(seeded_engine)
    real_resolve = ingestor.resolver.resolve

    def colliding(item, *, now=None):
        if item.raw_brand_name == "Jeeter":
            raise ConflictError("Brand 'jeeter' was created concurrently")
        return real_resolve(item, now=now)

    monkeypatch.setattr(ingestor.resolver, "resolve", colliding)
    results = [
        RetailerResult(1, "ok", items=[make_item(raw_brand_name="Jeeter", raw_product_name="Baby Jeeter"), make_item()]),
        RetailerResult(2, "ok", items=[make_item()]),
    ]
    summary = ingestor.ingest_batch("batch-1", results, now=now)

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.dead_lettered_retailers == [1]
    assert _count(seeded_engine, current_inventory) == 2
    with seeded_engine.connect() as conn:
        (entry,) = conn.execute(select(dead_letters)).mappings().all()
    assert entry["retailer_id"] == 1
    assert "created concurrently" in entry["error_message"]
    assert [job["status"] for job in _jobs(seeded_engine)] == ["partial", "completed"]


def test_dead_letter_conflict_does_not_abort_batch(seeded_engine, make_item, now, monkeypatch):
    ingestor = BatchIngestor(seeded_engine)

    def colliding(**kwargs):
        raise ConflictError("Open dead letter for retailer 1 was created concurrently")

    monkeypatch.setattr(ingestor.dead_letters, "record_failure", colliding)
    results = [
        RetailerResult(1, "error", error="Request timeout"),
        RetailerResult(2, "ok", items=[make_item()]),
    ]
    summary = ingestor.ingest_batch("batch-1", results, now=now)

    assert summary.dead_lettered_retailers == []
    assert summary.processed == 1
    assert _count(seeded_engine, current_inventory) == 1
    assert [job["status"] for job in _jobs(seeded_engine)] == ["failed", "completed"]


def test_listing_missing_from_menu_is_marked_removed(seeded_engine, make_item, now):
    ingestor = BatchIngestor(seeded_engine)
    gelato = make_item(raw_product_name="Gelato Pre-Roll 1g", raw_category="Pre-Rolls", price=12)
    ingestor.ingest_batch("batch-1", [RetailerResult(1, "ok", items=[make_item(), gelato])], now=now)
    for minutes, batch_id in ((30, "batch-2"), (120, "batch-3"), (180, "batch-4")):
        later = now + timedelta(minutes=minutes)
        ingestor.ingest_batch(batch_id, [RetailerResult(1, "ok", items=[make_item(scraped_at=later)])], now=later)

    with seeded_engine.connect() as conn:
        removed = conn.execute(
            select(inventory_events).where(inventory_events.c.event_type == "removed")
        ).mappings().all()
    assert len(removed) == 1
    assert removed[0]["batch_id"] == "batch-3"
    assert removed[0]["previous_value"]["price_cents"] == 1200
    assert removed[0]["snapshot_id"] is None
    assert _count(seeded_engine, current_inventory) == 2


def test_failed_menu_does_not_mark_removals(seeded_engine, make_item, now):
    ingestor = BatchIngestor(seeded_engine)
    gelato = make_item(raw_product_name="Gelato Pre-Roll 1g", raw_category="Pre-Rolls", price=12)
    ingestor.ingest_batch("batch-1", [RetailerResult(1, "ok", items=[make_item(), gelato])], now=now)
    later = now + timedelta(hours=2)
    partial = [make_item(scraped_at=later), make_item(raw_brand_name="", scraped_at=later)]
    ingestor.ingest_batch("batch-2", [RetailerResult(1, "ok", items=partial)], now=later)
    ingestor.ingest_batch("batch-3", [RetailerResult(1, "ok", items=[])], now=later)

    with seeded_engine.connect() as conn:
        types = conn.execute(select(inventory_events.c.event_type)).scalars().all()
    assert "removed" not in types
