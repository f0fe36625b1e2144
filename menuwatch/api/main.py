"""FastAPI application for batch ingestion, brand intelligence and dead letter triage."""

from __future__ import annotations

import functools
import logging
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from menuwatch.db.session import create_engine_from_env
from menuwatch.errors import ERROR_TYPES, EntryNotFoundError
from menuwatch.ingest.dead_letter import DeadLetterQueue
from menuwatch.ingest.identity import IdentityResolver
from menuwatch.ingest.models import RetailerResult, ScrapedItem
from menuwatch.ingest.pipeline import BatchIngestor
from menuwatch.logic.analytics import compute_brand_analytics, list_brand_analytics
from menuwatch.logic.brands import brand_detail, compare_brands, trending_brands
from menuwatch.ingest.materializer import EVENT_TYPES
from menuwatch.logic.feeds import inventory_events_feed, out_of_stock_feed, price_change_feed, price_history
from menuwatch.utils.dates import PERIODS, period_bounds, to_utc_naive

logger = logging.getLogger(__name__)

app = FastAPI(title="Menuwatch API")


class ScrapedItemIn(BaseModel):
    raw_product_name: str
    raw_brand_name: str
    price: float
    in_stock: bool
    source_url: str
    source_platform: str
    scraped_at: datetime
    raw_category: str | None = None
    subcategory: str | None = None
    strain_type: str | None = None
    original_price: float | None = None
    image_url: str | None = None
    thc_formatted: str | None = None
    cbd_formatted: str | None = None


class RetailerResultIn(BaseModel):
    retailer_id: int
    status: Literal["ok", "error"]
    items: list[ScrapedItemIn] = Field(default_factory=list)
    error: str | None = None
    status_code: int | None = None
    retries: int = 0
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    raw_response: str | None = None
    source_platform: str | None = None
    source_url: str | None = None

    def to_result(self) -> RetailerResult:
        fields = self.model_dump(exclude={"items"})
        return RetailerResult(items=[ScrapedItem(**item.model_dump()) for item in self.items], **fields)


class BatchRequest(BaseModel):
    batch_id: str
    results: list[RetailerResultIn]


class MergeRequest(BaseModel):
    target_id: int


class ResolveRequest(BaseModel):
    resolution: str
    resolved_by: str | None = None
    notes: str | None = None


class BulkResolveRequest(ResolveRequest):
    ids: list[int]


class NoteRequest(BaseModel):
    note: str


class RecomputeRequest(BaseModel):
    period: str = "daily"
    as_of: date | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


@functools.lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine_from_env()


@app.post("/ingest/batches")
def ingest_batches(payload: BatchRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    summary = BatchIngestor(engine).ingest_batch(payload.batch_id, [r.to_result() for r in payload.results])
    return asdict(summary)


@app.get("/brands/trending")
async def brands_trending(
    region: str | None = None,
    period: str = "weekly",
    category: str | None = None,
    limit: int = Query(10, ge=1, le=100),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    if period not in PERIODS:
        raise HTTPException(status_code=400, detail="Invalid period")
    report = trending_brands(engine, region=region, period=period, category=category, limit=limit)
    return asdict(report)


@app.get("/brands/compare")
async def brands_compare(
    brand_ids: str = Query(...),
    region: str | None = None,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        ids = [int(part) for part in brand_ids.split(",") if part.strip()]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="brand_ids must be comma separated integers") from exc
    if not ids:
        raise HTTPException(status_code=400, detail="brand_ids is required")
    return {"brands": [asdict(m) for m in compare_brands(engine, ids, region=region)]}


@app.get("/brands/{brand_id}")
async def brand(brand_id: int, region: str | None = None, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    detail = brand_detail(engine, brand_id, region=region)
    if detail is None:
        raise HTTPException(status_code=404, detail="Brand not found")
    return asdict(detail)


@app.post("/brands/{brand_id}/merge")
def merge_brand(brand_id: int, payload: MergeRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    try:
        moved = IdentityResolver(engine).merge_brands(brand_id, payload.target_id)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"target_id": payload.target_id, "products_moved": moved}


@app.get("/feeds/price-changes")
async def price_changes(
    hours: int | None = Query(None, ge=1),
    limit: int = Query(50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    return {"changes": [asdict(c) for c in price_change_feed(engine, hours=hours, limit=limit)]}


@app.get("/feeds/out-of-stock")
async def out_of_stock(
    brand_id: int | None = None,
    region: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    return {"items": out_of_stock_feed(engine, brand_id=brand_id, region=region, limit=limit)}


@app.get("/feeds/events")
async def inventory_events(
    event_type: list[str] | None = Query(None),
    region: str | None = None,
    retailer_id: int | None = None,
    product_id: int | None = None,
    limit: int = Query(100, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    if event_type and any(kind not in EVENT_TYPES for kind in event_type):
        raise HTTPException(status_code=400, detail="Unknown event type")
    events = inventory_events_feed(
        engine,
        event_types=event_type,
        region=region,
        retailer_id=retailer_id,
        product_id=product_id,
        limit=limit,
    )
    return {"events": events}


@app.get("/products/{product_id}/price-history")
async def product_price_history(
    product_id: int,
    retailer_id: int | None = None,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    history = price_history(engine, product_id, retailer_id=retailer_id, days=days, limit=limit)
    if history is None:
        raise HTTPException(status_code=404, detail="Product not found")
    stats = history["stats"]
    return {**history, "stats": asdict(stats) if stats else None}


@app.get("/brands/{brand_id}/analytics")
async def brand_analytics(
    brand_id: int,
    region: str | None = None,
    period: str | None = None,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    return {"rows": list_brand_analytics(engine, brand_id=brand_id, region=region, period=period)}


@app.get("/dead-letters")
async def dead_letters(
    error_type: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    if error_type is not None and error_type not in ERROR_TYPES:
        raise HTTPException(status_code=400, detail="Unknown error type")
    return {"entries": DeadLetterQueue(engine).list_unresolved(limit=limit, error_type=error_type)}


@app.get("/dead-letters/stats")
async def dead_letter_stats(engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    return asdict(DeadLetterQueue(engine).stats())


@app.get("/retailers/{retailer_id}/dead-letters")
async def retailer_dead_letters(
    retailer_id: int,
    include_resolved: bool = False,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    return {"entries": DeadLetterQueue(engine).for_retailer(retailer_id, include_resolved=include_resolved)}


@app.post("/dead-letters/resolve")
def bulk_resolve(payload: BulkResolveRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    resolved = DeadLetterQueue(engine).bulk_resolve(
        payload.ids, payload.resolution, resolved_by=payload.resolved_by, notes=payload.notes
    )
    return {"resolved": resolved}


@app.post("/dead-letters/{entry_id}/resolve")
async def resolve(entry_id: int, payload: ResolveRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    try:
        changed = DeadLetterQueue(engine).resolve(
            entry_id, payload.resolution, resolved_by=payload.resolved_by, notes=payload.notes
        )
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not changed:
        raise HTTPException(status_code=409, detail="Dead letter already resolved")
    return {"id": entry_id, "status": "resolved"}


@app.post("/dead-letters/{entry_id}/notes")
async def add_note(entry_id: int, payload: NoteRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    try:
        DeadLetterQueue(engine).add_note(entry_id, payload.note)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"id": entry_id, "status": "ok"}


@app.post("/analytics/recompute")
def recompute_analytics(payload: RecomputeRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    if payload.period not in PERIODS:
        raise HTTPException(status_code=400, detail="Invalid period")
    if (payload.period_start is None) != (payload.period_end is None):
        raise HTTPException(status_code=400, detail="period_start and period_end must be given together")
    if payload.period_start is not None:
        period_start, period_end = to_utc_naive(payload.period_start), to_utc_naive(payload.period_end)
    else:
        period_start, period_end = period_bounds(payload.period, payload.as_of)
    try:
        rows = compute_brand_analytics(engine, payload.period, period_start, period_end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Manual analytics recompute for %s wrote %s rows", payload.period, rows)
    return {"period": payload.period, "period_start": period_start, "period_end": period_end, "rows": rows}
