"""Scrape batch ingestion: resolve, log, materialize, divert failures."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from menuwatch.db.tables import retailers, scrape_jobs
from menuwatch.errors import (
    ConflictError,
    EntryNotFoundError,
    MaterializationError,
    NormalizationError,
    ScrapeFailure,
)
from menuwatch.ingest.dead_letter import DeadLetterQueue
from menuwatch.ingest.identity import IdentityResolver
from menuwatch.ingest.materializer import InventoryMaterializer
from menuwatch.ingest.models import IngestSummary, RetailerResult, ScrapedItem
from menuwatch.ingest.snapshots import SnapshotLog
from menuwatch.utils.dates import utc_now

logger = logging.getLogger(__name__)


class BatchIngestor:
    """Entry point for completed scrape batches.

    Retailers are processed one after another and each retailer's items in
    order. A failing item or retailer is recorded in the dead letter queue and
    never aborts the batch; work already committed is kept.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        resolver: IdentityResolver | None = None,
        snapshot_log: SnapshotLog | None = None,
        materializer: InventoryMaterializer | None = None,
        dead_letters: DeadLetterQueue | None = None,
    ) -> None:
        self.engine = engine
        self.resolver = resolver or IdentityResolver(engine)
        self.snapshot_log = snapshot_log or SnapshotLog(engine)
        self.materializer = materializer or InventoryMaterializer(engine, self.snapshot_log)
        self.dead_letters = dead_letters or DeadLetterQueue(engine)

    def ingest_batch(
        self,
        batch_id: str,
        results: Iterable[RetailerResult],
        *,
        now: datetime | None = None,
    ) -> IngestSummary:
        now = now or utc_now()
        summary = IngestSummary(batch_id=batch_id)
        for result in results:
            if result.status == "ok":
                self._ingest_retailer(batch_id, result, summary, now)
            else:
                self._divert_failed_scrape(batch_id, result, summary, now)
        logger.info(
            "Batch %s: %s items processed, %s failed, %s retailers dead-lettered",
            batch_id,
            summary.processed,
            summary.failed,
            len(summary.dead_lettered_retailers),
        )
        return summary

    def _ingest_retailer(self, batch_id: str, result: RetailerResult, summary: IngestSummary, now: datetime) -> None:
        items = result.items
        failed = 0
        seen: set[int] = set()
        logger.info("Ingesting %s items for retailer %s", len(items), result.retailer_id)
        for index, item in enumerate(items):
            try:
                seen.add(self._ingest_item(batch_id, result.retailer_id, item, now))
            except NormalizationError as exc:
                failed += 1
                self._divert(
                    batch_id,
                    result,
                    summary,
                    f"Could not parse item {item.raw_product_name!r}: {exc}",
                    item=item,
                    now=now,
                )
            except (MaterializationError, ConflictError) as exc:
                failed += 1
                self._divert(batch_id, result, summary, str(exc), item=item, now=now)
            except SQLAlchemyError as exc:
                logger.exception(
                    "Aborting retailer %s after %s of %s items", result.retailer_id, index, len(items)
                )
                failed += len(items) - index
                self._divert(
                    batch_id,
                    result,
                    summary,
                    f"Ingestion aborted after {index} of {len(items)} items: {exc}",
                    item=item,
                    now=now,
                )
                break
        # Only a menu ingested without failures is complete enough to infer removals.
        if items and failed == 0:
            self._detect_removed(batch_id, result.retailer_id, seen, now)
        summary.processed += len(items) - failed
        summary.failed += failed
        status = "completed" if failed == 0 else "partial"
        platform, url = _source_of(result)
        self._finish_retailer(batch_id, result.retailer_id, platform, url, status, len(items), failed, None, now)

    def _ingest_item(self, batch_id: str, retailer_id: int, item: ScrapedItem, now: datetime) -> int:
        identity = self.resolver.resolve(item, now=now)
        snapshot = self.snapshot_log.append(identity, retailer_id, item, batch_id, now=now)
        self.materializer.apply(snapshot, now=now)
        return identity.product_id

    def _detect_removed(self, batch_id: str, retailer_id: int, seen: set[int], now: datetime) -> None:
        try:
            self.materializer.detect_removed(retailer_id, seen, batch_id=batch_id, now=now)
        except SQLAlchemyError:
            logger.exception("Could not detect removed listings for retailer %s", retailer_id)

    def _divert_failed_scrape(
        self, batch_id: str, result: RetailerResult, summary: IngestSummary, now: datetime
    ) -> None:
        failure = ScrapeFailure(result.error or "Scrape failed", status_code=result.status_code)
        platform, url = _source_of(result)
        logger.warning("Scrape failed for retailer %s (%s): %s", result.retailer_id, failure.error_type, failure)
        self._record(
            batch_id,
            result.retailer_id,
            summary,
            error=failure,
            total_retries=result.retries,
            first_attempt_at=result.first_attempt_at,
            last_attempt_at=result.last_attempt_at or now,
            raw_response=result.raw_response,
            source_platform=platform,
            source_url=url,
        )
        summary.failed += len(result.items)
        self._finish_retailer(
            batch_id, result.retailer_id, platform, url, "failed", 0, len(result.items), str(failure), now
        )

    def _divert(
        self,
        batch_id: str,
        result: RetailerResult,
        summary: IngestSummary,
        message: str,
        *,
        item: ScrapedItem,
        now: datetime,
    ) -> None:
        logger.warning("Diverting item for retailer %s: %s", result.retailer_id, message)
        self._record(
            batch_id,
            result.retailer_id,
            summary,
            error=message,
            last_attempt_at=now,
            source_platform=item.source_platform,
            source_url=item.source_url,
        )

    def _record(self, batch_id: str, retailer_id: int, summary: IngestSummary, **kwargs) -> None:
        try:
            self.dead_letters.record_failure(retailer_id=retailer_id, batch_id=batch_id, **kwargs)
        except (SQLAlchemyError, ConflictError, EntryNotFoundError):
            logger.exception("Could not record dead letter for retailer %s", retailer_id)
            return
        if retailer_id not in summary.dead_lettered_retailers:
            summary.dead_lettered_retailers.append(retailer_id)

    def _finish_retailer(
        self,
        batch_id: str,
        retailer_id: int,
        platform: str,
        url: str,
        status: str,
        scraped: int,
        failed: int,
        error_message: str | None,
        now: datetime,
    ) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(scrape_jobs).values(
                        retailer_id=retailer_id,
                        batch_id=batch_id,
                        source_platform=platform,
                        source_url=url,
                        status=status,
                        items_scraped=scraped,
                        items_failed=failed,
                        error_message=error_message,
                        started_at=now,
                        completed_at=utc_now(),
                    )
                )
                _touch_menu_source(conn, retailer_id, platform, status, now)
        except SQLAlchemyError:
            logger.exception("Could not log scrape job for retailer %s in batch %s", retailer_id, batch_id)


def _source_of(result: RetailerResult) -> tuple[str, str]:
    if result.items:
        first = result.items[0]
        return first.source_platform, first.source_url
    return result.source_platform or "unknown", result.source_url or ""


def _touch_menu_source(conn, retailer_id: int, platform: str, status: str, now: datetime) -> None:
    row = conn.execute(
        select(retailers.c.menu_sources).where(retailers.c.id == retailer_id).with_for_update()
    ).first()
    if row is None:
        return
    sources = [dict(source) for source in row.menu_sources or []]
    touched = False
    for source in sources:
        if source.get("platform") == platform:
            source["last_scraped_at"] = now.isoformat()
            source["scrape_status"] = status
            touched = True
    if touched:
        conn.execute(update(retailers).where(retailers.c.id == retailer_id).values(menu_sources=sources))