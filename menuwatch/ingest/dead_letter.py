"""Dead letter queue for scrape attempts that exhausted their retries."""

from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from menuwatch.db.tables import dead_letters, retailers
from menuwatch.errors import ConflictError, EntryNotFoundError, ScrapeFailure, classify_error
from menuwatch.utils.dates import utc_now
from menuwatch.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

DEAD_LETTER_PREVIEW_CHARS = int(os.environ.get("DEAD_LETTER_PREVIEW_CHARS", 1000))


def truncate_preview(raw_response: str | None, limit: int | None = None) -> str | None:
    if raw_response is None:
        return None
    return raw_response[: limit or DEAD_LETTER_PREVIEW_CHARS]


@dataclass(slots=True)
class DeadLetterStats:
    unresolved_count: int
    resolved_last_24h: int
    by_error_type: dict[str, int] = field(default_factory=dict)
    by_platform: dict[str, int] = field(default_factory=dict)
    oldest_unresolved: datetime | None = None


class DeadLetterQueue:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @retry_on_conflict
    def record_failure(
        self,
        *,
        retailer_id: int,
        batch_id: str,
        error: str | BaseException,
        status_code: int | None = None,
        total_retries: int = 0,
        first_attempt_at: datetime | None = None,
        last_attempt_at: datetime | None = None,
        raw_response: str | None = None,
        source_platform: str | None = None,
        source_url: str | None = None,
    ) -> int:
        """Merge into the retailer's open entry, or open one. Returns the entry id."""
        if status_code is None and isinstance(error, ScrapeFailure):
            status_code = error.status_code
        message = str(error)
        error_type = classify_error(message, status_code)
        last_attempt_at = last_attempt_at or utc_now()
        preview = truncate_preview(raw_response)
        with self.engine.begin() as conn:
            existing = _find_open_entry(conn, retailer_id)
            if existing:
                conn.execute(
                    update(dead_letters)
                    .where(dead_letters.c.id == existing["id"])
                    .values(
                        total_retries=existing["total_retries"] + total_retries,
                        error_message=message,
                        error_type=error_type,
                        status_code=status_code,
                        raw_response=preview,
                        last_attempt_at=last_attempt_at,
                    )
                )
                entry_id = existing["id"]
            else:
                retailer = conn.execute(
                    select(retailers.c.slug, retailers.c.name).where(retailers.c.id == retailer_id)
                ).mappings().first()
                if retailer is None:
                    raise EntryNotFoundError(f"Retailer {retailer_id} not found")
                try:
                    result = conn.execute(
                        insert(dead_letters)
                        .values(
                            retailer_id=retailer_id,
                            retailer_slug=retailer["slug"],
                            retailer_name=retailer["name"],
                            source_platform=source_platform or "unknown",
                            source_url=source_url or "",
                            batch_id=batch_id,
                            error_message=message,
                            error_type=error_type,
                            status_code=status_code,
                            total_retries=total_retries,
                            first_attempt_at=first_attempt_at or last_attempt_at,
                            last_attempt_at=last_attempt_at,
                            raw_response=preview,
                        )
                        .returning(dead_letters.c.id)
                    )
                except IntegrityError as exc:
                    raise ConflictError(f"Open dead letter for retailer {retailer_id} created concurrently") from exc
                entry_id = int(result.scalar_one())
        logger.warning(
            "Dead letter %s for retailer %s (%s): %s", entry_id, retailer_id, error_type, message
        )
        return entry_id

    def resolve(
        self,
        entry_id: int,
        resolution: str,
        *,
        resolved_by: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Mark an entry resolved. Returns False when it already was."""
        with self.engine.begin() as conn:
            entry = conn.execute(
                select(dead_letters.c.id, dead_letters.c.resolved_at, dead_letters.c.notes)
                .where(dead_letters.c.id == entry_id)
                .with_for_update()
            ).mappings().first()
            if entry is None:
                raise EntryNotFoundError(f"Dead letter {entry_id} not found")
            if entry["resolved_at"] is not None:
                logger.info("Dead letter %s already resolved", entry_id)
                return False
            conn.execute(
                update(dead_letters)
                .where(dead_letters.c.id == entry_id)
                .values(
                    resolved_at=now or utc_now(),
                    resolution=resolution,
                    resolved_by=resolved_by,
                    notes=_append_note(entry["notes"], notes),
                )
            )
        return True

    def bulk_resolve(
        self,
        entry_ids: Iterable[int],
        resolution: str,
        *,
        resolved_by: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Resolve each entry in its own transaction; unknown ids are skipped."""
        now = now or utc_now()
        resolved = 0
        for entry_id in entry_ids:
            try:
                if self.resolve(entry_id, resolution, resolved_by=resolved_by, notes=notes, now=now):
                    resolved += 1
            except EntryNotFoundError:
                logger.warning("Skipping unknown dead letter %s", entry_id)
        return resolved

    def add_note(self, entry_id: int, note: str) -> None:
        with self.engine.begin() as conn:
            current = conn.execute(
                select(dead_letters.c.notes).where(dead_letters.c.id == entry_id).with_for_update()
            ).first()
            if current is None:
                raise EntryNotFoundError(f"Dead letter {entry_id} not found")
            conn.execute(
                update(dead_letters).where(dead_letters.c.id == entry_id).values(notes=_append_note(current.notes, note))
            )

    def get(self, entry_id: int) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(dead_letters).where(dead_letters.c.id == entry_id)).mappings().first()
        return dict(row) if row else None

    def list_unresolved(self, *, limit: int = 50, error_type: str | None = None) -> list[dict[str, Any]]:
        stmt = select(dead_letters).where(dead_letters.c.resolved_at.is_(None))
        if error_type:
            stmt = stmt.where(dead_letters.c.error_type == error_type)
        stmt = stmt.order_by(dead_letters.c.last_attempt_at.desc(), dead_letters.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def for_retailer(self, retailer_id: int, *, include_resolved: bool = False) -> list[dict[str, Any]]:
        stmt = select(dead_letters).where(dead_letters.c.retailer_id == retailer_id)
        if not include_resolved:
            stmt = stmt.where(dead_letters.c.resolved_at.is_(None))
        stmt = stmt.order_by(dead_letters.c.last_attempt_at.desc(), dead_letters.c.id.desc())
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def stats(self, *, now: datetime | None = None) -> DeadLetterStats:
        now = now or utc_now()
        with self.engine.connect() as conn:
            unresolved = conn.execute(
                select(dead_letters.c.error_type, dead_letters.c.source_platform, dead_letters.c.last_attempt_at)
                .where(dead_letters.c.resolved_at.is_(None))
            ).all()
            resolved_recently = conn.execute(
                select(dead_letters.c.id).where(dead_letters.c.resolved_at >= now - timedelta(hours=24))
            ).all()
        return DeadLetterStats(
            unresolved_count=len(unresolved),
            resolved_last_24h=len(resolved_recently),
            by_error_type=dict(Counter(row.error_type for row in unresolved)),
            by_platform=dict(Counter(row.source_platform for row in unresolved)),
            oldest_unresolved=min((row.last_attempt_at for row in unresolved), default=None),
        )


def _find_open_entry(conn: Connection, retailer_id: int) -> Mapping[str, Any] | None:
    return conn.execute(
        select(dead_letters)
        .where(dead_letters.c.retailer_id == retailer_id, dead_letters.c.resolved_at.is_(None))
        .with_for_update()
    ).mappings().first()


def _append_note(existing: str | None, note: str | None) -> str | None:
    if not note:
        return existing
    return f"{existing}\n{note}" if existing else note
