"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class Retailer:
    slug: str
    name: str
    region: str
    menu_sources: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ScrapedItem:
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


@dataclass(slots=True)
class RetailerResult:
    retailer_id: int
    status: str
    items: list[ScrapedItem] = field(default_factory=list)
    error: str | None = None
    status_code: int | None = None
    retries: int = 0
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    raw_response: str | None = None
    source_platform: str | None = None
    source_url: str | None = None


@dataclass(slots=True)
class ResolvedIdentity:
    brand_id: int
    product_id: int


@dataclass(slots=True)
class SnapshotRecord:
    id: int
    retailer_id: int
    product_id: int
    brand_id: int
    batch_id: str
    scraped_at: datetime
    price_cents: int
    in_stock: bool


@dataclass(slots=True)
class IngestSummary:
    batch_id: str
    processed: int = 0
    failed: int = 0
    dead_lettered_retailers: list[int] = field(default_factory=list)
