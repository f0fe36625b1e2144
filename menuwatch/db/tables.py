"""Table definitions shared by the pipeline, migrations and tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    text,
)

metadata = MetaData()

retailers = Table(
    "retailers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slug", Text, nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("region", Text, nullable=False),
    Column("menu_sources", JSON, nullable=False, default=list),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("first_seen_at", DateTime, nullable=False),
    Index("ix_retailers_region", "region"),
)

brands = Table(
    "brands",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("normalized_name", Text, nullable=False, unique=True),
    Column("aliases", JSON, nullable=False, default=list),
    Column("category", Text),
    Column("is_verified", Boolean, nullable=False, default=False),
    Column("first_seen_at", DateTime, nullable=False),
    Column("merged_into_id", Integer, ForeignKey("brands.id")),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("normalized_name", Text, nullable=False),
    Column("category", Text, nullable=False),
    Column("subcategory", Text),
    Column("strain", Text),
    Column("weight_amount", Float),
    Column("weight_unit", Text),
    Column("thc_min", Float),
    Column("thc_max", Float),
    Column("cbd_min", Float),
    Column("cbd_max", Float),
    Column("image_url", Text),
    Column("first_seen_at", DateTime, nullable=False),
    Column("last_seen_at", DateTime, nullable=False),
    Column("merged_into_id", Integer, ForeignKey("products.id")),
    UniqueConstraint("brand_id", "normalized_name", name="uq_products_brand_name"),
    Index("ix_products_category", "category"),
)

menu_snapshots = Table(
    "menu_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("retailer_id", Integer, ForeignKey("retailers.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("batch_id", Text, nullable=False),
    Column("scraped_at", DateTime, nullable=False),
    Column("ingested_at", DateTime, nullable=False),
    Column("price_cents", Integer, nullable=False),
    Column("original_price_cents", Integer),
    Column("is_on_sale", Boolean, nullable=False, default=False),
    Column("discount_percent", Integer),
    Column("in_stock", Boolean, nullable=False),
    Column("source_url", Text, nullable=False),
    Column("source_platform", Text, nullable=False),
    Column("raw_product_name", Text, nullable=False),
    Column("raw_brand_name", Text),
    Column("raw_category", Text),
    Index("ix_snapshots_retailer_time", "retailer_id", "scraped_at"),
    Index("ix_snapshots_product_time", "product_id", "scraped_at"),
    Index("ix_snapshots_retailer_product", "retailer_id", "product_id"),
    Index("ix_snapshots_batch", "batch_id"),
)

current_inventory = Table(
    "current_inventory",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("retailer_id", Integer, ForeignKey("retailers.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("current_price_cents", Integer, nullable=False),
    Column("previous_price_cents", Integer),
    Column("price_changed_at", DateTime),
    Column("in_stock", Boolean, nullable=False),
    Column("last_in_stock_at", DateTime),
    Column("out_of_stock_since", DateTime),
    Column("days_on_menu", Integer, nullable=False, default=0),
    Column("first_seen_at", DateTime, nullable=False),
    Column("last_updated_at", DateTime, nullable=False),
    Column("last_scraped_at", DateTime, nullable=False),
    Column("last_snapshot_id", Integer, ForeignKey("menu_snapshots.id"), nullable=False),
    UniqueConstraint("retailer_id", "product_id", name="uq_inventory_retailer_product"),
    Index("ix_inventory_brand", "brand_id"),
    Index("ix_inventory_product", "product_id"),
    Index("ix_inventory_stock_brand", "in_stock", "brand_id"),
    Index("ix_inventory_price_changed", "price_changed_at"),
)

brand_analytics = Table(
    "brand_analytics",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("region", Text, nullable=False),
    Column("period", Text, nullable=False),
    Column("period_start", DateTime, nullable=False),
    Column("period_end", DateTime, nullable=False),
    Column("total_retailers_carrying", Integer, nullable=False),
    Column("total_skus_listed", Integer, nullable=False),
    Column("avg_price_cents", Float, nullable=False),
    Column("min_price_cents", Integer, nullable=False),
    Column("max_price_cents", Integer, nullable=False),
    Column("out_of_stock_count", Integer, nullable=False),
    Column("avg_days_on_menu", Float, nullable=False),
    Column("category_breakdown", JSON),
    Column("computed_at", DateTime, nullable=False),
    UniqueConstraint("brand_id", "region", "period", "period_start", name="uq_brand_analytics_key"),
    Index("ix_brand_analytics_region_period", "region", "period", "period_start"),
)

dead_letters = Table(
    "dead_letters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("retailer_id", Integer, ForeignKey("retailers.id"), nullable=False),
    Column("retailer_slug", Text, nullable=False),
    Column("retailer_name", Text, nullable=False),
    Column("source_platform", Text, nullable=False),
    Column("source_url", Text, nullable=False),
    Column("batch_id", Text, nullable=False),
    Column("error_message", Text, nullable=False),
    Column("error_type", Text, nullable=False),
    Column("status_code", Integer),
    Column("total_retries", Integer, nullable=False, default=0),
    Column("first_attempt_at", DateTime, nullable=False),
    Column("last_attempt_at", DateTime, nullable=False),
    Column("raw_response", Text),
    Column("resolved_at", DateTime),
    Column("resolution", Text),
    Column("resolved_by", Text),
    Column("notes", Text),
    Index("ix_dead_letters_retailer", "retailer_id"),
    Index("ix_dead_letters_error_type", "error_type"),
    Index(
        "uq_dead_letters_open_retailer",
        "retailer_id",
        unique=True,
        sqlite_where=text("resolved_at IS NULL"),
        postgresql_where=text("resolved_at IS NULL"),
    ),
)

scrape_jobs = Table(
    "scrape_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("retailer_id", Integer, ForeignKey("retailers.id"), nullable=False),
    Column("batch_id", Text, nullable=False),
    Column("source_platform", Text, nullable=False),
    Column("source_url", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("items_scraped", Integer, nullable=False, default=0),
    Column("items_failed", Integer, nullable=False, default=0),
    Column("error_message", Text),
    Column("started_at", DateTime, nullable=False),
    Column("completed_at", DateTime, nullable=False),
    Index("ix_scrape_jobs_batch", "batch_id"),
    Index("ix_scrape_jobs_retailer_time", "retailer_id", "started_at"),
)

inventory_events = Table(
    "inventory_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("retailer_id", Integer, ForeignKey("retailers.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("event_type", Text, nullable=False),
    Column("previous_value", JSON),
    Column("new_value", JSON),
    Column("details", JSON),
    Column("batch_id", Text, nullable=False),
    Column("snapshot_id", Integer, ForeignKey("menu_snapshots.id")),
    Column("occurred_at", DateTime, nullable=False),
    Index("ix_inventory_events_time", "occurred_at"),
    Index("ix_inventory_events_retailer_time", "retailer_id", "occurred_at"),
    Index("ix_inventory_events_product_time", "product_id", "occurred_at"),
    Index("ix_inventory_events_type", "event_type"),
)
