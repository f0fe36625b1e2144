from datetime import datetime

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from menuwatch.db.tables import metadata, retailers
from menuwatch.ingest import load_retailers
from menuwatch.ingest.models import RetailerResult, ScrapedItem
from menuwatch.ingest.pipeline import BatchIngestor

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture()
def engine():
    # One shared connection so the in-memory database survives across transactions and threads.
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seeded_engine(engine):
    with engine.begin() as conn:
        for retailer in load_retailers():
            conn.execute(
                insert(retailers).values(
                    slug=retailer.slug,
                    name=retailer.name,
                    region=retailer.region,
                    menu_sources=retailer.menu_sources,
                    is_active=True,
                    first_seen_at=NOW,
                )
            )
    return engine


@pytest.fixture()
def make_item():
    def factory(**overrides) -> ScrapedItem:
        values = {
            "raw_product_name": "Blue Dream 3.5g",
            "raw_brand_name": "Tyson 2.0",
            "price": 45.0,
            "in_stock": True,
            "source_url": "https://hwcannabis.co/menu",
            "source_platform": "dutchie",
            "scraped_at": NOW,
            "raw_category": "Flower",
        }
        values.update(overrides)
        return ScrapedItem(**values)

    return factory


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def market(seeded_engine, make_item):
    """Tyson 2.0 in two regions and three listings; Jeeter at one NYC store."""
    results = [
        RetailerResult(
            1,
            "ok",
            items=[
                make_item(),
                make_item(raw_product_name="Gelato Pre-Roll 1g", raw_category="Pre-Rolls", price=12, in_stock=False),
            ],
        ),
        RetailerResult(
            2,
            "ok",
            items=[
                make_item(
                    raw_brand_name="Jeeter",
                    raw_product_name="Infused Gummies",
                    raw_category="Edibles",
                    price=20,
                    source_url="https://conbud.com/stores/conbud-les/products",
                )
            ],
        ),
        RetailerResult(3, "ok", items=[make_item(price=40, source_platform="jane")]),
    ]
    BatchIngestor(seeded_engine).ingest_batch("batch-1", results, now=NOW)
    return seeded_engine
