from datetime import timedelta

from sqlalchemy import select, update

from menuwatch.db.tables import brands, products, retailers
from menuwatch.ingest.models import RetailerResult
from menuwatch.ingest.pipeline import BatchIngestor
from menuwatch.logic.brands import brand_detail, compare_brands, trending_brands
from menuwatch.logic.feeds import inventory_events_feed, out_of_stock_feed, price_change_feed, price_history


def _id(engine, table, name):
    with engine.connect() as conn:
        return conn.execute(select(table.c.id).where(table.c.name == name)).scalar_one()


def _reprice(engine, make_item, when):
    results = [
        RetailerResult(1, "ok", items=[make_item(price=40, scraped_at=when)]),
        RetailerResult(
            2,
            "ok",
            items=[
                make_item(
                    raw_brand_name="Jeeter",
                    raw_product_name="Infused Gummies",
                    raw_category="Edibles",
                    price=25,
                    scraped_at=when,
                )
            ],
        ),
        RetailerResult(3, "ok", items=[make_item(price=40, in_stock=False, scraped_at=when, source_platform="jane")]),
    ]
    BatchIngestor(engine).ingest_batch("batch-2", results, now=when)


def test_trending_ranks_by_distribution(market):
    report = trending_brands(market)
    assert report.region == "statewide"
    assert report.period == "weekly"
    assert [entry.metrics.brand_name for entry in report.brands] == ["Tyson 2.0", "Jeeter"]
    top = report.brands[0]
    assert top.rank == 1
    assert top.metrics.retailer_count == 2
    assert top.metrics.sku_count == 3
    assert top.metrics.out_of_stock_count == 1
    assert top.metrics.velocity == 0.3333


def test_trending_filters(market):
    nyc = trending_brands(market, region="nyc")
    assert [(e.metrics.brand_name, e.metrics.retailer_count) for e in nyc.brands] == [("Tyson 2.0", 1), ("Jeeter", 1)]
    flower = trending_brands(market, category="flower")
    assert [e.metrics.brand_name for e in flower.brands] == ["Tyson 2.0"]
    assert flower.brands[0].metrics.sku_count == 2
    assert len(trending_brands(market, limit=1).brands) == 1


def test_brand_detail(market):
    detail = brand_detail(market, _id(market, brands, "Tyson 2.0"))
    assert detail.metrics.in_stock_count == 2
    assert detail.metrics.stock_rate == 66.7
    assert detail.metrics.min_price_cents == 1200
    assert detail.metrics.max_price_cents == 4500
    assert [r["name"] for r in detail.retailers] == ["Gotham Buds", "Housing Works Cannabis Co"]
    assert brand_detail(market, 999) is None


def test_brand_detail_with_no_listings_in_region(market):
    detail = brand_detail(market, _id(market, brands, "Jeeter"), region="long_island")
    assert detail.metrics.sku_count == 0
    assert detail.retailers == []


def test_compare_brands_keeps_request_order(market):
    tyson, jeeter = _id(market, brands, "Tyson 2.0"), _id(market, brands, "Jeeter")
    compared = compare_brands(market, [jeeter, 999, tyson])
    assert [m.brand_id for m in compared] == [jeeter, tyson]
    assert compared[0].avg_price_cents == 2000


def test_price_change_feed(market, make_item, now):
    later = now + timedelta(hours=3)
    _reprice(market, make_item, later)
    feed = price_change_feed(market, hours=24, now=later)
    assert [(c.product_name, c.change_percent, c.direction) for c in feed] == [
        ("Infused Gummies", 25.0, "up"),
        ("Blue Dream 3.5g", -11.1, "down"),
    ]
    assert feed[1].previous_price_cents == 4500
    assert price_change_feed(market, hours=1, now=later + timedelta(hours=2)) == []


def test_out_of_stock_feed(market, make_item, now):
    later = now + timedelta(hours=3)
    _reprice(market, make_item, later)
    feed = out_of_stock_feed(market)
    assert [(row["product_name"], row["retailer_name"]) for row in feed] == [
        ("Blue Dream 3.5g", "Gotham Buds"),
        ("Gelato Pre-Roll 1g", "Housing Works Cannabis Co"),
    ]
    assert feed[0]["out_of_stock_since"] == later
    assert [row["region"] for row in out_of_stock_feed(market, region="nyc")] == ["nyc"]
    assert out_of_stock_feed(market, brand_id=_id(market, brands, "Jeeter")) == []


def test_price_history(market, make_item, now):
    later = now + timedelta(hours=3)
    _reprice(market, make_item, later)
    product_id = _id(market, products, "Blue Dream 3.5g")
    history = price_history(market, product_id, retailer_id=1, now=later)
    assert history["product"]["brand_name"] == "Tyson 2.0"
    assert [point["price_cents"] for point in history["timeline"]] == [4500, 4000]
    assert history["stats"].min_price == 4000
    assert history["stats"].data_points == 2
    everywhere = price_history(market, product_id, now=later)
    assert len(everywhere["timeline"]) == 4
    assert price_history(market, 999) is None


def test_inactive_retailers_are_left_out(market, make_item, now):
    later = now + timedelta(hours=3)
    _reprice(market, make_item, later)
    with market.begin() as conn:
        conn.execute(update(retailers).where(retailers.c.id == 3).values(is_active=False))

    detail = brand_detail(market, _id(market, brands, "Tyson 2.0"))
    assert detail.metrics.retailer_count == 1
    assert [r["name"] for r in detail.retailers] == ["Housing Works Cannabis Co"]
    assert trending_brands(market, region="long_island").brands == []
    assert [row["product_name"] for row in out_of_stock_feed(market)] == ["Gelato Pre-Roll 1g"]


def test_inventory_events_feed(market, make_item, now):
    later = now + timedelta(hours=3)
    _reprice(market, make_item, later)

    recent = inventory_events_feed(market, since=later)
    assert [(e["event_type"], e["product_name"]) for e in recent] == [
        ("sold_out", "Blue Dream 3.5g"),
        ("price_increase", "Infused Gummies"),
        ("removed", "Gelato Pre-Roll 1g"),
        ("price_drop", "Blue Dream 3.5g"),
    ]
    assert recent[1]["brand_name"] == "Jeeter"
    assert recent[1]["details"] == {"change_percent": 25.0}
    assert len(inventory_events_feed(market, event_types=["new_product"])) == 4
    assert [e["event_type"] for e in inventory_events_feed(market, region="long_island")] == [
        "sold_out",
        "new_product",
    ]
    blue_dream = _id(market, products, "Blue Dream 3.5g")
    at_first_store = inventory_events_feed(market, retailer_id=1, product_id=blue_dream)
    assert [e["event_type"] for e in at_first_store] == ["price_drop", "new_product"]
    assert len(inventory_events_feed(market, limit=2)) == 2
