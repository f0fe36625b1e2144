"""Canonical brand and product resolution."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from menuwatch.db.tables import brand_analytics, brands, current_inventory, products
from menuwatch.errors import ConflictError, EntryNotFoundError
from menuwatch.ingest.models import ResolvedIdentity, ScrapedItem
from menuwatch.ingest.normalizer import (
    extract_strain,
    extract_weight,
    map_category,
    normalize_brand_key,
    normalize_product_key,
    parse_percent,
)
from menuwatch.utils.dates import to_utc_naive, utc_now
from menuwatch.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Maps raw scraped names to canonical brand and product ids.

    New brands and products are created lazily. Creation relies on the unique
    constraints of ``brands.normalized_name`` and
    ``products(brand_id, normalized_name)``: a concurrent writer that wins the
    race makes our insert fail, and the whole lookup is retried so the winner's
    row is reused.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def resolve(self, item: ScrapedItem, *, now: datetime | None = None) -> ResolvedIdentity:
        brand_key = normalize_brand_key(item.raw_brand_name)
        product_key = normalize_product_key(item.raw_product_name, item.raw_brand_name)
        now = now or utc_now()
        category = map_category(item.raw_category, item.raw_product_name)
        brand_id = self.resolve_brand(item.raw_brand_name.strip(), brand_key, category=category, now=now)
        product_id = self.resolve_product(brand_id, product_key, item, category=category)
        return ResolvedIdentity(brand_id=brand_id, product_id=product_id)

    @retry_on_conflict
    def resolve_brand(self, raw_brand: str, key: str, *, category: str | None = None, now: datetime) -> int:
        with self.engine.begin() as conn:
            existing = _find_brand(conn, key)
            if existing:
                _add_alias(conn, existing, raw_brand)
                return existing["id"]
            try:
                result = conn.execute(
                    insert(brands)
                    .values(
                        name=raw_brand,
                        normalized_name=key,
                        aliases=[],
                        category=category,
                        is_verified=False,
                        first_seen_at=now,
                    )
                    .returning(brands.c.id)
                )
            except IntegrityError as exc:
                raise ConflictError(f"Brand {key!r} was created concurrently") from exc
            brand_id = int(result.scalar_one())
        logger.info("Created brand %s (%s) as %s", raw_brand, key, brand_id)
        return brand_id

    @retry_on_conflict
    def resolve_product(self, brand_id: int, key: str, item: ScrapedItem, *, category: str) -> int:
        seen_at = to_utc_naive(item.scraped_at)
        thc = parse_percent(item.thc_formatted)
        cbd = parse_percent(item.cbd_formatted)
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(products)
                .where(products.c.brand_id == brand_id, products.c.normalized_name == key)
                .with_for_update()
            ).mappings().first()
            if existing:
                values: dict[str, Any] = {"last_seen_at": max(existing["last_seen_at"], seen_at)}
                values.update(_widen_range(existing, "thc", thc))
                values.update(_widen_range(existing, "cbd", cbd))
                conn.execute(update(products).where(products.c.id == existing["id"]).values(**values))
                return existing["id"]
            weight = extract_weight(item.raw_product_name)
            try:
                result = conn.execute(
                    insert(products)
                    .values(
                        brand_id=brand_id,
                        name=item.raw_product_name.strip(),
                        normalized_name=key,
                        category=category,
                        subcategory=item.subcategory,
                        strain=extract_strain(item.strain_type, item.raw_product_name),
                        weight_amount=weight[0] if weight else None,
                        weight_unit=weight[1] if weight else None,
                        thc_min=thc,
                        thc_max=thc,
                        cbd_min=cbd,
                        cbd_max=cbd,
                        image_url=item.image_url,
                        first_seen_at=seen_at,
                        last_seen_at=seen_at,
                    )
                    .returning(products.c.id)
                )
            except IntegrityError as exc:
                raise ConflictError(f"Product {key!r} of brand {brand_id} was created concurrently") from exc
            return int(result.scalar_one())

    def merge_brands(self, source_id: int, target_id: int) -> int:
        """Fold ``source_id`` into ``target_id``.

        Manual operation for brands later found to be the same entity. The
        source brand stays behind as a redirect so later scrapes of its name
        resolve to the target. Products the target already carries are folded
        through ``products.merged_into_id``; the snapshot log is left as
        written. Returns the number of products moved or folded.
        """
        if source_id == target_id:
            raise ValueError("Cannot merge a brand into itself")
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(brands).where(brands.c.id.in_([source_id, target_id])).with_for_update()
            ).mappings().all()
            by_id = {row["id"]: row for row in rows}
            if source_id not in by_id or target_id not in by_id:
                raise EntryNotFoundError(f"Brand {source_id} or {target_id} not found")
            source, target = by_id[source_id], by_id[target_id]
            if source["merged_into_id"] is not None or target["merged_into_id"] is not None:
                raise ValueError(f"Brand {source_id} or {target_id} was already merged")

            target_products = {
                row["normalized_name"]: row
                for row in conn.execute(
                    select(products).where(products.c.brand_id == target_id, products.c.merged_into_id.is_(None))
                ).mappings()
            }
            moved = 0
            source_products = conn.execute(
                select(products).where(products.c.brand_id == source_id, products.c.merged_into_id.is_(None))
            ).mappings().all()
            for product in source_products:
                twin = target_products.get(product["normalized_name"])
                if twin is None:
                    conn.execute(update(products).where(products.c.id == product["id"]).values(brand_id=target_id))
                    conn.execute(
                        update(current_inventory)
                        .where(current_inventory.c.product_id == product["id"])
                        .values(brand_id=target_id)
                    )
                else:
                    _fold_product(conn, product, twin, target_id)
                moved += 1

            aliases = list(target["aliases"] or [])
            for alias in [source["name"], *(source["aliases"] or [])]:
                if alias != target["name"] and alias not in aliases:
                    aliases.append(alias)
            conn.execute(update(brands).where(brands.c.id == target_id).values(aliases=aliases))
            conn.execute(update(brands).where(brands.c.id == source_id).values(merged_into_id=target_id))
            conn.execute(delete(brand_analytics).where(brand_analytics.c.brand_id == source_id))
        logger.info("Merged brand %s into %s (%s products)", source_id, target_id, moved)
        return moved


def _find_brand(conn: Connection, key: str) -> Mapping[str, Any] | None:
    brand = conn.execute(
        select(brands).where(brands.c.normalized_name == key).with_for_update()
    ).mappings().first()
    while brand is not None and brand["merged_into_id"] is not None:
        brand = conn.execute(
            select(brands).where(brands.c.id == brand["merged_into_id"]).with_for_update()
        ).mappings().first()
    return brand


def _add_alias(conn: Connection, brand: Mapping[str, Any], raw_brand: str) -> None:
    aliases = list(brand["aliases"] or [])
    if raw_brand == brand["name"] or raw_brand in aliases:
        return
    aliases.append(raw_brand)
    conn.execute(update(brands).where(brands.c.id == brand["id"]).values(aliases=aliases))


def _widen_range(row: Mapping[str, Any], prefix: str, value: float | None) -> dict[str, float]:
    if value is None:
        return {}
    low, high = row[f"{prefix}_min"], row[f"{prefix}_max"]
    return {
        f"{prefix}_min": value if low is None else min(low, value),
        f"{prefix}_max": value if high is None else max(high, value),
    }


def _fold_product(conn: Connection, product: Mapping[str, Any], twin: Mapping[str, Any], target_id: int) -> None:
    twin_rows = {
        row["retailer_id"]: row
        for row in conn.execute(
            select(current_inventory).where(current_inventory.c.product_id == twin["id"])
        ).mappings()
    }
    for row in conn.execute(
        select(current_inventory).where(current_inventory.c.product_id == product["id"])
    ).mappings().all():
        kept = twin_rows.get(row["retailer_id"])
        if kept is None:
            conn.execute(
                update(current_inventory)
                .where(current_inventory.c.id == row["id"])
                .values(product_id=twin["id"], brand_id=target_id)
            )
            continue
        first_seen = min(row["first_seen_at"], kept["first_seen_at"])
        days = max(row["days_on_menu"], kept["days_on_menu"])
        if row["last_scraped_at"] > kept["last_scraped_at"]:
            conn.execute(delete(current_inventory).where(current_inventory.c.id == kept["id"]))
            conn.execute(
                update(current_inventory)
                .where(current_inventory.c.id == row["id"])
                .values(product_id=twin["id"], brand_id=target_id, first_seen_at=first_seen, days_on_menu=days)
            )
        else:
            conn.execute(delete(current_inventory).where(current_inventory.c.id == row["id"]))
            conn.execute(
                update(current_inventory)
                .where(current_inventory.c.id == kept["id"])
                .values(first_seen_at=first_seen, days_on_menu=days)
            )
    conn.execute(
        update(products)
        .where(products.c.id == twin["id"])
        .values(
            first_seen_at=min(product["first_seen_at"], twin["first_seen_at"]),
            last_seen_at=max(product["last_seen_at"], twin["last_seen_at"]),
        )
    )
    conn.execute(update(products).where(products.c.id == product["id"]).values(merged_into_id=twin["id"]))
