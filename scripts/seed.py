"""Seed database with onboarded retailers."""

from __future__ import annotations

import json

from dotenv import load_dotenv
from sqlalchemy import text

from menuwatch.db.migrate import run_migrations
from menuwatch.db.session import create_engine_from_env
from menuwatch.ingest import load_retailers
from menuwatch.utils.dates import utc_now


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    retailers = load_retailers()
    now = utc_now()
    with engine.begin() as conn:
        for retailer in retailers:
            conn.execute(
                text(
                    """
                    INSERT INTO retailers (slug, name, region, menu_sources, is_active, first_seen_at)
                    VALUES (:slug, :name, :region, :menu_sources, TRUE, :first_seen_at)
                    ON CONFLICT (slug) DO NOTHING
                    """
                ),
                {
                    "slug": retailer.slug,
                    "name": retailer.name,
                    "region": retailer.region,
                    "menu_sources": json.dumps(retailer.menu_sources),
                    "first_seen_at": now,
                },
            )
    print(f"Seeded {len(retailers)} retailers")


if __name__ == "__main__":
    main()
