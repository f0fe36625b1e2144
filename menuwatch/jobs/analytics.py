"""Analytics roll-up job."""

from __future__ import annotations

import logging
from datetime import date

from dotenv import load_dotenv

from menuwatch.db.session import create_engine_from_env
from menuwatch.logic.analytics import compute_brand_analytics
from menuwatch.utils.dates import period_bounds

logger = logging.getLogger(__name__)


def run_analytics(period: str = "daily", as_of: date | None = None) -> int:
    load_dotenv()
    engine = create_engine_from_env()
    period_start, period_end = period_bounds(period, as_of)
    logger.info("Rolling up %s analytics for %s to %s", period, period_start, period_end)
    try:
        return compute_brand_analytics(engine, period, period_start, period_end)
    finally:
        engine.dispose()


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    run_analytics(sys.argv[1] if len(sys.argv) > 1 else "daily")
