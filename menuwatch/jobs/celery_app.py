"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from menuwatch.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

ANALYTICS_HOUR = int(os.environ.get("ANALYTICS_HOUR", "4"))
ANALYTICS_MINUTE = int(os.environ.get("ANALYTICS_MINUTE", "15"))

celery_app = Celery("menuwatch", broker=broker_url, backend=backend_url, include=["menuwatch.jobs.analytics"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "daily-analytics": {
        "task": "menuwatch.jobs.analytics.run_analytics",
        "schedule": crontab(hour=ANALYTICS_HOUR, minute=ANALYTICS_MINUTE),
        "args": ("daily",),
    },
    "weekly-analytics": {
        "task": "menuwatch.jobs.analytics.run_analytics",
        "schedule": crontab(day_of_week="mon", hour=ANALYTICS_HOUR, minute=ANALYTICS_MINUTE),
        "args": ("weekly",),
    },
}


@celery_app.task(name="menuwatch.jobs.analytics.run_analytics")
def run_analytics_task(period: str = "daily") -> int:  # pragma: no cover - executed by worker
    from menuwatch.jobs.analytics import run_analytics

    return run_analytics(period)
