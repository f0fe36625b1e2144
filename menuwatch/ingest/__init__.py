"""Ingestion helpers."""

from __future__ import annotations

import pathlib

import yaml

from menuwatch.ingest.models import Retailer

RETAILERS_PATH = pathlib.Path(__file__).with_name("retailers.yml")


def load_retailers(limit: int | None = None, path: pathlib.Path = RETAILERS_PATH) -> list[Retailer]:
    data = yaml.safe_load(path.read_text()) or []
    retailers = [Retailer(**item) for item in data]
    if limit:
        return retailers[:limit]
    return retailers
