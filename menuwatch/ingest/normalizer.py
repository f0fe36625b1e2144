"""Folding of raw scraped names into canonical lookup keys."""

from __future__ import annotations

import re
from typing import Any

from menuwatch.errors import NormalizationError

NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
LEADING_SEPARATOR_RE = re.compile(r"^\s*[-|:–—]\s*")
PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)")
GRAM_RE = re.compile(r"(\d+(?:\.\d+)?)\s*g(?:ram)?s?\b", re.IGNORECASE)
OUNCE_RE = re.compile(r"(\d+)\s*oz\b", re.IGNORECASE)

# Checked in order: "budder" has to land in concentrate before "bud" hits flower.
CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "pre_roll": ("pre-roll", "preroll", "pre roll", "joint", "blunt"),
    "vape": ("vape", "cartridge", "cart", "pod", "510"),
    "concentrate": ("concentrate", "wax", "shatter", "rosin", "resin", "badder", "budder", "diamonds", "hash"),
    "flower": ("flower", "bud", "smalls", "pre-ground", "preground"),
    "edible": ("edible", "gummy", "gummies", "chocolate", "brownie", "candy", "lozenge"),
    "tincture": ("tincture", "oil", "drops", "sublingual"),
    "topical": ("topical", "cream", "balm", "lotion", "salve"),
}

FRACTIONAL_OUNCES: tuple[tuple[re.Pattern[str], float], ...] = (
    (re.compile(r"1/8\s*oz|eighth", re.IGNORECASE), 3.5),
    (re.compile(r"1/4\s*oz|quarter", re.IGNORECASE), 7.0),
    (re.compile(r"1/2\s*oz|half", re.IGNORECASE), 14.0),
)

STRAIN_TYPES = {
    "sativa": "sativa",
    "sativa-hybrid": "sativa",
    "sativa dominant": "sativa",
    "indica": "indica",
    "indica-hybrid": "indica",
    "indica dominant": "indica",
    "hybrid": "hybrid",
}


def fold(value: str) -> str:
    folded = NON_ALNUM_RE.sub("-", value.lower().strip())
    return folded.strip("-")


def normalize_brand_key(raw_brand: Any) -> str:
    if not isinstance(raw_brand, str) or not raw_brand.strip():
        raise NormalizationError("Empty brand name", field="raw_brand_name")
    key = fold(raw_brand)
    if not key:
        raise NormalizationError(f"Brand name {raw_brand!r} has no usable characters", field="raw_brand_name")
    return key


def normalize_product_key(raw_name: Any, raw_brand: str | None = None) -> str:
    if not isinstance(raw_name, str) or not raw_name.strip():
        raise NormalizationError("Empty product name", field="raw_product_name")
    name = raw_name.strip()
    if raw_brand:
        brand = raw_brand.strip()
        if brand and name.lower().startswith(brand.lower()):
            remainder = name[len(brand):]
            if remainder.strip():
                name = LEADING_SEPARATOR_RE.sub("", remainder)
    key = fold(name)
    if not key:
        raise NormalizationError(f"Product name {raw_name!r} has no usable characters", field="raw_product_name")
    return key


def map_category(raw_category: str | None, raw_name: str | None = None) -> str:
    for candidate in (raw_category, raw_name):
        if not candidate:
            continue
        lowered = candidate.lower()
        for category, keywords in CATEGORY_KEYWORDS.items():
            if any(keyword in lowered for keyword in keywords):
                return category
    return "other"


def extract_weight(name: str | None) -> tuple[float, str] | None:
    if not name:
        return None
    match = GRAM_RE.search(name)
    if match:
        return float(match.group(1)), "g"
    for pattern, grams in FRACTIONAL_OUNCES:
        if pattern.search(name):
            return grams, "g"
    match = OUNCE_RE.search(name)
    if match:
        return float(match.group(1)) * 28, "g"
    return None


def extract_strain(raw_strain: str | None, name: str | None = None) -> str | None:
    if raw_strain:
        key = raw_strain.strip().lower().replace("_", "-")
        if key in STRAIN_TYPES:
            return STRAIN_TYPES[key]
    if name:
        lowered = name.lower()
        # Longest patterns first so "indica-hybrid" beats "hybrid".
        for pattern in sorted(STRAIN_TYPES, key=len, reverse=True):
            if re.search(rf"\b{re.escape(pattern)}\b", lowered):
                return STRAIN_TYPES[pattern]
    return None


def parse_percent(text: str | None) -> float | None:
    if not text:
        return None
    match = PERCENT_RE.search(text)
    if not match:
        return None
    return float(match.group(1))
