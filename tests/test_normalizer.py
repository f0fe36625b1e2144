import pytest

from menuwatch.errors import NormalizationError
from menuwatch.ingest import normalizer


def test_brand_key_folds_punctuation():
    assert normalizer.normalize_brand_key("Tyson 2.0") == "tyson-2-0"
    assert normalizer.normalize_brand_key("  STIIIZY  ") == "stiiizy"
    assert normalizer.normalize_brand_key("Tyson 2.0") == normalizer.normalize_brand_key("tyson  2.0!")


def test_brand_key_rejects_empty():
    with pytest.raises(NormalizationError) as excinfo:
        normalizer.normalize_brand_key("   ")
    assert excinfo.value.field == "raw_brand_name"
    with pytest.raises(NormalizationError):
        normalizer.normalize_brand_key("!!!")
    with pytest.raises(NormalizationError):
        normalizer.normalize_brand_key(None)


def test_product_key_strips_brand_prefix():
    assert normalizer.normalize_product_key("Jeeter - Baby Jeeter Peaches", "Jeeter") == "baby-jeeter-peaches"
    assert normalizer.normalize_product_key("Baby Jeeter Peaches", "Jeeter") == "baby-jeeter-peaches"
    assert normalizer.normalize_product_key("Jeeter", "Jeeter") == "jeeter"


def test_product_key_rejects_empty():
    with pytest.raises(NormalizationError) as excinfo:
        normalizer.normalize_product_key("", "Jeeter")
    assert excinfo.value.field == "raw_product_name"


def test_map_category():
    assert normalizer.map_category("Pre-Rolls") == "pre_roll"
    assert normalizer.map_category("Vape Cartridge") == "vape"
    assert normalizer.map_category("Flower") == "flower"
    assert normalizer.map_category("Gummies") == "edible"
    assert normalizer.map_category(None, "Peach Budder 1g") == "concentrate"
    assert normalizer.map_category("Misc", "Mystery item") == "other"


def test_extract_weight():
    assert normalizer.extract_weight("Blue Dream 3.5g") == (3.5, "g")
    assert normalizer.extract_weight("Blue Dream Eighth") == (3.5, "g")
    assert normalizer.extract_weight("Sour Diesel 1/4 oz") == (7.0, "g")
    assert normalizer.extract_weight("Shake 1 oz") == (28.0, "g")
    assert normalizer.extract_weight("Gummies 100mg") is None
    assert normalizer.extract_weight(None) is None


def test_extract_strain():
    assert normalizer.extract_strain("Indica-Hybrid") == "indica"
    assert normalizer.extract_strain("HYBRID") == "hybrid"
    assert normalizer.extract_strain(None, "Sour Diesel Sativa 1g") == "sativa"
    assert normalizer.extract_strain(None, "Blue Dream 3.5g") is None


def test_parse_percent():
    assert normalizer.parse_percent("THC: 29.2%") == 29.2
    assert normalizer.parse_percent("CBD: <1%") == 1.0
    assert normalizer.parse_percent("") is None
    assert normalizer.parse_percent("n/a") is None
