from menuwatch.logic import signals


def test_percent_change_basic():
    assert signals.percent_change(120, 100) == 0.2
    assert signals.percent_change(None, 100) is None
    assert signals.percent_change(100, None) is None
    assert signals.percent_change(100, 0) is None


def test_discount_percentage():
    assert signals.discount_percentage(80, 100) == 0.2
    assert signals.discount_percentage(100, 100) == 0.0
    assert signals.discount_percentage(None, 100) == 0.0


def test_velocity_and_stock_rate():
    assert signals.velocity_score(1, 4) == 0.25
    assert signals.velocity_score(0, 0) == 0.0
    assert signals.stock_rate(2, 3) == 66.7
    assert signals.stock_rate(0, 0) == 0.0


def test_price_stats():
    stats = signals.price_stats([4500, 4000, 5000])
    assert stats.min_price == 4000
    assert stats.max_price == 5000
    assert stats.avg_price == 4500.0
    assert stats.spread == 1000
    assert stats.data_points == 3
    assert signals.price_stats([]) is None
