import time

import numpy as np
import pytest

from app.rule_generator import HOUR_MS, RuleBasedGenerator
from app.scenario_config import MetricId

SCENARIOS = ["normal", "promotion", "off_season", "anomaly", "custom"]


def _approx_equal(a, b):
    return abs(a - b) < 0.011


@pytest.mark.parametrize("scenario", SCENARIOS)
def test_metrics_are_internally_consistent(config, scenario):
    generator = RuleBasedGenerator(config, rng=np.random.default_rng(7))
    for _ in range(20):
        snapshot = generator.generate(scenario, scenario_description="Flash sale")
        assert len(snapshot.metrics) == len(MetricId)
        for m in snapshot.metrics:
            assert _approx_equal(m.change, m.value - m.previous_value)
            assert _approx_equal(m.change_percent, round(m.change / m.previous_value * 100, 2))
            if abs(m.change_percent) < 2:
                assert m.trend == "stable"
            else:
                assert m.trend == ("up" if m.change_percent > 0 else "down")


@pytest.mark.parametrize("scenario", ["normal", "promotion", "off_season", "anomaly"])
def test_zero_volatility_reproduces_baselines(flat_config, scenario):
    snapshot = RuleBasedGenerator(flat_config).generate(scenario)
    profile = flat_config.get_scenario(scenario)
    for metric_id in MetricId:
        metric = snapshot.metric(metric_id)
        assert metric.value == profile.baselines[metric_id].value
        # no previous snapshot: previous value is the baseline
        assert metric.previous_value == profile.baselines[metric_id].value
        assert metric.trend == "stable"


def test_promotion_against_previous_normal_revenue(flat_config):
    previous = {"metrics": [{"name": "Revenue", "value": 5000000}]}
    snapshot = RuleBasedGenerator(flat_config).generate("promotion", previous_snapshot=previous)
    revenue = snapshot.metric(MetricId.REVENUE)
    assert revenue.value == 7500000
    assert revenue.previous_value == 5000000
    assert revenue.change == 2500000
    assert revenue.change_percent == 50.00
    assert revenue.trend == "up"
    assert revenue.unit == "USD"


def test_zero_previous_value_uses_baseline(flat_config):
    previous = {"metrics": [{"name": "Orders", "value": 0}]}
    orders = RuleBasedGenerator(flat_config).generate("normal", previous_snapshot=previous).metric(MetricId.ORDERS)
    assert orders.previous_value == 12000
    assert orders.change_percent == 0.0


def test_breakdowns_sorted_descending(config, rng):
    generator = RuleBasedGenerator(config, rng=rng)
    for scenario in SCENARIOS:
        snapshot = generator.generate(scenario)
        regional = [r.value for r in snapshot.regional_data]
        industry = [i.revenue for i in snapshot.industry_data]
        product = [p.revenue for p in snapshot.product_data]
        competitors = [c.market_share for c in snapshot.competitor_data]
        risks = [r.level for r in snapshot.risk_data]
        for series in (regional, industry, product, competitors, risks):
            assert series == sorted(series, reverse=True)
        assert len(regional) == len(config.regions)
        assert len(risks) == len(config.risks)


def test_trend_has_twelve_hourly_points_ending_now(config, rng):
    before = int(time.time() * 1000)
    snapshot = RuleBasedGenerator(config, rng=rng).generate("normal")
    after = int(time.time() * 1000)

    timestamps = [p.timestamp for p in snapshot.trend]
    assert len(timestamps) == 12
    assert all(b - a == HOUR_MS for a, b in zip(timestamps, timestamps[1:]))
    assert before <= timestamps[-1] <= after
    assert all(isinstance(p.value, int) and p.value > 0 for p in snapshot.trend)


def test_trend_follows_hour_multiplier(flat_config, rng):
    now_ms = 1_700_000_000_000
    snapshot = RuleBasedGenerator(flat_config, rng=rng).generate("normal", now_ms=now_ms)
    revenue = snapshot.metric(MetricId.REVENUE).value
    from datetime import datetime
    for point in snapshot.trend:
        factor = flat_config.hour_multiplier(datetime.fromtimestamp(point.timestamp / 1000).hour)
        assert revenue * factor * 0.85 - 1 <= point.value <= revenue * factor * 1.15 + 1


def test_breakdown_sums_stay_near_revenue(config, rng):
    generator = RuleBasedGenerator(config, rng=rng)
    for _ in range(20):
        snapshot = generator.generate("promotion")
        revenue = snapshot.metric(MetricId.REVENUE).value
        for total in (
            sum(r.value for r in snapshot.regional_data),
            sum(i.revenue for i in snapshot.industry_data),
            sum(p.revenue for p in snapshot.product_data),
        ):
            assert abs(total - revenue) <= revenue * 0.1 + len(config.industries)


def test_risk_levels_shift_with_scenario(flat_config):
    generator = RuleBasedGenerator(flat_config, rng=np.random.default_rng(3))
    for _ in range(10):
        anomaly = generator.generate("anomaly")
        promotion = generator.generate("promotion")
        assert all(1 <= r.level <= 5 for r in anomaly.risk_data + promotion.risk_data)
        assert sum(r.level for r in anomaly.risk_data) > sum(r.level for r in promotion.risk_data)
        for risk in anomaly.risk_data:
            expected = "low" if risk.level <= 2 else "medium" if risk.level == 3 else "high"
            assert risk.impact == expected


def test_regional_growth_scaled_by_multiplier(flat_config):
    generator = RuleBasedGenerator(flat_config, rng=np.random.default_rng(11))
    for region in generator.generate("promotion").regional_data:
        growth = next(r.growth for r in flat_config.regions if r.name == region.name)
        assert abs(region.change_percent - growth * 100 * 1.5) <= 5.01


def test_empty_weight_tables_give_empty_breakdowns(config, rng):
    from dataclasses import replace
    bare = replace(config, regions=(), industries=(), products=(), competitors=(), risks=())
    snapshot = RuleBasedGenerator(bare, rng=rng).generate("normal")
    assert snapshot.regional_data == []
    assert snapshot.industry_data == []
    assert snapshot.product_data == []
    assert snapshot.competitor_data == []
    assert snapshot.risk_data == []


def test_insight_and_suggestion_filled(config, rng):
    generator = RuleBasedGenerator(config, rng=rng)
    for scenario in ["normal", "promotion", "off_season", "anomaly"]:
        snapshot = generator.generate(scenario)
        assert snapshot.insight and "{" not in snapshot.insight
        assert snapshot.suggestion == config.get_scenario(scenario).suggestion


def test_custom_insight_quotes_description(config, rng):
    snapshot = RuleBasedGenerator(config, rng=rng).generate("custom", scenario_description="Typhoon closes ports")
    assert "Typhoon closes ports" in snapshot.insight
    assert snapshot.suggestion


def test_anomaly_snapshot_carries_special_event_alert(config, rng):
    snapshot = RuleBasedGenerator(config, rng=rng).generate("anomaly")
    assert any(a.metric == "Special Event" and a.level == "critical" for a in snapshot.alerts)


def test_alerts_attached_from_detector(flat_config):
    # promotion baseline vs a much higher previous revenue: a sharp drop
    previous = {"metrics": [{"name": "Revenue", "value": 10_000_000}]}
    snapshot = RuleBasedGenerator(flat_config).generate("promotion", previous_snapshot=previous)
    assert [(a.metric, a.level) for a in snapshot.alerts] == [("Revenue", "critical")]
