from app.scenario_config import MetricId
from app.snapshot_models import (
    Alert,
    GeneratedSnapshot,
    TrendPoint,
    build_metric,
    extract_previous_values,
    sort_alerts_by_severity,
)


def _alert(level, metric="Revenue"):
    return Alert(id=f"a-{level}", level=level, metric=metric, message="m", value=None, threshold=None, timestamp=0)


def test_build_metric_currency_rounds_to_integers():
    metric = build_metric(MetricId.REVENUE, 5250000.6, 5000000, "USD", "currency")
    assert metric.name == "Revenue"
    assert metric.value == 5250001
    assert metric.change == 250001
    assert metric.change_percent == 5.0
    assert metric.trend == "up"


def test_build_metric_percentage_keeps_two_decimals():
    metric = build_metric(MetricId.GROSS_MARGIN, 31.4567, 35, "%", "percentage")
    assert metric.value == 31.46
    assert metric.change == -3.54
    assert metric.change_percent == -10.11
    assert metric.trend == "down"


def test_build_metric_small_change_is_stable():
    metric = build_metric(MetricId.ORDERS, 12100, 12000, "orders", "count")
    assert metric.change_percent == 0.83
    assert metric.trend == "stable"


def test_build_metric_zero_previous_value_has_zero_change_percent():
    metric = build_metric("Custom KPI", 10, 0, "", "count")
    assert metric.name == "Custom KPI"
    assert metric.change_percent == 0.0
    assert metric.trend == "stable"


def test_metric_wire_keys():
    assert set(build_metric(MetricId.REVENUE, 1, 1, "USD", "currency").to_dict()) == {
        "name", "value", "previousValue", "change", "changePercent", "unit", "trend",
    }


def test_snapshot_wire_keys():
    snapshot = GeneratedSnapshot(metrics=[], trend=[TrendPoint(timestamp=1, value=2)])
    assert set(snapshot.to_dict()) == {
        "metrics", "trend", "regionalData", "industryData", "productData",
        "competitorData", "riskData", "insight", "suggestion", "alerts",
    }


def test_sort_alerts_by_severity():
    alerts = [_alert("info"), _alert("critical"), _alert("warning"), _alert("critical", "Orders")]
    ordered = sort_alerts_by_severity(alerts)
    assert [a.level for a in ordered] == ["critical", "critical", "warning", "info"]
    assert [a.metric for a in ordered[:2]] == ["Revenue", "Orders"]


def test_extract_previous_values_from_wire_form():
    previous = {
        "metrics": [
            {"name": "Revenue", "value": 5000000},
            {"name": "Orders", "value": 0},
            {"name": "Active Users", "value": "lots"},
            {"name": "Net Promoter Score", "value": 40},
            {"name": "Gross Margin", "value": 33.5},
        ]
    }
    assert extract_previous_values(previous) == {
        MetricId.REVENUE: 5000000.0,
        MetricId.GROSS_MARGIN: 33.5,
    }


def test_extract_previous_values_from_snapshot():
    snapshot = GeneratedSnapshot(
        metrics=[build_metric(MetricId.ORDERS, 15000, 12000, "orders", "count")],
        trend=[],
    )
    assert extract_previous_values(snapshot) == {MetricId.ORDERS: 15000.0}


def test_extract_previous_values_tolerates_garbage():
    assert extract_previous_values(None) == {}
    assert extract_previous_values({"metrics": "nope"}) == {}
    assert extract_previous_values({"metrics": [None, 3]}) == {}
    assert extract_previous_values(["Revenue"]) == {}
