"""
Alert Detector: threshold rules over the headline metrics.

Rules are a data table; each rule is evaluated independently against the
metric's changePercent or value. A metric that already has a recent alert
(within the cooldown window) is skipped so the dashboard is not flooded
with duplicates when data is regenerated.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from app.scenario_config import MetricId
from app.snapshot_models import Alert, Metric

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_MS = 300_000
SPECIAL_EVENT_METRIC = "Special Event"
ANOMALY_SCENARIO = "anomaly"


def _compare_values(value: float, operator: str, threshold: float) -> bool:
    """Compares values using operator."""
    if operator == '>':
        return value > threshold
    elif operator == '<':
        return value < threshold
    elif operator == '>=':
        return value >= threshold
    elif operator == '<=':
        return value <= threshold
    return False


@dataclass(frozen=True)
class AlertRule:
    """Represents one threshold rule; every (operator, bound) condition must hold."""
    metric: MetricId
    field: str  # "changePercent" or "value"
    conditions: Tuple[Tuple[str, float], ...]
    level: str  # "critical", "warning", "info"
    threshold: float
    message: str

    def matches(self, observed: float) -> bool:
        return all(_compare_values(observed, op, bound) for op, bound in self.conditions)


# Messages are formatted with {abs} (absolute observed value) and {value}
ALERT_RULES: List[AlertRule] = [
    AlertRule(MetricId.REVENUE, "changePercent", (("<", -20),), "critical", -20,
              "Revenue dropped sharply by {abs:.2f}%, immediate attention required!"),
    AlertRule(MetricId.REVENUE, "changePercent", ((">=", -20), ("<", -10)), "warning", -10,
              "Revenue fell by {abs:.2f}%, keep an eye on it"),
    AlertRule(MetricId.REVENUE, "changePercent", ((">", 30),), "info", 30,
              "Revenue grew {value:.2f}%, performing well!"),
    AlertRule(MetricId.GROSS_MARGIN, "value", (("<", 20),), "critical", 20,
              "Gross margin is too low ({value:.2f}%), profitability is severely impaired!"),
    AlertRule(MetricId.GROSS_MARGIN, "value", ((">=", 20), ("<", 30)), "warning", 30,
              "Gross margin is on the low side ({value:.2f}%), consider optimising the cost structure"),
    AlertRule(MetricId.CONVERSION_RATE, "changePercent", (("<", -15),), "warning", -15,
              "Conversion rate fell by {abs:.2f}%, check the marketing funnel"),
    AlertRule(MetricId.ACTIVE_USERS, "changePercent", (("<", -25),), "critical", -25,
              "Active users dropped sharply by {abs:.2f}%, serious user churn!"),
    AlertRule(MetricId.ORDERS, "changePercent", ((">", 50),), "info", 50,
              "Orders surged {value:.2f}%, processing capacity may need to scale"),
    AlertRule(MetricId.ORDERS, "changePercent", (("<", -30),), "critical", -30,
              "Orders dropped sharply by {abs:.2f}%, investigate the cause immediately!"),
]

SPECIAL_EVENT_MESSAGE = (
    "Anomaly event in progress: business metrics are swinging abnormally, "
    "start the incident response plan"
)


def _read(metric: Any, key: str) -> Any:
    if isinstance(metric, Metric):
        return metric.to_dict().get(key)
    if isinstance(metric, dict):
        return metric.get(key)
    return None


def _index_metrics(metrics: Union[Iterable[Any], Mapping[str, Any], None]) -> Dict[MetricId, Any]:
    """Maps MetricId -> metric for a list or a name->metric mapping."""
    if not metrics:
        return {}
    indexed: Dict[MetricId, Any] = {}
    if isinstance(metrics, Mapping):
        for name, metric in metrics.items():
            metric_id = MetricId.from_display_name(name) or MetricId.from_display_name(_read(metric, "name"))
            if metric_id is not None:
                indexed[metric_id] = metric
        return indexed
    for metric in metrics:
        metric_id = MetricId.from_display_name(_read(metric, "name"))
        if metric_id is not None:
            indexed[metric_id] = metric
    return indexed


def _alert_field(alert: Any, key: str) -> Any:
    if isinstance(alert, Alert):
        return getattr(alert, key, None)
    if isinstance(alert, dict):
        return alert.get(key)
    return None


def _recently_alerted(metric_name: str, existing_alerts: List[Any], now_ms: int) -> bool:
    for alert in existing_alerts:
        if _alert_field(alert, "metric") != metric_name:
            continue
        timestamp = _alert_field(alert, "timestamp")
        if isinstance(timestamp, (int, float)) and now_ms - timestamp < ALERT_COOLDOWN_MS:
            return True
    return False


def _new_alert_id(now_ms: int, key: str) -> str:
    return f"alert-{now_ms}-{key}-{uuid.uuid4().hex[:8]}"


def detect_alerts(
    metrics: Union[Iterable[Any], Mapping[str, Any], None],
    scenario_tag: Optional[str],
    existing_alerts: Optional[Iterable[Any]] = None,
    now_ms: Optional[int] = None,
) -> List[Alert]:
    """
    Evaluates the alert rule table over the given metrics.

    Args:
        metrics: Metric objects or wire dicts, as a list or a name -> metric mapping
        scenario_tag: active scenario key; "anomaly" adds a Special Event alert
        existing_alerts: alerts already shown (Alert objects or wire dicts), used for cooldown
        now_ms: current time in epoch ms (defaults to wall clock)

    Returns:
        New alerts, unacknowledged, in rule-table order.
    """
    now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    existing = list(existing_alerts or [])
    indexed = _index_metrics(metrics)
    alerts: List[Alert] = []

    for rule in ALERT_RULES:
        metric = indexed.get(rule.metric)
        if metric is None:
            continue
        observed = _read(metric, rule.field)
        if not isinstance(observed, (int, float)) or isinstance(observed, bool):
            continue
        if not rule.matches(observed):
            continue
        metric_name = rule.metric.display_name
        if _recently_alerted(metric_name, existing, now_ms):
            logger.debug(f"Alert on {metric_name} suppressed by cooldown")
            continue
        alerts.append(Alert(
            id=_new_alert_id(now_ms, rule.metric.value),
            level=rule.level,
            metric=metric_name,
            message=rule.message.format(abs=abs(observed), value=observed),
            value=observed,
            threshold=rule.threshold,
            timestamp=now_ms,
        ))

    if scenario_tag == ANOMALY_SCENARIO and not _recently_alerted(SPECIAL_EVENT_METRIC, existing, now_ms):
        alerts.append(Alert(
            id=_new_alert_id(now_ms, "special_event"),
            level="critical",
            metric=SPECIAL_EVENT_METRIC,
            message=SPECIAL_EVENT_MESSAGE,
            value=None,
            threshold=None,
            timestamp=now_ms,
        ))

    if alerts:
        logger.info(f"Detected {len(alerts)} alert(s): {[a.metric for a in alerts]}")
    return alerts


def to_task_input(alert: Union[Alert, Dict[str, Any]]) -> Dict[str, str]:
    """Minimal payload for turning an alert into a follow-up task."""
    return {
        "metric": _alert_field(alert, "metric") or "",
        "message": _alert_field(alert, "message") or "",
        "level": _alert_field(alert, "level") or "info",
    }
