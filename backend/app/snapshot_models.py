"""
Snapshot models (dataclasses) shared by the generators and the alert detector.
Keeps business structures separate from transport concerns; `to_dict` emits
the camelCase wire contract consumed by the dashboard.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from app.scenario_config import MetricId

TREND_STABLE_THRESHOLD = 2.0

ALERT_SEVERITY_ORDER: Dict[str, int] = {"critical": 0, "warning": 1, "info": 2}


def round_by_kind(value: float, kind: str) -> float:
    """Currency and count values are whole numbers, percentages keep 2 decimals."""
    if kind in ("currency", "count"):
        return int(round(value))
    return round(value, 2)


@dataclass
class Metric:
    """Represents one headline metric for the current period."""
    name: str
    value: float
    previous_value: float
    change: float
    change_percent: float
    unit: str
    trend: str  # "up", "down", "stable"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "previousValue": self.previous_value,
            "change": self.change,
            "changePercent": self.change_percent,
            "unit": self.unit,
            "trend": self.trend,
        }


def build_metric(
    metric: Union[MetricId, str],
    value: float,
    previous_value: float,
    unit: str,
    kind: str,
) -> Metric:
    """
    Builds a Metric with change, changePercent and trend derived from the values.

    Args:
        metric: MetricId (serialized by display name) or a raw name
        value: current value, rounded by kind
        previous_value: prior-period value; zero yields a 0% change
        unit: display unit
        kind: "currency", "count" or "percentage"
    """
    name = metric.display_name if isinstance(metric, MetricId) else str(metric)
    value = round_by_kind(value, kind)
    previous_value = round_by_kind(previous_value, kind)
    change = round_by_kind(value - previous_value, kind)
    change_percent = round(change / previous_value * 100, 2) if previous_value else 0.0

    if abs(change_percent) < TREND_STABLE_THRESHOLD:
        trend = "stable"
    elif change_percent > 0:
        trend = "up"
    else:
        trend = "down"

    return Metric(
        name=name,
        value=value,
        previous_value=previous_value,
        change=change,
        change_percent=change_percent,
        unit=unit,
        trend=trend,
    )


@dataclass
class TrendPoint:
    timestamp: int  # epoch ms
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "value": self.value}


@dataclass
class RegionalEntry:
    name: str
    value: float
    change_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value, "changePercent": self.change_percent}


@dataclass
class IndustryEntry:
    name: str
    revenue: float
    profit_margin: float
    share: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "revenue": self.revenue,
            "profitMargin": self.profit_margin,
            "share": self.share,
        }


@dataclass
class ProductEntry:
    name: str
    revenue: float
    margin: float
    share: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "revenue": self.revenue, "margin": self.margin, "share": self.share}


@dataclass
class CompetitorEntry:
    name: str
    market_share: float
    growth_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "marketShare": self.market_share, "growthRate": self.growth_rate}


@dataclass
class RiskEntry:
    category: str
    level: int  # 1..5
    impact: str  # "low", "medium", "high"

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "level": self.level, "impact": self.impact}


@dataclass
class Alert:
    """Represents a threshold or scenario alert shown on the dashboard."""
    id: str
    level: str  # "critical", "warning", "info"
    metric: str
    message: str
    value: Optional[float]
    threshold: Optional[float]
    timestamp: int  # epoch ms
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "metric": self.metric,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
        }


def sort_alerts_by_severity(alerts: List[Alert]) -> List[Alert]:
    """Critical first, then warning, then info; stable within a level."""
    return sorted(alerts, key=lambda a: ALERT_SEVERITY_ORDER.get(a.level, len(ALERT_SEVERITY_ORDER)))


@dataclass
class GeneratedSnapshot:
    """Represents one complete dashboard snapshot, whichever generator built it."""
    metrics: List[Metric]
    trend: List[TrendPoint]
    regional_data: List[RegionalEntry] = field(default_factory=list)
    industry_data: List[IndustryEntry] = field(default_factory=list)
    product_data: List[ProductEntry] = field(default_factory=list)
    competitor_data: List[CompetitorEntry] = field(default_factory=list)
    risk_data: List[RiskEntry] = field(default_factory=list)
    insight: str = ""
    suggestion: str = ""
    alerts: List[Alert] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": [m.to_dict() for m in self.metrics],
            "trend": [p.to_dict() for p in self.trend],
            "regionalData": [r.to_dict() for r in self.regional_data],
            "industryData": [i.to_dict() for i in self.industry_data],
            "productData": [p.to_dict() for p in self.product_data],
            "competitorData": [c.to_dict() for c in self.competitor_data],
            "riskData": [r.to_dict() for r in self.risk_data],
            "insight": self.insight,
            "suggestion": self.suggestion,
            "alerts": [a.to_dict() for a in self.alerts],
        }

    def metric(self, metric_id: MetricId) -> Optional[Metric]:
        for m in self.metrics:
            if m.name == metric_id.display_name:
                return m
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def extract_previous_values(previous: Any) -> Dict[MetricId, float]:
    """
    Collects prior-period metric values keyed by MetricId.

    Accepts a GeneratedSnapshot or the wire form {"metrics": [{name, value, ...}]}.
    Unknown names, non-numeric values and zeros are skipped.
    """
    if previous is None:
        return {}
    if isinstance(previous, GeneratedSnapshot):
        entries = [(m.name, m.value) for m in previous.metrics]
    elif isinstance(previous, dict):
        raw_metrics = previous.get("metrics") or []
        if not isinstance(raw_metrics, list):
            return {}
        entries = [(m.get("name"), m.get("value")) for m in raw_metrics if isinstance(m, dict)]
    else:
        return {}

    values: Dict[MetricId, float] = {}
    for name, value in entries:
        metric_id = MetricId.from_display_name(name)
        if metric_id is None or not _is_number(value) or value == 0:
            continue
        values[metric_id] = float(value)
    return values
