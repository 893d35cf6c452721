"""
Scenario Configuration: static business baselines for the data generators.

Loads the scenario table (baseline metrics, breakdown weights, time-of-day
bands) once at startup into an immutable ScenarioConfig that is handed to
both generators. A missing or corrupt file never blocks the service: the
built-in default configuration is used instead.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

CUSTOM_SCENARIO = "custom"
DEFAULT_SCENARIO = "normal"
WEIGHT_TOLERANCE = 0.01
METRIC_KINDS = {"currency", "count", "percentage"}

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "data" / "business_data.yaml"


class ConfigLoadError(Exception):
    """Raised when the scenario configuration cannot be read or is invalid."""
    pass


class MetricId(str, Enum):
    """Internal identifiers for the headline metrics."""
    REVENUE = "revenue"
    ORDERS = "orders"
    ACTIVE_USERS = "active_users"
    CONVERSION_RATE = "conversion_rate"
    AVG_ORDER_VALUE = "avg_order_value"
    GROSS_MARGIN = "gross_margin"
    REPURCHASE_RATE = "repurchase_rate"

    @property
    def display_name(self) -> str:
        return METRIC_DISPLAY_NAMES[self]

    @classmethod
    def from_display_name(cls, name: Optional[str]) -> Optional["MetricId"]:
        if not name:
            return None
        return _DISPLAY_NAME_LOOKUP.get(str(name).strip().lower())


METRIC_DISPLAY_NAMES: Dict[MetricId, str] = {
    MetricId.REVENUE: "Revenue",
    MetricId.ORDERS: "Orders",
    MetricId.ACTIVE_USERS: "Active Users",
    MetricId.CONVERSION_RATE: "Conversion Rate",
    MetricId.AVG_ORDER_VALUE: "Avg Order Value",
    MetricId.GROSS_MARGIN: "Gross Margin",
    MetricId.REPURCHASE_RATE: "Repurchase Rate",
}

# Accept both display names and internal keys when reading external payloads
_DISPLAY_NAME_LOOKUP: Dict[str, MetricId] = {}
for _metric_id, _name in METRIC_DISPLAY_NAMES.items():
    _DISPLAY_NAME_LOOKUP[_name.lower()] = _metric_id
    _DISPLAY_NAME_LOOKUP[_metric_id.value] = _metric_id


@dataclass(frozen=True)
class MetricBaseline:
    """Baseline value for one metric within a scenario."""
    value: float
    unit: str
    volatility: float
    kind: str  # "currency", "count", "percentage"


@dataclass(frozen=True)
class ScenarioProfile:
    """Represents one named business situation."""
    key: str
    label: str
    description: str
    prompt_description: str
    multiplier: float
    baselines: Mapping[MetricId, MetricBaseline]
    insight_template: str
    suggestion: str


@dataclass(frozen=True)
class RegionWeight:
    name: str
    weight: float
    growth: float


@dataclass(frozen=True)
class IndustryWeight:
    name: str
    weight: float
    margin: float


@dataclass(frozen=True)
class ProductWeight:
    name: str
    weight: float
    margin: float


@dataclass(frozen=True)
class CompetitorProfile:
    name: str
    market_share: float
    growth: float


@dataclass(frozen=True)
class RiskBaseline:
    category: str
    level: int


@dataclass(frozen=True)
class TimeBand:
    """Time-of-day band; hours are local clock hours 0-23."""
    name: str
    hours: Tuple[int, ...]
    multiplier: float


@dataclass(frozen=True)
class ScenarioConfig:
    """Immutable scenario table shared by the rule-based and AI generators."""
    scenarios: Mapping[str, ScenarioProfile]
    regions: Tuple[RegionWeight, ...] = ()
    industries: Tuple[IndustryWeight, ...] = ()
    products: Tuple[ProductWeight, ...] = ()
    competitors: Tuple[CompetitorProfile, ...] = ()
    risks: Tuple[RiskBaseline, ...] = ()
    time_bands: Tuple[TimeBand, ...] = ()
    _hour_table: Mapping[int, float] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        table = {}
        for band in self.time_bands:
            for hour in band.hours:
                table[hour] = band.multiplier
        object.__setattr__(self, "_hour_table", MappingProxyType(table))

    def get_scenario(self, key: Optional[str]) -> ScenarioProfile:
        """Returns the profile for `key`, falling back to the normal baseline."""
        profile = self.scenarios.get(key or "")
        if profile is None:
            return self.scenarios[DEFAULT_SCENARIO]
        return profile

    def has_scenario(self, key: Optional[str]) -> bool:
        return bool(key) and key in self.scenarios

    def multiplier(self, key: Optional[str]) -> float:
        return self.get_scenario(key).multiplier

    def hour_multiplier(self, hour: int) -> float:
        return self._hour_table.get(hour % 24, 1.0)

    def without_volatility(self) -> "ScenarioConfig":
        """Copy of this config with every metric volatility forced to 0."""
        scenarios = {}
        for key, profile in self.scenarios.items():
            baselines = {
                metric_id: replace(baseline, volatility=0.0)
                for metric_id, baseline in profile.baselines.items()
            }
            scenarios[key] = replace(profile, baselines=MappingProxyType(baselines))
        return replace(self, scenarios=MappingProxyType(scenarios))

    def catalog(self) -> List[Dict[str, str]]:
        """Scenario list for selectors, custom free-text entry last."""
        entries = [
            {"value": profile.key, "label": profile.label, "description": profile.description}
            for profile in self.scenarios.values()
        ]
        entries.append({
            "value": CUSTOM_SCENARIO,
            "label": "Custom Scenario",
            "description": "Describe a specific situation and let the AI generate matching data",
        })
        return entries

    def scenario_keys(self) -> List[str]:
        return list(self.scenarios.keys()) + [CUSTOM_SCENARIO]


# ── Parsing & validation ────────────────────────────────────────────────

def _require(mapping: Dict[str, Any], key: str, context: str) -> Any:
    if not isinstance(mapping, dict) or key not in mapping:
        raise ConfigLoadError(f"{context}: missing '{key}'")
    return mapping[key]


def _as_float(value: Any, context: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigLoadError(f"{context}: expected a number, got {value!r}")


def _parse_scenario(key: str, data: Dict[str, Any]) -> ScenarioProfile:
    context = f"scenario '{key}'"
    raw_metrics = _require(data, "base_metrics", context)
    if not isinstance(raw_metrics, dict):
        raise ConfigLoadError(f"{context}: base_metrics must be a mapping")

    baselines: Dict[MetricId, MetricBaseline] = {}
    for metric_id in MetricId:
        metric_data = raw_metrics.get(metric_id.value)
        if metric_data is None:
            raise ConfigLoadError(f"{context}: no baseline for metric '{metric_id.value}'")
        metric_context = f"{context}.{metric_id.value}"
        if not isinstance(metric_data, dict):
            raise ConfigLoadError(f"{metric_context}: baseline must be a mapping")
        volatility = _as_float(metric_data.get("volatility", 0), metric_context)
        if volatility < 0:
            raise ConfigLoadError(f"{metric_context}: volatility must be >= 0")
        kind = metric_data.get("kind", "count")
        if kind not in METRIC_KINDS:
            raise ConfigLoadError(f"{metric_context}: unknown kind '{kind}'")
        baselines[metric_id] = MetricBaseline(
            value=_as_float(_require(metric_data, "value", metric_context), metric_context),
            unit=str(metric_data.get("unit", "")),
            volatility=volatility,
            kind=kind,
        )

    return ScenarioProfile(
        key=key,
        label=str(data.get("label", key)),
        description=str(data.get("description", "")),
        prompt_description=str(data.get("prompt_description") or data.get("description", "")),
        multiplier=_as_float(data.get("multiplier", 1.0), context),
        baselines=MappingProxyType(baselines),
        insight_template=str(data.get("insight_template", "")),
        suggestion=str(data.get("suggestion", "")),
    )


def _check_weights(name: str, weights: List[float]) -> None:
    if not weights:
        return
    total = sum(weights)
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigLoadError(f"{name} weights must sum to 1.0 (got {total:.3f})")


def _check_time_bands(bands: Tuple[TimeBand, ...]) -> None:
    seen: Dict[int, str] = {}
    for band in bands:
        for hour in band.hours:
            if hour < 0 or hour > 23:
                raise ConfigLoadError(f"time band '{band.name}': invalid hour {hour}")
            if hour in seen:
                raise ConfigLoadError(f"hour {hour} is covered by both '{seen[hour]}' and '{band.name}'")
            seen[hour] = band.name
    missing = sorted(set(range(24)) - set(seen))
    if missing:
        raise ConfigLoadError(f"time bands leave hours uncovered: {missing}")


def parse_scenario_config(raw: Dict[str, Any]) -> ScenarioConfig:
    """Builds a validated ScenarioConfig from a raw mapping (parsed YAML)."""
    if not isinstance(raw, dict):
        raise ConfigLoadError("configuration root must be a mapping")

    raw_scenarios = _require(raw, "scenarios", "config")
    if not isinstance(raw_scenarios, dict) or DEFAULT_SCENARIO not in raw_scenarios:
        raise ConfigLoadError(f"config: scenarios must include '{DEFAULT_SCENARIO}'")
    if CUSTOM_SCENARIO in raw_scenarios:
        raise ConfigLoadError(f"config: '{CUSTOM_SCENARIO}' is reserved for free-text scenarios")

    scenarios = {key: _parse_scenario(key, data or {}) for key, data in raw_scenarios.items()}

    try:
        regions = tuple(
            RegionWeight(name=str(r["name"]), weight=float(r["weight"]), growth=float(r.get("growth", 0)))
            for r in raw.get("regions") or []
        )
        industries = tuple(
            IndustryWeight(name=str(i["name"]), weight=float(i["weight"]), margin=float(i.get("margin", 0)))
            for i in raw.get("industries") or []
        )
        products = tuple(
            ProductWeight(name=str(p["name"]), weight=float(p["weight"]), margin=float(p.get("margin", 0)))
            for p in raw.get("products") or []
        )
        competitors = tuple(
            CompetitorProfile(name=str(c["name"]), market_share=float(c["market_share"]), growth=float(c.get("growth", 0)))
            for c in raw.get("competitors") or []
        )
        risks = tuple(
            RiskBaseline(category=str(r["category"]), level=int(r["level"]))
            for r in raw.get("risks") or []
        )
        time_bands = tuple(
            TimeBand(name=str(name), hours=tuple(int(h) for h in band["hours"]), multiplier=float(band["multiplier"]))
            for name, band in (raw.get("time_patterns") or {}).items()
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigLoadError(f"invalid breakdown or time pattern entry: {e}") from e

    _check_weights("regions", [r.weight for r in regions])
    _check_weights("industries", [i.weight for i in industries])
    _check_weights("products", [p.weight for p in products])
    _check_time_bands(time_bands)

    return ScenarioConfig(
        scenarios=MappingProxyType(scenarios),
        regions=regions,
        industries=industries,
        products=products,
        competitors=competitors,
        risks=risks,
        time_bands=time_bands,
    )


def load_scenario_config(path: Optional[str] = None) -> ScenarioConfig:
    """
    Loads the scenario configuration file.

    Falls back to the built-in default configuration (with a warning) when the
    file is missing, unreadable, or fails validation.

    Args:
        path: YAML file path; defaults to BUSINESS_DATA_PATH or data/business_data.yaml
    """
    config_path = Path(path or os.getenv("BUSINESS_DATA_PATH") or DEFAULT_CONFIG_PATH)
    try:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigLoadError(f"cannot read {config_path}: {e}") from e
        config = parse_scenario_config(raw)
    except ConfigLoadError as e:
        logger.warning(f"Scenario config unavailable ({e}); using built-in defaults")
        return default_scenario_config()

    logger.info(f"Loaded scenario config from {config_path}: scenarios={list(config.scenarios.keys())}")
    return config


def default_scenario_config() -> ScenarioConfig:
    """The built-in configuration, identical to the shipped business_data.yaml."""
    return parse_scenario_config(DEFAULT_BUSINESS_DATA)


def _metrics(revenue, orders, users, conversion, aov, margin, repurchase) -> Dict[str, Any]:
    """(value, volatility) pairs in MetricId order -> base_metrics block."""
    return {
        "revenue": {"value": revenue[0], "unit": "USD", "volatility": revenue[1], "kind": "currency"},
        "orders": {"value": orders[0], "unit": "orders", "volatility": orders[1], "kind": "count"},
        "active_users": {"value": users[0], "unit": "users", "volatility": users[1], "kind": "count"},
        "conversion_rate": {"value": conversion[0], "unit": "%", "volatility": conversion[1], "kind": "percentage"},
        "avg_order_value": {"value": aov[0], "unit": "USD", "volatility": aov[1], "kind": "currency"},
        "gross_margin": {"value": margin[0], "unit": "%", "volatility": margin[1], "kind": "percentage"},
        "repurchase_rate": {"value": repurchase[0], "unit": "%", "volatility": repurchase[1], "kind": "percentage"},
    }


DEFAULT_BUSINESS_DATA: Dict[str, Any] = {
    "scenarios": {
        "normal": {
            "label": "Normal Operations",
            "description": "Steady business with small, gradual growth",
            "prompt_description": (
                "Normal operations: the business is developing steadily, every metric moves "
                "within a small range and the overall trend is a slow rise."
            ),
            "multiplier": 1.0,
            "base_metrics": _metrics(
                (5000000, 0.05), (12000, 0.08), (120000, 0.06), (3.2, 0.1),
                (417, 0.04), (35, 0.03), (28, 0.08),
            ),
            "insight_template": (
                "Business ran steadily this period: revenue {revenue_direction} {revenue_change_abs}% "
                "and active users {users_direction} {users_change_abs}%. All metrics moved within "
                "their normal ranges and the overall trend is stable."
            ),
            "suggestion": (
                "Suggestions: 1. Keep watching the trend of the core metrics; 2. Keep improving "
                "product and service quality; 3. Nurture customer relationships to lift the repurchase rate."
            ),
        },
        "promotion": {
            "label": "Promotion",
            "description": "A campaign drives a sharp rise across the metrics",
            "prompt_description": (
                "A large promotional campaign is running and the market is responding strongly: "
                "traffic and sales are up sharply and most metrics show clear growth."
            ),
            "multiplier": 1.5,
            "base_metrics": _metrics(
                (7500000, 0.12), (20000, 0.15), (180000, 0.1), (4.5, 0.15),
                (375, 0.08), (32, 0.05), (35, 0.1),
            ),
            "insight_template": (
                "Driven by the campaign, revenue {revenue_direction} {revenue_change_abs}% and orders "
                "{orders_direction} {orders_change_abs}%. Gross margin sits at {gross_margin}%, so "
                "promotion costs are putting some pressure on profit."
            ),
            "suggestion": (
                "Suggestions: 1. Keep up promotional reach to widen market coverage; 2. Watch user "
                "retention to convert campaign traffic; 3. Control promotion costs to protect ROI."
            ),
        },
        "off_season": {
            "label": "Off Season",
            "description": "Demand is soft and the metrics decline",
            "prompt_description": (
                "The business is in its off season: market demand is weak, most metrics are "
                "declining and the focus is on cutting costs and improving efficiency."
            ),
            "multiplier": 0.7,
            "base_metrics": _metrics(
                (3500000, 0.1), (8000, 0.12), (90000, 0.08), (2.8, 0.12),
                (438, 0.06), (33, 0.04), (25, 0.1),
            ),
            "insight_template": (
                "This is the off season: revenue {revenue_direction} {revenue_change_abs}% and active "
                "users {users_direction} {users_change_abs}%. Tighten cost control and invest in "
                "user engagement while demand is low."
            ),
            "suggestion": (
                "Suggestions: 1. Optimise the cost structure and operating efficiency; 2. Strengthen "
                "retention of existing customers; 3. Plan inventory and new product lines ahead of peak season."
            ),
        },
        "anomaly": {
            "label": "Anomaly Event",
            "description": "A sudden incident causes abnormal swings",
            "prompt_description": (
                "A sudden incident (for example a system outage or a supply-chain disruption) is "
                "causing abnormal swings in the data that need urgent handling."
            ),
            "multiplier": 0.5,
            "base_metrics": _metrics(
                (2500000, 0.3), (5000, 0.4), (60000, 0.25), (2.0, 0.3),
                (500, 0.15), (28, 0.1), (18, 0.2),
            ),
            "insight_template": (
                "Abnormal swings detected this period: revenue changed {revenue_change}% and active "
                "users changed {users_change}%. Investigate the cause immediately; external factors "
                "may be involved."
            ),
            "suggestion": (
                "Suggestions: 1. Investigate the root cause now and prepare a response plan; "
                "2. Tighten risk monitoring and alerting; 3. Coordinate with the affected teams to limit impact."
            ),
        },
    },
    "regions": [
        {"name": "East", "weight": 0.35, "growth": 0.08},
        {"name": "South", "weight": 0.28, "growth": 0.12},
        {"name": "North", "weight": 0.22, "growth": 0.05},
        {"name": "West", "weight": 0.15, "growth": 0.15},
    ],
    "industries": [
        {"name": "Technology", "weight": 0.38, "margin": 32},
        {"name": "Healthcare", "weight": 0.25, "margin": 35},
        {"name": "Education", "weight": 0.18, "margin": 28},
        {"name": "Retail Services", "weight": 0.12, "margin": 22},
        {"name": "Other", "weight": 0.07, "margin": 20},
    ],
    "products": [
        {"name": "Electronics", "weight": 0.45, "margin": 28},
        {"name": "Home Goods", "weight": 0.25, "margin": 35},
        {"name": "Apparel", "weight": 0.18, "margin": 42},
        {"name": "Food & Beverage", "weight": 0.12, "margin": 25},
    ],
    "competitors": [
        {"name": "Competitor A", "market_share": 18.5, "growth": 0.08},
        {"name": "Competitor B", "market_share": 15.2, "growth": 0.12},
        {"name": "Competitor C", "market_share": 10.8, "growth": 0.05},
        {"name": "Other Competitors", "market_share": 43.0, "growth": 0.03},
    ],
    "risks": [
        {"category": "Market Risk", "level": 3},
        {"category": "Operational Risk", "level": 2},
        {"category": "Financial Risk", "level": 4},
        {"category": "Technology Risk", "level": 2},
        {"category": "Legal Risk", "level": 3},
    ],
    "time_patterns": {
        "morning": {"hours": [6, 7, 8, 9, 10, 11], "multiplier": 0.6},
        "noon": {"hours": [12, 13, 14], "multiplier": 0.4},
        "afternoon": {"hours": [15, 16, 17], "multiplier": 0.9},
        "evening": {"hours": [18, 19, 20, 21], "multiplier": 1.2},
        "night": {"hours": [22, 23, 0, 1, 2, 3, 4, 5], "multiplier": 0.2},
    },
}
