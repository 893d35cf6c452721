"""
Rule-based snapshot generator.

Builds a complete dashboard snapshot from the scenario baselines with
bounded random perturbation. No I/O and no failure modes: this is the path
the service always falls back to when the AI generator is unavailable.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from app.alert_detector import detect_alerts
from app.scenario_config import CUSTOM_SCENARIO, MetricId, ScenarioConfig, ScenarioProfile
from app.snapshot_models import (
    CompetitorEntry,
    GeneratedSnapshot,
    IndustryEntry,
    Metric,
    ProductEntry,
    RegionalEntry,
    RiskEntry,
    TrendPoint,
    build_metric,
    extract_previous_values,
    round_by_kind,
)

logger = logging.getLogger(__name__)

TREND_POINTS = 12
HOUR_MS = 3_600_000

CUSTOM_INSIGHT_TEMPLATE = (
    "Data generated for the scenario \"{description}\": revenue {revenue_direction} "
    "{revenue_change_abs}%, active users {users_direction} {users_change_abs}% and orders "
    "{orders_direction} {orders_change_abs}%. Gross margin stands at {gross_margin}%."
)
CUSTOM_SUGGESTION = (
    "Suggestions: 1. Compare these figures against the assumptions behind the scenario; "
    "2. Watch the metrics most exposed to it; 3. Prepare a response plan for the key risks."
)


class _TemplateValues(dict):
    """Leaves unknown placeholders untouched instead of raising."""
    def __missing__(self, key):
        return "{" + key + "}"


def _risk_impact(level: int) -> str:
    if level <= 2:
        return "low"
    if level == 3:
        return "medium"
    return "high"


class RuleBasedGenerator:
    """Generates snapshots from the static scenario table."""

    def __init__(self, config: ScenarioConfig, rng: Optional[np.random.Generator] = None):
        self.config = config
        self.rng = rng if rng is not None else np.random.default_rng()

    def generate(
        self,
        scenario: str,
        previous_snapshot: Any = None,
        scenario_description: Optional[str] = None,
        now_ms: Optional[int] = None,
    ) -> GeneratedSnapshot:
        """
        Generates one snapshot.

        Args:
            scenario: scenario key; unknown keys and "custom" use the normal baseline
            previous_snapshot: GeneratedSnapshot or wire dict with prior-period metrics
            scenario_description: caller's free text, quoted in custom insights
            now_ms: generation time in epoch ms (defaults to wall clock)
        """
        now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
        profile = self.config.get_scenario(scenario)
        multiplier = profile.multiplier
        previous_values = extract_previous_values(previous_snapshot)

        metrics = self._generate_metrics(profile, previous_values)
        revenue = self._value_of(metrics, MetricId.REVENUE)

        insight, suggestion = self._compose_text(scenario, profile, metrics, scenario_description)

        snapshot = GeneratedSnapshot(
            metrics=metrics,
            trend=self._generate_trend(revenue, now_ms),
            regional_data=self._generate_regional(revenue, multiplier),
            industry_data=self._generate_industries(revenue),
            product_data=self._generate_products(revenue),
            competitor_data=self._generate_competitors(multiplier),
            risk_data=self._generate_risks(multiplier),
            insight=insight,
            suggestion=suggestion,
            alerts=detect_alerts(metrics, scenario, [], now_ms=now_ms),
        )
        logger.info(f"Rule-based snapshot generated: scenario={scenario}, profile={profile.key}, "
                    f"previous_metrics={len(previous_values)}")
        return snapshot

    # ── Metrics ────────────────────────────────────────────────────────────

    def _generate_metrics(self, profile: ScenarioProfile, previous_values: Dict[MetricId, float]) -> List[Metric]:
        metrics = []
        for metric_id in MetricId:
            baseline = profile.baselines[metric_id]
            factor = 1 + self.rng.uniform(-1, 1) * baseline.volatility
            value = round_by_kind(baseline.value * factor, baseline.kind)
            previous = previous_values.get(metric_id, baseline.value)
            metrics.append(build_metric(metric_id, value, previous, baseline.unit, baseline.kind))
        return metrics

    @staticmethod
    def _value_of(metrics: List[Metric], metric_id: MetricId) -> float:
        for metric in metrics:
            if metric.name == metric_id.display_name:
                return metric.value
        return 0

    # ── Trend & breakdowns ─────────────────────────────────────────────────

    def _generate_trend(self, revenue: float, now_ms: int) -> List[TrendPoint]:
        points = []
        for i in range(TREND_POINTS):
            timestamp = now_ms - (TREND_POINTS - 1 - i) * HOUR_MS
            hour = datetime.fromtimestamp(timestamp / 1000).hour
            value = revenue * self.config.hour_multiplier(hour) * self.rng.uniform(0.85, 1.15)
            points.append(TrendPoint(timestamp=timestamp, value=int(round(value))))
        return points

    def _generate_regional(self, revenue: float, multiplier: float) -> List[RegionalEntry]:
        entries = [
            RegionalEntry(
                name=region.name,
                value=int(round(revenue * region.weight * self.rng.uniform(0.9, 1.1))),
                change_percent=round(region.growth * 100 * multiplier + self.rng.uniform(-5, 5), 2),
            )
            for region in self.config.regions
        ]
        return sorted(entries, key=lambda e: e.value, reverse=True)

    def _generate_industries(self, revenue: float) -> List[IndustryEntry]:
        entries = [
            IndustryEntry(
                name=industry.name,
                revenue=int(round(revenue * industry.weight * self.rng.uniform(0.9, 1.1))),
                profit_margin=round(industry.margin + self.rng.uniform(-2.5, 2.5), 2),
                share=round(industry.weight * 100, 2),
            )
            for industry in self.config.industries
        ]
        return sorted(entries, key=lambda e: e.revenue, reverse=True)

    def _generate_products(self, revenue: float) -> List[ProductEntry]:
        entries = [
            ProductEntry(
                name=product.name,
                revenue=int(round(revenue * product.weight * self.rng.uniform(0.9, 1.1))),
                margin=round(product.margin + self.rng.uniform(-2.5, 2.5), 2),
                share=round(product.weight * 100, 2),
            )
            for product in self.config.products
        ]
        return sorted(entries, key=lambda e: e.revenue, reverse=True)

    def _generate_competitors(self, multiplier: float) -> List[CompetitorEntry]:
        entries = [
            CompetitorEntry(
                name=competitor.name,
                market_share=round(competitor.market_share * self.rng.uniform(0.95, 1.05), 2),
                growth_rate=round(competitor.growth * 100 * multiplier + self.rng.uniform(-2, 2), 2),
            )
            for competitor in self.config.competitors
        ]
        return sorted(entries, key=lambda e: e.market_share, reverse=True)

    def _generate_risks(self, multiplier: float) -> List[RiskEntry]:
        entries = []
        for risk in self.config.risks:
            shifted = risk.level + (1 - multiplier) * 2 + self.rng.uniform(-0.5, 0.5)
            level = int(min(5, max(1, round(shifted))))
            entries.append(RiskEntry(category=risk.category, level=level, impact=_risk_impact(level)))
        return sorted(entries, key=lambda e: e.level, reverse=True)

    # ── Narrative ──────────────────────────────────────────────────────────

    def _compose_text(self, scenario: str, profile: ScenarioProfile, metrics: List[Metric],
                      scenario_description: Optional[str]):
        by_id = {MetricId.from_display_name(m.name): m for m in metrics}
        values = _TemplateValues()
        for prefix, metric_id in (("revenue", MetricId.REVENUE), ("users", MetricId.ACTIVE_USERS),
                                  ("orders", MetricId.ORDERS)):
            change = by_id[metric_id].change_percent
            values[f"{prefix}_change"] = f"{change:.2f}"
            values[f"{prefix}_change_abs"] = f"{abs(change):.2f}"
            values[f"{prefix}_direction"] = "rose" if change >= 0 else "fell"
        values["gross_margin"] = f"{by_id[MetricId.GROSS_MARGIN].value:.2f}"

        if scenario == CUSTOM_SCENARIO:
            values["description"] = (scenario_description or "").strip() or "custom scenario"
            return CUSTOM_INSIGHT_TEMPLATE.format_map(values), CUSTOM_SUGGESTION

        return profile.insight_template.format_map(values), profile.suggestion
