"""
AI-augmented snapshot generator.

Asks the upstream LLM for a full snapshot in the dashboard's JSON shape,
then strictly validates the answer. Anything short of a complete, valid
snapshot is a failure; the orchestrator decides what to do about it.
"""

import json
import logging
import math
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from app.llm_service import LLMConfig, LLMServiceError, complete_chat
from app.scenario_config import CUSTOM_SCENARIO, MetricId, ScenarioConfig
from app.snapshot_models import (
    ALERT_SEVERITY_ORDER,
    Alert,
    CompetitorEntry,
    GeneratedSnapshot,
    IndustryEntry,
    Metric,
    ProductEntry,
    RegionalEntry,
    RiskEntry,
    TrendPoint,
    extract_previous_values,
)

logger = logging.getLogger(__name__)

TREND_POINTS = 12
HOUR_MS = 3_600_000
RAW_LOG_LIMIT = 400
AI_ALERT_METRIC = "AI Analysis"
RISK_LEVEL_MIN = 1
RISK_LEVEL_MAX = 5
RISK_IMPACTS = ("low", "medium", "high")

SYSTEM_PROMPT = (
    "You are a professional BI data simulator. Every figure you generate must be realistic, "
    "plausible and consistent with business logic. Return only the JSON data in exactly the "
    "format the user asks for, without any other text."
)

CompleteFn = Callable[[List[Dict[str, str]], str], str]


class RemoteGenerationError(Exception):
    """Raised when the AI path cannot deliver a valid snapshot (upstream, timeout or decode)."""
    pass


@dataclass
class GenerationRequest:
    """Represents one snapshot request to the AI generator."""
    scenario: str
    scenario_description: Optional[str] = None
    previous_data: Any = None  # GeneratedSnapshot or wire dict {"metrics": [...]}


@dataclass
class DecodeResult:
    """Tagged result of decoding an AI answer: exactly one of snapshot / error is set."""
    snapshot: Optional[GeneratedSnapshot] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None

    @classmethod
    def success(cls, snapshot: GeneratedSnapshot) -> "DecodeResult":
        return cls(snapshot=snapshot)

    @classmethod
    def failure(cls, reason: str) -> "DecodeResult":
        return cls(error=reason)


# ── JSON extraction ────────────────────────────────────────────────────────

def extract_json_object(text: Optional[str]) -> Optional[str]:
    """
    Returns the first balanced {...} substring of `text`, or None.

    Braces inside JSON string literals (including escaped quotes) are ignored,
    so prose or markdown fences around the object do not matter.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)
    return None


# ── Decoding & validation ──────────────────────────────────────────────────

class _DecodeError(ValueError):
    pass


def _number(obj: Dict[str, Any], key: str, context: str) -> float:
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _DecodeError(f"{context}.{key} must be a number")
    # json.loads accepts NaN, Infinity and overflowing literals such as 1e999
    if not math.isfinite(value):
        raise _DecodeError(f"{context}.{key} must be a finite number")
    return value


def _integer(obj: Dict[str, Any], key: str, context: str) -> int:
    value = _number(obj, key, context)
    if value != int(value):
        raise _DecodeError(f"{context}.{key} must be an integer")
    return int(value)


def _text(obj: Dict[str, Any], key: str, context: str, allow_empty: bool = False) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise _DecodeError(f"{context}.{key} must be a non-empty string")
    return value


def _objects(data: Dict[str, Any], key: str, required: bool) -> List[Dict[str, Any]]:
    value = data.get(key)
    if value is None:
        if required:
            raise _DecodeError(f"{key} is missing")
        return []
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise _DecodeError(f"{key} must be a list of objects")
    return value


def _decode_metrics(data: Dict[str, Any]) -> List[Metric]:
    items = _objects(data, "metrics", required=True)
    if not items:
        raise _DecodeError("metrics is empty")
    metrics = []
    seen = set()
    for i, item in enumerate(items):
        context = f"metrics[{i}]"
        metric_id = MetricId.from_display_name(_text(item, "name", context))
        if metric_id is None:
            raise _DecodeError(f"{context}.name {item['name']!r} is not a known metric")
        if metric_id in seen:
            raise _DecodeError(f"{context}.name {item['name']!r} is duplicated")
        seen.add(metric_id)
        trend = item.get("trend")
        if trend not in ("up", "down", "stable"):
            raise _DecodeError(f"{context}.trend must be up, down or stable")
        metrics.append(Metric(
            name=metric_id.display_name,
            value=_number(item, "value", context),
            previous_value=_number(item, "previousValue", context),
            change=_number(item, "change", context),
            change_percent=_number(item, "changePercent", context),
            unit=_text(item, "unit", context, allow_empty=True),
            trend=trend,
        ))
    missing = [m.display_name for m in MetricId if m not in seen]
    if missing:
        raise _DecodeError(f"metrics is missing {', '.join(missing)}")
    return metrics


def _decode_trend(data: Dict[str, Any]) -> List[TrendPoint]:
    items = _objects(data, "trend", required=True)
    if len(items) != TREND_POINTS:
        raise _DecodeError(f"trend must have {TREND_POINTS} points, got {len(items)}")
    return [
        TrendPoint(timestamp=_integer(p, "timestamp", f"trend[{i}]"), value=_number(p, "value", f"trend[{i}]"))
        for i, p in enumerate(items)
    ]


def _decode_risks(data: Dict[str, Any]) -> List[RiskEntry]:
    risks = []
    for i, item in enumerate(_objects(data, "riskData", required=False)):
        context = f"riskData[{i}]"
        level = _integer(item, "level", context)
        if not RISK_LEVEL_MIN <= level <= RISK_LEVEL_MAX:
            raise _DecodeError(f"{context}.level must be between {RISK_LEVEL_MIN} and {RISK_LEVEL_MAX}")
        impact = item.get("impact")
        if impact not in RISK_IMPACTS:
            raise _DecodeError(f"{context}.impact must be low, medium or high")
        risks.append(RiskEntry(category=_text(item, "category", context), level=level, impact=impact))
    return risks


def _decode_alerts(data: Dict[str, Any], now_ms: int) -> List[Alert]:
    alerts = []
    for i, item in enumerate(_objects(data, "alerts", required=False)):
        context = f"alerts[{i}]"
        level = item.get("level")
        if level not in ALERT_SEVERITY_ORDER:
            raise _DecodeError(f"{context}.level must be info, warning or critical")
        metric = item.get("metric")
        alerts.append(Alert(
            id=f"alert-{now_ms}-ai-{uuid.uuid4().hex[:8]}",
            level=level,
            metric=metric if isinstance(metric, str) and metric.strip() else AI_ALERT_METRIC,
            message=_text(item, "message", context),
            value=None,
            threshold=None,
            timestamp=now_ms,
        ))
    return alerts


def decode_ai_response(text: Optional[str], now_ms: Optional[int] = None) -> DecodeResult:
    """
    Decodes and validates an AI answer into a GeneratedSnapshot.

    Missing breakdown arrays become empty lists; a malformed one fails the
    whole decode. Alerts are normalized into full Alert records.
    """
    now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    blob = extract_json_object(text)
    if blob is None:
        return DecodeResult.failure("no JSON object in response")
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        return DecodeResult.failure(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return DecodeResult.failure("response is not a JSON object")

    try:
        snapshot = GeneratedSnapshot(
            metrics=_decode_metrics(data),
            trend=_decode_trend(data),
            regional_data=[
                RegionalEntry(
                    name=_text(r, "name", f"regionalData[{i}]"),
                    value=_number(r, "value", f"regionalData[{i}]"),
                    change_percent=_number(r, "changePercent", f"regionalData[{i}]"),
                )
                for i, r in enumerate(_objects(data, "regionalData", required=False))
            ],
            industry_data=[
                IndustryEntry(
                    name=_text(r, "name", f"industryData[{i}]"),
                    revenue=_number(r, "revenue", f"industryData[{i}]"),
                    profit_margin=_number(r, "profitMargin", f"industryData[{i}]"),
                    share=_number(r, "share", f"industryData[{i}]"),
                )
                for i, r in enumerate(_objects(data, "industryData", required=False))
            ],
            product_data=[
                ProductEntry(
                    name=_text(r, "name", f"productData[{i}]"),
                    revenue=_number(r, "revenue", f"productData[{i}]"),
                    margin=_number(r, "margin", f"productData[{i}]"),
                    share=_number(r, "share", f"productData[{i}]"),
                )
                for i, r in enumerate(_objects(data, "productData", required=False))
            ],
            competitor_data=[
                CompetitorEntry(
                    name=_text(r, "name", f"competitorData[{i}]"),
                    market_share=_number(r, "marketShare", f"competitorData[{i}]"),
                    growth_rate=_number(r, "growthRate", f"competitorData[{i}]"),
                )
                for i, r in enumerate(_objects(data, "competitorData", required=False))
            ],
            risk_data=_decode_risks(data),
            insight=_text(data, "insight", "response"),
            suggestion=_text(data, "suggestion", "response"),
            alerts=_decode_alerts(data, now_ms),
        )
    except _DecodeError as e:
        return DecodeResult.failure(str(e))
    except (ValueError, OverflowError, TypeError) as e:
        return DecodeResult.failure(f"malformed value: {e}")
    return DecodeResult.success(snapshot)


# ── Timeout race ───────────────────────────────────────────────────────────

def run_with_timeout(fn: Callable[[], Any], timeout: float) -> Any:
    """
    Runs `fn` on a worker thread and returns its result if it settles within `timeout` seconds.

    On expiry the late result is discarded: the worker is not awaited.
    Exceptions raised by `fn` propagate unchanged.

    Raises:
        RemoteGenerationError: when the timeout expires first
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-generation")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        raise RemoteGenerationError(f"AI generation timed out after {timeout:g}s")
    finally:
        executor.shutdown(wait=False)


# ── Generator ──────────────────────────────────────────────────────────────

def _format_value(value: float, kind: str) -> str:
    if kind == "percentage":
        return f"{value:.2f}"
    return str(int(round(value)))


class AIDataGenerator:
    """Generates snapshots through the upstream LLM."""

    def __init__(self, config: ScenarioConfig, llm_config: Optional[LLMConfig] = None,
                 complete: Optional[CompleteFn] = None):
        self.config = config
        self.llm_config = llm_config or LLMConfig()
        self.complete = complete or (lambda messages, api_key: complete_chat(messages, api_key, self.llm_config))

    def build_prompt(self, request: GenerationRequest, now_ms: int) -> str:
        """Builds the user prompt: scenario, prior figures, exact JSON schema and consistency rules."""
        profile = self.config.get_scenario(request.scenario)
        if request.scenario == CUSTOM_SCENARIO and request.scenario_description:
            scenario_text = request.scenario_description.strip()
        else:
            scenario_text = profile.prompt_description
        multiplier = self.config.multiplier(request.scenario)

        previous = extract_previous_values(request.previous_data)
        previous_label = "Previous period figures" if previous else "Reference baseline figures"

        lines = [
            "Generate business data for the following scenario.",
            f"Scenario: {scenario_text}",
            f"Scenario activity multiplier (1.0 = normal): {multiplier:g}",
            "",
            f"{previous_label}:",
        ]
        metric_schema = []
        for metric_id in MetricId:
            baseline = profile.baselines[metric_id]
            prior = previous.get(metric_id, baseline.value)
            prior_text = _format_value(prior, baseline.kind)
            lines.append(f"- {metric_id.display_name}: {prior_text} {baseline.unit}")
            value_hint = "number with 2 decimals" if baseline.kind == "percentage" else "integer"
            metric_schema.append(
                f'    {{"name": "{metric_id.display_name}", "value": <{value_hint}>, '
                f'"previousValue": {prior_text}, "change": <{value_hint}>, '
                f'"changePercent": <number with 2 decimals>, "unit": "{baseline.unit}", '
                f'"trend": "up|down|stable"}}'
            )

        trend_schema = [
            f'    {{"timestamp": {now_ms - (TREND_POINTS - 1 - i) * HOUR_MS}, "value": <integer revenue>}}'
            for i in range(TREND_POINTS)
        ]

        def rows(names: List[str], template: str) -> str:
            return ",\n".join(f'    {{"name": "{name}", {template}}}' for name in names)

        risk_rows = ",\n".join(
            f'    {{"category": "{risk.category}", "level": <integer 1-5>, "impact": "low|medium|high"}}'
            for risk in self.config.risks
        )

        lines += [
            "",
            "Return JSON in exactly this format (no other text):",
            "{",
            '  "metrics": [',
            ",\n".join(metric_schema),
            "  ],",
            '  "trend": [',
            ",\n".join(trend_schema),
            "  ],",
            '  "regionalData": [',
            rows([r.name for r in self.config.regions],
                 '"value": <integer revenue>, "changePercent": <number with 2 decimals>'),
            "  ],",
            '  "industryData": [',
            rows([i.name for i in self.config.industries],
                 '"revenue": <integer>, "profitMargin": <number with 2 decimals>, "share": <number with 2 decimals>'),
            "  ],",
            '  "productData": [',
            rows([p.name for p in self.config.products],
                 '"revenue": <integer>, "margin": <number with 2 decimals>, "share": <number with 2 decimals>'),
            "  ],",
            '  "competitorData": [',
            rows([c.name for c in self.config.competitors],
                 '"marketShare": <number with 2 decimals>, "growthRate": <number with 2 decimals>'),
            "  ],",
            '  "riskData": [',
            risk_rows,
            "  ],",
            '  "insight": "<2-3 sentences on what changed, the likely causes and the business impact>",',
            '  "suggestion": "<1-2 concrete, actionable recommendations>",',
            '  "alerts": [{"level": "info|warning|critical", "metric": "<metric name>", "message": "<alert text>"}]',
            "}",
            "",
            "Rules:",
            "1. Return only the JSON object, with no explanations or markdown.",
            "2. change = value - previousValue; changePercent = (value - previousValue) / previousValue * 100, "
            "rounded to 2 decimals.",
            "3. trend is \"stable\" when |changePercent| < 2, otherwise \"up\" or \"down\" following the sign.",
            f"4. The trend array must contain exactly {TREND_POINTS} points with the timestamps shown.",
            "5. Regional, industry and product revenues should add up to roughly the Revenue value.",
            "6. Sort regionalData by value and industryData, productData by revenue, highest first.",
            "7. Figures must reflect the scenario, e.g. a promotion shows clear growth.",
            "8. Raise alerts for abnormal metrics, e.g. a warning when Gross Margin is below 30%.",
        ]
        return "\n".join(lines)

    def generate(self, request: GenerationRequest, api_key: str, timeout: Optional[float] = None) -> GeneratedSnapshot:
        """
        Generates one snapshot through the upstream LLM.

        Raises:
            RemoteGenerationError: upstream failure, timeout, or an invalid answer
        """
        now_ms = int(time.time() * 1000)
        timeout = timeout if timeout is not None else self.llm_config.generation_timeout
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self.build_prompt(request, now_ms)},
        ]

        try:
            raw = run_with_timeout(lambda: self.complete(messages, api_key), timeout)
        except LLMServiceError as e:
            raise RemoteGenerationError(f"upstream error: {e}") from e

        try:
            result = decode_ai_response(raw, now_ms=now_ms)
        except Exception as e:
            logger.error(f"Unexpected error decoding AI response: {e}")
            raise RemoteGenerationError(f"invalid AI response: {e}") from e
        if not result.ok:
            logger.warning(f"AI response rejected ({result.error}); raw text: {str(raw)[:RAW_LOG_LIMIT]}")
            raise RemoteGenerationError(f"invalid AI response: {result.error}")

        logger.info(f"AI snapshot generated: scenario={request.scenario}, metrics={len(result.snapshot.metrics)}")
        return result.snapshot
