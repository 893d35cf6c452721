"""
Chat narration service: answers questions about the current dashboard snapshot.

The assistant is grounded in the snapshot the user is looking at, which is
rendered into the system prompt. When the upstream model is unavailable
before any content has been delivered, a keyword-routed answer built from
the snapshot itself is returned instead.
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from app.llm_service import LLMConfig, LLMServiceError, stream_chat
from app.scenario_config import MetricId

logger = logging.getLogger(__name__)

MAX_HISTORY_TURNS = 10
MAX_PROMPT_METRICS = 7
CHAT_ROLES = {"user", "assistant", "system"}

StreamFn = Callable[[List[Dict[str, str]], str], Iterator[str]]

ASSISTANT_PERSONA = """You are "Data Buddy", a professional BI data narration assistant.
Your responsibilities:
1. Interpret and explain the company's BI business data
2. Explain complex figures in plain language
3. Spot trends and anomalies in the data
4. Answer any question the user has about the data
5. Offer insights and decision suggestions

Style:
- Professional but not obscure; use analogies to explain data
- Data-sensitive; quickly point out anomalies and trends
- Proactively share valuable insights
- Keep answers short and clear, usually no more than 3 sentences"""

FALLBACK_APOLOGY = (
    "Sorry, I can't answer that right now. Please make sure a valid ModelScope API key is configured."
)


def _arrow(change_percent: Any) -> str:
    if not isinstance(change_percent, (int, float)):
        return "→"
    if change_percent > 0:
        return "↑"
    if change_percent < 0:
        return "↓"
    return "→"


def _num(value: Any) -> float:
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def _fmt(value: Any) -> str:
    value = _num(value)
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def build_system_prompt(current_data: Optional[Dict[str, Any]]) -> str:
    """Persona prompt followed by a plain-text rendering of the current snapshot."""
    prompt = ASSISTANT_PERSONA
    if not current_data:
        return prompt

    lines = ["", "", "Current business data overview:", f"Scenario: {current_data.get('scenario') or 'normal'}"]

    metrics = current_data.get("metrics") or []
    if metrics:
        lines += ["", "[Key metrics]"]
        for m in metrics[:MAX_PROMPT_METRICS]:
            change = _num(m.get("changePercent"))
            lines.append(f"- {m.get('name')}: {_fmt(m.get('value'))}{m.get('unit', '')} "
                         f"({_arrow(change)}{abs(change):.2f}%)")

    regions = current_data.get("regionalData") or []
    if regions:
        lines += ["", "[Regional data]"]
        for r in regions:
            change = _num(r.get("changePercent"))
            lines.append(f"- {r.get('name')}: revenue {_fmt(r.get('value'))} ({_arrow(change)}{abs(change):.2f}%)")

    products = current_data.get("productData") or []
    if products:
        lines += ["", "[Product data]"]
        for p in products:
            lines.append(f"- {p.get('name')}: revenue {_fmt(p.get('revenue'))}, "
                         f"gross margin {_num(p.get('margin')):.2f}%, share {_num(p.get('share')):.2f}%")

    if current_data.get("insight"):
        lines += ["", "[Insight]", current_data["insight"]]
    if current_data.get("suggestion"):
        lines += ["", "[Suggestion]", current_data["suggestion"]]

    alerts = current_data.get("alerts") or []
    lines += ["", "[Current alerts]"]
    if alerts:
        lines += [f"- [{a.get('level')}] {a.get('message')}" for a in alerts]
    else:
        lines.append("All metrics are normal; there are no alerts.")

    trend = current_data.get("trend") or []
    if trend:
        lines += ["", "[Revenue trend] last 12 hours: " + " → ".join(_fmt(t.get("value")) for t in trend)]

    return prompt + "\n".join(lines)


def build_messages(message: str, history: Optional[List[Dict[str, Any]]],
                   current_data: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    """System prompt, the last 10 history turns, then the user message."""
    messages = [{"role": "system", "content": build_system_prompt(current_data)}]
    turns = [t for t in (history or []) if isinstance(t, dict) and t.get("role") in CHAT_ROLES]
    for turn in turns[-MAX_HISTORY_TURNS:]:
        messages.append({"role": turn["role"], "content": str(turn.get("content") or "")})
    messages.append({"role": "user", "content": message})
    return messages


def _find_metric(current_data: Optional[Dict[str, Any]], metric_id: MetricId) -> Optional[Dict[str, Any]]:
    for m in (current_data or {}).get("metrics") or []:
        if isinstance(m, dict) and MetricId.from_display_name(m.get("name")) == metric_id:
            return m
    return None


# keywords -> metric; checked in order, first match with data wins
_METRIC_KEYWORDS = [
    (("revenue", "income", "sales"), MetricId.REVENUE),
    (("order",), MetricId.ORDERS),
    (("user", "active"), MetricId.ACTIVE_USERS),
    (("margin", "profit"), MetricId.GROSS_MARGIN),
    (("conversion",), MetricId.CONVERSION_RATE),
    (("order value", "basket", "aov"), MetricId.AVG_ORDER_VALUE),
    (("repurchase", "retention", "repeat"), MetricId.REPURCHASE_RATE),
]


def _describe_metric(metric: Dict[str, Any]) -> str:
    change = _num(metric.get("changePercent"))
    if change > 0:
        direction = "up"
    elif change < 0:
        direction = "down"
    else:
        direction = "flat"
    unit = metric.get("unit", "")
    value = _fmt(metric.get("value"))
    value_text = f"{value}{unit}" if unit == "%" else f"{value} {unit}".strip()
    return (f"{metric.get('name')} is currently {value_text}, "
            f"{direction} {abs(change):.2f}% on the previous period.")


def fallback_response(message: str, current_data: Optional[Dict[str, Any]]) -> str:
    """Keyword-routed answer built from the snapshot, used when the model is unavailable."""
    text = (message or "").lower()
    data = current_data or {}

    # "order value" must win over "order"
    for keywords, metric_id in sorted(_METRIC_KEYWORDS, key=lambda k: -max(len(w) for w in k[0])):
        if any(word in text for word in keywords):
            metric = _find_metric(data, metric_id)
            if metric:
                return _describe_metric(metric)

    if "region" in text or "area" in text:
        regions = data.get("regionalData") or []
        if regions:
            top = regions[0]
            return (f"{top.get('name')} performs best with revenue of {_fmt(top.get('value'))}, "
                    f"growing {_num(top.get('changePercent')):.2f}%.")

    if "product" in text or "category" in text:
        products = data.get("productData") or []
        if products:
            top = products[0]
            return (f"{top.get('name')} has the highest revenue at {_fmt(top.get('revenue'))}, "
                    f"with a gross margin of {_num(top.get('margin')):.2f}%.")

    if "alert" in text or "anomal" in text or "warning" in text:
        alerts = data.get("alerts") or []
        if alerts:
            return f"There are {len(alerts)} alert(s): " + "; ".join(str(a.get("message")) for a in alerts)
        return "All metrics are normal; there are no alerts."

    if ("suggest" in text or "recommend" in text or "what should" in text) and data.get("suggestion"):
        return data["suggestion"]

    if data.get("insight"):
        return data["insight"]
    return FALLBACK_APOLOGY


def chat_stream(
    message: str,
    history: Optional[List[Dict[str, Any]]],
    current_data: Optional[Dict[str, Any]],
    api_key: str,
    llm_config: Optional[LLMConfig] = None,
    stream: Optional[StreamFn] = None,
) -> Iterator[str]:
    """
    Yields the assistant's answer in chunks.

    Falls back to a single keyword-routed answer when the upstream fails before
    delivering anything; a failure mid-answer just ends the stream.
    """
    if stream is None:
        config = llm_config or LLMConfig()
        stream = lambda messages, key: stream_chat(messages, key, config)  # noqa: E731

    messages = build_messages(message, history, current_data)
    delivered = False
    chunks = stream(messages, api_key)
    try:
        for chunk in chunks:
            if not chunk:
                continue
            delivered = True
            yield chunk
    except LLMServiceError as e:
        if delivered:
            logger.error(f"Chat stream failed mid-answer: {e}")
            return
        logger.warning(f"Chat upstream unavailable, using fallback answer: {e}")
        yield fallback_response(message, current_data)
        return
    finally:
        close = getattr(chunks, "close", None)
        if close is not None:
            close()

    if not delivered:
        logger.warning("Chat upstream returned no content, using fallback answer")
        yield fallback_response(message, current_data)
