import json

import numpy as np
import pytest

from app.scenario_config import MetricId, default_scenario_config


@pytest.fixture
def config():
    return default_scenario_config()


@pytest.fixture
def flat_config(config):
    # zero volatility: metric values equal their baselines
    return config.without_volatility()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def ai_payload():
    """Builds a valid AI answer (as a dict) with trend timestamps ending at now_ms."""
    def _build(now_ms=1_700_000_000_000):
        return {
            "metrics": [
                {
                    "name": metric_id.display_name,
                    "value": 110,
                    "previousValue": 100,
                    "change": 10,
                    "changePercent": 10.0,
                    "unit": "USD",
                    "trend": "up",
                }
                for metric_id in MetricId
            ],
            "trend": [
                {"timestamp": now_ms - (11 - i) * 3_600_000, "value": 400000 + i * 1000}
                for i in range(12)
            ],
            "regionalData": [
                {"name": "East", "value": 1800000, "changePercent": 8.5},
                {"name": "West", "value": 700000, "changePercent": 14.2},
            ],
            "industryData": [
                {"name": "Technology", "revenue": 1900000, "profitMargin": 31.5, "share": 38.0},
            ],
            "productData": [
                {"name": "Electronics", "revenue": 2200000, "margin": 27.9, "share": 45.0},
            ],
            "competitorData": [
                {"name": "Competitor A", "marketShare": 18.2, "growthRate": 7.9},
            ],
            "riskData": [
                {"category": "Market Risk", "level": 3, "impact": "medium"},
            ],
            "insight": "Revenue grew steadily on the back of strong regional demand.",
            "suggestion": "Keep investing in the East region.",
            "alerts": [{"level": "warning", "message": "Gross margin is trending down"}],
        }
    return _build


@pytest.fixture
def ai_text(ai_payload):
    """The AI answer as the model would send it: prose around a JSON object."""
    def _build(now_ms=1_700_000_000_000):
        return "Here is the data:\n```json\n" + json.dumps(ai_payload(now_ms)) + "\n```"
    return _build
