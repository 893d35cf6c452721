"""
Prints one dashboard snapshot as JSON, without starting the API.

Usage:
  python scripts/generate_snapshot.py --scenario promotion --deterministic
  python scripts/generate_snapshot.py --scenario custom --description "Supplier strike in the south"
  MODELSCOPE_API_KEY=... python scripts/generate_snapshot.py --scenario normal --use-ai
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
from dotenv import load_dotenv

from app.ai_generator import AIDataGenerator
from app.generation_service import GenerationRequestError, GenerationService
from app.llm_service import LLMConfig
from app.rule_generator import RuleBasedGenerator
from app.scenario_config import load_scenario_config


def _load_previous(path: str) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    # Accept either a bare snapshot or a /api/data/generate response body
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        return data["data"]
    return data


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate one synthetic BI snapshot and print it as JSON.")
    parser.add_argument("--scenario", default="normal", help="Scenario key (normal, promotion, off_season, anomaly, custom)")
    parser.add_argument("--description", default="", help="Scenario description (required for custom)")
    parser.add_argument("--previous", default="", help="Path to a JSON file with the previous snapshot")
    parser.add_argument("--deterministic", action="store_true", help="Zero volatility: metric values equal baselines")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for the rule-based generator")
    parser.add_argument("--use-ai", action="store_true", help="Try the AI generator (key from MODELSCOPE_API_KEY)")
    parser.add_argument("--config", default="", help="Scenario config YAML (defaults to BUSINESS_DATA_PATH)")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING").upper(), stream=sys.stderr)

    config = load_scenario_config(args.config or None)
    if args.deterministic:
        config = config.without_volatility()
    llm_config = LLMConfig()

    service = GenerationService(
        RuleBasedGenerator(config, rng=np.random.default_rng(args.seed)),
        AIDataGenerator(config, llm_config),
        timeout_seconds=llm_config.generation_timeout,
        custom_via_ai=llm_config.custom_scenario_use_ai,
    )

    try:
        outcome = service.obtain_snapshot(
            args.scenario,
            use_ai=args.use_ai,
            api_key=os.getenv("MODELSCOPE_API_KEY") if args.use_ai else None,
            previous_snapshot=_load_previous(args.previous),
            scenario_description=args.description or None,
        )
    except GenerationRequestError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    print(json.dumps({"source": outcome.source, "data": outcome.snapshot.to_dict()}, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
