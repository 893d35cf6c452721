import os
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from app.ai_generator import AIDataGenerator
from app.generation_service import GenerationService
from app.llm_service import LLMConfig, probe_api_key
from app.routes_chat import router as chat_router
from app.routes_data import router as data_router
from app.rule_generator import RuleBasedGenerator
from app.scenario_config import ScenarioConfig, load_scenario_config

# Load environment variables
load_dotenv()

SERVICE_NAME = "bi-data-explainer"
MIN_AVATAR_CREDENTIAL_LENGTH = 10

# Logging setup (structured-ish JSON)
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='{"time":"%(asctime)s","level":"%(levelname)s","message":"%(message)s","module":"%(name)s"}',
)
logger = logging.getLogger(__name__)


class KeyTestRequest(BaseModel):
    modelscopeApiKey: Optional[str] = None
    xmovAppId: Optional[str] = None
    xmovAppSecret: Optional[str] = None


def _avatar_credentials_valid(app_id: Optional[str], app_secret: Optional[str]) -> bool:
    # Format check only; the avatar service is contacted by the browser
    return bool(
        app_id and len(app_id) > MIN_AVATAR_CREDENTIAL_LENGTH
        and app_secret and len(app_secret) > MIN_AVATAR_CREDENTIAL_LENGTH
    )


def create_app(
    scenario_config: Optional[ScenarioConfig] = None,
    llm_config: Optional[LLMConfig] = None,
    ai_generator: Optional[AIDataGenerator] = None,
    rng: Optional[np.random.Generator] = None,
    chat_stream_fn: Optional[Callable] = None,
) -> FastAPI:
    """
    Builds the API with its services wired once and kept on app.state.

    Args:
        scenario_config: scenario table (loaded from BUSINESS_DATA_PATH when omitted)
        llm_config: upstream settings (read from the environment when omitted)
        ai_generator: AI generator override, e.g. with a fake completion callable
        rng: random source for the rule-based generator
        chat_stream_fn: (messages, api_key) -> Iterator[str] override for chat
    """
    scenario_config = scenario_config or load_scenario_config()
    llm_config = llm_config or LLMConfig()
    ai_generator = ai_generator or AIDataGenerator(scenario_config, llm_config)

    app = FastAPI(title="BI Data Explainer")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.scenario_config = scenario_config
    app.state.llm_config = llm_config
    app.state.chat_stream_fn = chat_stream_fn
    app.state.generation_service = GenerationService(
        RuleBasedGenerator(scenario_config, rng=rng),
        ai_generator,
        timeout_seconds=llm_config.generation_timeout,
        custom_via_ai=llm_config.custom_scenario_use_ai,
    )

    app.include_router(data_router)
    app.include_router(chat_router)

    @app.post("/api/test-keys")
    def test_keys(req: KeyTestRequest):
        modelscope_valid, probe_message = probe_api_key(req.modelscopeApiKey or "", app.state.llm_config)
        xmov_valid = _avatar_credentials_valid(req.xmovAppId, req.xmovAppSecret)

        if not modelscope_valid:
            message = probe_message
        elif xmov_valid:
            message = "All keys verified"
        else:
            message = "ModelScope key is valid; check the avatar app ID and secret format"
        return {"modelscopeValid": modelscope_valid, "xmovValid": xmov_valid, "message": message}

    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "mode": os.getenv("APP_MODE", "development"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scenarios_loaded": len(app.state.scenario_config.scenarios),
        }

    logger.info(f"App created: scenarios={list(scenario_config.scenarios.keys())}, model={llm_config.model}")
    return app


app = create_app()
