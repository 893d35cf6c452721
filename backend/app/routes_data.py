"""
Data routes:
- Snapshot generation (AI with rule-based fallback)
- Scenario catalog
- Server-side alert detection
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.alert_detector import detect_alerts
from app.generation_service import GenerationRequestError, GenerationService

logger = logging.getLogger(__name__)

router = APIRouter()


class PreviousData(BaseModel):
    metrics: List[dict] = Field(default_factory=list)


class GenerateRequest(BaseModel):
    scenario: Optional[str] = None
    scenarioDescription: Optional[str] = None
    useAI: bool = True
    previousData: Optional[PreviousData] = None


class DetectAlertsRequest(BaseModel):
    metrics: Any = None  # list of metrics or {name: metric}
    scenario: Optional[str] = None
    existingAlerts: List[dict] = Field(default_factory=list)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@router.post("/api/data/generate")
def generate_data(
    req: GenerateRequest,
    request: Request,
    x_modelscope_api_key: Optional[str] = Header(None, alias="x-modelscope-api-key"),
):
    service: GenerationService = request.app.state.generation_service
    previous = req.previousData.model_dump() if req.previousData else None
    try:
        outcome = service.obtain_snapshot(
            req.scenario,
            use_ai=req.useAI,
            api_key=x_modelscope_api_key,
            previous_snapshot=previous,
            scenario_description=req.scenarioDescription,
        )
    except GenerationRequestError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"Snapshot generation failed: {e}")
        return _error(500, "Failed to generate data")

    return {"success": True, "data": outcome.snapshot.to_dict(), "source": outcome.source}


@router.get("/api/data/scenarios")
def list_scenarios(request: Request):
    return {"success": True, "scenarios": request.app.state.scenario_config.catalog()}


@router.post("/api/alerts/detect")
def detect(req: DetectAlertsRequest):
    if req.metrics is not None and not isinstance(req.metrics, (list, dict)):
        return _error(400, "metrics must be a list or an object keyed by metric name")
    alerts = detect_alerts(req.metrics, req.scenario, req.existingAlerts)
    return {"success": True, "alerts": [a.to_dict() for a in alerts]}
