"""
Generation orchestrator: picks a generator for each request and falls back
to the rule-based path whenever the AI path cannot deliver.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.ai_generator import AIDataGenerator, GenerationRequest, RemoteGenerationError
from app.rule_generator import RuleBasedGenerator
from app.scenario_config import CUSTOM_SCENARIO
from app.snapshot_models import GeneratedSnapshot

logger = logging.getLogger(__name__)

SOURCE_AI = "ai"
SOURCE_RULE_BASED = "enhanced"


class GenerationRequestError(Exception):
    """Raised when a generation request is invalid; maps to HTTP 400."""
    pass


class InvalidScenarioError(GenerationRequestError):
    """Raised when the scenario key is missing or unknown."""
    pass


class MissingCustomDescriptionError(GenerationRequestError):
    """Raised when a custom scenario has no description."""
    pass


@dataclass
class GenerationOutcome:
    snapshot: GeneratedSnapshot
    source: str  # "ai" or "enhanced"


class GenerationService:
    """Chooses between the AI and rule-based generators."""

    def __init__(self, rule_generator: RuleBasedGenerator, ai_generator: Optional[AIDataGenerator],
                 timeout_seconds: float, custom_via_ai: bool = False):
        self.rule_generator = rule_generator
        self.ai_generator = ai_generator
        self.timeout_seconds = timeout_seconds
        self.custom_via_ai = custom_via_ai

    def validate_request(self, scenario: Optional[str], description: Optional[str]) -> None:
        if not scenario:
            raise InvalidScenarioError("Scenario is required")
        if scenario == CUSTOM_SCENARIO:
            if not description or not description.strip():
                raise MissingCustomDescriptionError("A custom scenario requires a scenario description")
            return
        if not self.rule_generator.config.has_scenario(scenario):
            raise InvalidScenarioError(f"Unknown scenario: {scenario}")

    def obtain_snapshot(
        self,
        scenario: Optional[str],
        use_ai: bool = True,
        api_key: Optional[str] = None,
        previous_snapshot: Any = None,
        scenario_description: Optional[str] = None,
    ) -> GenerationOutcome:
        """
        Returns a snapshot and the generator that produced it.

        Raises:
            GenerationRequestError: invalid scenario or missing custom description
        """
        self.validate_request(scenario, scenario_description)

        reason = None
        if not use_ai:
            reason = "AI disabled by request"
        elif scenario == CUSTOM_SCENARIO and not self.custom_via_ai:
            reason = "custom scenarios use rule-based generation"
        elif not api_key:
            reason = "no API key"
        elif self.ai_generator is None:
            reason = "AI generator not configured"

        if reason is None:
            logger.info(f"Generating snapshot via AI: scenario={scenario}")
            request = GenerationRequest(
                scenario=scenario,
                scenario_description=scenario_description,
                previous_data=previous_snapshot,
            )
            try:
                snapshot = self.ai_generator.generate(request, api_key, timeout=self.timeout_seconds)
                return GenerationOutcome(snapshot=snapshot, source=SOURCE_AI)
            except RemoteGenerationError as e:
                logger.warning(f"AI generation failed, falling back to rule-based: {e}")
        else:
            logger.info(f"Generating snapshot via rules: scenario={scenario} ({reason})")

        snapshot = self.rule_generator.generate(
            scenario,
            previous_snapshot=previous_snapshot,
            scenario_description=scenario_description,
        )
        return GenerationOutcome(snapshot=snapshot, source=SOURCE_RULE_BASED)
