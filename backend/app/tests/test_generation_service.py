import numpy as np
import pytest

from app.ai_generator import AIDataGenerator
from app.generation_service import (
    SOURCE_AI,
    SOURCE_RULE_BASED,
    GenerationRequestError,
    GenerationService,
    InvalidScenarioError,
    MissingCustomDescriptionError,
)
from app.llm_service import LLMServiceError
from app.rule_generator import RuleBasedGenerator


class FakeCompletion:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.calls = 0

    def __call__(self, messages, api_key):
        self.calls += 1
        if self.error:
            raise self.error
        return self.answer


def _service(config, completion, custom_via_ai=False):
    return GenerationService(
        RuleBasedGenerator(config, rng=np.random.default_rng(5)),
        AIDataGenerator(config, complete=completion),
        timeout_seconds=5,
        custom_via_ai=custom_via_ai,
    )


def test_ai_path_used_with_key(config, ai_text):
    completion = FakeCompletion(answer=ai_text())
    outcome = _service(config, completion).obtain_snapshot("promotion", api_key="k")
    assert outcome.source == SOURCE_AI
    assert outcome.snapshot.insight.startswith("Revenue grew")
    assert completion.calls == 1


def test_rule_based_without_key(config):
    completion = FakeCompletion(answer="unused")
    outcome = _service(config, completion).obtain_snapshot("normal", api_key=None)
    assert outcome.source == SOURCE_RULE_BASED
    assert completion.calls == 0


def test_rule_based_when_ai_disabled(config):
    completion = FakeCompletion(answer="unused")
    outcome = _service(config, completion).obtain_snapshot("anomaly", use_ai=False, api_key="k")
    assert outcome.source == SOURCE_RULE_BASED
    assert completion.calls == 0


def test_custom_without_key_resolves_through_rules(config):
    outcome = _service(config, FakeCompletion()).obtain_snapshot(
        "custom", api_key=None, scenario_description="Competitor exits the market"
    )
    assert outcome.source == SOURCE_RULE_BASED
    assert outcome.snapshot.metrics
    assert "Competitor exits the market" in outcome.snapshot.insight


def test_custom_uses_rules_even_with_key_by_default(config, ai_text):
    completion = FakeCompletion(answer=ai_text())
    outcome = _service(config, completion).obtain_snapshot("custom", api_key="k", scenario_description="x")
    assert outcome.source == SOURCE_RULE_BASED
    assert completion.calls == 0


def test_custom_via_ai_when_enabled(config, ai_text):
    completion = FakeCompletion(answer=ai_text())
    outcome = _service(config, completion, custom_via_ai=True).obtain_snapshot(
        "custom", api_key="k", scenario_description="x"
    )
    assert outcome.source == SOURCE_AI


@pytest.mark.parametrize("completion", [
    FakeCompletion(error=LLMServiceError("503")),
    FakeCompletion(answer="not json at all"),
    FakeCompletion(answer='{"metrics": [], "trend": []}'),
])
def test_falls_back_on_remote_failure(config, completion):
    outcome = _service(config, completion).obtain_snapshot("promotion", api_key="k")
    assert outcome.source == SOURCE_RULE_BASED
    assert len(outcome.snapshot.metrics) == 7
    assert completion.calls == 1


@pytest.mark.parametrize("old, new", [
    ('"level": 3', '"level": 1e999'),
    ('"level": 3', '"level": 42'),
    ('"impact": "medium"', '"impact": "catastrophic"'),
    ('"value": 110', '"value": NaN'),
    ('"name": "Orders"', '"name": "Net Promoter Score"'),
])
def test_falls_back_on_out_of_range_answer(config, ai_text, old, new):
    answer = ai_text().replace(old, new, 1)
    assert answer != ai_text()
    completion = FakeCompletion(answer=answer)
    outcome = _service(config, completion).obtain_snapshot("normal", api_key="k")
    assert outcome.source == SOURCE_RULE_BASED
    assert len(outcome.snapshot.metrics) == 7
    assert completion.calls == 1


def test_falls_back_on_timeout(config):
    import threading
    release = threading.Event()

    def slow(messages, api_key):
        release.wait(5)
        return "{}"

    service = GenerationService(
        RuleBasedGenerator(config),
        AIDataGenerator(config, complete=slow),
        timeout_seconds=0.05,
    )
    outcome = service.obtain_snapshot("normal", api_key="k")
    release.set()
    assert outcome.source == SOURCE_RULE_BASED


def test_both_sources_share_the_same_shape(config, ai_text):
    ai = _service(config, FakeCompletion(answer=ai_text())).obtain_snapshot("normal", api_key="k")
    rules = _service(config, FakeCompletion(error=LLMServiceError("down"))).obtain_snapshot("normal", api_key="k")
    ai_dict = ai.snapshot.to_dict()
    rules_dict = rules.snapshot.to_dict()

    assert ai.source == SOURCE_AI and rules.source == SOURCE_RULE_BASED
    assert set(ai_dict) == set(rules_dict)
    assert set(ai_dict["metrics"][0]) == set(rules_dict["metrics"][0])
    assert {m["name"] for m in ai_dict["metrics"]} == {m["name"] for m in rules_dict["metrics"]}


def test_previous_snapshot_forwarded_to_rules(flat_config):
    service = _service(flat_config, FakeCompletion())
    outcome = service.obtain_snapshot(
        "promotion", api_key=None, previous_snapshot={"metrics": [{"name": "Revenue", "value": 5000000}]}
    )
    revenue = outcome.snapshot.to_dict()["metrics"][0]
    assert revenue["changePercent"] == 50.0


@pytest.mark.parametrize("scenario", [None, "", "holiday"])
def test_invalid_scenario_rejected(config, scenario):
    with pytest.raises(InvalidScenarioError):
        _service(config, FakeCompletion()).obtain_snapshot(scenario, api_key="k")


@pytest.mark.parametrize("description", [None, "", "   "])
def test_custom_requires_description(config, description):
    with pytest.raises(MissingCustomDescriptionError):
        _service(config, FakeCompletion()).obtain_snapshot("custom", scenario_description=description)


def test_request_errors_share_a_base_class():
    assert issubclass(InvalidScenarioError, GenerationRequestError)
    assert issubclass(MissingCustomDescriptionError, GenerationRequestError)
