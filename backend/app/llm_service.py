"""
LLM Service: thin adapter over an OpenAI-compatible chat-completions upstream.

The upstream key is supplied per request by the caller (it is never stored
server-side), so a client is created per call with that key and the
configured base URL.
"""

import os
import logging
from typing import Dict, Iterator, List, Optional, Tuple

import httpx
from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api-inference.modelscope.cn/v1"
DEFAULT_MODEL = "deepseek-ai/DeepSeek-V3.2"
DEFAULT_KEY_TEST_MODEL = "Qwen/Qwen3-VL-235B-A22B-Instruct"


class LLMServiceError(Exception):
    """Raised when the upstream LLM call fails or returns nothing usable."""
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class LLMConfig:
    """Configuration for LLM service."""

    def __init__(self):
        # Endpoint & models
        self.api_base = os.getenv("LLM_API_BASE", DEFAULT_API_BASE).rstrip("/")
        self.model = os.getenv("LLM_MODEL", DEFAULT_MODEL)
        self.chat_model = os.getenv("LLM_CHAT_MODEL") or self.model

        # Snapshot generation
        self.temperature = float(os.getenv("LLM_TEMPERATURE", "0.8"))
        self.max_tokens = int(os.getenv("LLM_MAX_TOKENS", "2000"))
        self.request_timeout = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "120"))
        self.generation_timeout = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "120"))
        self.custom_scenario_use_ai = _env_bool("CUSTOM_SCENARIO_USE_AI")

        # Chat narration
        self.chat_temperature = float(os.getenv("LLM_CHAT_TEMPERATURE", "0.7"))
        self.chat_max_tokens = int(os.getenv("LLM_CHAT_MAX_TOKENS", "1000"))
        self.chat_timeout = float(os.getenv("LLM_CHAT_TIMEOUT_SECONDS", "30"))

        # Key testing
        self.key_test_model = os.getenv("KEY_TEST_MODEL", DEFAULT_KEY_TEST_MODEL)
        self.key_test_timeout = float(os.getenv("KEY_TEST_TIMEOUT_SECONDS", "10"))


def _client(api_key: str, config: LLMConfig, timeout: float) -> OpenAI:
    # Retries are disabled: the orchestrator owns the overall time budget
    return OpenAI(api_key=api_key, base_url=config.api_base, timeout=timeout, max_retries=0)


def complete_chat(messages: List[Dict[str, str]], api_key: str, config: Optional[LLMConfig] = None) -> str:
    """
    Sends one non-streaming completion and returns the message content.

    Raises:
        LLMServiceError: on transport/upstream errors or an empty answer
    """
    if config is None:
        config = LLMConfig()
    if not api_key:
        raise LLMServiceError("missing API key")

    try:
        logger.info(f"Calling LLM model={config.model} base={config.api_base}")
        response = _client(api_key, config, config.request_timeout).chat.completions.create(
            model=config.model,
            messages=messages,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    except OpenAIError as e:
        logger.error(f"Error calling LLM: {e}")
        raise LLMServiceError(str(e)) from e

    content = ""
    if response.choices:
        content = (response.choices[0].message.content or "").strip()
    if not content:
        logger.error("LLM returned an empty completion")
        raise LLMServiceError("empty completion")
    return content


def stream_chat(messages: List[Dict[str, str]], api_key: str, config: Optional[LLMConfig] = None) -> Iterator[str]:
    """
    Streams completion deltas for the chat assistant.

    The upstream stream is closed when the consumer stops iterating early.

    Raises:
        LLMServiceError: on transport/upstream errors, before or during streaming
    """
    if config is None:
        config = LLMConfig()
    if not api_key:
        raise LLMServiceError("missing API key")

    try:
        stream = _client(api_key, config, config.chat_timeout).chat.completions.create(
            model=config.chat_model,
            messages=messages,
            temperature=config.chat_temperature,
            max_tokens=config.chat_max_tokens,
            stream=True,
        )
    except OpenAIError as e:
        logger.error(f"Error opening LLM stream: {e}")
        raise LLMServiceError(str(e)) from e

    try:
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta
    except OpenAIError as e:
        logger.error(f"LLM stream interrupted: {e}")
        raise LLMServiceError(str(e)) from e
    finally:
        stream.close()


def probe_api_key(api_key: str, config: Optional[LLMConfig] = None) -> Tuple[bool, str]:
    """
    Checks an upstream key with a tiny completion request.

    Returns:
        (valid, message)
    """
    if config is None:
        config = LLMConfig()
    if not api_key:
        return False, "API key not provided"

    payload = {
        "model": config.key_test_model,
        "messages": [{"role": "user", "content": "hi"}],
        "max_tokens": 10,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    try:
        with httpx.Client(timeout=config.key_test_timeout) as client:
            resp = client.post(f"{config.api_base}/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.warning(f"API key probe rejected: HTTP {e.response.status_code}")
        return False, f"API key rejected (HTTP {e.response.status_code})"
    except httpx.HTTPError as e:
        logger.warning(f"API key probe failed: {e}")
        return False, f"Could not reach the model service: {e}"
    return True, "API key is valid"
