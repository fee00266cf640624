"""
============================================================
FLOW-PRESSURE v1.0 - LLM Gateway
============================================================
Structured-JSON calls to OpenAI used by the semantic pressure
engine, the order optimizer, the backtester evaluation and the
trading report commentary.

Every call declares a JSON schema and a fallback payload. The
fallback is returned (and logged) when:
- MOCK_API_CALLS is enabled
- OPENAI_API_KEY is not configured
- the model call fails after retries or returns invalid JSON

Usage:
    from llm import invoke_llm

    data = invoke_llm(
        prompt="Summarize sentiment for AAPL",
        schema={"type": "object", "properties": {...}, "required": [...]},
        fallback={"sentiment": "neutral"},
        name="sentiment_summary",
    )
============================================================
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from config import get_logger, get_settings, is_mock_mode

logger = get_logger(__name__)
settings = get_settings()

SYSTEM_PROMPT = (
    "You are a market-microstructure analyst for a paper-trading desk. "
    "Answer strictly with JSON matching the requested schema. "
    "Be conservative; never invent prices or tickers."
)

_client: Optional[OpenAI] = None


class LLMError(RuntimeError):
    """Raised when the model returns an unusable response."""


def _get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = OpenAI(api_key=settings.openai_api_key)
    return _client


def llm_available() -> bool:
    """True when real model calls are allowed."""
    return bool(settings.openai_api_key) and not is_mock_mode()


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
def call_structured(prompt: str, schema: Dict[str, Any], name: str) -> Dict[str, Any]:
    """
    Call the chat model with a strict JSON schema.

    Raises:
        LLMError: If the content is not valid JSON.
    """
    completion = _get_client().chat.completions.create(
        model=settings.openai_model,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=settings.openai_temperature,
        max_tokens=settings.openai_max_tokens,
        response_format={
            "type": "json_schema",
            "json_schema": {"name": name, "schema": schema},
        },
    )
    content = completion.choices[0].message.content or ""
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise LLMError(f"Model returned invalid JSON for {name}.") from exc


def invoke_llm(
    prompt: str,
    schema: Dict[str, Any],
    fallback: Dict[str, Any],
    name: str = "flowpressure_response",
) -> Dict[str, Any]:
    """
    Return the model's JSON answer, or ``fallback`` when unavailable.

    Missing keys in the model answer are filled from ``fallback``.
    """
    if not llm_available():
        logger.debug("LLM unavailable (mock or no key); using fallback for %s.", name)
        return dict(fallback)

    try:
        result = call_structured(prompt, schema, name)
    except Exception as exc:  # noqa: BLE001
        logger.warning("LLM call %s failed, using fallback: %s", name, exc)
        return dict(fallback)

    if not isinstance(result, dict):
        logger.warning("LLM call %s returned %s, using fallback.", name, type(result).__name__)
        return dict(fallback)

    return {**fallback, **result}
