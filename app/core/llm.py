"""LLM client utilities: Anthropic client construction and JSON output parsing."""

import json
import re
from typing import TypeVar

from anthropic import AsyncAnthropic
from pydantic import BaseModel

from app.core.config import get_settings

T = TypeVar("T", bound=BaseModel)


def get_anthropic_client() -> AsyncAnthropic | None:
    """
    Get an AsyncAnthropic client, or None when no API key is configured.

    Callers treat None as "model unavailable" and take their fallback path.
    """
    settings = get_settings()
    if not settings.ANTHROPIC_API_KEY:
        return None
    return AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    # Unterminated fences
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()

    # Prose around a single object: keep the outermost braces
    if not cleaned.startswith("{"):
        obj_match = re.search(r"\{[\s\S]*\}", cleaned)
        if obj_match:
            return obj_match.group(0)
    return cleaned


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Parse LLM output as JSON and validate against a Pydantic model.

    Handles common LLM response quirks:
    - Markdown code fences (```json ... ```)
    - Leading/trailing whitespace or prose around the object

    Args:
        raw_output: Raw string from LLM response
        model: Pydantic model class to validate against

    Returns:
        Validated Pydantic model instance

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        pydantic.ValidationError: If parsed JSON doesn't match schema
    """
    cleaned = _strip_llm_fences(raw_output)
    parsed = json.loads(cleaned)
    return model.model_validate(parsed)
