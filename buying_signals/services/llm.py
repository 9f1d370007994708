"""Generative-text helper built on Gemini."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from functools import lru_cache
from typing import Any, Dict

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from ..core.config import settings
from ..core.errors import ParseError

NOT_CONFIGURED_MESSAGE = (
    "AI is not configured. Set GEMINI_API_KEY to enable transcript and news analysis."
)
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.S)

logger = logging.getLogger(__name__)


class LLMUnavailableError(RuntimeError):
    """Raised when no configured Gemini models are available."""


def _has_api_key() -> bool:
    return bool(settings.gemini_api_key.strip())


@lru_cache
def _configured_api() -> bool:
    """Configure the Google Generative AI client once."""

    if not _has_api_key():
        raise RuntimeError("GEMINI_API_KEY is missing")

    genai.configure(api_key=settings.gemini_api_key)
    return True


_model_cache: Dict[str, genai.GenerativeModel] = {}


def _get_model(name: str) -> genai.GenerativeModel:
    """Return a cached Gemini model instance."""

    _configured_api()
    model_name = name.strip()
    if not model_name:
        raise RuntimeError("Gemini model name was empty")

    if model_name not in _model_cache:
        _model_cache[model_name] = genai.GenerativeModel(model_name)
    return _model_cache[model_name]


def _candidate_models() -> list[str]:
    candidates: list[str] = []
    seen: set[str] = set()
    for candidate in (settings.gemini_model, *settings.gemini_model_fallbacks):
        if candidate and candidate not in seen:
            candidates.append(candidate)
            seen.add(candidate)
    return candidates


def is_not_configured(text: str) -> bool:
    """True when ``text`` is the sentinel returned instead of an analysis."""

    return text.startswith("AI is not configured")


async def analyze(prompt: str, max_tokens: int) -> str:
    """Return the model's text for ``prompt``.

    Without an API key this returns :data:`NOT_CONFIGURED_MESSAGE` rather than
    raising, so callers must check :func:`is_not_configured` before parsing.
    """

    if not _has_api_key():
        logger.warning("Gemini API key missing; analysis skipped.")
        return NOT_CONFIGURED_MESSAGE

    loop = asyncio.get_running_loop()
    last_error: Exception | None = None

    for model_name in _candidate_models():
        def _run_inference(current_model: str = model_name) -> str:
            response = _get_model(current_model).generate_content(
                prompt,
                generation_config={"max_output_tokens": max_tokens},
            )
            text = getattr(response, "text", "") or ""
            return text.strip()

        try:
            return await loop.run_in_executor(None, _run_inference)
        except google_exceptions.NotFound as exc:
            logger.warning("Gemini model %s not available: %s", model_name, exc)
            _model_cache.pop(model_name, None)
            last_error = exc
            continue
        except Exception as exc:  # noqa: BLE001
            logger.exception("Gemini generate_content failed for %s", model_name)
            last_error = exc
            continue

    raise LLMUnavailableError("No Gemini models responded") from last_error


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the outermost ``{...}`` block out of model output and decode it."""

    match = JSON_OBJECT_PATTERN.search(text)
    if not match:
        raise ParseError("No JSON object found in analysis output")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ParseError(f"Analysis output is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ParseError("Analysis output JSON is not an object")
    return parsed
