from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from .config import Settings
from .errors import AuthenticationError, GenerationServiceError, RateLimitError, TransientGenerationError

logger = logging.getLogger("wellness.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {"category": HarmCategory.HARM_CATEGORY_HARASSMENT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_HATE_SPEECH, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
]

RATE_LIMIT_ERRORS = (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)
AUTH_ERRORS = (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)
TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
)


@dataclass(frozen=True)
class GenerationResult:
    text: str
    token_usage: int = 0


class GeminiClient:
    """Generative-text service backed by the Gemini SDK."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK for the chat model.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key and caches models per prompt.
        Dependencies: google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key or model name is missing.
        If Removed: The pipeline has no way to produce a reply.
        Testing Notes: Missing key raises ValueError; tests use a fake generator instead.
        """
        # Configure the API key once and remember generation options.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        self._model_name = _normalize_model_name(settings.gemini_model)
        if not self._model_name:
            raise ValueError("Gemini model name is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._generation_config = {
            "temperature": settings.temperature,
            "max_output_tokens": settings.max_output_tokens,
        }
        self._models: Dict[str, genai.GenerativeModel] = {}

    def generate(self, system_prompt: str, history: Sequence[Dict[str, str]]) -> GenerationResult:
        """Purpose: Generate the next assistant turn from a system prompt and chat history.
        Inputs/Outputs: Inputs are the rendered system prompt and role/content turns (the last
            one is the customer's message); output is GenerationResult(text, token_usage).
        Side Effects / State: One outbound call; may add a model to the cache.
        Dependencies: genai.GenerativeModel.generate_content and _to_contents.
        Failure Modes: SDK errors are mapped to RateLimitError, AuthenticationError,
            TransientGenerationError or GenerationServiceError. No retry.
        If Removed: Chat turns cannot produce replies.
        Testing Notes: Exercise error mapping with a stub model raising google_exceptions.
        """
        # Build contents, call once, and translate SDK failures into our error types.
        contents = _to_contents(history)
        if not contents:
            raise ValueError("history must contain at least one message")
        model = self._model_for(system_prompt)
        started = time.perf_counter()
        try:
            response = model.generate_content(
                contents,
                generation_config=self._generation_config,
                safety_settings=DEFAULT_SAFETY_SETTINGS,
            )
            text = (getattr(response, "text", None) or "").strip()
        except RATE_LIMIT_ERRORS as exc:
            raise RateLimitError(str(exc)) from exc
        except AUTH_ERRORS as exc:
            raise AuthenticationError(str(exc)) from exc
        except google_exceptions.InvalidArgument as exc:
            if "api key" in str(exc).lower():
                raise AuthenticationError(str(exc)) from exc
            raise GenerationServiceError(str(exc)) from exc
        except TRANSIENT_ERRORS as exc:
            raise TransientGenerationError(str(exc)) from exc
        except google_exceptions.GoogleAPIError as exc:
            raise GenerationServiceError(str(exc)) from exc
        except ValueError as exc:
            # response.text raises ValueError when the candidate was blocked.
            raise GenerationServiceError(f"empty or blocked response: {exc}") from exc

        usage = getattr(response, "usage_metadata", None)
        token_usage = int(getattr(usage, "total_token_count", 0) or 0)
        logger.info(
            "gemini_generate model=%s tokens=%s latency_ms=%.0f",
            self._model_name,
            token_usage,
            (time.perf_counter() - started) * 1000,
        )
        if not text:
            raise GenerationServiceError("empty response from model")
        return GenerationResult(text=text, token_usage=token_usage)

    def _model_for(self, system_prompt: str) -> genai.GenerativeModel:
        # The system instruction is bound at model construction; reuse per prompt text.
        model = self._models.get(system_prompt)
        if model is None:
            if len(self._models) > 32:
                self._models.clear()
            model = genai.GenerativeModel(self._model_name, system_instruction=system_prompt or None)
            self._models[system_prompt] = model
        return model


def _to_contents(history: Sequence[Dict[str, str]]) -> List[dict]:
    """Map role/content turns to Gemini contents; assistant turns use the "model" role."""
    contents: List[dict] = []
    for turn in history:
        text = (turn.get("content") or "").strip()
        if not text:
            continue
        role = "model" if turn.get("role") in ("assistant", "model") else "user"
        contents.append({"role": role, "parts": [text]})
    return contents


def _normalize_model_name(name: Optional[str]) -> str:
    # Strip "models/" prefix and whitespace.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
