"""
Model gateway: a fast primary model, one fallback call, and JSON salvage.

Everything above this module talks to the LLM through ``ModelGateway`` and
sees only two outcomes: text/objects, or ``GenerationFailure``.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from paperchat.core.config import GEMINI_FALLBACK_MODEL, GEMINI_MODEL
from paperchat.core.errors import GenerationFailure
from paperchat.core.gemini import GeminiClient
from paperchat.core.json_repair import parse_model_json

logger = logging.getLogger(__name__)

# Type alias: any function that takes (system_prompt, user_prompt) → str
LLMFunction = Callable[[str, str], str]


class ModelGateway:
    """Primary model first; on any error, one call to the fallback model."""

    def __init__(
        self,
        primary: LLMFunction,
        fallback: Optional[LLMFunction] = None,
        name: str = "gemini",
    ):
        self.primary = primary
        self.fallback = fallback
        self.name = name

    def generate(self, prompt: str, system: str = "") -> str:
        errors: list[Exception] = []
        try:
            return self.primary(system, prompt)
        except Exception as exc:  # any provider error means "try the fallback"
            logger.warning("[%s] primary model failed: %r", self.name, exc)
            errors.append(exc)

        if self.fallback is not None:
            try:
                return self.fallback(system, prompt)
            except Exception as exc:
                logger.error("[%s] fallback model failed: %r", self.name, exc)
                errors.append(exc)

        raise GenerationFailure(
            f"{self.name}: generation failed after {len(errors)} attempt(s): {errors[-1]!r}",
            errors=errors,
        )

    def generate_structured(self, prompt: str, system: str = "") -> dict:
        """Generate and salvage a JSON object; only ``GenerationFailure`` escapes."""
        return parse_model_json(self.generate(prompt, system=system))


def make_gemini_llm_fn(model: str = GEMINI_MODEL, api_key: Optional[str] = None) -> LLMFunction:
    """
    Create an LLMFunction backed by one Gemini model.

    Returns a callable with signature (system: str, user: str) -> str.
    """
    client = GeminiClient(api_key=api_key, model=model)

    def llm_fn(system: str, user: str) -> str:
        return client.chat(system, user)

    return llm_fn


def build_gateway(
    api_key: Optional[str] = None,
    model: str = GEMINI_MODEL,
    fallback_model: Optional[str] = GEMINI_FALLBACK_MODEL,
) -> ModelGateway:
    """Gateway over the configured fast model with the configured fallback."""
    fallback = None
    if fallback_model and fallback_model != model:
        fallback = make_gemini_llm_fn(fallback_model, api_key=api_key)
    return ModelGateway(make_gemini_llm_fn(model, api_key=api_key), fallback, name=model)
