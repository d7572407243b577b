"""
Google Gemini API client used for paper analysis and chat.

Only "send prompt, receive text" matters to the rest of the code base;
sampling parameters and safety settings are opaque configuration here.
"""

from __future__ import annotations

import logging
import time
import requests
from typing import Optional

from paperchat.core.config import (
    GEMINI_API_KEY,
    GEMINI_MAX_RETRIES,
    GEMINI_MAX_TOKENS,
    GEMINI_MODEL,
    GEMINI_SAFETY_THRESHOLD,
    GEMINI_TEMPERATURE,
    GEMINI_TIMEOUT,
    GEMINI_TOP_K,
    GEMINI_TOP_P,
)

logger = logging.getLogger(__name__)

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GeminiRateLimitError(Exception):
    """Raised when Gemini API rate limit is exhausted after all retries."""
    pass


class GeminiResponseError(Exception):
    """Raised when a response carries no usable text (blocked, empty, malformed)."""
    pass


class GeminiClient:
    """Thin wrapper around the Gemini REST API (generateContent)."""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = GEMINI_MODEL,
        timeout: int = GEMINI_TIMEOUT,
        max_retries: int = GEMINI_MAX_RETRIES,
        safety_threshold: str = GEMINI_SAFETY_THRESHOLD,
    ):
        self.api_key = api_key or GEMINI_API_KEY
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.safety_threshold = safety_threshold

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key not in ("", "your_gemini_api_key_here")

    def _safety_settings(self) -> list[dict]:
        return [
            {"category": category, "threshold": self.safety_threshold}
            for category in SAFETY_CATEGORIES
        ]

    def chat(
        self, system: str, user: str,
        temperature: float = GEMINI_TEMPERATURE,
        top_p: float = GEMINI_TOP_P,
        top_k: int = GEMINI_TOP_K,
        max_tokens: int = GEMINI_MAX_TOKENS,
    ) -> str:
        """
        Send a request to Gemini generateContent and return the text response.

        Maps (system, user) to Gemini's content format:
          - system_instruction for the system prompt (omitted when empty)
          - contents for the user message
        """
        if not self.is_configured:
            raise RuntimeError(
                "Gemini API key not configured. "
                "Set GEMINI_API_KEY in your .env file. "
                "Get one free at https://aistudio.google.com/apikey"
            )

        url = f"{self.BASE_URL}/{self.model}:generateContent"

        payload: dict = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": user}],
                }
            ],
            "generationConfig": {
                "temperature": temperature,
                "topP": top_p,
                "topK": top_k,
                "maxOutputTokens": max_tokens,
                "responseMimeType": "text/plain",
            },
            "safetySettings": self._safety_settings(),
        }
        if system:
            payload["system_instruction"] = {"parts": [{"text": system}]}

        # Retry with exponential backoff on 429 / 5xx
        resp = None
        for attempt in range(self.max_retries):
            resp = requests.post(
                url,
                headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
            if resp.status_code == 429 or resp.status_code >= 500:
                wait = min(5 * (2 ** attempt), 60)  # 5, 10, 20, 40, 60s
                try:
                    detail = resp.json().get("error", {}).get("message", "")
                except ValueError:
                    detail = resp.text[:200]
                logger.warning(
                    "[Gemini:%s] %s — retrying in %ss (%s)",
                    self.model, resp.status_code, wait, detail[:120],
                )
                time.sleep(wait)
                continue
            resp.raise_for_status()
            break
        else:
            # All retries exhausted: raise a typed error on 429
            if resp is not None and resp.status_code == 429:
                raise GeminiRateLimitError(
                    f"Gemini rate limit exhausted after {self.max_retries} retries "
                    f"for model {self.model}."
                )
            if resp is not None:
                resp.raise_for_status()  # 5xx
            raise GeminiResponseError(f"No request was sent to {self.model} (max_retries=0)")

        return self.extract_text(resp.json())

    @staticmethod
    def extract_text(data: dict) -> str:
        """Return the last non-thought text part of the first candidate."""
        candidates = data.get("candidates") or []
        if not candidates:
            reason = data.get("promptFeedback", {}).get("blockReason", "no candidates")
            raise GeminiResponseError(f"Gemini returned no candidates ({reason})")

        parts = candidates[0].get("content", {}).get("parts") or []
        text_parts = [p["text"] for p in parts if "text" in p and not p.get("thought")]
        if text_parts:
            return text_parts[-1]
        finish = candidates[0].get("finishReason", "unknown")
        raise GeminiResponseError(f"Gemini candidate has no text part (finishReason={finish})")
