"""
Gemini client (generative-text adapter)
"""

import logging
from typing import Any, Optional

import httpx

from datadeployer.config import settings

logger = logging.getLogger(__name__)

KEY_PROBE_PROMPT = 'Say "API key valid" if you receive this message.'


class GeminiError(Exception):
    """Generation call failed (bad key, quota, empty response, network)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GeminiNotConfiguredError(GeminiError):
    """No API key has been stored."""

    def __init__(self) -> None:
        super().__init__(
            "Gemini API key not configured. Please configure it in Settings > AI Models."
        )


class GeminiClient:
    """
    Thin async wrapper around `models/{model}:generateContent`.

    One POST per call; no internal retries (the caller owns the retry budget).
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise GeminiNotConfiguredError()
        self.api_key = api_key
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GEMINI_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def _post(self, payload: dict[str, Any], default_error: str) -> str:
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Gemini request failed: {e}")
            raise GeminiError(str(e) or default_error) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        text = _first_candidate_text(data)
        if response.is_success and text is not None:
            return text

        message = (data.get("error") or {}).get("message") if isinstance(data, dict) else None
        logger.warning(f"Gemini returned {response.status_code}: {message or default_error}")
        raise GeminiError(message or default_error, status_code=response.status_code)

    async def generate(self, prompt: str) -> str:
        """Return the text of the first candidate."""
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": settings.GEMINI_TEMPERATURE,
                "maxOutputTokens": settings.GEMINI_MAX_OUTPUT_TOKENS,
            },
        }
        return await self._post(payload, "Failed to generate validation")

    async def verify_key(self) -> None:
        """Raise GeminiError unless the key can produce a response."""
        payload = {"contents": [{"parts": [{"text": KEY_PROBE_PROMPT}]}]}
        await self._post(payload, "Invalid API key")


def _first_candidate_text(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) and text else None
