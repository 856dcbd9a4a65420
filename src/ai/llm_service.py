"""LLM service for the vision model behind AI issue confirmation."""

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from src.config import settings
from src.errors import AiUnavailableError

logger = logging.getLogger(__name__)


def strip_code_fences(text: str) -> str:
    """Remove a markdown code fence wrapped around a JSON reply."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def image_part(png: bytes) -> Dict[str, Any]:
    """Inline PNG as a data URL content part."""
    encoded = base64.b64encode(png).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}}


class LLMService:
    """
    Client for an OpenAI-compatible chat completions endpoint.

    Points at the Gemini compatibility endpoint by default. Replies are
    expected to be a single JSON object; anything else raises.
    """

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None
        self._call_count: int = 0
        self._error_count: int = 0

    @property
    def available(self) -> bool:
        return settings.ai_available

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create the API client."""
        if not self.available:
            raise AiUnavailableError("AI confirmation is disabled or no API key is configured")
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.gemini_api_key,
                base_url=settings.ai_base_url,
                timeout=settings.ai_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def call_llm(self, prompt: str, image_png: Optional[bytes] = None) -> str:
        """
        Send a prompt, optionally with a screenshot, and return the reply text.

        Args:
            prompt: User prompt
            image_png: PNG bytes to attach inline

        Returns:
            Raw reply text
        """
        client = await self._get_client()

        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        if image_png:
            content.append(image_part(image_png))

        try:
            response = await client.chat.completions.create(
                model=settings.ai_model,
                messages=[{"role": "user", "content": content}],
                temperature=settings.ai_temperature,
                max_tokens=settings.ai_max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            self._error_count += 1
            logger.error(f"LLM API call failed: {e}")
            raise

        self._call_count += 1
        result = response.choices[0].message.content if response.choices else None
        return result or ""

    async def call_json(self, prompt: str, image_png: Optional[bytes] = None) -> Dict[str, Any]:
        """
        Call the model and parse its reply as a JSON object.

        Raises:
            AiUnavailableError: AI is not configured
            ValueError: Reply is empty, not JSON, or not an object
        """
        text = strip_code_fences(await self.call_llm(prompt, image_png=image_png))
        if not text:
            raise ValueError("Empty response from LLM")

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse LLM JSON response: {e}; response: {text[:200]}")
            raise ValueError(f"Invalid JSON response from LLM: {e}") from e

        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object from LLM, got {type(parsed).__name__}")
        return parsed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "model": settings.ai_model,
            "call_count": self._call_count,
            "error_count": self._error_count,
        }

    async def close(self):
        if self._client:
            await self._client.close()
            self._client = None


# Global LLM service instance
llm_service = LLMService()
