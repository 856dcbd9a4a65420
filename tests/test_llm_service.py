"""Tests for LLM service."""

import base64
import os
from unittest.mock import AsyncMock

import pytest

from src.ai.llm_service import LLMService, image_part, llm_service, strip_code_fences
from src.config import settings
from src.errors import AiUnavailableError


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_image_part_is_png_data_url():
    part = image_part(b"\x89PNG")
    assert part["type"] == "image_url"
    url = part["image_url"]["url"]
    assert url.startswith("data:image/png;base64,")
    assert base64.b64decode(url.split(",", 1)[1]) == b"\x89PNG"


@pytest.mark.asyncio
async def test_unavailable_without_api_key(monkeypatch):
    monkeypatch.setattr(settings, "gemini_api_key", "")
    service = LLMService()

    assert service.available is False
    with pytest.raises(AiUnavailableError):
        await service.call_llm("hello")


@pytest.mark.asyncio
async def test_call_json_parses_fenced_object(monkeypatch):
    service = LLMService()
    monkeypatch.setattr(service, "call_llm", AsyncMock(return_value='```json\n{"page_healthy": true}\n```'))

    assert await service.call_json("prompt") == {"page_healthy": True}


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", ["", "not json at all", "[1, 2, 3]"])
async def test_call_json_rejects_bad_replies(monkeypatch, reply):
    service = LLMService()
    monkeypatch.setattr(service, "call_llm", AsyncMock(return_value=reply))

    with pytest.raises(ValueError):
        await service.call_json("prompt")


def test_stats_start_at_zero():
    stats = LLMService().get_stats()
    assert stats["call_count"] == 0
    assert stats["error_count"] == 0
    assert stats["model"] == settings.ai_model


@pytest.mark.asyncio
async def test_call_llm_basic():
    """Test a live call (requires API key)."""
    if not os.getenv("GEMINI_API_KEY"):
        pytest.skip("Gemini API key not configured")

    result = await llm_service.call_json('Reply with the JSON object {"answer": 4}.')

    assert isinstance(result, dict)
    await llm_service.close()
