"""Tests for the mock provider and pricing."""

import asyncio
import json

import pytest

from dotting_providers import (
    MockProvider,
    ProviderRequest,
)
from dotting_providers.exceptions import ProviderTimeoutError
from dotting_providers.pricing import estimate_cost


def test_mock_generate_sync() -> None:
    provider = MockProvider()
    request = ProviderRequest(prompt="Hello world")
    response = asyncio.run(provider.generate(request))
    assert response.model == "mock"
    assert response.prompt_tokens == 2


def test_mock_json_mode() -> None:
    provider = MockProvider()
    request = ProviderRequest(prompt="List facts", json_mode=True)
    response = asyncio.run(provider.generate(request))
    assert response.text.startswith("{")


def test_mock_replays_scripted_replies_in_order() -> None:
    provider = MockProvider(replies=[{"title": "첫 번째"}, "plain", ProviderTimeoutError("slow")])

    first = asyncio.run(provider.generate(ProviderRequest(prompt="one")))
    assert json.loads(first.text) == {"title": "첫 번째"}
    assert "첫 번째" in first.text
    second = asyncio.run(provider.generate(ProviderRequest(prompt="two")))
    assert second.text == "plain"
    with pytest.raises(ProviderTimeoutError):
        asyncio.run(provider.generate(ProviderRequest(prompt="three")))
    assert [request.prompt for request in provider.requests] == ["one", "two", "three"]


def test_mock_responder_may_be_async() -> None:
    async def responder(request: ProviderRequest):
        return {"echo": request.prompt}

    provider = MockProvider(responder=responder)
    response = asyncio.run(provider.generate(ProviderRequest(prompt="ping")))
    assert json.loads(response.text) == {"echo": "ping"}


def test_estimate_cost_matches_dated_snapshots() -> None:
    base = estimate_cost("openai", "gpt-4o", 1_000_000, 0)
    assert base > 0
    assert estimate_cost("openai", "gpt-4o-2024-08-06", 1_000_000, 0) == base
    assert estimate_cost("mock", "mock", 1000, 1000) == 0.0
