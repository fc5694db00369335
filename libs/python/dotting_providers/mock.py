"""Deterministic mock provider for tests and offline development."""

from __future__ import annotations

import inspect
import json
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Union

from .base import LLMProvider, ProviderCapabilities, ProviderRequest, ProviderResponse
from .config import ProviderConfig, mock_provider_config

DEFAULT_TEXT = "Mock response generated for testing."

ScriptedReply = Union[str, dict, list, BaseException]
Responder = Callable[[ProviderRequest], Union[ScriptedReply, Awaitable[ScriptedReply]]]


class MockProvider(LLMProvider):
    """Replays scripted replies in order, or asks a responder callable.

    Dict and list replies are serialised to JSON; exception instances are
    raised, which lets tests simulate transport failures. Every request is
    kept in ``requests`` for assertions.
    """

    name = "mock"

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        replies: Iterable[ScriptedReply] | None = None,
        responder: Responder | None = None,
    ) -> None:
        self._config = config or mock_provider_config()
        self._replies: deque[ScriptedReply] = deque(replies or [])
        self._responder = responder
        self.requests: list[ProviderRequest] = []

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_json_mode=True,
            max_input_tokens=32000,
            max_output_tokens=2000,
        )

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        reply = await self._next_reply(request)
        if isinstance(reply, BaseException):
            raise reply
        text = reply if isinstance(reply, str) else json.dumps(reply, ensure_ascii=False)
        return ProviderResponse(
            text=text,
            raw={"mock": True},
            model="mock",
            prompt_tokens=len(request.prompt.split()),
            completion_tokens=len(text.split()),
            cost_usd=0.0,
            latency_ms=1.0,
        )

    async def _next_reply(self, request: ProviderRequest) -> Any:
        if self._replies:
            return self._replies.popleft()
        if self._responder is not None:
            reply = self._responder(request)
            if inspect.isawaitable(reply):
                reply = await reply
            return reply
        if request.json_mode:
            return {"message": DEFAULT_TEXT, "echo": request.prompt[:50]}
        return f"{DEFAULT_TEXT}\nPrompt: {request.prompt[:80]}"
