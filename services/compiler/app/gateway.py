"""Single entry point for every LLM call the compile phases make."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from dotting_observability import observe_provider_response
from dotting_providers import LLMProvider, MockProvider, ProviderConfig, ProviderRequest, ProviderResponse
from dotting_providers.exceptions import (
    ProviderConfigError,
    ProviderError,
    ProviderRequestError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from dotting_providers.openai import OpenAIProvider
from dotting_schemas import CompilePhase, TokenUsage

from .models import ProviderOverride
from .providers import resolve_provider_config

logger = logging.getLogger(__name__)
SERVICE_NAME = "compiler"

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

PROVIDERS: dict[str, type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "mock": MockProvider,
}


def build_provider(config: ProviderConfig) -> LLMProvider:
    provider_cls = PROVIDERS.get(config.name.lower())
    if provider_cls is None:
        raise ProviderConfigError(f"Unknown provider: {config.name}")
    return provider_cls(config)


@dataclass
class Completion:
    """Decoded JSON payload plus the raw provider response it came from."""

    payload: Any
    response: ProviderResponse

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage.from_counts(self.response.prompt_tokens, self.response.completion_tokens)

    @property
    def cost_usd(self) -> float:
        return self.response.cost_usd or 0.0


class CompletionGateway:
    """Wraps one provider; built once per job and handed to each phase."""

    def __init__(self, provider: LLMProvider, config: ProviderConfig) -> None:
        self.provider = provider
        self.config = config

    @classmethod
    def from_env(cls, override: ProviderOverride | None = None) -> "CompletionGateway":
        config = resolve_provider_config(override)
        return cls(build_provider(config), config)

    @property
    def provider_name(self) -> str:
        return self.config.name

    async def complete_json(
        self,
        *,
        system_prompt: str,
        prompt: str,
        temperature: float,
        phase: CompilePhase,
        metadata: dict[str, Any] | None = None,
    ) -> Completion:
        """Send a JSON-mode request and decode the reply.

        Raises:
            ProviderTimeoutError: The call timed out.
            ProviderRequestError: The provider could not be reached or refused.
            ProviderResponseError: The reply was not valid JSON.
        """

        request = ProviderRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            json_mode=True,
            temperature=temperature,
            metadata={"phase": phase.value, **(metadata or {})},
        )
        try:
            response = await self.provider.generate(request)
        except ProviderError:
            raise
        except TimeoutError as exc:
            raise ProviderTimeoutError(f"Phase {phase.value} completion timed out") from exc
        except OSError as exc:
            raise ProviderRequestError(f"Phase {phase.value} completion failed: {exc}") from exc

        observe_provider_response(
            phase=phase.value,
            provider=self.provider_name,
            service_name=SERVICE_NAME,
            response=response,
        )
        logger.info(
            "LLM completion received",
            extra={
                "provider": self.provider_name,
                "model": response.model,
                "prompt_tokens": response.prompt_tokens,
                "completion_tokens": response.completion_tokens,
                "latency_ms": response.latency_ms,
                "cost_usd": response.cost_usd,
            },
        )
        return Completion(payload=parse_json_payload(response.text, phase), response=response)


def parse_json_payload(text: str, phase: CompilePhase) -> Any:
    cleaned = _FENCE.sub("", (text or "").strip())
    if not cleaned:
        raise ProviderResponseError(f"Phase {phase.value} response was empty")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ProviderResponseError(f"Phase {phase.value} response was not valid JSON") from exc
