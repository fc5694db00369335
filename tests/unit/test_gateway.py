"""Tests for the completion gateway shared by every phase."""

import pytest

from dotting_providers import MockProvider, ProviderConfig
from dotting_providers.exceptions import (
    ProviderConfigError,
    ProviderRequestError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from dotting_schemas import CompilePhase

from services.compiler.app.gateway import CompletionGateway, build_provider, parse_json_payload
from tests.utils.factories import make_gateway


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def test_complete_json_decodes_and_tags_phase() -> None:
    gateway, provider = make_gateway(replies=[{"ok": True}])
    completion = await gateway.complete_json(
        system_prompt="system",
        prompt="hello there",
        temperature=0.3,
        phase=CompilePhase.A,
    )
    assert completion.payload == {"ok": True}
    assert completion.usage.prompt_tokens == 2
    assert completion.cost_usd == 0.0
    request = provider.requests[0]
    assert request.json_mode is True
    assert request.metadata["phase"] == "A"


async def test_complete_json_strips_markdown_fences() -> None:
    gateway, _ = make_gateway(replies=['```json\n{"title": "책"}\n```'])
    completion = await gateway.complete_json(
        system_prompt="s", prompt="p", temperature=0.1, phase=CompilePhase.C
    )
    assert completion.payload == {"title": "책"}


async def test_builtin_timeout_is_mapped_to_provider_timeout() -> None:
    gateway, _ = make_gateway(replies=[TimeoutError()])
    with pytest.raises(ProviderTimeoutError):
        await gateway.complete_json(system_prompt="s", prompt="p", temperature=0.1, phase=CompilePhase.B1)


async def test_connection_errors_become_request_errors() -> None:
    gateway, _ = make_gateway(replies=[ConnectionResetError("reset")])
    with pytest.raises(ProviderRequestError):
        await gateway.complete_json(system_prompt="s", prompt="p", temperature=0.1, phase=CompilePhase.B2)


def test_parse_json_payload_rejects_prose() -> None:
    with pytest.raises(ProviderResponseError):
        parse_json_payload("Sure! Here is your book.", CompilePhase.C)
    with pytest.raises(ProviderResponseError):
        parse_json_payload("   ", CompilePhase.C)


def test_gateway_from_env_resolves_the_mock_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    gateway = CompletionGateway.from_env()
    assert isinstance(gateway.provider, MockProvider)
    assert gateway.provider_name == "mock"


def test_unknown_provider_name_is_a_config_error() -> None:
    with pytest.raises(ProviderConfigError):
        build_provider(ProviderConfig(name="gemini", api_key="key", model="gemini-pro"))
