"""Configuration models and helpers for provider selection."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ProviderConfigError

PROVIDER_ENV_VAR = "LLM_PROVIDER"
DEFAULT_PROVIDER = "openai"


class ProviderSettings(BaseModel):
    """Per-call default parameters."""

    temperature: float = Field(0.4, ge=0, le=2)
    max_output_tokens: int | None = Field(None, ge=16)
    top_p: float | None = Field(None, ge=0, le=1)
    json_mode: bool = Field(False)
    reasoning_effort: str | None = Field(
        None, description="Default reasoning effort parameter for OpenAI reasoning models"
    )
    verbosity: str | None = Field(
        None, description="Default verbosity hint for OpenAI GPT-5 family"
    )
    timeout_seconds: float = Field(
        120.0, gt=0, description="Client-side timeout applied to every completion call"
    )


class ProviderConfig(BaseModel):
    """Configuration for a single provider instance."""

    model_config = ConfigDict(frozen=True)

    name: str
    api_key: str
    model: str
    settings: ProviderSettings = Field(default_factory=ProviderSettings)


def mock_provider_config() -> ProviderConfig:
    return ProviderConfig(
        name="mock",
        api_key="mock",
        model="mock",
        settings=ProviderSettings(temperature=0.1, json_mode=True),
    )


def load_provider_config(prefix: str | None = None) -> ProviderConfig:
    """Load configuration from environment variables.

    Args:
        prefix: Optional prefix for environment variables (default uses provider name).

    Environment variables used (assuming prefix "OPENAI"):
        OPENAI_API_KEY
        OPENAI_MODEL (defaults to ``gpt-4o`` for OpenAI)
        OPENAI_TEMPERATURE (optional)
        OPENAI_MAX_OUTPUT_TOKENS (optional)
        OPENAI_TOP_P (optional)
        OPENAI_JSON_MODE (optional boolean)
        OPENAI_TIMEOUT_SECONDS (optional)

    Returns:
        ProviderConfig object populated from environment variables.

    Raises:
        ProviderConfigError: If required variables are missing or invalid.
    """

    provider_name = (prefix or os.getenv(PROVIDER_ENV_VAR, DEFAULT_PROVIDER)).upper()
    if provider_name == "MOCK":
        return mock_provider_config()
    env_prefix = provider_name

    def read_env(key: str, default: Any | None = None) -> Any:
        value = os.getenv(f"{env_prefix}_{key}", default)
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return default
        return value

    def parse_bool(value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if value is None:
            return False
        return str(value).strip().lower() in {"true", "1", "yes", "on"}

    def parse_number(key: str, cast, default=None):
        raw = read_env(key)
        if raw is None:
            return default
        try:
            return cast(raw)
        except (TypeError, ValueError) as exc:
            raise ProviderConfigError(
                f"{env_prefix}_{key} must be a valid {cast.__name__}"
            ) from exc

    api_key = read_env("API_KEY")
    model = read_env("MODEL", "gpt-4o" if provider_name == "OPENAI" else None)
    if not api_key or not model:
        raise ProviderConfigError(f"{env_prefix}_API_KEY or {env_prefix}_MODEL not configured")

    max_output_tokens = parse_number("MAX_OUTPUT_TOKENS", int)
    if max_output_tokens is not None and max_output_tokens <= 0:
        max_output_tokens = None

    settings = ProviderSettings(
        temperature=parse_number("TEMPERATURE", float, 0.4),
        max_output_tokens=max_output_tokens,
        top_p=parse_number("TOP_P", float),
        json_mode=parse_bool(read_env("JSON_MODE", "true")),
        reasoning_effort=read_env("REASONING_EFFORT"),
        verbosity=read_env("VERBOSITY"),
        timeout_seconds=parse_number("TIMEOUT_SECONDS", float, 120.0),
    )

    return ProviderConfig(name=provider_name.lower(), api_key=api_key, model=model, settings=settings)
