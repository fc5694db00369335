"""Resolve the provider configuration used by a compile job."""

from __future__ import annotations

import os

from dotting_providers import ProviderConfig, load_provider_config, mock_provider_config

from .models import ProviderOverride


def resolve_provider_config(override: ProviderOverride | None = None) -> ProviderConfig:
    provider_name = override.name if override and override.name else os.getenv("LLM_PROVIDER", "openai")

    if provider_name and provider_name.lower() == "mock":
        return mock_provider_config()

    if override and override.name:
        config = load_provider_config(prefix=override.name)
    else:
        config = load_provider_config()

    if override is None:
        return config

    update_kwargs = {}
    if override.model:
        update_kwargs["model"] = override.model

    settings_updates = {
        field: getattr(override, field)
        for field in (
            "temperature",
            "max_output_tokens",
            "top_p",
            "json_mode",
            "reasoning_effort",
            "verbosity",
            "timeout_seconds",
        )
        if getattr(override, field) is not None
    }
    if settings_updates:
        update_kwargs["settings"] = config.settings.model_copy(update=settings_updates)

    if update_kwargs:
        config = config.model_copy(update=update_kwargs)
    return config
