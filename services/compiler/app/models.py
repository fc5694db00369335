"""Pydantic models for the compiler service API and job payloads."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dotting_schemas import (
    CompilationIntent,
    CompilationStatus,
    CompileJobResult,
    CompileOptions,
    CompileProgress,
)


class ProviderOverride(BaseModel):
    name: Optional[str] = Field(None, description="Provider identifier: openai, mock")
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_output_tokens: Optional[int] = Field(None, ge=16)
    json_mode: Optional[bool] = None
    top_p: Optional[float] = Field(None, ge=0, le=1)
    reasoning_effort: Optional[str] = Field(
        None,
        description="OpenAI reasoning effort (minimal, low, medium, high)",
    )
    verbosity: Optional[str] = Field(None, description="OpenAI GPT-5 verbosity (low, medium, high)")
    timeout_seconds: Optional[float] = Field(None, gt=0)


class CompileRequest(BaseModel):
    """Enqueue payload. Accepts snake_case and the camelCase used by web clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str = Field(..., min_length=1)
    intent: CompilationIntent
    idempotency_key: Optional[str] = Field(None, max_length=200)
    options: Optional[CompileOptions] = None


class CompileJobParams(BaseModel):
    """Everything the runner needs once the claim is won."""

    compilation_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    intent: CompilationIntent
    options: CompileOptions = Field(default_factory=CompileOptions)


class WorkerRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    compilation_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    intent: CompilationIntent = CompilationIntent.PREVIEW
    options: Optional[CompileOptions] = None
    provider: ProviderOverride | None = None


class WorkerResponse(BaseModel):
    compilation_id: str
    executed: bool
    message: str
    result: CompileJobResult | None = None


class CompilationHandle(BaseModel):
    id: str
    version: int
    status: CompilationStatus
    progress: CompileProgress
