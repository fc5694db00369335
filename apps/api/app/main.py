"""Compilation API for the DOTTING stack: enqueue jobs and poll their status."""
from __future__ import annotations

import logging
import os
from datetime import datetime
from time import perf_counter
from typing import Any, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dotting_observability import log_context, setup_fastapi_metrics, setup_logging
from dotting_schemas import (
    ERROR_UX_CONFIG,
    CompilationIntent,
    CompilationStatus,
    CompiledChapter,
    CompiledParagraph,
    CompileErrorCode,
    CompileOptions,
    CompileProgress,
    EpisodeSelection,
    ErrorUx,
    ResultMeta,
)
from dotting_storage import CompilationStore, PostgresCompilationStore, StoreError
from services.compiler.app.jobs import CompileDispatcher, HttpWorkerDispatcher, enqueue_compilation
from services.compiler.app.models import CompilationHandle, CompileRequest

SERVICE_NAME = "api"
setup_logging(SERVICE_NAME)
logger = logging.getLogger(__name__)

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("DOTTING_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]


class EnqueueResponse(BaseModel):
    compilation: CompilationHandle
    is_existing: bool
    dispatched: bool


class CompilationDetail(BaseModel):
    id: str
    session_id: str
    version: int
    intent: CompilationIntent
    status: CompilationStatus
    options: CompileOptions
    progress: CompileProgress
    result_meta: Optional[ResultMeta] = None
    error_message: Optional[str] = None
    error_detail: Optional[dict[str, Any]] = None
    error_ux: Optional[ErrorUx] = None
    inclusions: list[EpisodeSelection] = Field(default_factory=list)
    chapters: list[CompiledChapter] = Field(default_factory=list)
    created_at: datetime
    completed_at: Optional[datetime] = None


class ParagraphEditRequest(BaseModel):
    """Edit a compiled paragraph. At least one field must be set."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content: Optional[str] = None
    is_hidden: Optional[bool] = None

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("content must not be blank")
        return value

    @model_validator(mode="after")
    def require_change(self) -> "ParagraphEditRequest":
        if self.content is None and self.is_hidden is None:
            raise ValueError("content or isHidden is required")
        return self


app = FastAPI(title="DOTTING API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
setup_fastapi_metrics(app, service_name=SERVICE_NAME)


def get_store(request: Request) -> CompilationStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="DATABASE_URL is not configured",
            )
        store = PostgresCompilationStore.from_url(database_url)
        request.app.state.store = store
    return store


def get_dispatcher(request: Request) -> CompileDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = HttpWorkerDispatcher.from_env()
        request.app.state.dispatcher = dispatcher
    return dispatcher


@app.on_event("shutdown")
async def _close_store() -> None:
    store = getattr(app.state, "store", None)
    if isinstance(store, PostgresCompilationStore):
        store.close()


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post(
    "/compilations",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["compilations"],
)
async def create_compilation(
    payload: CompileRequest,
    store: CompilationStore = Depends(get_store),
    dispatcher: CompileDispatcher = Depends(get_dispatcher),
) -> EnqueueResponse:
    start = perf_counter()
    with log_context(session_id=payload.session_id):
        try:
            result = await enqueue_compilation(store, dispatcher, payload)
        except StoreError as exc:
            logger.exception("Failed to enqueue compilation")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Compilation could not be created",
            ) from exc

        compilation = result.compilation
        logger.info(
            "Enqueue request handled",
            extra={
                "compilation_id": compilation.id,
                "is_existing": result.is_existing,
                "dispatched": result.dispatched,
                "latency_ms": (perf_counter() - start) * 1000,
            },
        )
    return EnqueueResponse(
        compilation=CompilationHandle(
            id=compilation.id,
            version=compilation.version,
            status=compilation.status,
            progress=compilation.progress,
        ),
        is_existing=result.is_existing,
        dispatched=result.dispatched,
    )


@app.get("/compilations/{compilation_id}", response_model=CompilationDetail, tags=["compilations"])
async def get_compilation(
    compilation_id: str,
    include_hidden: bool = False,
    store: CompilationStore = Depends(get_store),
) -> CompilationDetail:
    compilation_id = _parse_id(compilation_id, "Compilation")
    try:
        compilation = await store.get_compilation(compilation_id)
        if compilation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Compilation not found")
        inclusions = await store.fetch_episode_inclusions(compilation_id)
        chapters = (
            await store.fetch_chapters(compilation_id, include_hidden=include_hidden)
            if compilation.status == CompilationStatus.COMPLETED
            else []
        )
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Compilation could not be loaded",
        ) from exc

    return CompilationDetail(
        id=compilation.id,
        session_id=compilation.session_id,
        version=compilation.version,
        intent=compilation.intent,
        status=compilation.status,
        options=compilation.options,
        progress=compilation.progress,
        result_meta=compilation.result_meta,
        error_message=compilation.error_message,
        error_detail=compilation.error_detail,
        error_ux=_error_ux(compilation.error_detail),
        inclusions=inclusions,
        chapters=chapters,
        created_at=compilation.created_at,
        completed_at=compilation.completed_at,
    )


@app.patch(
    "/compilations/{compilation_id}/paragraphs/{paragraph_id}",
    response_model=CompiledParagraph,
    tags=["compilations"],
)
async def edit_paragraph(
    compilation_id: str,
    paragraph_id: str,
    payload: ParagraphEditRequest,
    store: CompilationStore = Depends(get_store),
) -> CompiledParagraph:
    """Rewrite or hide one paragraph of a completed book."""

    compilation_id = _parse_id(compilation_id, "Compilation")
    paragraph_id = _parse_id(paragraph_id, "Paragraph")
    with log_context(compilation_id=compilation_id):
        try:
            compilation = await store.get_compilation(compilation_id)
            if compilation is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Compilation not found")
            if compilation.status != CompilationStatus.COMPLETED:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Only completed compilations can be edited",
                )
            paragraph = await store.update_paragraph(
                compilation_id,
                paragraph_id,
                content=payload.content,
                is_hidden=payload.is_hidden,
            )
        except StoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Paragraph could not be updated",
            ) from exc
        if paragraph is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Paragraph not found")

        logger.info(
            "Paragraph edited",
            extra={
                "paragraph_id": paragraph_id,
                "revision": paragraph.revision,
                "is_hidden": paragraph.is_hidden,
            },
        )
    return paragraph


def _parse_id(value: str, label: str) -> str:
    # Ids are UUIDs; anything else cannot name a row.
    try:
        return str(UUID(value))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found") from None


def _error_ux(error_detail: Optional[dict[str, Any]]) -> Optional[ErrorUx]:
    if not error_detail:
        return None
    try:
        code = CompileErrorCode(error_detail.get("code"))
    except ValueError:
        return ERROR_UX_CONFIG[CompileErrorCode.INTERNAL_ERROR]
    return ERROR_UX_CONFIG[code]
