"""Enqueue, dispatch and single-flight claiming of compile jobs."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol
from uuid import uuid4

import httpx

from dotting_observability import log_context, record_dispatch
from dotting_providers.exceptions import ProviderConfigError
from dotting_schemas import (
    Compilation,
    CompilationStatus,
    CompileError,
    CompileErrorCode,
    CompileJobResult,
    CompileOptions,
    CompileProgress,
)
from dotting_storage import CompilationStore

from .gateway import CompletionGateway
from .models import CompileJobParams, CompileRequest
from .runner import compile_flow, record_failure

logger = logging.getLogger(__name__)
SERVICE_NAME = "compiler"

WORKER_PATH = "/compile/worker"
ALREADY_CLAIMED = "Already processing or completed"

GatewayFactory = Callable[[], CompletionGateway]
Runner = Callable[[CompilationStore, CompletionGateway, CompileJobParams], Awaitable[CompileJobResult]]


class DispatchError(RuntimeError):
    """The worker could not be triggered. The compilation stays pending."""


class CompileDispatcher(Protocol):
    async def dispatch(self, params: CompileJobParams) -> None: ...


class HttpWorkerDispatcher:
    """Triggers the compiler service worker endpoint over HTTP."""

    def __init__(self, base_url: str, secret: str, *, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "HttpWorkerDispatcher":
        return cls(
            os.getenv("COMPILER_URL", "http://compiler:9100"),
            os.getenv("INTERNAL_API_SECRET", ""),
            timeout=float(os.getenv("COMPILER_TIMEOUT", "10")),
        )

    async def dispatch(self, params: CompileJobParams) -> None:
        headers = {
            "X-Internal-Secret": self.secret,
            "X-Request-Source": "internal",
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.post(
                    WORKER_PATH,
                    json=params.model_dump(mode="json", by_alias=False),
                    headers=headers,
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DispatchError(f"Worker dispatch failed: {exc}") from exc


@dataclass
class EnqueueResult:
    compilation: Compilation
    is_existing: bool
    # False only when triggering the worker failed; retrying re-dispatches.
    dispatched: bool


@dataclass
class ClaimOutcome:
    executed: bool
    message: str
    result: CompileJobResult | None = None


async def enqueue_compilation(
    store: CompilationStore,
    dispatcher: CompileDispatcher,
    request: CompileRequest,
) -> EnqueueResult:
    """Create (or reuse) a compilation for the request and trigger the worker.

    With an idempotency key, an existing compilation of the session is
    reused: pending ones are dispatched again (the claim makes that safe),
    processing and completed ones are returned as is, failed and cancelled
    ones get a new version.
    """

    options = (request.options or CompileOptions()).for_intent(request.intent)

    with log_context(session_id=request.session_id):
        if request.idempotency_key:
            existing = await store.find_by_idempotency_key(request.session_id, request.idempotency_key)
            if existing is not None and existing.status == CompilationStatus.PENDING:
                logger.info("Re-dispatching pending compilation", extra={"compilation_id": existing.id})
                dispatched = await _dispatch(dispatcher, _job_params(existing))
                return EnqueueResult(compilation=existing, is_existing=True, dispatched=dispatched)
            if existing is not None and existing.status in (
                CompilationStatus.PROCESSING,
                CompilationStatus.COMPLETED,
            ):
                return EnqueueResult(compilation=existing, is_existing=True, dispatched=True)

        version = await store.latest_version(request.session_id) + 1
        compilation = await store.create_compilation(
            Compilation(
                id=str(uuid4()),
                session_id=request.session_id,
                version=version,
                intent=request.intent,
                status=CompilationStatus.PENDING,
                options=options,
                idempotency_key=request.idempotency_key,
                progress=CompileProgress.queued(),
            )
        )
        logger.info(
            "Compilation enqueued",
            extra={"compilation_id": compilation.id, "version": compilation.version},
        )
        dispatched = await _dispatch(dispatcher, _job_params(compilation))
        return EnqueueResult(compilation=compilation, is_existing=False, dispatched=dispatched)


async def _dispatch(dispatcher: CompileDispatcher, params: CompileJobParams) -> bool:
    try:
        await dispatcher.dispatch(params)
    except DispatchError as exc:
        record_dispatch(service_name=SERVICE_NAME, result="error")
        logger.error(
            "Worker dispatch failed; compilation left pending",
            extra={"compilation_id": params.compilation_id, "reason": str(exc)},
        )
        return False
    record_dispatch(service_name=SERVICE_NAME, result="success")
    return True


def _job_params(compilation: Compilation) -> CompileJobParams:
    return CompileJobParams(
        compilation_id=compilation.id,
        session_id=compilation.session_id,
        intent=compilation.intent,
        options=compilation.options,
    )


async def claim(store: CompilationStore, compilation_id: str) -> bool:
    """Compare-and-set pending -> processing. Only one caller ever wins."""

    return await store.claim_compilation(compilation_id, CompileProgress.starting())


async def run_claimed(
    store: CompilationStore,
    gateway_factory: GatewayFactory,
    params: CompileJobParams,
    *,
    runner: Runner | None = None,
) -> CompileJobResult:
    try:
        gateway = gateway_factory()
    except ProviderConfigError as exc:
        # The claim already moved the row to processing, so it must be failed here.
        logger.exception("LLM provider is not configured")
        error = CompileError(
            code=CompileErrorCode.INTERNAL_ERROR,
            message="LLM 공급자 설정이 올바르지 않습니다.",
            details={"reason": str(exc)},
        )
        return await record_failure(store, params, error, None)
    return await (runner or compile_flow)(store, gateway, params)


async def claim_and_run(
    store: CompilationStore,
    gateway_factory: GatewayFactory,
    params: CompileJobParams,
    *,
    runner: Runner | None = None,
) -> ClaimOutcome:
    with log_context(compilation_id=params.compilation_id, session_id=params.session_id):
        if not await claim(store, params.compilation_id):
            logger.info(ALREADY_CLAIMED)
            return ClaimOutcome(executed=False, message=ALREADY_CLAIMED)
        result = await run_claimed(store, gateway_factory, params, runner=runner)
    return ClaimOutcome(
        executed=True,
        message="Compilation completed" if result.success else "Compilation failed",
        result=result,
    )
