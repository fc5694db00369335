"""FastAPI entrypoint for the compiler worker service."""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Response, status

from dotting_observability import log_context, setup_fastapi_metrics, setup_logging
from dotting_schemas import CompileOptions
from dotting_storage import CompilationStore, PostgresCompilationStore, StoreError

from .gateway import CompletionGateway
from .jobs import ALREADY_CLAIMED, GatewayFactory, claim, claim_and_run, run_claimed
from .models import CompileJobParams, WorkerRequest, WorkerResponse

SERVICE_NAME = "compiler"
setup_logging(SERVICE_NAME)
logger = logging.getLogger(__name__)

app = FastAPI(title="DOTTING Compiler", version="0.1.0")
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


def get_gateway_factory() -> GatewayFactory:
    return CompletionGateway.from_env


def require_internal_secret(
    x_internal_secret: Optional[str] = Header(None),
) -> None:
    expected = os.getenv("INTERNAL_API_SECRET")
    if not expected:
        logger.error("INTERNAL_API_SECRET is not configured; rejecting worker call")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not x_internal_secret or not secrets.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@app.on_event("shutdown")
async def _close_store() -> None:
    store = getattr(app.state, "store", None)
    if isinstance(store, PostgresCompilationStore):
        store.close()


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post(
    "/compile/worker",
    response_model=WorkerResponse,
    tags=["compiler"],
    dependencies=[Depends(require_internal_secret)],
)
async def compile_worker(
    payload: WorkerRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    wait: bool = False,
    store: CompilationStore = Depends(get_store),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
) -> WorkerResponse:
    """Claim the compilation and run it.

    By default the job runs after the response is sent (202); ``wait=true``
    runs it inline and returns the job result.
    """

    params = CompileJobParams(
        compilation_id=payload.compilation_id,
        session_id=payload.session_id,
        intent=payload.intent,
        options=payload.options or CompileOptions(),
    )
    if payload.provider is not None:
        gateway_factory = _override_factory(payload)

    try:
        if wait:
            outcome = await claim_and_run(store, gateway_factory, params)
            return WorkerResponse(
                compilation_id=params.compilation_id,
                executed=outcome.executed,
                message=outcome.message,
                result=outcome.result,
            )

        with log_context(compilation_id=params.compilation_id, session_id=params.session_id):
            won = await claim(store, params.compilation_id)
            if not won:
                logger.info(ALREADY_CLAIMED)
                return WorkerResponse(compilation_id=params.compilation_id, executed=False, message=ALREADY_CLAIMED)
            logger.info("Compilation claimed; running in background")
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable") from exc

    background_tasks.add_task(run_claimed, store, gateway_factory, params)
    response.status_code = status.HTTP_202_ACCEPTED
    return WorkerResponse(compilation_id=params.compilation_id, executed=True, message="Compilation started")


def _override_factory(payload: WorkerRequest) -> GatewayFactory:
    def factory() -> CompletionGateway:
        return CompletionGateway.from_env(payload.provider)

    return factory
