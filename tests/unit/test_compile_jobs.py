"""Tests for enqueueing, dispatching and claiming compile jobs."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from dotting_providers.exceptions import ProviderConfigError
from dotting_schemas import (
    Compilation,
    CompilationIntent,
    CompilationStatus,
    CompileErrorCode,
    CompileJobResult,
)

from services.compiler.app import jobs
from services.compiler.app.jobs import (
    ALREADY_CLAIMED,
    DispatchError,
    HttpWorkerDispatcher,
    claim_and_run,
    enqueue_compilation,
    run_claimed,
)
from services.compiler.app.models import CompileJobParams, CompileRequest
from services.compiler.app.runner import run_compile_job
from tests.utils.factories import SESSION_ID, happy_path_replies, make_episodes, make_gateway, make_messages
from tests.utils.store import InMemoryCompilationStore


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingDispatcher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.dispatched: list[CompileJobParams] = []

    async def dispatch(self, params: CompileJobParams) -> None:
        self.dispatched.append(params)
        if self.fail:
            raise DispatchError("worker unreachable")


def _store() -> InMemoryCompilationStore:
    return InMemoryCompilationStore(
        episodes={SESSION_ID: make_episodes(3)},
        messages={SESSION_ID: make_messages()},
    )


def _params_for(compilation: Compilation) -> CompileJobParams:
    return CompileJobParams(
        compilation_id=compilation.id,
        session_id=compilation.session_id,
        intent=compilation.intent,
        options=compilation.options,
    )


def _request(key: str | None = "key-1", intent: CompilationIntent = CompilationIntent.PREVIEW) -> CompileRequest:
    return CompileRequest(session_id=SESSION_ID, intent=intent, idempotency_key=key)


async def test_enqueue_creates_pending_compilation_and_dispatches() -> None:
    store = _store()
    dispatcher = RecordingDispatcher()

    result = await enqueue_compilation(store, dispatcher, _request(intent=CompilationIntent.FINAL))

    assert result.is_existing is False
    assert result.dispatched is True
    compilation = result.compilation
    assert compilation.version == 1
    assert compilation.status == CompilationStatus.PENDING
    assert compilation.progress.message == "준비 중..."
    assert compilation.options.allow_appendix is False
    assert dispatcher.dispatched[0].compilation_id == compilation.id


async def test_preview_enqueue_allows_appendix() -> None:
    result = await enqueue_compilation(_store(), RecordingDispatcher(), _request())
    assert result.compilation.options.allow_appendix is True


async def test_same_idempotency_key_returns_same_compilation() -> None:
    store = _store()
    dispatcher = RecordingDispatcher()

    first = await enqueue_compilation(store, dispatcher, _request())
    second = await enqueue_compilation(store, dispatcher, _request())
    assert second.compilation.id == first.compilation.id
    assert second.is_existing is True
    # Pending compilations are dispatched again; the claim keeps this safe.
    assert len(dispatcher.dispatched) == 2

    await store.claim_compilation(first.compilation.id, first.compilation.progress)
    third = await enqueue_compilation(store, dispatcher, _request())
    assert third.compilation.id == first.compilation.id
    assert len(dispatcher.dispatched) == 2

    store.compilations[first.compilation.id] = store.compilations[first.compilation.id].model_copy(
        update={"status": CompilationStatus.COMPLETED}
    )
    fourth = await enqueue_compilation(store, dispatcher, _request())
    assert fourth.compilation.id == first.compilation.id
    assert fourth.dispatched is True


async def test_failed_compilation_gets_a_new_version() -> None:
    store = _store()
    dispatcher = RecordingDispatcher()
    first = await enqueue_compilation(store, dispatcher, _request())
    store.compilations[first.compilation.id] = first.compilation.model_copy(
        update={"status": CompilationStatus.FAILED}
    )

    retry = await enqueue_compilation(store, dispatcher, _request())

    assert retry.is_existing is False
    assert retry.compilation.id != first.compilation.id
    assert retry.compilation.version == 2


async def test_requests_without_key_always_create_versions() -> None:
    store = _store()
    dispatcher = RecordingDispatcher()
    first = await enqueue_compilation(store, dispatcher, _request(key=None))
    second = await enqueue_compilation(store, dispatcher, _request(key=None))
    assert (first.compilation.version, second.compilation.version) == (1, 2)


async def test_dispatch_failure_leaves_compilation_pending() -> None:
    store = _store()

    result = await enqueue_compilation(store, RecordingDispatcher(fail=True), _request())

    assert result.dispatched is False
    assert store.compilations[result.compilation.id].status == CompilationStatus.PENDING


async def test_concurrent_claims_execute_once() -> None:
    store = _store()
    enqueued = await enqueue_compilation(store, RecordingDispatcher(), _request())
    params = _params_for(enqueued.compilation)
    runs: list[str] = []

    async def runner(store, gateway, job_params):
        runs.append(job_params.compilation_id)
        await asyncio.sleep(0)
        return CompileJobResult(success=True)

    def factory():
        return make_gateway()[0]

    outcomes = await asyncio.gather(
        claim_and_run(store, factory, params, runner=runner),
        claim_and_run(store, factory, params, runner=runner),
    )

    assert sorted(outcome.executed for outcome in outcomes) == [False, True]
    assert [outcome.message for outcome in outcomes if not outcome.executed] == [ALREADY_CLAIMED]
    assert runs == [params.compilation_id]


async def test_claim_and_run_compiles_the_book() -> None:
    store = _store()
    enqueued = await enqueue_compilation(store, RecordingDispatcher(), _request())

    outcome = await claim_and_run(
        store,
        lambda: make_gateway(replies=happy_path_replies())[0],
        _params_for(enqueued.compilation),
        runner=run_compile_job,
    )

    assert outcome.executed is True
    assert outcome.result.success is True
    assert store.compilations[enqueued.compilation.id].status == CompilationStatus.COMPLETED


async def test_misconfigured_provider_fails_the_claimed_job() -> None:
    store = _store()
    enqueued = await enqueue_compilation(store, RecordingDispatcher(), _request())
    await jobs.claim(store, enqueued.compilation.id)

    def factory():
        raise ProviderConfigError("OPENAI_API_KEY or OPENAI_MODEL not configured")

    result = await run_claimed(store, factory, _params_for(enqueued.compilation))

    assert result.error.code == CompileErrorCode.INTERNAL_ERROR
    assert store.compilations[enqueued.compilation.id].status == CompilationStatus.FAILED


async def test_http_dispatcher_posts_to_worker(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"executed": True})

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(jobs.httpx, "AsyncClient", client_factory)
    dispatcher = HttpWorkerDispatcher("http://compiler:9100/", "s3cret")
    params = CompileJobParams(compilation_id="c-1", session_id=SESSION_ID, intent=CompilationIntent.FINAL)

    await dispatcher.dispatch(params)

    [request] = seen
    assert str(request.url) == "http://compiler:9100/compile/worker"
    assert request.headers["X-Internal-Secret"] == "s3cret"
    assert request.headers["X-Request-Source"] == "internal"
    body = json.loads(request.content)
    assert body["compilation_id"] == "c-1"
    assert body["intent"] == "final"


async def test_http_dispatcher_wraps_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(jobs.httpx, "AsyncClient", client_factory)
    dispatcher = HttpWorkerDispatcher("http://compiler:9100", "s3cret")

    with pytest.raises(DispatchError):
        await dispatcher.dispatch(
            CompileJobParams(compilation_id="c-1", session_id=SESSION_ID, intent=CompilationIntent.PREVIEW)
        )


def test_dispatcher_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COMPILER_URL", "http://localhost:9100")
    monkeypatch.setenv("INTERNAL_API_SECRET", "abc")
    monkeypatch.setenv("COMPILER_TIMEOUT", "3")
    dispatcher = HttpWorkerDispatcher.from_env()
    assert (dispatcher.base_url, dispatcher.secret, dispatcher.timeout) == ("http://localhost:9100", "abc", 3.0)
