"""Compile runner: drives phases A to C for one claimed compilation."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Iterator, Mapping, Sequence

from prefect import flow

from dotting_observability import log_context, observe_phase_duration, record_compile_outcome
from dotting_providers.exceptions import ProviderTimeoutError
from dotting_providers.pricing import estimate_cost
from dotting_schemas import (
    ERROR_UX_CONFIG,
    CompiledChapter,
    CompiledParagraph,
    CompileError,
    CompileErrorCode,
    CompileJobResult,
    CompilePhase,
    CompileProgress,
    CompileStats,
    Episode,
    ParagraphSource,
    ParagraphType,
    PhaseAOutput,
    PhaseB1Output,
    PhaseB2Output,
    PhaseCOutput,
    PhaseTokenUsage,
    ResultMeta,
    TokenUsage,
    WrittenParagraph,
)
from dotting_schemas.utils.validators import ordered_union
from dotting_storage import CompilationStore, StoreError

from .gateway import SERVICE_NAME, CompletionGateway
from .meta import generate_meta
from .models import CompileJobParams
from .planning import create_citation_plan
from .selection import select_episodes
from .writing import write_paragraphs

logger = logging.getLogger(__name__)


class CompileFailure(Exception):
    """Aborts the job with a typed error code."""

    def __init__(self, code: CompileErrorCode, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.error = CompileError(code=code, message=message, details=details)


class _JobState:
    """Mutable bookkeeping for one run."""

    def __init__(self) -> None:
        self.phase: CompilePhase | None = None


@contextmanager
def _phase(state: _JobState, phase: CompilePhase) -> Iterator[None]:
    state.phase = phase
    start = perf_counter()
    status = "success"
    with log_context(phase=phase.value):
        try:
            yield
        except BaseException:
            status = "error"
            raise
        finally:
            observe_phase_duration(
                phase.value,
                perf_counter() - start,
                service_name=SERVICE_NAME,
                status=status,
            )


async def run_compile_job(
    store: CompilationStore,
    gateway: CompletionGateway,
    params: CompileJobParams,
) -> CompileJobResult:
    """Run every phase for a compilation the caller already claimed.

    Every failure is written to the compilation (status ``failed`` plus
    error fields) before the result is returned; nothing is raised.
    """

    state = _JobState()
    with log_context(compilation_id=params.compilation_id, session_id=params.session_id):
        logger.info("Compile job started", extra={"intent": params.intent.value})
        try:
            await _run_phases(store, gateway, params, state)
        except CompileFailure as failure:
            return await record_failure(store, params, failure.error, state.phase)
        except StoreError as exc:
            error = CompileError(
                code=CompileErrorCode.DB_ERROR,
                message="저장소 작업에 실패했습니다.",
                details={"phase": _phase_value(state.phase), "reason": str(exc)},
            )
            return await record_failure(store, params, error, state.phase)
        except Exception as exc:
            logger.exception("Unexpected compile failure")
            error = CompileError(
                code=CompileErrorCode.INTERNAL_ERROR,
                message="예상치 못한 오류가 발생했습니다.",
                details={"phase": _phase_value(state.phase), "reason": f"{type(exc).__name__}: {exc}"},
            )
            return await record_failure(store, params, error, state.phase)

        record_compile_outcome(service_name=SERVICE_NAME, intent=params.intent.value, outcome="success")
        logger.info("Compile job completed")
        return CompileJobResult(success=True)


@flow(name="dotting-compile-flow", version="0.1.0", validate_parameters=False)
async def compile_flow(
    store: CompilationStore,
    gateway: CompletionGateway,
    params: CompileJobParams,
) -> CompileJobResult:
    return await run_compile_job(store, gateway, params)


async def _run_phases(
    store: CompilationStore,
    gateway: CompletionGateway,
    params: CompileJobParams,
    state: _JobState,
) -> None:
    compilation_id = params.compilation_id
    options = params.options

    with _phase(state, CompilePhase.A):
        await store.update_progress(compilation_id, CompileProgress.for_phase(CompilePhase.A))
        episodes = await store.fetch_episodes(params.session_id)
        if not episodes:
            raise CompileFailure(
                CompileErrorCode.NO_EPISODES,
                "세션에 에피소드가 없습니다.",
                {"phase": CompilePhase.A.value},
            )
        phase_a = await select_episodes(gateway, episodes, options)
        await store.save_episode_selections(compilation_id, phase_a.selections)
        if phase_a.core_count == 0:
            raise CompileFailure(
                CompileErrorCode.NO_CORE_EPISODES,
                "핵심(core) 에피소드가 없습니다.",
                {
                    "phase": CompilePhase.A.value,
                    "selection_count": len(phase_a.selections),
                    "supporting_count": phase_a.supporting_count,
                    "excluded_count": phase_a.excluded_count,
                },
            )

    with _phase(state, CompilePhase.B1):
        await store.update_progress(compilation_id, CompileProgress.for_phase(CompilePhase.B1))
        selected_ids = phase_a.selected_ids()
        selected = [episode for episode in episodes if episode.id in selected_ids]
        messages = await store.fetch_messages(params.session_id)
        try:
            plan = await create_citation_plan(gateway, selected, messages, options, params.intent)
        except Exception as exc:
            raise _generation_failure(CompilePhase.B1, exc) from exc
        error = check_plan_grounding(plan, {message.id for message in messages})
        if error is not None:
            raise CompileFailure(error.code, error.message, error.details)

    with _phase(state, CompilePhase.B2):
        await store.update_progress(compilation_id, CompileProgress.for_phase(CompilePhase.B2))
        try:
            written = await write_paragraphs(gateway, plan, messages, selected, options)
        except Exception as exc:
            raise _generation_failure(CompilePhase.B2, exc) from exc
        error = check_plan_conformance(plan, written)
        if error is not None:
            raise CompileFailure(error.code, error.message, error.details)
        await store.save_chapters(compilation_id, assemble_chapters(plan, written, selected))

    with _phase(state, CompilePhase.C):
        await store.update_progress(compilation_id, CompileProgress.for_phase(CompilePhase.C))
        try:
            phase_c = await generate_meta(gateway, plan, written, selected, messages, options, params.intent)
        except Exception as exc:
            raise _generation_failure(CompilePhase.C, exc) from exc

        usage = _total_usage(phase_a, plan, written, phase_c)
        cost_usd = estimate_cost(
            provider=gateway.config.name,
            model=gateway.config.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        result_meta = build_result_meta(phase_a, plan, written, phase_c, cost_usd=cost_usd)
        try:
            completed = await store.complete_compilation(compilation_id, result_meta, CompileProgress.done())
        except StoreError as exc:
            raise CompileFailure(
                CompileErrorCode.GROUNDING_TRIGGER_FAILED,
                "완료 상태 기록이 거부되었습니다.",
                {"phase": CompilePhase.C.value, "reason": str(exc)},
            ) from exc
        if not completed:
            raise CompileFailure(
                CompileErrorCode.GROUNDING_TRIGGER_FAILED,
                "컴파일 상태가 처리 중이 아니어서 완료할 수 없습니다.",
                {"phase": CompilePhase.C.value, "reason": "status_changed"},
            )


def _generation_failure(phase: CompilePhase, exc: Exception) -> CompileFailure:
    if isinstance(exc, ProviderTimeoutError):
        code = CompileErrorCode.LLM_TIMEOUT
        message = f"Phase {phase.value} 생성 시간이 초과되었습니다."
    else:
        code = CompileErrorCode.LLM_ERROR
        message = f"Phase {phase.value} 생성에 실패했습니다."
    logger.warning(
        "Generation phase failed",
        extra={"error_code": code.value, "reason": f"{type(exc).__name__}: {exc}"},
    )
    return CompileFailure(code, message, {"phase": phase.value, "reason": str(exc)})


def check_plan_grounding(plan: PhaseB1Output, known_message_ids: set[str]) -> CompileError | None:
    """Grounded plans must cite at least one message of this session."""

    grounded = [plan_item for plan_item in plan.paragraph_plans() if plan_item.type == ParagraphType.GROUNDED]

    unsourced = [plan_item for plan_item in grounded if not plan_item.source_message_ids]
    if unsourced:
        return CompileError(
            code=CompileErrorCode.GROUNDED_WITHOUT_SOURCE,
            message=f"{len(unsourced)}개의 grounded 문단에 source가 없습니다.",
            details={
                "phase": CompilePhase.B1.value,
                "paragraphs": [plan_item.model_dump(mode="json") for plan_item in unsourced],
            },
        )

    offending = [
        plan_item
        for plan_item in grounded
        if any(message_id not in known_message_ids for message_id in plan_item.source_message_ids)
    ]
    if offending:
        unknown = ordered_union(
            [message_id for message_id in plan_item.source_message_ids if message_id not in known_message_ids]
            for plan_item in offending
        )
        return CompileError(
            code=CompileErrorCode.GROUNDED_WITHOUT_SOURCE,
            message=f"{len(offending)}개의 grounded 문단이 세션에 없는 메시지를 인용했습니다.",
            details={
                "phase": CompilePhase.B1.value,
                "paragraphs": [plan_item.model_dump(mode="json") for plan_item in offending],
                "unknown_source_ids": unknown,
            },
        )
    return None


def check_plan_conformance(plan: PhaseB1Output, written: PhaseB2Output) -> CompileError | None:
    """Written paragraphs may only cite what their plan slot allowed."""

    plans = plan.plan_index()
    for paragraph in written.paragraphs:
        plan_item = plans.get(paragraph.key)
        allowed = set(plan_item.source_message_ids) if plan_item is not None else set()
        out_of_plan = [message_id for message_id in paragraph.source_message_ids if message_id not in allowed]
        if out_of_plan:
            return CompileError(
                code=CompileErrorCode.SOURCE_OUT_OF_PLAN,
                message=(
                    f"챕터 {paragraph.chapter_index + 1}의 문단 {paragraph.paragraph_index + 1}이(가) "
                    "계획에 없는 source를 사용했습니다."
                ),
                details={
                    "phase": CompilePhase.B2.value,
                    "paragraph": paragraph.model_dump(mode="json"),
                    "out_of_plan_sources": out_of_plan,
                },
            )
    return None


def assemble_chapters(
    plan: PhaseB1Output,
    written: PhaseB2Output,
    episodes: Sequence[Episode],
) -> list[CompiledChapter]:
    by_chapter: dict[int, list[WrittenParagraph]] = {}
    for paragraph in written.paragraphs:
        by_chapter.setdefault(paragraph.chapter_index, []).append(paragraph)
    episode_sources = {episode.id: set(episode.source_message_ids) for episode in episodes}

    return [
        CompiledChapter(
            chapter_index=chapter.chapter_index,
            title=chapter.title,
            paragraphs=[
                CompiledParagraph(
                    paragraph_index=paragraph.paragraph_index,
                    type=paragraph.type,
                    content=paragraph.content,
                    sources=group_paragraph_sources(paragraph, episode_sources),
                )
                for paragraph in sorted(by_chapter.get(chapter.chapter_index, []), key=lambda item: item.paragraph_index)
            ],
        )
        for chapter in plan.chapters
    ]


def group_paragraph_sources(
    paragraph: WrittenParagraph,
    episode_sources: Mapping[str, set[str]],
) -> list[ParagraphSource]:
    """One row per cited episode with the cited messages it owns.

    Only episodes in ``episode_sources`` are written. Messages no cited
    episode claims are attached to every cited episode, so no citation is
    lost.
    """

    groups = {episode_id: [] for episode_id in paragraph.source_episode_ids if episode_id in episode_sources}
    for message_id in paragraph.source_message_ids:
        owners = [
            episode_id for episode_id in groups if message_id in episode_sources.get(episode_id, set())
        ]
        for episode_id in owners or list(groups):
            groups[episode_id].append(message_id)
    return [ParagraphSource(episode_id=episode_id, message_ids=ids) for episode_id, ids in groups.items()]


def _total_usage(
    phase_a: PhaseAOutput,
    plan: PhaseB1Output,
    written: PhaseB2Output,
    phase_c: PhaseCOutput,
) -> TokenUsage:
    return phase_a.token_usage + plan.token_usage + written.token_usage + phase_c.token_usage


def build_result_meta(
    phase_a: PhaseAOutput,
    plan: PhaseB1Output,
    written: PhaseB2Output,
    phase_c: PhaseCOutput,
    *,
    cost_usd: float | None = None,
) -> ResultMeta:
    source_episode_ids = {
        episode_id for paragraph in written.paragraphs for episode_id in paragraph.source_episode_ids
    }
    source_message_ids = {
        message_id for paragraph in written.paragraphs for message_id in paragraph.source_message_ids
    }
    warnings = list(phase_c.warnings)
    if written.placeholder_count:
        warnings.append(f"{written.placeholder_count}개 문단이 생성되지 않아 자리표시자로 채워졌습니다.")

    total = _total_usage(phase_a, plan, written, phase_c)
    return ResultMeta(
        book_meta=phase_c.meta,
        stats=CompileStats(
            chapter_count=len(plan.chapters),
            paragraph_count=len(written.paragraphs),
            grounded_paragraph_count=plan.grounded_count,
            source_episode_count=len(source_episode_ids),
            source_message_count=len(source_message_ids),
            placeholder_paragraph_count=written.placeholder_count,
        ),
        warnings=warnings,
        token_usage=PhaseTokenUsage(
            phase_a=phase_a.token_usage.total_tokens,
            phase_b1=plan.token_usage.total_tokens,
            phase_b2=written.token_usage.total_tokens,
            phase_c=phase_c.token_usage.total_tokens,
            total=total.total_tokens,
            estimated_cost_usd=f"{cost_usd or 0.0:.4f}",
        ),
    )


async def record_failure(
    store: CompilationStore,
    params: CompileJobParams,
    error: CompileError,
    phase: CompilePhase | None,
) -> CompileJobResult:
    """Persist ``error`` on the compilation and build the failed result."""

    details = error.details if isinstance(error.details, dict) else {"details": error.details}
    error_detail = {
        "code": error.code.value,
        "message": error.message,
        **details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    level = logging.ERROR if ERROR_UX_CONFIG[error.code].internal_alert else logging.WARNING
    with log_context(error_code=error.code.value):
        logger.log(level, "Compile job failed: %s", error.message)
        try:
            await store.mark_failed(
                params.compilation_id,
                error_message=f"[{error.code.value}] {error.message}",
                error_detail=error_detail,
                progress=CompileProgress.failed(phase),
            )
        except StoreError:
            logger.exception("Could not persist compile failure")
    record_compile_outcome(service_name=SERVICE_NAME, intent=params.intent.value, outcome=error.code.value)
    return CompileJobResult(success=False, error=error)


def _phase_value(phase: CompilePhase | None) -> str | None:
    return phase.value if phase is not None else None
