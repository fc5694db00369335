"""End-to-end runner tests over the in-memory store and the mock provider."""

from __future__ import annotations

import pytest

from dotting_providers.exceptions import ProviderTimeoutError
from dotting_schemas import (
    Compilation,
    CompilationIntent,
    CompilationStatus,
    CompileErrorCode,
    CompileOptions,
    CompilePhase,
    CompileProgress,
    InclusionStatus,
    ParagraphType,
    PhaseB1Output,
    PhaseB2Output,
    PLACEHOLDER_CONTENT,
    WrittenParagraph,
)

from services.compiler.app import runner
from services.compiler.app.meta.engine import fallback_meta
from services.compiler.app.models import CompileJobParams
from services.compiler.app.planning.engine import decode_plan
from services.compiler.app.runner import (
    assemble_chapters,
    check_plan_conformance,
    check_plan_grounding,
    group_paragraph_sources,
    run_compile_job,
)
from services.compiler.app.selection.engine import fallback_selection
from tests.utils.factories import (
    SESSION_ID,
    happy_path_replies,
    make_episodes,
    make_gateway,
    make_messages,
    plan_reply,
    selection_reply,
)
from tests.utils.store import InMemoryCompilationStore


pytestmark = pytest.mark.anyio("asyncio")

COMPILATION_ID = "compilation-1"


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _store(episode_count: int = 3) -> InMemoryCompilationStore:
    store = InMemoryCompilationStore(
        episodes={SESSION_ID: make_episodes(episode_count)} if episode_count else {},
        messages={SESSION_ID: make_messages()},
    )
    store.compilations[COMPILATION_ID] = Compilation(
        id=COMPILATION_ID,
        session_id=SESSION_ID,
        version=1,
        intent=CompilationIntent.PREVIEW,
        status=CompilationStatus.PROCESSING,
        progress=CompileProgress.starting(),
    )
    return store


def _params(intent: CompilationIntent = CompilationIntent.PREVIEW) -> CompileJobParams:
    return CompileJobParams(
        compilation_id=COMPILATION_ID,
        session_id=SESSION_ID,
        intent=intent,
        options=CompileOptions(chapter_count_min=2),
    )


async def test_no_episodes_fails_the_compilation() -> None:
    store = _store(episode_count=0)
    gateway, provider = make_gateway()

    result = await run_compile_job(store, gateway, _params())

    assert result.success is False
    assert result.error.code == CompileErrorCode.NO_EPISODES
    compilation = store.compilations[COMPILATION_ID]
    assert compilation.status == CompilationStatus.FAILED
    assert compilation.error_message.startswith("[NO_EPISODES]")
    assert compilation.error_detail["code"] == "NO_EPISODES"
    assert "timestamp" in compilation.error_detail
    assert provider.requests == []


async def test_all_excluded_selection_reports_no_core_episodes() -> None:
    store = _store(episode_count=5)
    statuses = {f"ep-{index}": "excluded" for index in range(1, 6)}
    gateway, _ = make_gateway(replies=[selection_reply(statuses)])

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.NO_CORE_EPISODES
    assert result.error.details["excluded_count"] == 5
    # Selections are persisted even when the job stops after Phase A.
    assert len(store.selections[COMPILATION_ID]) == 5
    assert store.compilations[COMPILATION_ID].progress.phase == CompilePhase.A


async def test_selector_failure_without_core_is_fatal() -> None:
    store = _store()
    gateway, _ = make_gateway(replies=["not json at all"])

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.NO_CORE_EPISODES
    assert all(
        selection.inclusion_status == InclusionStatus.SUPPORTING for selection in store.selections[COMPILATION_ID]
    )


async def test_grounded_paragraph_without_sources_is_rejected() -> None:
    store = _store()
    unsourced = {"type": "grounded", "purpose": "근거 없음", "used_episode_ids": ["ep-1"], "source_message_ids": []}
    gateway, _ = make_gateway(
        replies=[
            selection_reply({"ep-1": "core", "ep-2": "core", "ep-3": "core"}),
            {"chapters": [{"title": "하나", "paragraph_plans": [unsourced]}]},
        ]
    )

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.GROUNDED_WITHOUT_SOURCE
    [paragraph] = result.error.details["paragraphs"]
    assert (paragraph["chapter_index"], paragraph["paragraph_index"]) == (0, 0)
    assert paragraph["source_message_ids"] == []
    assert COMPILATION_ID not in store.chapters


async def test_unknown_source_ids_are_rejected() -> None:
    store = _store()
    plan = plan_reply()
    plan["chapters"][1]["paragraph_plans"][1]["source_message_ids"] = ["m4", "m404"]
    gateway, _ = make_gateway(replies=[selection_reply({"ep-1": "core"}), plan])

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.GROUNDED_WITHOUT_SOURCE
    assert result.error.details["unknown_source_ids"] == ["m404"]


async def test_out_of_plan_source_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()

    async def fake_write(gateway, plan, messages, episodes, options):
        return PhaseB2Output(
            paragraphs=[
                WrittenParagraph(
                    chapter_index=0,
                    paragraph_index=1,
                    type=ParagraphType.GROUNDED,
                    content="본문",
                    source_episode_ids=["ep-1"],
                    source_message_ids=["m1", "m2"],
                )
            ]
        )

    monkeypatch.setattr(runner, "write_paragraphs", fake_write)
    gateway, _ = make_gateway(replies=[selection_reply({"ep-1": "core"}), plan_reply()])

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.SOURCE_OUT_OF_PLAN
    assert result.error.details["out_of_plan_sources"] == ["m2"]
    assert store.compilations[COMPILATION_ID].progress.phase == CompilePhase.B2


async def test_successful_compilation_persists_book() -> None:
    store = _store()
    gateway, provider = make_gateway(replies=happy_path_replies())

    result = await run_compile_job(store, gateway, _params())

    assert result.success is True
    assert result.error is None
    compilation = store.compilations[COMPILATION_ID]
    assert compilation.status == CompilationStatus.COMPLETED
    assert compilation.completed_at is not None
    meta = compilation.result_meta
    assert meta.book_meta.title == "새벽을 여는 사람"
    assert meta.stats.chapter_count == 2
    assert meta.stats.paragraph_count == 5
    assert meta.stats.grounded_paragraph_count == 3
    assert meta.stats.source_episode_count == 3
    assert meta.stats.source_message_count == 4
    assert meta.warnings == []
    assert meta.token_usage.total == sum(
        (meta.token_usage.phase_a, meta.token_usage.phase_b1, meta.token_usage.phase_b2, meta.token_usage.phase_c)
    )
    assert meta.token_usage.estimated_cost_usd == "0.0000"
    assert len(provider.requests) == 5

    percents = [progress.percent for progress in store.progress_log[COMPILATION_ID]]
    assert percents == [0, 25, 50, 75, 100]

    chapters = store.chapters[COMPILATION_ID]
    assert [chapter.title for chapter in chapters] == ["새벽의 가게", "첫 월급"]
    assert [len(chapter.paragraphs) for chapter in chapters] == [3, 2]


async def test_persisted_grounded_paragraphs_cite_session_messages() -> None:
    store = _store()
    gateway, _ = make_gateway(replies=happy_path_replies())

    await run_compile_job(store, gateway, _params())

    known = {message.id for message in make_messages()}
    for chapter in store.chapters[COMPILATION_ID]:
        for paragraph in chapter.paragraphs:
            cited = [message_id for source in paragraph.sources for message_id in source.message_ids]
            if paragraph.type == ParagraphType.GROUNDED:
                assert cited
            assert set(cited) <= known


async def test_invented_episode_ids_never_reach_the_book() -> None:
    store = _store()
    plan = plan_reply()
    for chapter in plan["chapters"]:
        for paragraph in chapter["paragraph_plans"]:
            if paragraph["source_message_ids"]:
                paragraph["used_episode_ids"] = ["not-an-episode"]
    replies = happy_path_replies()
    replies[1] = plan
    gateway, _ = make_gateway(replies=replies)

    result = await run_compile_job(store, gateway, _params())

    assert result.success is True
    persisted = {
        source.episode_id
        for chapter in store.chapters[COMPILATION_ID]
        for paragraph in chapter.paragraphs
        for source in paragraph.sources
    }
    assert persisted == {"ep-1", "ep-2", "ep-3"}
    grounded = [
        paragraph
        for chapter in store.chapters[COMPILATION_ID]
        for paragraph in chapter.paragraphs
        if paragraph.type == ParagraphType.GROUNDED
    ]
    assert all(paragraph.sources for paragraph in grounded)
    assert store.compilations[COMPILATION_ID].result_meta.stats.source_episode_count == 3


async def test_chapter_failure_completes_with_placeholder_warning() -> None:
    store = _store()
    replies = happy_path_replies()
    replies[3] = ProviderTimeoutError("chapter two timed out")
    gateway, _ = make_gateway(replies=replies)

    result = await run_compile_job(store, gateway, _params())

    assert result.success is True
    meta = store.compilations[COMPILATION_ID].result_meta
    assert meta.stats.placeholder_paragraph_count == 2
    assert any("자리표시자" in warning for warning in meta.warnings)
    contents = [paragraph.content for paragraph in store.chapters[COMPILATION_ID][1].paragraphs]
    assert contents == [PLACEHOLDER_CONTENT, PLACEHOLDER_CONTENT]


async def test_meta_failure_still_completes() -> None:
    store = _store()
    replies = happy_path_replies()
    replies[4] = "```oops```"
    gateway, _ = make_gateway(replies=replies)

    result = await run_compile_job(store, gateway, _params())

    assert result.success is True
    meta = store.compilations[COMPILATION_ID].result_meta
    assert meta.book_meta.title == "나의 이야기"
    assert len(meta.warnings) == 1


async def test_planner_timeout_maps_to_llm_timeout() -> None:
    store = _store()
    gateway, _ = make_gateway(replies=[selection_reply({"ep-1": "core"}), ProviderTimeoutError("slow")])

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.LLM_TIMEOUT
    assert result.error.details["phase"] == "B1"


async def test_planner_garbage_maps_to_llm_error() -> None:
    store = _store()
    gateway, _ = make_gateway(replies=[selection_reply({"ep-1": "core"}), {"chapters": None}])

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.LLM_ERROR
    assert store.compilations[COMPILATION_ID].progress.message == "실패"


async def test_store_failure_maps_to_db_error() -> None:
    store = _store()
    store.fail_on.add("save_chapters")
    gateway, _ = make_gateway(replies=happy_path_replies())

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.DB_ERROR
    assert result.error.details["phase"] == "B2"
    assert store.compilations[COMPILATION_ID].status == CompilationStatus.FAILED


async def test_lost_completion_race_maps_to_trigger_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()

    async def cancelled_meanwhile(compilation_id, result_meta, progress):
        return False

    monkeypatch.setattr(store, "complete_compilation", cancelled_meanwhile)
    gateway, _ = make_gateway(replies=happy_path_replies())

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.GROUNDING_TRIGGER_FAILED


async def test_failure_to_persist_failure_is_not_raised() -> None:
    store = _store(episode_count=0)
    store.fail_on.add("mark_failed")
    gateway, _ = make_gateway()

    result = await run_compile_job(store, gateway, _params())

    assert result.error.code == CompileErrorCode.NO_EPISODES
    assert store.compilations[COMPILATION_ID].status == CompilationStatus.PROCESSING


def test_plan_helpers_accept_a_clean_plan() -> None:
    plan = PhaseB1Output.from_chapters(decode_plan(plan_reply()))
    assert check_plan_grounding(plan, {message.id for message in make_messages()}) is None

    paragraphs = [WrittenParagraph.placeholder(item) for item in plan.paragraph_plans()]
    written = PhaseB2Output(paragraphs=paragraphs, placeholder_count=len(paragraphs))
    assert check_plan_conformance(plan, written) is None

    chapters = assemble_chapters(plan, written, make_episodes(3))
    grounded = chapters[0].paragraphs[2]
    assert [(source.episode_id, source.message_ids) for source in grounded.sources] == [("ep-2", ["m2", "m3"])]
    assert chapters[0].paragraphs[0].sources == []


def test_paragraph_without_plan_slot_is_out_of_plan() -> None:
    plan = PhaseB1Output.from_chapters(decode_plan(plan_reply()))
    stray = WrittenParagraph(
        chapter_index=5, paragraph_index=0, type=ParagraphType.GROUNDED, content="x", source_message_ids=["m1"]
    )
    error = check_plan_conformance(plan, PhaseB2Output(paragraphs=[stray]))
    assert error.code == CompileErrorCode.SOURCE_OUT_OF_PLAN


def test_unclaimed_messages_attach_to_every_cited_episode() -> None:
    paragraph = WrittenParagraph(
        chapter_index=0,
        paragraph_index=0,
        type=ParagraphType.GROUNDED,
        content="x",
        source_episode_ids=["ep-1", "ep-2"],
        source_message_ids=["m1", "m9"],
    )
    sources = group_paragraph_sources(paragraph, {"ep-1": {"m1"}, "ep-2": {"m2"}})
    assert [(source.episode_id, source.message_ids) for source in sources] == [
        ("ep-1", ["m1", "m9"]),
        ("ep-2", ["m9"]),
    ]


def test_sources_skip_episodes_outside_the_book() -> None:
    paragraph = WrittenParagraph(
        chapter_index=0,
        paragraph_index=0,
        type=ParagraphType.GROUNDED,
        content="x",
        source_episode_ids=["ep-1", "ep-404"],
        source_message_ids=["m1"],
    )
    sources = group_paragraph_sources(paragraph, {"ep-1": {"m1"}})
    assert [(source.episode_id, source.message_ids) for source in sources] == [("ep-1", ["m1"])]


def test_result_meta_cost_is_formatted() -> None:
    plan = PhaseB1Output.from_chapters(decode_plan(plan_reply()))
    meta = runner.build_result_meta(
        fallback_selection(make_episodes(1)), plan, PhaseB2Output(), fallback_meta(), cost_usd=0.123456
    )
    assert meta.token_usage.estimated_cost_usd == "0.1235"
    assert meta.stats.chapter_count == 2


async def test_compile_flow_wraps_the_runner() -> None:
    store = _store()
    gateway, _ = make_gateway(replies=happy_path_replies())

    result = await runner.compile_flow(store, gateway, _params(CompilationIntent.FINAL))

    assert result.success is True
    meta = store.compilations[COMPILATION_ID].result_meta
    assert meta.warnings == []
