"""Phase C: title, subtitle, preface and epilogue for the compiled book."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from pydantic import ValidationError

from dotting_providers.exceptions import ProviderError
from dotting_schemas import (
    BookMeta,
    CompilationIntent,
    CompileOptions,
    CompilePhase,
    Episode,
    MessageRole,
    PhaseB1Output,
    PhaseB2Output,
    PhaseCOutput,
    SessionMessage,
    TokenUsage,
)
from dotting_schemas.utils.validators import string_ids

from ..gateway import CompletionGateway
from .prompts import (
    FINAL_EPILOGUE_RULE,
    FINAL_PREFACE_RULE,
    META_SYSTEM_PROMPT,
    META_USER_PROMPT,
    PREVIEW_EPILOGUE_RULE,
    PREVIEW_PREFACE_RULE,
)

logger = logging.getLogger(__name__)

META_TEMPERATURE = 0.7
MAX_CORE_SUMMARIES = 5
MAX_QUOTES = 3
QUOTE_MIN_LENGTH = 50
QUOTE_MAX_LENGTH = 200
CORE_EMOTIONAL_WEIGHT = 7

FALLBACK_TITLE = "나의 이야기"
UNTITLED = "제목 없음"
FALLBACK_WARNING = "메타 정보 생성에 실패하여 기본값이 적용되었습니다."


async def generate_meta(
    gateway: CompletionGateway,
    plan: PhaseB1Output,
    written: PhaseB2Output,
    episodes: Sequence[Episode],
    messages: Sequence[SessionMessage],
    options: CompileOptions,
    intent: CompilationIntent,
) -> PhaseCOutput:
    """Generate book meta and its non-fatal warnings.

    Provider and decoding failures return :func:`fallback_meta`; anything
    else propagates to the runner.
    """

    quotes = quotable_messages(messages)
    paragraph_counts: dict[int, int] = {}
    for paragraph in written.paragraphs:
        paragraph_counts[paragraph.chapter_index] = paragraph_counts.get(paragraph.chapter_index, 0) + 1
    final = intent == CompilationIntent.FINAL
    system_prompt = META_SYSTEM_PROMPT.format(
        preface_rule=FINAL_PREFACE_RULE if final else PREVIEW_PREFACE_RULE,
        epilogue_rule=FINAL_EPILOGUE_RULE if final else PREVIEW_EPILOGUE_RULE,
    )
    prompt = META_USER_PROMPT.format(
        chapter_lines="\n".join(
            f"{chapter.chapter_index + 1}. {chapter.title} ({chapter.theme_focus or '-'}, {chapter.time_range or '-'}, "
            f"{paragraph_counts.get(chapter.chapter_index, 0)} paragraphs)"
            for chapter in plan.chapters
        )
        or "-",
        core_lines="\n".join(
            f"{position}. {summary}" for position, summary in enumerate(core_summaries(episodes), start=1)
        )
        or "-",
        quote_lines="\n".join(f'[{message_id}] "{content}"' for message_id, content in quotes) or "-",
    )

    try:
        completion = await gateway.complete_json(
            system_prompt=system_prompt,
            prompt=prompt,
            temperature=META_TEMPERATURE,
            phase=CompilePhase.C,
        )
        meta = decode_meta(completion.payload, allowed_sources={message_id for message_id, _ in quotes})
    except (ProviderError, ValidationError) as exc:
        logger.warning("Meta generation failed; using fallback meta", extra={"error": str(exc)})
        return fallback_meta()

    warnings = collect_meta_warnings(meta, chapter_count=len(plan.chapters), options=options, intent=intent)
    logger.info("Meta generated", extra={"title": meta.title, "warning_count": len(warnings)})
    return PhaseCOutput(meta=meta, warnings=warnings, token_usage=completion.usage)


def core_summaries(episodes: Sequence[Episode]) -> list[str]:
    return [
        episode.summary
        for episode in episodes
        if episode.emotional_weight >= CORE_EMOTIONAL_WEIGHT or episode.has_turning_point
    ][:MAX_CORE_SUMMARIES]


def quotable_messages(messages: Sequence[SessionMessage]) -> list[tuple[str, str]]:
    """The first long user statements, truncated for the prompt."""

    return [
        (message.id, message.content[:QUOTE_MAX_LENGTH])
        for message in messages
        if message.role == MessageRole.USER and len(message.content) > QUOTE_MIN_LENGTH
    ][:MAX_QUOTES]


def decode_meta(payload: Any, *, allowed_sources: set[str]) -> BookMeta:
    if not isinstance(payload, dict):
        payload = {}

    def text(key: str) -> str | None:
        value = payload.get(key)
        return value.strip() if isinstance(value, str) and value.strip() else None

    def sources(key: str) -> list[str]:
        return [message_id for message_id in string_ids(payload.get(key)) if message_id in allowed_sources]

    return BookMeta(
        title=text("title") or UNTITLED,
        subtitle=text("subtitle"),
        preface=text("preface"),
        epilogue=text("epilogue"),
        preface_sources=sources("preface_source_ids"),
        epilogue_sources=sources("epilogue_source_ids"),
    )


def collect_meta_warnings(
    meta: BookMeta,
    *,
    chapter_count: int,
    options: CompileOptions,
    intent: CompilationIntent,
) -> list[str]:
    warnings: list[str] = []
    if intent == CompilationIntent.FINAL:
        if meta.preface and not meta.preface_sources:
            warnings.append("서문(preface)에 source가 없습니다. 검토가 필요합니다.")
        if meta.epilogue and not meta.epilogue_sources:
            warnings.append("마무리(epilogue)에 source가 없습니다. 검토가 필요합니다.")
    if chapter_count < options.chapter_count_min:
        warnings.append(
            f"챕터 수({chapter_count})가 희망 최소치({options.chapter_count_min})보다 적습니다. "
            "에피소드가 부족할 수 있습니다."
        )
    if chapter_count > options.chapter_count_max:
        warnings.append(
            f"챕터 수({chapter_count})가 희망 최대치({options.chapter_count_max})를 초과합니다. "
            "서사가 풍부합니다."
        )
    return warnings


def fallback_meta() -> PhaseCOutput:
    return PhaseCOutput(
        meta=BookMeta(title=FALLBACK_TITLE),
        warnings=[FALLBACK_WARNING],
        token_usage=TokenUsage(),
    )
