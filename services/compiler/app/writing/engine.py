"""Phase B2: write every planned paragraph from its cited messages only."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from dotting_providers.exceptions import ProviderError, ProviderResponseError
from dotting_schemas import (
    ChapterPlan,
    CompileOptions,
    CompilePhase,
    Episode,
    MessageRole,
    ParagraphPlan,
    PhaseB1Output,
    PhaseB2Output,
    SessionMessage,
    TokenUsage,
    WrittenParagraph,
)

from ..gateway import CompletionGateway
from .prompts import (
    CHAPTER_PROMPT,
    NO_SOURCES_BLOCK,
    PARAGRAPH_BLOCK,
    SOURCES_BLOCK,
    SUMMARIES_LINE,
    WRITING_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

WRITING_TEMPERATURE = 0.6


class ParagraphDecodeError(ProviderResponseError):
    """The writer reply had no paragraphs array."""


async def write_paragraphs(
    gateway: CompletionGateway,
    plan: PhaseB1Output,
    messages: Sequence[SessionMessage],
    episodes: Sequence[Episode],
    options: CompileOptions,
) -> PhaseB2Output:
    """Write the book chapter by chapter, one completion call each.

    A chapter whose call or decoding fails is filled with placeholder
    paragraphs and the job carries on; the count is reported in
    ``placeholder_count``. Chapters run sequentially.
    """

    message_map = {message.id: message for message in messages}
    episode_map = {episode.id: episode for episode in episodes}

    paragraphs: list[WrittenParagraph] = []
    usage = TokenUsage()
    for chapter in plan.chapters:
        written, chapter_usage = await _write_chapter(gateway, chapter, message_map, episode_map)
        paragraphs.extend(written)
        usage = usage + chapter_usage

    placeholder_count = sum(1 for paragraph in paragraphs if paragraph.is_placeholder)
    logger.info(
        "Paragraphs written",
        extra={
            "paragraph_count": len(paragraphs),
            "placeholder_count": placeholder_count,
            "total_tokens": usage.total_tokens,
        },
    )
    return PhaseB2Output(paragraphs=paragraphs, token_usage=usage, placeholder_count=placeholder_count)


async def _write_chapter(
    gateway: CompletionGateway,
    chapter: ChapterPlan,
    message_map: Mapping[str, SessionMessage],
    episode_map: Mapping[str, Episode],
) -> tuple[list[WrittenParagraph], TokenUsage]:
    if not chapter.paragraph_plans:
        return [], TokenUsage()

    prompt = build_chapter_prompt(chapter, message_map, episode_map)
    try:
        completion = await gateway.complete_json(
            system_prompt=WRITING_SYSTEM_PROMPT,
            prompt=prompt,
            temperature=WRITING_TEMPERATURE,
            phase=CompilePhase.B2,
            metadata={"chapter_index": chapter.chapter_index},
        )
        written = decode_chapter_paragraphs(completion.payload, chapter)
    except (ProviderError, ValidationError) as exc:
        logger.warning(
            "Chapter generation failed; using placeholders",
            extra={"chapter_index": chapter.chapter_index, "error": str(exc)},
        )
        return [WrittenParagraph.placeholder(plan) for plan in chapter.paragraph_plans], TokenUsage()
    return written, completion.usage


def build_chapter_prompt(
    chapter: ChapterPlan,
    message_map: Mapping[str, SessionMessage],
    episode_map: Mapping[str, Episode],
) -> str:
    blocks = [_paragraph_block(plan, message_map, episode_map) for plan in chapter.paragraph_plans]
    return CHAPTER_PROMPT.format(
        title=chapter.title,
        theme_focus=chapter.theme_focus or "-",
        time_range=chapter.time_range or "-",
        paragraph_blocks="\n\n".join(blocks),
    )


def _paragraph_block(
    plan: ParagraphPlan,
    message_map: Mapping[str, SessionMessage],
    episode_map: Mapping[str, Episode],
) -> str:
    # Only the subject's own words are quotable; interviewer turns never are.
    quotes = [
        message_map[message_id].content
        for message_id in plan.source_message_ids
        if message_id in message_map and message_map[message_id].role == MessageRole.USER
    ]
    summaries = [episode_map[episode_id].summary for episode_id in plan.used_episode_ids if episode_id in episode_map]

    if quotes:
        sources = SOURCES_BLOCK.format(quotes="\n".join(f'- "{quote}"' for quote in quotes))
    else:
        sources = NO_SOURCES_BLOCK
    return PARAGRAPH_BLOCK.format(
        paragraph_index=plan.paragraph_index,
        paragraph_type=plan.type.value,
        purpose=plan.purpose,
        sources=sources,
        summaries=SUMMARIES_LINE.format(summaries="; ".join(summaries)) if summaries else "",
    )


def decode_chapter_paragraphs(payload: Any, chapter: ChapterPlan) -> list[WrittenParagraph]:
    """Fill every planned slot of ``chapter`` from the writer reply.

    Indices outside the plan are ignored and the first reply per index
    wins. Type and source ids always come from the plan. Slots without
    usable text get the placeholder. Sorted by paragraph index.

    Raises:
        ParagraphDecodeError: No ``paragraphs`` array in the reply.
    """

    if not isinstance(payload, dict) or not isinstance(payload.get("paragraphs"), list):
        raise ParagraphDecodeError(
            f"Writer reply for chapter {chapter.chapter_index} did not contain a paragraphs array"
        )

    plans = {plan.paragraph_index: plan for plan in chapter.paragraph_plans}
    contents: dict[int, str] = {}
    for position, item in enumerate(payload["paragraphs"]):
        if not isinstance(item, dict):
            continue
        index = item.get("paragraph_index", position)
        if isinstance(index, bool) or not isinstance(index, int):
            continue
        content = item.get("content")
        if index not in plans or index in contents:
            continue
        if isinstance(content, str) and content.strip():
            contents[index] = content.strip()

    written: list[WrittenParagraph] = []
    for index in sorted(plans):
        plan = plans[index]
        if index not in contents:
            written.append(WrittenParagraph.placeholder(plan))
            continue
        written.append(
            WrittenParagraph(
                chapter_index=chapter.chapter_index,
                paragraph_index=index,
                type=plan.type,
                content=contents[index],
                source_episode_ids=list(plan.used_episode_ids),
                source_message_ids=list(plan.source_message_ids),
            )
        )
    return written
