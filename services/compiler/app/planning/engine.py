"""Phase B1: turn selected episodes into a cited chapter and paragraph plan."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from dotting_providers.exceptions import ProviderResponseError
from dotting_schemas import (
    ChapterPlan,
    CompilationIntent,
    CompileOptions,
    CompilePhase,
    Episode,
    ParagraphPlan,
    ParagraphType,
    PhaseB1Output,
    SessionMessage,
)
from dotting_schemas.utils.validators import string_ids

from ..gateway import CompletionGateway
from .prompts import (
    FINAL_INTRO_OUTRO_SOURCES,
    PLANNING_SYSTEM_PROMPT,
    PLANNING_USER_PROMPT,
    PREVIEW_INTRO_OUTRO_SOURCES,
    REFLECTION_DISTRIBUTED_RULE,
    REFLECTION_LATE_RULE,
    STRUCTURE_MODE_LABELS,
)

logger = logging.getLogger(__name__)

PLANNING_TEMPERATURE = 0.4
DEFAULT_PURPOSE = "목적 미상"

_VALID_TYPES = {paragraph_type.value for paragraph_type in ParagraphType}


class PlanDecodeError(ProviderResponseError):
    """The planner reply did not have the chapters/paragraph_plans shape."""


async def create_citation_plan(
    gateway: CompletionGateway,
    selected_episodes: Sequence[Episode],
    messages: Sequence[SessionMessage],
    options: CompileOptions,
    intent: CompilationIntent,
) -> PhaseB1Output:
    """Ask for the chapter skeleton with per-paragraph citations.

    Grounding is not enforced here; the runner validates the plan. Provider
    errors propagate and an unusable reply raises :class:`PlanDecodeError`.
    """

    available = available_message_ids(selected_episodes, messages)
    system_prompt = PLANNING_SYSTEM_PROMPT.format(
        intro_outro_sources=(
            FINAL_INTRO_OUTRO_SOURCES
            if intent == CompilationIntent.FINAL
            else PREVIEW_INTRO_OUTRO_SOURCES
        ),
        structure_mode_label=STRUCTURE_MODE_LABELS[options.structure_mode],
        chapter_min=options.chapter_count_min,
        chapter_max=options.chapter_count_max,
        paragraph_min=options.paragraphs_per_chapter_min,
        paragraph_max=options.paragraphs_per_chapter_max,
        reflection_rule=(
            REFLECTION_LATE_RULE
            if options.reflection_placement == "late"
            else REFLECTION_DISTRIBUTED_RULE
        ),
    )
    episodes_payload = [
        {
            "id": episode.id,
            "theme": episode.theme.value,
            "time_period": episode.time_period or "unknown",
            "summary": episode.summary,
            "emotional_weight": episode.emotional_weight,
            "has_turning_point": episode.has_turning_point,
            "has_reflection": episode.has_reflection,
            "available_message_ids": available[episode.id],
        }
        for episode in selected_episodes
    ]
    prompt = PLANNING_USER_PROMPT.format(
        episode_count=len(selected_episodes),
        episodes_json=json.dumps(episodes_payload, ensure_ascii=False),
        editor_notes=(options.editor_notes or "").strip() or "None provided.",
    )

    completion = await gateway.complete_json(
        system_prompt=system_prompt,
        prompt=prompt,
        temperature=PLANNING_TEMPERATURE,
        phase=CompilePhase.B1,
    )
    chapters = decode_plan(completion.payload, selected_episodes)
    output = PhaseB1Output.from_chapters(chapters, token_usage=completion.usage)
    logger.info(
        "Citation plan created",
        extra={
            "chapter_count": len(output.chapters),
            "paragraph_count": output.total_paragraphs,
            "grounded_count": output.grounded_count,
        },
    )
    return output


def available_message_ids(
    episodes: Sequence[Episode], messages: Sequence[SessionMessage]
) -> dict[str, list[str]]:
    """Per episode, its source ids that exist in the session, in episode order."""

    known = {message.id for message in messages}
    return {
        episode.id: [message_id for message_id in episode.source_message_ids if message_id in known]
        for episode in episodes
    }


def decode_plan(payload: Any, episodes: Optional[Sequence[Episode]] = None) -> list[ChapterPlan]:
    """Normalise the planner reply.

    Chapters and paragraphs are re-indexed by position. Unknown paragraph
    types become ``grounded`` so a mislabelled paragraph still has to cite
    its sources.

    When ``episodes`` is given, ``used_episode_ids`` only keeps ids of those
    episodes. A paragraph left with no episode is attributed to the
    episodes that own its cited messages.

    Raises:
        PlanDecodeError: ``chapters`` is missing or not a list.
    """

    if not isinstance(payload, dict) or not isinstance(payload.get("chapters"), list):
        raise PlanDecodeError("Planner reply did not contain a chapters array")

    index = EpisodeIndex(episodes) if episodes is not None else None
    chapters: list[ChapterPlan] = []
    for chapter_index, raw_chapter in enumerate(payload["chapters"]):
        raw_chapter = raw_chapter if isinstance(raw_chapter, dict) else {}
        raw_plans = raw_chapter.get("paragraph_plans")
        raw_plans = raw_plans if isinstance(raw_plans, list) else []
        paragraph_plans = [
            _paragraph_plan(chapter_index, paragraph_index, raw_plan if isinstance(raw_plan, dict) else {}, index)
            for paragraph_index, raw_plan in enumerate(raw_plans)
        ]
        chapters.append(
            ChapterPlan(
                chapter_index=chapter_index,
                title=_text(raw_chapter.get("title")) or f"챕터 {chapter_index + 1}",
                theme_focus=_text(raw_chapter.get("theme_focus")),
                time_range=_text(raw_chapter.get("time_range")),
                paragraph_plans=paragraph_plans,
            )
        )
    return chapters


def _paragraph_plan(
    chapter_index: int,
    paragraph_index: int,
    raw: dict[str, Any],
    index: Optional[EpisodeIndex] = None,
) -> ParagraphPlan:
    raw_type = raw.get("type")
    if isinstance(raw_type, str) and raw_type.strip().lower() in _VALID_TYPES:
        paragraph_type = ParagraphType(raw_type.strip().lower())
    else:
        paragraph_type = ParagraphType.GROUNDED
    used_episode_ids = string_ids(raw.get("used_episode_ids"))
    source_message_ids = string_ids(raw.get("source_message_ids"))
    if index is not None:
        dropped = [episode_id for episode_id in used_episode_ids if episode_id not in index.known]
        used_episode_ids = index.resolve(used_episode_ids, source_message_ids)
        if dropped:
            logger.warning(
                "Planner cited episodes outside the selection",
                extra={
                    "chapter_index": chapter_index,
                    "paragraph_index": paragraph_index,
                    "dropped_episode_ids": dropped,
                },
            )
    return ParagraphPlan(
        chapter_index=chapter_index,
        paragraph_index=paragraph_index,
        type=paragraph_type,
        purpose=_text(raw.get("purpose")) or DEFAULT_PURPOSE,
        used_episode_ids=used_episode_ids,
        source_message_ids=source_message_ids,
    )


class EpisodeIndex:
    """Selected episode ids and, per message, the episodes that own it."""

    def __init__(self, episodes: Sequence[Episode]) -> None:
        self.known = {episode.id for episode in episodes}
        self.owners: dict[str, list[str]] = {}
        for episode in episodes:
            for message_id in episode.source_message_ids:
                self.owners.setdefault(message_id, []).append(episode.id)

    def resolve(self, used_episode_ids: list[str], source_message_ids: list[str]) -> list[str]:
        kept = [episode_id for episode_id in used_episode_ids if episode_id in self.known]
        if kept:
            return kept
        inferred: list[str] = []
        for message_id in source_message_ids:
            for episode_id in self.owners.get(message_id, []):
                if episode_id not in inferred:
                    inferred.append(episode_id)
        return inferred


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""
