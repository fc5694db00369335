"""Phase A: classify interview episodes into inclusion tiers."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from pydantic import ValidationError

from dotting_providers.exceptions import ProviderError, ProviderResponseError
from dotting_schemas import (
    CompileOptions,
    CompilePhase,
    Episode,
    EpisodeSelection,
    EpisodeSelectionSignals,
    InclusionStatus,
    PhaseAOutput,
    TokenUsage,
)
from dotting_schemas.utils.validators import clamp_score, coerce_bool

from ..gateway import CompletionGateway
from .prompts import (
    AGGRESSIVE_CUT_RULE,
    GENTLE_CUT_RULE,
    REFLECTION_DISTRIBUTED_RULE,
    REFLECTION_LATE_RULE,
    SELECTION_SYSTEM_PROMPT,
    SELECTION_USER_PROMPT,
)

logger = logging.getLogger(__name__)

SELECTION_TEMPERATURE = 0.3

MISSING_REASON = "AI 응답에서 누락되어 기본값(supporting) 적용"
FALLBACK_REASON = "AI 선별 실패로 기본값 적용"
DEFAULT_REASON = "판단 근거 없음"
APPENDIX_DISABLED_NOTE = "부록 비허용으로 제외 처리"

_VALID_STATUSES = {status.value for status in InclusionStatus}


class SelectionDecodeError(ProviderResponseError):
    """The selector reply did not carry a list of selections."""


async def select_episodes(
    gateway: CompletionGateway,
    episodes: Sequence[Episode],
    options: CompileOptions,
) -> PhaseAOutput:
    """Classify ``episodes`` in one completion call.

    Never raises for provider, parsing or validation failures: those fall
    back to every episode as ``supporting`` (core_count 0) and the runner
    decides whether that is fatal.
    """

    if not episodes:
        return PhaseAOutput()

    system_prompt = SELECTION_SYSTEM_PROMPT.format(
        cut_rule=AGGRESSIVE_CUT_RULE if options.aggressive_cut else GENTLE_CUT_RULE,
        reflection_rule=(
            REFLECTION_LATE_RULE
            if options.reflection_placement == "late"
            else REFLECTION_DISTRIBUTED_RULE
        ),
    )
    prompt = SELECTION_USER_PROMPT.format(
        episode_count=len(episodes),
        structure_mode=options.structure_mode,
        episodes_json=json.dumps(_episode_digest(episodes), ensure_ascii=False),
    )

    try:
        completion = await gateway.complete_json(
            system_prompt=system_prompt,
            prompt=prompt,
            temperature=SELECTION_TEMPERATURE,
            phase=CompilePhase.A,
        )
        selections = decode_selections(completion.payload, episodes)
    except (ProviderError, ValidationError) as exc:
        logger.warning(
            "Episode selection failed; falling back to supporting",
            extra={"episode_count": len(episodes), "error": str(exc)},
        )
        return fallback_selection(episodes)

    if not options.allow_appendix:
        selections = [_demote_appendix(selection) for selection in selections]

    output = PhaseAOutput.from_selections(selections, token_usage=completion.usage)
    logger.info(
        "Episode selection complete",
        extra={
            "core_count": output.core_count,
            "supporting_count": output.supporting_count,
            "excluded_count": output.excluded_count,
        },
    )
    return output


def decode_selections(payload: Any, episodes: Sequence[Episode]) -> list[EpisodeSelection]:
    """Turn the model reply into exactly one selection per input episode.

    Accepts a bare array or an object keyed by ``selections`` / ``episodes``.
    Entries for unknown ids and repeated ids are dropped (first wins);
    episodes the reply skipped are backfilled as ``supporting``. The result
    follows input order.

    Raises:
        SelectionDecodeError: The payload carries no selection list.
    """

    if isinstance(payload, dict):
        items = payload.get("selections", payload.get("episodes"))
    else:
        items = payload
    if not isinstance(items, list):
        raise SelectionDecodeError("Selector reply did not contain a selections array")

    by_id = {episode.id: episode for episode in episodes}
    decoded: dict[str, EpisodeSelection] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        episode_id = item.get("episode_id")
        if not isinstance(episode_id, str) or episode_id not in by_id or episode_id in decoded:
            continue
        reason = item.get("decision_reason")
        decoded[episode_id] = EpisodeSelection(
            episode_id=episode_id,
            inclusion_status=_inclusion_status(item.get("inclusion_status")),
            decision_reason=reason.strip() if isinstance(reason, str) and reason.strip() else DEFAULT_REASON,
            signals=_signals(item.get("signals")),
        )

    return [
        decoded.get(episode.id) or _default_selection(episode, MISSING_REASON)
        for episode in episodes
    ]


def fallback_selection(episodes: Sequence[Episode]) -> PhaseAOutput:
    return PhaseAOutput.from_selections(
        [_default_selection(episode, FALLBACK_REASON) for episode in episodes],
        token_usage=TokenUsage(),
    )


def _episode_digest(episodes: Sequence[Episode]) -> list[dict[str, Any]]:
    return [
        {
            "index": index,
            "id": episode.id,
            "theme": episode.theme.value,
            "time_period": episode.time_period or "unknown",
            "summary": episode.summary,
            "emotional_weight": episode.emotional_weight,
            "has_turning_point": episode.has_turning_point,
            "has_reflection": episode.has_reflection,
        }
        for index, episode in enumerate(episodes)
    ]


def _inclusion_status(value: Any) -> InclusionStatus:
    if isinstance(value, str) and value.strip().lower() in _VALID_STATUSES:
        return InclusionStatus(value.strip().lower())
    return InclusionStatus.SUPPORTING


def _signals(raw: Any) -> EpisodeSelectionSignals:
    raw = raw if isinstance(raw, dict) else {}
    return EpisodeSelectionSignals(
        emotional_weight=clamp_score(raw.get("emotional_weight"), default=5),
        has_turning_point=coerce_bool(raw.get("has_turning_point")),
        has_reflection=coerce_bool(raw.get("has_reflection")),
        redundancy_score=clamp_score(raw.get("redundancy_score"), default=0),
        bridge_needed=coerce_bool(raw.get("bridge_needed")),
        narrative_value=clamp_score(raw.get("narrative_value"), default=5),
    )


def _default_selection(episode: Episode, reason: str) -> EpisodeSelection:
    return EpisodeSelection(
        episode_id=episode.id,
        inclusion_status=InclusionStatus.SUPPORTING,
        decision_reason=reason,
        signals=EpisodeSelectionSignals.from_episode(episode),
    )


def _demote_appendix(selection: EpisodeSelection) -> EpisodeSelection:
    if selection.inclusion_status != InclusionStatus.APPENDIX:
        return selection
    return selection.model_copy(
        update={
            "inclusion_status": InclusionStatus.EXCLUDED,
            "decision_reason": f"{selection.decision_reason} ({APPENDIX_DISABLED_NOTE})",
        }
    )
