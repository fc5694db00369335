"""Interview material and the Phase A selection records built from it."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..enums import EpisodeTheme, InclusionStatus, MessageRole
from .usage import TokenUsage


class SessionMessage(BaseModel):
    """A single interview turn. Only ``user`` turns count as quotable sources."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: MessageRole
    content: str
    order_index: int = 0


class Episode(BaseModel):
    """Narrative unit extracted upstream from interview messages."""

    model_config = ConfigDict(frozen=True)

    id: str
    order_index: int = 0
    title: Optional[str] = None
    theme: EpisodeTheme
    time_period: Optional[str] = None
    summary: str
    content: Optional[str] = None
    emotional_weight: float = Field(5, ge=0, le=10)
    has_turning_point: bool = False
    has_reflection: bool = False
    source_message_ids: tuple[str, ...] = ()


class EpisodeSelectionSignals(BaseModel):
    emotional_weight: float = Field(..., ge=0, le=10)
    has_turning_point: bool
    has_reflection: bool
    redundancy_score: float = Field(0, ge=0, le=10, description="Overlap with other episodes")
    bridge_needed: bool = Field(False, description="Needs a connecting sentence to the next episode")
    narrative_value: float = Field(5, ge=0, le=10)

    @classmethod
    def from_episode(cls, episode: Episode) -> "EpisodeSelectionSignals":
        return cls(
            emotional_weight=episode.emotional_weight,
            has_turning_point=episode.has_turning_point,
            has_reflection=episode.has_reflection,
            redundancy_score=0,
            bridge_needed=False,
            narrative_value=5,
        )


class EpisodeSelection(BaseModel):
    """Editorial decision for one episode."""

    episode_id: str
    inclusion_status: InclusionStatus
    decision_reason: str
    signals: EpisodeSelectionSignals


class PhaseAOutput(BaseModel):
    selections: list[EpisodeSelection] = Field(default_factory=list)
    core_count: int = Field(0, ge=0)
    supporting_count: int = Field(0, ge=0)
    excluded_count: int = Field(0, ge=0, description="Appendix and excluded picks")
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @classmethod
    def from_selections(
        cls, selections: list[EpisodeSelection], token_usage: TokenUsage | None = None
    ) -> "PhaseAOutput":
        statuses = [selection.inclusion_status for selection in selections]
        return cls(
            selections=selections,
            core_count=statuses.count(InclusionStatus.CORE),
            supporting_count=statuses.count(InclusionStatus.SUPPORTING),
            excluded_count=statuses.count(InclusionStatus.EXCLUDED)
            + statuses.count(InclusionStatus.APPENDIX),
            token_usage=token_usage or TokenUsage(),
        )

    def selected_ids(self) -> set[str]:
        """Episode ids that flow into the book body (core and supporting)."""

        return {
            selection.episode_id
            for selection in self.selections
            if selection.inclusion_status in (InclusionStatus.CORE, InclusionStatus.SUPPORTING)
        }
