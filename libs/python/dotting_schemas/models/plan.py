"""Citation plan, written paragraphs, and book meta produced by phases B1, B2 and C."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..enums import ParagraphType
from .usage import TokenUsage

PLACEHOLDER_CONTENT = "[AI 생성 실패]"


class ParagraphPlan(BaseModel):
    """Planned paragraph slot. Grounded slots must cite at least one message."""

    chapter_index: int = Field(..., ge=0)
    paragraph_index: int = Field(..., ge=0)
    type: ParagraphType
    purpose: str
    used_episode_ids: list[str] = Field(default_factory=list)
    source_message_ids: list[str] = Field(default_factory=list)

    @property
    def key(self) -> tuple[int, int]:
        return (self.chapter_index, self.paragraph_index)


class ChapterPlan(BaseModel):
    chapter_index: int = Field(..., ge=0)
    title: str
    theme_focus: str = ""
    time_range: str = ""
    paragraph_plans: list[ParagraphPlan] = Field(default_factory=list)


class PhaseB1Output(BaseModel):
    chapters: list[ChapterPlan] = Field(default_factory=list)
    total_paragraphs: int = 0
    grounded_count: int = 0
    connector_count: int = 0
    intro_outro_count: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @classmethod
    def from_chapters(
        cls, chapters: list[ChapterPlan], token_usage: TokenUsage | None = None
    ) -> "PhaseB1Output":
        types = [plan.type for chapter in chapters for plan in chapter.paragraph_plans]
        return cls(
            chapters=chapters,
            total_paragraphs=len(types),
            grounded_count=types.count(ParagraphType.GROUNDED),
            connector_count=types.count(ParagraphType.CONNECTOR),
            intro_outro_count=types.count(ParagraphType.INTRO) + types.count(ParagraphType.OUTRO),
            token_usage=token_usage or TokenUsage(),
        )

    def paragraph_plans(self) -> list[ParagraphPlan]:
        return [plan for chapter in self.chapters for plan in chapter.paragraph_plans]

    def plan_index(self) -> dict[tuple[int, int], ParagraphPlan]:
        return {plan.key: plan for plan in self.paragraph_plans()}


class WrittenParagraph(BaseModel):
    chapter_index: int = Field(..., ge=0)
    paragraph_index: int = Field(..., ge=0)
    type: ParagraphType
    content: str
    source_episode_ids: list[str] = Field(default_factory=list)
    source_message_ids: list[str] = Field(default_factory=list)

    @property
    def key(self) -> tuple[int, int]:
        return (self.chapter_index, self.paragraph_index)

    @property
    def is_placeholder(self) -> bool:
        return self.content == PLACEHOLDER_CONTENT

    @classmethod
    def placeholder(cls, plan: ParagraphPlan) -> "WrittenParagraph":
        """Slot filler used when generation did not return this paragraph."""

        return cls(
            chapter_index=plan.chapter_index,
            paragraph_index=plan.paragraph_index,
            type=plan.type,
            content=PLACEHOLDER_CONTENT,
            source_episode_ids=list(plan.used_episode_ids),
            source_message_ids=list(plan.source_message_ids),
        )


class PhaseB2Output(BaseModel):
    paragraphs: list[WrittenParagraph] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    placeholder_count: int = 0


class BookMeta(BaseModel):
    title: str
    subtitle: Optional[str] = None
    preface: Optional[str] = None
    epilogue: Optional[str] = None
    preface_sources: list[str] = Field(default_factory=list)
    epilogue_sources: list[str] = Field(default_factory=list)


class PhaseCOutput(BaseModel):
    meta: BookMeta
    warnings: list[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
