"""Compile options, progress snapshots, and the persisted compilation aggregate."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..enums import (
    CompilationIntent,
    CompilationStatus,
    CompileErrorCode,
    CompilePhase,
)
from .plan import BookMeta

StructureMode = Literal["timeline", "thematic", "free"]
ReflectionPlacement = Literal["late", "distributed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CompileOptions(BaseModel):
    """Editorial knobs for one compilation.

    Chapter and paragraph counts are soft targets handed to the planner;
    the realised book may deviate, which Phase C reports as a warning.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    structure_mode: StructureMode = "timeline"
    chapter_count_min: int = Field(3, ge=1)
    chapter_count_max: int = Field(5, ge=1)
    paragraphs_per_chapter_min: int = Field(2, ge=1)
    paragraphs_per_chapter_max: int = Field(8, ge=1)
    editor_notes: Optional[str] = None
    aggressive_cut: bool = True
    reflection_placement: ReflectionPlacement = "late"
    allow_appendix: bool = False

    @field_validator("structure_mode", mode="before")
    @classmethod
    def normalise_structure_mode(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() == "freeform":
            return "free"
        return value

    @model_validator(mode="after")
    def check_bounds(self) -> "CompileOptions":
        if self.chapter_count_min > self.chapter_count_max:
            raise ValueError("chapterCountMin must not exceed chapterCountMax")
        if self.paragraphs_per_chapter_min > self.paragraphs_per_chapter_max:
            raise ValueError("paragraphsPerChapterMin must not exceed paragraphsPerChapterMax")
        return self

    def for_intent(self, intent: CompilationIntent) -> "CompileOptions":
        """Appendix material is only tolerated in previews."""

        if intent == CompilationIntent.PREVIEW and not self.allow_appendix:
            return self.model_copy(update={"allow_appendix": True})
        return self


PHASE_MESSAGES: dict[CompilePhase, str] = {
    CompilePhase.A: "에피소드를 분석하고 있어요...",
    CompilePhase.B1: "챕터를 구성하고 있어요...",
    CompilePhase.B2: "이야기를 작성하고 있어요...",
    CompilePhase.C: "마무리하고 있어요...",
}

PHASE_PERCENT: dict[CompilePhase, int] = {
    CompilePhase.A: 0,
    CompilePhase.B1: 25,
    CompilePhase.B2: 50,
    CompilePhase.C: 75,
}


class CompileProgress(BaseModel):
    """Polling snapshot written at every phase transition."""

    phase: Optional[CompilePhase] = None
    percent: Literal[0, 25, 50, 75, 100] = 0
    message: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def for_phase(cls, phase: CompilePhase) -> "CompileProgress":
        return cls(phase=phase, percent=PHASE_PERCENT[phase], message=PHASE_MESSAGES[phase])

    @classmethod
    def queued(cls) -> "CompileProgress":
        return cls(message="준비 중...")

    @classmethod
    def starting(cls) -> "CompileProgress":
        return cls(message="시작하는 중...")

    @classmethod
    def done(cls) -> "CompileProgress":
        return cls(phase=CompilePhase.C, percent=100, message="완료!")

    @classmethod
    def failed(cls, phase: CompilePhase | None) -> "CompileProgress":
        return cls(phase=phase, percent=0, message="실패")


class CompileError(BaseModel):
    code: CompileErrorCode
    message: str
    details: Any = None


class CompileJobResult(BaseModel):
    success: bool
    error: Optional[CompileError] = None


class CompileStats(BaseModel):
    chapter_count: int
    paragraph_count: int
    grounded_paragraph_count: int
    source_episode_count: int
    source_message_count: int
    placeholder_paragraph_count: int = 0


class PhaseTokenUsage(BaseModel):
    phase_a: int = 0
    phase_b1: int = 0
    phase_b2: int = 0
    phase_c: int = 0
    total: int = 0
    estimated_cost_usd: str = "0.00"


class ResultMeta(BaseModel):
    book_meta: BookMeta
    stats: CompileStats
    warnings: list[str] = Field(default_factory=list)
    token_usage: PhaseTokenUsage = Field(default_factory=PhaseTokenUsage)


class Compilation(BaseModel):
    """Persisted aggregate. Only the runner that won the claim writes to it."""

    id: str
    session_id: str
    version: int = Field(..., ge=1)
    intent: CompilationIntent
    status: CompilationStatus = CompilationStatus.PENDING
    options: CompileOptions = Field(default_factory=CompileOptions)
    idempotency_key: Optional[str] = None
    progress: CompileProgress = Field(default_factory=CompileProgress.queued)
    result_meta: Optional[ResultMeta] = None
    error_message: Optional[str] = None
    error_detail: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class ErrorUx(BaseModel):
    message: str
    button_text: str
    button_action: Literal["retry", "interview", "start"]
    internal_alert: bool


_RETRY_GROUNDING = ErrorUx(
    message="책의 일부 문장에서 근거 연결이 충분하지 않았어요. 안정적으로 책을 만들기 위해, 잠시 후 다시 시도해주세요.",
    button_text="다시 시도",
    button_action="retry",
    internal_alert=True,
)

ERROR_UX_CONFIG: dict[CompileErrorCode, ErrorUx] = {
    CompileErrorCode.NO_EPISODES: ErrorUx(
        message="아직 나눈 이야기가 없어요. 먼저 이야기를 시작해주세요.",
        button_text="이야기 시작하기",
        button_action="start",
        internal_alert=False,
    ),
    CompileErrorCode.NO_CORE_EPISODES: ErrorUx(
        message="책을 엮기엔 이야기가 조금 짧아요. 몇 가지 질문에 더 답해주시면 멋진 책이 될 거예요.",
        button_text="이야기 더 나누기",
        button_action="interview",
        internal_alert=False,
    ),
    CompileErrorCode.GROUNDED_WITHOUT_SOURCE: _RETRY_GROUNDING,
    CompileErrorCode.SOURCE_OUT_OF_PLAN: _RETRY_GROUNDING,
    CompileErrorCode.GROUNDING_TRIGGER_FAILED: ErrorUx(
        message="책 마무리 중 문제가 생겼어요. 잠시 후 다시 시도해주세요.",
        button_text="다시 시도",
        button_action="retry",
        internal_alert=True,
    ),
    CompileErrorCode.LLM_TIMEOUT: ErrorUx(
        message="잠시 연결이 불안정했어요. 다시 시도해주세요.",
        button_text="다시 시도",
        button_action="retry",
        internal_alert=False,
    ),
    CompileErrorCode.LLM_ERROR: ErrorUx(
        message="일시적인 문제가 발생했어요. 다시 시도해주세요.",
        button_text="다시 시도",
        button_action="retry",
        internal_alert=False,
    ),
    CompileErrorCode.DB_ERROR: ErrorUx(
        message="저장 중 문제가 생겼어요. 다시 시도해주세요.",
        button_text="다시 시도",
        button_action="retry",
        internal_alert=True,
    ),
    CompileErrorCode.INTERNAL_ERROR: ErrorUx(
        message="예상치 못한 문제가 발생했어요. 다시 시도해주세요.",
        button_text="다시 시도",
        button_action="retry",
        internal_alert=True,
    ),
}
