"""Enum definitions shared across the compile pipeline."""

from __future__ import annotations

from enum import Enum


class EpisodeTheme(str, Enum):
    CHILDHOOD = "childhood"
    ADOLESCENCE = "adolescence"
    EARLY_ADULTHOOD = "early_adulthood"
    CAREER = "career"
    MARRIAGE = "marriage"
    PARENTING = "parenting"
    TURNING_POINT = "turning_point"
    HARDSHIP = "hardship"
    JOY = "joy"
    REFLECTION = "reflection"
    LEGACY = "legacy"


class InclusionStatus(str, Enum):
    CANDIDATE = "candidate"
    CORE = "core"
    SUPPORTING = "supporting"
    APPENDIX = "appendix"
    EXCLUDED = "excluded"


class ParagraphType(str, Enum):
    GROUNDED = "grounded"
    CONNECTOR = "connector"
    EDITORIAL = "editorial"
    INTRO = "intro"
    OUTRO = "outro"


class MessageRole(str, Enum):
    AI = "ai"
    USER = "user"


class CompilationIntent(str, Enum):
    PREVIEW = "preview"
    FINAL = "final"


class CompilationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CompilePhase(str, Enum):
    A = "A"
    B1 = "B1"
    B2 = "B2"
    C = "C"


class CompileErrorCode(str, Enum):
    # Content insufficiency; the subject needs to talk more, retrying does not help.
    NO_EPISODES = "NO_EPISODES"
    NO_CORE_EPISODES = "NO_CORE_EPISODES"

    # Grounding violations, usually a prompting defect.
    GROUNDED_WITHOUT_SOURCE = "GROUNDED_WITHOUT_SOURCE"
    SOURCE_OUT_OF_PLAN = "SOURCE_OUT_OF_PLAN"
    GROUNDING_TRIGGER_FAILED = "GROUNDING_TRIGGER_FAILED"

    # Transient / system failures.
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_ERROR = "LLM_ERROR"
    DB_ERROR = "DB_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
