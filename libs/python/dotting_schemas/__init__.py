"""Shared pydantic schemas for the DOTTING compile pipeline."""

from .enums import (
    CompilationIntent,
    CompilationStatus,
    CompileErrorCode,
    CompilePhase,
    EpisodeTheme,
    InclusionStatus,
    MessageRole,
    ParagraphType,
)
from .models.book import CompiledChapter, CompiledParagraph, ParagraphSource
from .models.compilation import (
    ERROR_UX_CONFIG,
    PHASE_MESSAGES,
    PHASE_PERCENT,
    Compilation,
    CompileError,
    CompileJobResult,
    CompileOptions,
    CompileProgress,
    CompileStats,
    ErrorUx,
    PhaseTokenUsage,
    ResultMeta,
)
from .models.episode import (
    Episode,
    EpisodeSelection,
    EpisodeSelectionSignals,
    PhaseAOutput,
    SessionMessage,
)
from .models.plan import (
    PLACEHOLDER_CONTENT,
    BookMeta,
    ChapterPlan,
    ParagraphPlan,
    PhaseB1Output,
    PhaseB2Output,
    PhaseCOutput,
    WrittenParagraph,
)
from .models.usage import TokenUsage

__all__ = [
    "CompilationIntent",
    "CompilationStatus",
    "CompileErrorCode",
    "CompilePhase",
    "EpisodeTheme",
    "InclusionStatus",
    "MessageRole",
    "ParagraphType",
    "ERROR_UX_CONFIG",
    "PHASE_MESSAGES",
    "PHASE_PERCENT",
    "Compilation",
    "CompileError",
    "CompileJobResult",
    "CompileOptions",
    "CompileProgress",
    "CompileStats",
    "ErrorUx",
    "PhaseTokenUsage",
    "ResultMeta",
    "Episode",
    "EpisodeSelection",
    "EpisodeSelectionSignals",
    "PhaseAOutput",
    "SessionMessage",
    "PLACEHOLDER_CONTENT",
    "BookMeta",
    "ChapterPlan",
    "ParagraphPlan",
    "PhaseB1Output",
    "PhaseB2Output",
    "PhaseCOutput",
    "WrittenParagraph",
    "TokenUsage",
    "CompiledChapter",
    "CompiledParagraph",
    "ParagraphSource",
]
