"""Persistence contract used by the compile runner, the worker and the API."""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from dotting_schemas import (
    Compilation,
    CompiledChapter,
    CompiledParagraph,
    CompileProgress,
    Episode,
    EpisodeSelection,
    ResultMeta,
    SessionMessage,
)


class StoreError(RuntimeError):
    """Raised when the backing database rejects a read or write."""


@runtime_checkable
class CompilationStore(Protocol):
    """Async sink for compilations and their checkpoints.

    ``claim_compilation`` and ``complete_compilation`` are compare-and-set
    transitions: they only apply when the row is still in the expected
    status and report whether they did. ``update_paragraph`` returns
    ``None`` when the paragraph does not belong to the compilation; a
    content change bumps ``revision``.
    """

    async def fetch_episodes(self, session_id: str) -> list[Episode]: ...

    async def fetch_messages(self, session_id: str) -> list[SessionMessage]: ...

    async def create_compilation(self, compilation: Compilation) -> Compilation: ...

    async def get_compilation(self, compilation_id: str) -> Optional[Compilation]: ...

    async def find_by_idempotency_key(
        self, session_id: str, idempotency_key: str
    ) -> Optional[Compilation]: ...

    async def latest_version(self, session_id: str) -> int: ...

    async def claim_compilation(self, compilation_id: str, progress: CompileProgress) -> bool: ...

    async def update_progress(self, compilation_id: str, progress: CompileProgress) -> None: ...

    async def save_episode_selections(
        self, compilation_id: str, selections: list[EpisodeSelection]
    ) -> None: ...

    async def save_chapters(self, compilation_id: str, chapters: list[CompiledChapter]) -> None: ...

    async def complete_compilation(
        self, compilation_id: str, result_meta: ResultMeta, progress: CompileProgress
    ) -> bool: ...

    async def mark_failed(
        self,
        compilation_id: str,
        *,
        error_message: str,
        error_detail: dict[str, Any],
        progress: CompileProgress,
    ) -> None: ...

    async def fetch_chapters(
        self, compilation_id: str, *, include_hidden: bool = False
    ) -> list[CompiledChapter]: ...

    async def update_paragraph(
        self,
        compilation_id: str,
        paragraph_id: str,
        *,
        content: Optional[str] = None,
        is_hidden: Optional[bool] = None,
    ) -> Optional[CompiledParagraph]: ...

    async def fetch_episode_inclusions(self, compilation_id: str) -> list[EpisodeSelection]: ...
