"""In-memory CompilationStore used by runner, job and API tests."""

from __future__ import annotations

from typing import Any, Optional

from dotting_schemas import (
    Compilation,
    CompilationStatus,
    CompiledChapter,
    CompiledParagraph,
    CompileProgress,
    Episode,
    EpisodeSelection,
    ResultMeta,
    SessionMessage,
)
from dotting_storage import StoreError


class InMemoryCompilationStore:
    """Mirrors the compare-and-set semantics of the Postgres store.

    ``fail_on`` names methods that raise :class:`StoreError`, and
    ``progress_log`` keeps every progress snapshot in write order.
    """

    def __init__(
        self,
        episodes: Optional[dict[str, list[Episode]]] = None,
        messages: Optional[dict[str, list[SessionMessage]]] = None,
    ) -> None:
        self.episodes = episodes or {}
        self.messages = messages or {}
        self.compilations: dict[str, Compilation] = {}
        self.selections: dict[str, list[EpisodeSelection]] = {}
        self.chapters: dict[str, list[CompiledChapter]] = {}
        self.progress_log: dict[str, list[CompileProgress]] = {}
        self.fail_on: set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreError(f"{operation} failed")

    def _record(self, compilation_id: str, progress: CompileProgress) -> None:
        self.progress_log.setdefault(compilation_id, []).append(progress)

    def _transition(self, compilation_id: str, expected: CompilationStatus, **update: Any) -> bool:
        current = self.compilations.get(compilation_id)
        if current is None or current.status != expected:
            return False
        self.compilations[compilation_id] = current.model_copy(update=update)
        return True

    async def fetch_episodes(self, session_id: str) -> list[Episode]:
        self._check("fetch_episodes")
        return sorted(self.episodes.get(session_id, []), key=lambda episode: episode.order_index)

    async def fetch_messages(self, session_id: str) -> list[SessionMessage]:
        self._check("fetch_messages")
        return sorted(self.messages.get(session_id, []), key=lambda message: message.order_index)

    async def create_compilation(self, compilation: Compilation) -> Compilation:
        self._check("create_compilation")
        for existing in self.compilations.values():
            if existing.session_id == compilation.session_id and existing.version == compilation.version:
                raise StoreError("duplicate (session_id, version)")
        self.compilations[compilation.id] = compilation
        return compilation

    async def get_compilation(self, compilation_id: str) -> Optional[Compilation]:
        self._check("get_compilation")
        return self.compilations.get(compilation_id)

    async def find_by_idempotency_key(self, session_id: str, idempotency_key: str) -> Optional[Compilation]:
        self._check("find_by_idempotency_key")
        matches = [
            compilation
            for compilation in self.compilations.values()
            if compilation.session_id == session_id and compilation.idempotency_key == idempotency_key
        ]
        return max(matches, key=lambda compilation: compilation.version) if matches else None

    async def latest_version(self, session_id: str) -> int:
        self._check("latest_version")
        versions = [
            compilation.version
            for compilation in self.compilations.values()
            if compilation.session_id == session_id
        ]
        return max(versions, default=0)

    async def claim_compilation(self, compilation_id: str, progress: CompileProgress) -> bool:
        self._check("claim_compilation")
        claimed = self._transition(
            compilation_id,
            CompilationStatus.PENDING,
            status=CompilationStatus.PROCESSING,
            progress=progress,
        )
        if claimed:
            self._record(compilation_id, progress)
        return claimed

    async def update_progress(self, compilation_id: str, progress: CompileProgress) -> None:
        self._check("update_progress")
        current = self.compilations[compilation_id]
        self.compilations[compilation_id] = current.model_copy(update={"progress": progress})
        self._record(compilation_id, progress)

    async def save_episode_selections(self, compilation_id: str, selections: list[EpisodeSelection]) -> None:
        self._check("save_episode_selections")
        self.selections[compilation_id] = list(selections)

    async def save_chapters(self, compilation_id: str, chapters: list[CompiledChapter]) -> None:
        self._check("save_chapters")
        self.chapters[compilation_id] = list(chapters)

    async def complete_compilation(
        self, compilation_id: str, result_meta: ResultMeta, progress: CompileProgress
    ) -> bool:
        self._check("complete_compilation")
        completed = self._transition(
            compilation_id,
            CompilationStatus.PROCESSING,
            status=CompilationStatus.COMPLETED,
            result_meta=result_meta,
            progress=progress,
            completed_at=progress.updated_at,
        )
        if completed:
            self._record(compilation_id, progress)
        return completed

    async def mark_failed(
        self,
        compilation_id: str,
        *,
        error_message: str,
        error_detail: dict[str, Any],
        progress: CompileProgress,
    ) -> None:
        self._check("mark_failed")
        current = self.compilations[compilation_id]
        self.compilations[compilation_id] = current.model_copy(
            update={
                "status": CompilationStatus.FAILED,
                "error_message": error_message,
                "error_detail": error_detail,
                "progress": progress,
            }
        )
        self._record(compilation_id, progress)

    async def fetch_chapters(self, compilation_id: str, *, include_hidden: bool = False) -> list[CompiledChapter]:
        self._check("fetch_chapters")
        chapters = self.chapters.get(compilation_id, [])
        if include_hidden:
            return list(chapters)
        return [
            chapter.model_copy(
                update={"paragraphs": [paragraph for paragraph in chapter.paragraphs if not paragraph.is_hidden]}
            )
            for chapter in chapters
        ]

    async def update_paragraph(
        self,
        compilation_id: str,
        paragraph_id: str,
        *,
        content: Optional[str] = None,
        is_hidden: Optional[bool] = None,
    ) -> Optional[CompiledParagraph]:
        self._check("update_paragraph")
        for chapter in self.chapters.get(compilation_id, []):
            for position, paragraph in enumerate(chapter.paragraphs):
                if paragraph.id != paragraph_id:
                    continue
                update: dict[str, Any] = {}
                if content is not None and content != paragraph.content:
                    update.update(content=content, revision=paragraph.revision + 1)
                if is_hidden is not None:
                    update["is_hidden"] = is_hidden
                chapter.paragraphs[position] = paragraph.model_copy(update=update)
                return chapter.paragraphs[position]
        return None

    async def fetch_episode_inclusions(self, compilation_id: str) -> list[EpisodeSelection]:
        self._check("fetch_episode_inclusions")
        return list(self.selections.get(compilation_id, []))
