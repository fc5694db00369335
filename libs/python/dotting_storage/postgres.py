"""Postgres implementation of :class:`CompilationStore` over a psycopg pool."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar
from uuid import uuid4

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from dotting_schemas import (
    Compilation,
    CompilationStatus,
    CompiledChapter,
    CompiledParagraph,
    CompileProgress,
    Episode,
    EpisodeSelection,
    ParagraphSource,
    ResultMeta,
    SessionMessage,
)

from .base import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Rows are spaced so manual reordering can slot paragraphs in between.
ORDER_STEP = 1000


def order_index_for(position: int) -> int:
    return (position + 1) * ORDER_STEP


def position_for(order_index: int) -> int:
    return max(order_index // ORDER_STEP - 1, 0)


def conninfo_from_url(database_url: str) -> str:
    # psycopg connection URLs do not use SQLAlchemy's driver suffix.
    return database_url.replace("+psycopg", "")


def _json(model: Any) -> str:
    if hasattr(model, "model_dump"):
        return json.dumps(model.model_dump(mode="json"), ensure_ascii=False)
    return json.dumps(model, ensure_ascii=False, default=str)


def _compilation_from_row(row: dict[str, Any]) -> Compilation:
    return Compilation.model_validate(
        {
            "id": str(row["id"]),
            "session_id": str(row["session_id"]),
            "version": row["version"],
            "intent": row["intent"],
            "status": row["status"],
            "options": row["options"] or {},
            "idempotency_key": row["idempotency_key"],
            "progress": row["progress"] or {},
            "result_meta": row["result_meta"],
            "error_message": row["error_message"],
            "error_detail": row["error_detail"],
            "created_at": row["created_at"],
            "completed_at": row["completed_at"],
        }
    )


_COMPILATION_COLUMNS = """
    id, session_id, version, intent, status, options, idempotency_key, progress,
    result_meta, error_message, error_detail, created_at, completed_at
"""


class PostgresCompilationStore:
    """Blocking psycopg calls pushed to worker threads.

    Every method opens a pooled connection, commits on success and wraps
    driver errors in :class:`StoreError`.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    @classmethod
    def from_url(cls, database_url: str, *, min_size: int = 1, max_size: int = 10) -> "PostgresCompilationStore":
        pool = ConnectionPool(conninfo_from_url(database_url), min_size=min_size, max_size=max_size, open=True)
        return cls(pool)

    def close(self) -> None:
        self._pool.close()

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except psycopg.Error as exc:
            logger.exception("Database operation failed", extra={"operation": operation})
            raise StoreError(f"{operation} failed: {exc}") from exc

    # Interview material -------------------------------------------------

    async def fetch_episodes(self, session_id: str) -> list[Episode]:
        return await self._run("fetch_episodes", self._fetch_episodes, session_id)

    def _fetch_episodes(self, session_id: str) -> list[Episode]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, order_index, title, theme, time_period, summary, content,
                       emotional_weight, has_turning_point, has_reflection, source_message_ids
                FROM episodes
                WHERE session_id = %s
                ORDER BY order_index ASC
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        return [
            Episode(
                id=str(row["id"]),
                order_index=row["order_index"],
                title=row["title"],
                theme=row["theme"],
                time_period=row["time_period"],
                summary=row["summary"],
                content=row["content"],
                emotional_weight=row["emotional_weight"],
                has_turning_point=row["has_turning_point"],
                has_reflection=row["has_reflection"],
                source_message_ids=tuple(str(value) for value in row["source_message_ids"] or ()),
            )
            for row in rows
        ]

    async def fetch_messages(self, session_id: str) -> list[SessionMessage]:
        return await self._run("fetch_messages", self._fetch_messages, session_id)

    def _fetch_messages(self, session_id: str) -> list[SessionMessage]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, role, content, order_index
                FROM messages
                WHERE session_id = %s AND deleted_at IS NULL
                ORDER BY order_index ASC
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        return [
            SessionMessage(
                id=str(row["id"]),
                role=row["role"],
                content=row["content"],
                order_index=row["order_index"],
            )
            for row in rows
        ]

    # Compilation aggregate ----------------------------------------------

    async def create_compilation(self, compilation: Compilation) -> Compilation:
        return await self._run("create_compilation", self._create_compilation, compilation)

    def _create_compilation(self, compilation: Compilation) -> Compilation:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                INSERT INTO compilations (id, session_id, version, intent, status, options,
                                          idempotency_key, progress, created_at)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s::jsonb, %s)
                RETURNING {_COMPILATION_COLUMNS}
                """,
                (
                    compilation.id,
                    compilation.session_id,
                    compilation.version,
                    compilation.intent.value,
                    compilation.status.value,
                    _json(compilation.options),
                    compilation.idempotency_key,
                    _json(compilation.progress),
                    compilation.created_at,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        return _compilation_from_row(row)

    async def get_compilation(self, compilation_id: str) -> Optional[Compilation]:
        return await self._run("get_compilation", self._get_compilation, compilation_id)

    def _get_compilation(self, compilation_id: str) -> Optional[Compilation]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"SELECT {_COMPILATION_COLUMNS} FROM compilations WHERE id = %s",
                (compilation_id,),
            )
            row = cur.fetchone()
        return _compilation_from_row(row) if row else None

    async def find_by_idempotency_key(
        self, session_id: str, idempotency_key: str
    ) -> Optional[Compilation]:
        return await self._run(
            "find_by_idempotency_key", self._find_by_idempotency_key, session_id, idempotency_key
        )

    def _find_by_idempotency_key(self, session_id: str, idempotency_key: str) -> Optional[Compilation]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                SELECT {_COMPILATION_COLUMNS}
                FROM compilations
                WHERE session_id = %s AND idempotency_key = %s
                ORDER BY version DESC
                LIMIT 1
                """,
                (session_id, idempotency_key),
            )
            row = cur.fetchone()
        return _compilation_from_row(row) if row else None

    async def latest_version(self, session_id: str) -> int:
        return await self._run("latest_version", self._latest_version, session_id)

    def _latest_version(self, session_id: str) -> int:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT COALESCE(MAX(version), 0) FROM compilations WHERE session_id = %s",
                (session_id,),
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    async def claim_compilation(self, compilation_id: str, progress: CompileProgress) -> bool:
        return await self._run(
            "claim_compilation",
            self._transition,
            compilation_id,
            CompilationStatus.PENDING,
            CompilationStatus.PROCESSING,
            progress,
            None,
        )

    async def complete_compilation(
        self, compilation_id: str, result_meta: ResultMeta, progress: CompileProgress
    ) -> bool:
        return await self._run(
            "complete_compilation",
            self._transition,
            compilation_id,
            CompilationStatus.PROCESSING,
            CompilationStatus.COMPLETED,
            progress,
            result_meta,
        )

    def _transition(
        self,
        compilation_id: str,
        expected: CompilationStatus,
        target: CompilationStatus,
        progress: CompileProgress,
        result_meta: Optional[ResultMeta],
    ) -> bool:
        completed_at = datetime.now(timezone.utc) if target == CompilationStatus.COMPLETED else None
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE compilations
                SET status = %s,
                    progress = %s::jsonb,
                    result_meta = COALESCE(%s::jsonb, result_meta),
                    completed_at = COALESCE(%s, completed_at)
                WHERE id = %s AND status = %s
                RETURNING id
                """,
                (
                    target.value,
                    _json(progress),
                    _json(result_meta) if result_meta is not None else None,
                    completed_at,
                    compilation_id,
                    expected.value,
                ),
            )
            won = cur.fetchone() is not None
            conn.commit()
        return won

    async def update_progress(self, compilation_id: str, progress: CompileProgress) -> None:
        await self._run("update_progress", self._update_progress, compilation_id, progress)

    def _update_progress(self, compilation_id: str, progress: CompileProgress) -> None:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE compilations SET progress = %s::jsonb WHERE id = %s",
                (_json(progress), compilation_id),
            )
            conn.commit()

    async def mark_failed(
        self,
        compilation_id: str,
        *,
        error_message: str,
        error_detail: dict[str, Any],
        progress: CompileProgress,
    ) -> None:
        await self._run(
            "mark_failed", self._mark_failed, compilation_id, error_message, error_detail, progress
        )

    def _mark_failed(
        self,
        compilation_id: str,
        error_message: str,
        error_detail: dict[str, Any],
        progress: CompileProgress,
    ) -> None:
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE compilations
                SET status = %s, error_message = %s, error_detail = %s::jsonb, progress = %s::jsonb
                WHERE id = %s
                """,
                (
                    CompilationStatus.FAILED.value,
                    error_message,
                    _json(error_detail),
                    _json(progress),
                    compilation_id,
                ),
            )
            conn.commit()

    # Checkpoints ---------------------------------------------------------

    async def save_episode_selections(
        self, compilation_id: str, selections: list[EpisodeSelection]
    ) -> None:
        await self._run(
            "save_episode_selections", self._save_episode_selections, compilation_id, selections
        )

    def _save_episode_selections(self, compilation_id: str, selections: list[EpisodeSelection]) -> None:
        if not selections:
            return
        with self._pool.connection() as conn, conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO compilation_episode_inclusions
                    (id, compilation_id, episode_id, inclusion_status, decision_reason, signals)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (compilation_id, episode_id) DO UPDATE
                SET inclusion_status = EXCLUDED.inclusion_status,
                    decision_reason = EXCLUDED.decision_reason,
                    signals = EXCLUDED.signals
                """,
                [
                    (
                        uuid4(),
                        compilation_id,
                        selection.episode_id,
                        selection.inclusion_status.value,
                        selection.decision_reason,
                        _json(selection.signals),
                    )
                    for selection in selections
                ],
            )
            conn.commit()

    async def save_chapters(self, compilation_id: str, chapters: list[CompiledChapter]) -> None:
        await self._run("save_chapters", self._save_chapters, compilation_id, chapters)

    def _save_chapters(self, compilation_id: str, chapters: list[CompiledChapter]) -> None:
        # One transaction so a half-written book is never visible.
        with self._pool.connection() as conn:
            with conn.transaction(), conn.cursor() as cur:
                for chapter in chapters:
                    chapter_id = uuid4()
                    cur.execute(
                        """
                        INSERT INTO compiled_chapters (id, compilation_id, order_index, title)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (chapter_id, compilation_id, order_index_for(chapter.chapter_index), chapter.title),
                    )
                    for paragraph in chapter.paragraphs:
                        paragraph_id = uuid4()
                        cur.execute(
                            """
                            INSERT INTO compiled_paragraphs (id, chapter_id, order_index, content, paragraph_type)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            (
                                paragraph_id,
                                chapter_id,
                                order_index_for(paragraph.paragraph_index),
                                paragraph.content,
                                paragraph.type.value,
                            ),
                        )
                        for source in paragraph.sources:
                            cur.execute(
                                """
                                INSERT INTO compiled_paragraph_sources (id, paragraph_id, episode_id, message_ids)
                                VALUES (%s, %s, %s, %s::uuid[])
                                """,
                                (uuid4(), paragraph_id, source.episode_id, source.message_ids),
                            )

    # Read models ---------------------------------------------------------

    async def fetch_chapters(
        self, compilation_id: str, *, include_hidden: bool = False
    ) -> list[CompiledChapter]:
        return await self._run("fetch_chapters", self._fetch_chapters, compilation_id, include_hidden)

    def _fetch_chapters(self, compilation_id: str, include_hidden: bool) -> list[CompiledChapter]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT c.id AS chapter_id, c.order_index AS chapter_order, c.title,
                       p.id AS paragraph_id, p.order_index AS paragraph_order,
                       p.content, p.paragraph_type, p.revision, p.is_hidden
                FROM compiled_chapters c
                LEFT JOIN compiled_paragraphs p ON p.chapter_id = c.id AND (%s OR NOT p.is_hidden)
                WHERE c.compilation_id = %s
                ORDER BY c.order_index ASC, p.order_index ASC
                """,
                (include_hidden, compilation_id),
            )
            rows = cur.fetchall()
            paragraph_ids = [row["paragraph_id"] for row in rows if row["paragraph_id"]]
            sources: dict[str, list[ParagraphSource]] = {}
            if paragraph_ids:
                cur.execute(
                    """
                    SELECT paragraph_id, episode_id, message_ids
                    FROM compiled_paragraph_sources
                    WHERE paragraph_id = ANY(%s)
                    """,
                    (paragraph_ids,),
                )
                for row in cur.fetchall():
                    sources.setdefault(str(row["paragraph_id"]), []).append(
                        ParagraphSource(
                            episode_id=str(row["episode_id"]),
                            message_ids=[str(value) for value in row["message_ids"] or ()],
                        )
                    )

        chapters: dict[str, CompiledChapter] = {}
        for row in rows:
            chapter_key = str(row["chapter_id"])
            chapter = chapters.get(chapter_key)
            if chapter is None:
                chapter = CompiledChapter(
                    id=chapter_key,
                    chapter_index=position_for(row["chapter_order"]),
                    title=row["title"],
                )
                chapters[chapter_key] = chapter
            if row["paragraph_id"] is None:
                continue
            paragraph_key = str(row["paragraph_id"])
            chapter.paragraphs.append(
                CompiledParagraph(
                    id=paragraph_key,
                    paragraph_index=position_for(row["paragraph_order"]),
                    type=row["paragraph_type"],
                    content=row["content"],
                    revision=row["revision"],
                    is_hidden=row["is_hidden"],
                    sources=sources.get(paragraph_key, []),
                )
            )
        return list(chapters.values())

    async def fetch_episode_inclusions(self, compilation_id: str) -> list[EpisodeSelection]:
        return await self._run("fetch_episode_inclusions", self._fetch_episode_inclusions, compilation_id)

    def _fetch_episode_inclusions(self, compilation_id: str) -> list[EpisodeSelection]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT i.episode_id, i.inclusion_status, i.decision_reason, i.signals
                FROM compilation_episode_inclusions i
                LEFT JOIN episodes e ON e.id = i.episode_id
                WHERE i.compilation_id = %s
                ORDER BY e.order_index ASC NULLS LAST
                """,
                (compilation_id,),
            )
            rows = cur.fetchall()
        return [
            EpisodeSelection.model_validate(
                {
                    "episode_id": str(row["episode_id"]),
                    "inclusion_status": row["inclusion_status"],
                    "decision_reason": row["decision_reason"] or "",
                    "signals": row["signals"],
                }
            )
            for row in rows
        ]

    # Editing -------------------------------------------------------------

    async def update_paragraph(
        self,
        compilation_id: str,
        paragraph_id: str,
        *,
        content: Optional[str] = None,
        is_hidden: Optional[bool] = None,
    ) -> Optional[CompiledParagraph]:
        return await self._run(
            "update_paragraph", self._update_paragraph, compilation_id, paragraph_id, content, is_hidden
        )

    def _update_paragraph(
        self,
        compilation_id: str,
        paragraph_id: str,
        content: Optional[str],
        is_hidden: Optional[bool],
    ) -> Optional[CompiledParagraph]:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            # SET expressions see the pre-update row, so revision only moves on a real change.
            cur.execute(
                """
                UPDATE compiled_paragraphs p
                SET content = COALESCE(%(content)s, p.content),
                    revision = p.revision + CASE
                        WHEN %(content)s::text IS NOT NULL AND %(content)s::text <> p.content THEN 1
                        ELSE 0
                    END,
                    is_hidden = COALESCE(%(is_hidden)s, p.is_hidden),
                    updated_at = NOW()
                FROM compiled_chapters c
                WHERE p.id = %(paragraph_id)s
                  AND p.chapter_id = c.id
                  AND c.compilation_id = %(compilation_id)s
                RETURNING p.id, p.order_index, p.paragraph_type, p.content, p.revision, p.is_hidden
                """,
                {
                    "content": content,
                    "is_hidden": is_hidden,
                    "paragraph_id": paragraph_id,
                    "compilation_id": compilation_id,
                },
            )
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute(
                "SELECT episode_id, message_ids FROM compiled_paragraph_sources WHERE paragraph_id = %s",
                (row["id"],),
            )
            sources = [
                ParagraphSource(
                    episode_id=str(source["episode_id"]),
                    message_ids=[str(value) for value in source["message_ids"] or ()],
                )
                for source in cur.fetchall()
            ]
            conn.commit()
        return CompiledParagraph(
            id=str(row["id"]),
            paragraph_index=position_for(row["order_index"]),
            type=row["paragraph_type"],
            content=row["content"],
            revision=row["revision"],
            is_hidden=row["is_hidden"],
            sources=sources,
        )
