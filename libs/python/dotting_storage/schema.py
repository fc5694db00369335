"""DDL for the compilation tables.

``sessions``, ``messages`` and ``episodes`` are owned by the interview
service; they are created here only when missing so a fresh database can
run the pipeline end to end.
"""

from __future__ import annotations

INTERVIEW_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        subject_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id UUID PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('ai', 'user')),
        content TEXT NOT NULL,
        order_index INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS episodes (
        id UUID PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        order_index INTEGER NOT NULL,
        title TEXT,
        theme TEXT NOT NULL,
        time_period TEXT,
        source_message_ids UUID[] NOT NULL DEFAULT '{}',
        summary TEXT NOT NULL,
        content TEXT,
        inclusion_status TEXT NOT NULL DEFAULT 'candidate',
        emotional_weight REAL NOT NULL DEFAULT 5,
        has_turning_point BOOLEAN NOT NULL DEFAULT FALSE,
        has_reflection BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)

COMPILATION_TABLES = (
    """
    CREATE TABLE compilations (
        id UUID PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        version INTEGER NOT NULL,
        intent TEXT NOT NULL CHECK (intent IN ('preview', 'final')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
        options JSONB NOT NULL DEFAULT '{}'::jsonb,
        idempotency_key TEXT,
        progress JSONB NOT NULL DEFAULT '{}'::jsonb,
        result_meta JSONB,
        error_message TEXT,
        error_detail JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        UNIQUE (session_id, version)
    )
    """,
    "CREATE INDEX compilations_idempotency_idx ON compilations (session_id, idempotency_key)",
    """
    CREATE TABLE compilation_episode_inclusions (
        id UUID PRIMARY KEY,
        compilation_id UUID NOT NULL REFERENCES compilations(id) ON DELETE CASCADE,
        episode_id UUID NOT NULL,
        inclusion_status TEXT NOT NULL,
        decision_reason TEXT,
        signals JSONB NOT NULL DEFAULT '{}'::jsonb,
        UNIQUE (compilation_id, episode_id)
    )
    """,
    """
    CREATE TABLE compiled_chapters (
        id UUID PRIMARY KEY,
        compilation_id UUID NOT NULL REFERENCES compilations(id) ON DELETE CASCADE,
        order_index INTEGER NOT NULL,
        title TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE compiled_paragraphs (
        id UUID PRIMARY KEY,
        chapter_id UUID NOT NULL REFERENCES compiled_chapters(id) ON DELETE CASCADE,
        order_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        paragraph_type TEXT NOT NULL,
        revision INTEGER NOT NULL DEFAULT 1,
        is_hidden BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE compiled_paragraph_sources (
        id UUID PRIMARY KEY,
        paragraph_id UUID NOT NULL REFERENCES compiled_paragraphs(id) ON DELETE CASCADE,
        episode_id UUID NOT NULL,
        message_ids UUID[] NOT NULL DEFAULT '{}'
    )
    """,
)

DROP_COMPILATION_TABLES = (
    "DROP TABLE IF EXISTS compiled_paragraph_sources",
    "DROP TABLE IF EXISTS compiled_paragraphs",
    "DROP TABLE IF EXISTS compiled_chapters",
    "DROP TABLE IF EXISTS compilation_episode_inclusions",
    "DROP TABLE IF EXISTS compilations",
)


def upgrade_statements() -> list[str]:
    return [*INTERVIEW_TABLES, *COMPILATION_TABLES]


def downgrade_statements() -> list[str]:
    return list(DROP_COMPILATION_TABLES)
