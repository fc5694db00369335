"""Create compilation tables.

Revision ID: 0001_compilation_tables
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op

from dotting_storage.schema import downgrade_statements, upgrade_statements

revision = "0001_compilation_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    for statement in upgrade_statements():
        op.execute(statement)


def downgrade() -> None:
    for statement in downgrade_statements():
        op.execute(statement)
