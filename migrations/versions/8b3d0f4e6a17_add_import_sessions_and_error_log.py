"""add import_sessions and import_error_log tables

Revision ID: 8b3d0f4e6a17
Revises: 5e1a7c2b9d40
Create Date: 2026-09-28
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "8b3d0f4e6a17"
down_revision: Union[str, None] = "5e1a7c2b9d40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_RESUMABLE = sa.text("status IN ('paused', 'failed')")


def upgrade() -> None:
    op.create_table(
        "import_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(length=40), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="initializing"),
        sa.Column("total_records", sa.Integer(), nullable=False),
        sa.Column("processed_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("imported_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processed_index", sa.Integer(), nullable=True),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("payload_version", sa.String(length=8), nullable=False),
        sa.Column("case_sensitive", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("remove_accents", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("total_records >= 0", name="ck_import_sessions_total"),
        sa.CheckConstraint(
            "processed_records >= 0 AND processed_records <= total_records",
            name="ck_import_sessions_processed",
        ),
        sa.CheckConstraint(
            "imported_records + skipped_records + failed_records <= processed_records",
            name="ck_import_sessions_counts",
        ),
        sa.CheckConstraint(
            "last_processed_index IS NULL OR last_processed_index >= 0",
            name="ck_import_sessions_last_index",
        ),
        sa.CheckConstraint(
            "status IN ('initializing', 'in-progress', 'paused', 'completed', 'failed', 'cancelled')",
            name="import_session_status",
        ),
    )
    op.create_index("ix_import_sessions_session_id", "import_sessions", ["session_id"], unique=True)
    op.create_index("ix_import_sessions_user_id", "import_sessions", ["user_id"])
    op.create_index("ix_import_sessions_user_created", "import_sessions", ["user_id", "created_at"])
    op.create_index(
        "ix_import_sessions_resumable",
        "import_sessions",
        ["user_id", "status"],
        sqlite_where=_RESUMABLE,
        postgresql_where=_RESUMABLE,
    )

    op.create_table(
        "import_error_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_pk", sa.Integer(), nullable=False),
        sa.Column("sequence_no", sa.Integer(), nullable=False),
        sa.Column("record_index", sa.Integer(), nullable=False),
        sa.Column("record_content", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=48), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("chunk_number", sa.Integer(), nullable=True),
        sa.Column("suggestion", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["session_pk"], ["import_sessions.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("session_pk", "sequence_no", name="ux_import_error_log_session_sequence"),
    )
    op.create_index("ix_import_error_log_session_pk", "import_error_log", ["session_pk"])
    op.create_index("ix_import_error_log_session_code", "import_error_log", ["session_pk", "error_code"])


def downgrade() -> None:
    op.drop_index("ix_import_error_log_session_code", table_name="import_error_log")
    op.drop_index("ix_import_error_log_session_pk", table_name="import_error_log")
    op.drop_table("import_error_log")
    op.drop_index("ix_import_sessions_resumable", table_name="import_sessions")
    op.drop_index("ix_import_sessions_user_created", table_name="import_sessions")
    op.drop_index("ix_import_sessions_user_id", table_name="import_sessions")
    op.drop_index("ix_import_sessions_session_id", table_name="import_sessions")
    op.drop_table("import_sessions")
