# models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from Tagstash.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    # Tag normalization rules applied to everything this user owns
    case_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    remove_accents: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Record(Base):
    __tablename__ = "records"
    __table_args__ = (
        UniqueConstraint("user_id", "tag_key", name="ux_records_user_tag_key"),
        Index("ix_records_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    content: Mapped[str] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON)
    normalized_tags: Mapped[list] = mapped_column(JSON)
    # sha256 hex of the normalized tag set; the duplicate key within a user
    tag_key: Mapped[str] = mapped_column(String(64))
    normalization_version: Mapped[int] = mapped_column(Integer, default=2)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ImportSessionStatus(str, enum.Enum):
    initializing = "initializing"
    in_progress = "in-progress"
    paused = "paused"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


RESUMABLE_STATUSES = (ImportSessionStatus.paused, ImportSessionStatus.failed)


class ImportSession(Base):
    __tablename__ = "import_sessions"
    __table_args__ = (
        CheckConstraint("total_records >= 0", name="ck_import_sessions_total"),
        CheckConstraint(
            "processed_records >= 0 AND processed_records <= total_records",
            name="ck_import_sessions_processed",
        ),
        CheckConstraint(
            "imported_records + skipped_records + failed_records <= processed_records",
            name="ck_import_sessions_counts",
        ),
        CheckConstraint(
            "last_processed_index IS NULL OR last_processed_index >= 0",
            name="ck_import_sessions_last_index",
        ),
        Index("ix_import_sessions_user_created", "user_id", "created_at"),
        Index(
            "ix_import_sessions_resumable",
            "user_id",
            "status",
            sqlite_where=text("status IN ('paused', 'failed')"),
            postgresql_where=text("status IN ('paused', 'failed')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status: Mapped[ImportSessionStatus] = mapped_column(
        SAEnum(
            ImportSessionStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
            name="import_session_status",
        ),
        default=ImportSessionStatus.initializing,
    )
    total_records: Mapped[int] = mapped_column(Integer)
    processed_records: Mapped[int] = mapped_column(Integer, default=0)
    imported_records: Mapped[int] = mapped_column(Integer, default=0)
    skipped_records: Mapped[int] = mapped_column(Integer, default=0)
    failed_records: Mapped[int] = mapped_column(Integer, default=0)
    last_processed_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chunk_size: Mapped[int] = mapped_column(Integer)
    payload_version: Mapped[str] = mapped_column(String(8))
    # Normalization rules captured at session creation and reused on resume
    case_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    remove_accents: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ImportErrorLog(Base):
    """Append-only error log for an import session."""

    __tablename__ = "import_error_log"
    __table_args__ = (
        UniqueConstraint("session_pk", "sequence_no", name="ux_import_error_log_session_sequence"),
        Index("ix_import_error_log_session_code", "session_pk", "error_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_pk: Mapped[int] = mapped_column(
        ForeignKey("import_sessions.id", ondelete="CASCADE"), index=True
    )
    sequence_no: Mapped[int] = mapped_column(Integer)
    record_index: Mapped[int] = mapped_column(Integer)
    record_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str] = mapped_column(String(48))
    error_message: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(16))
    chunk_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suggestion: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
