# repos.py

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from Tagstash import models
from Tagstash.schemas import ErrorLogEntry


async def _flush_retry(s: AsyncSession, attempts: int = 5, delay: float = 0.2) -> None:
    """Retry session.flush() on transient SQLite 'database is locked' errors.

    Exponential backoff: delay * 2^i between attempts.
    """
    for i in range(attempts):
        try:
            await s.flush()
            return
        except OperationalError as e:  # pragma: no cover - timing dependent
            msg = str(e).lower()
            if "database is locked" in msg or "database is busy" in msg:
                if i == attempts - 1:
                    raise
                await asyncio.sleep(delay * (2**i))
                continue
            raise


# -----------------------------
# Users
# -----------------------------


async def get_user(s: AsyncSession, user_id: str) -> models.User | None:
    return await s.get(models.User, user_id)


async def get_or_create_user(
    s: AsyncSession, user_id: str, display_name: str | None = None
) -> models.User:
    obj = await get_user(s, user_id)
    if obj:
        return obj
    obj = models.User(id=user_id, display_name=display_name)
    s.add(obj)
    await _flush_retry(s)
    return obj


# -----------------------------
# Records
# -----------------------------


async def record_exists(s: AsyncSession, user_id: str, tag_key: str) -> bool:
    q = await s.execute(
        select(models.Record.id).where(
            models.Record.user_id == user_id,
            models.Record.tag_key == tag_key,
        )
    )
    return q.first() is not None


async def insert_record(
    s: AsyncSession,
    *,
    user_id: str,
    content: str,
    tags: list[str],
    normalized_tags: list[str],
    tag_key: str,
    normalization_version: int,
    created_at: datetime,
    updated_at: datetime,
) -> models.Record:
    obj = models.Record(
        user_id=user_id,
        content=content,
        tags=tags,
        normalized_tags=normalized_tags,
        tag_key=tag_key,
        normalization_version=normalization_version,
        created_at=created_at,
        updated_at=updated_at,
    )
    s.add(obj)
    await _flush_retry(s)
    return obj


async def list_records(s: AsyncSession, user_id: str) -> list[models.Record]:
    q = await s.execute(
        select(models.Record)
        .where(models.Record.user_id == user_id)
        .order_by(models.Record.created_at.asc(), models.Record.id.asc())
    )
    return list(q.scalars().all())


async def count_records(s: AsyncSession, user_id: str) -> int:
    q = await s.execute(
        select(func.count()).select_from(models.Record).where(models.Record.user_id == user_id)
    )
    return int(q.scalar_one())


# -----------------------------
# Import sessions
# -----------------------------


async def create_import_session(s: AsyncSession, **fields: Any) -> models.ImportSession:
    obj = models.ImportSession(**fields)
    s.add(obj)
    await _flush_retry(s)
    return obj


async def get_import_session(s: AsyncSession, session_id: str) -> models.ImportSession | None:
    q = await s.execute(
        select(models.ImportSession).where(models.ImportSession.session_id == session_id)
    )
    return q.scalar_one_or_none()


async def list_import_sessions(
    s: AsyncSession,
    user_id: str,
    *,
    statuses: Sequence[models.ImportSessionStatus] | None = None,
    not_expired_at: datetime | None = None,
    limit: int = 10,
) -> list[models.ImportSession]:
    stmt = select(models.ImportSession).where(models.ImportSession.user_id == user_id)
    if statuses:
        stmt = stmt.where(models.ImportSession.status.in_(list(statuses)))
    if not_expired_at is not None:
        stmt = stmt.where(models.ImportSession.expires_at > not_expired_at)
    stmt = stmt.order_by(
        models.ImportSession.created_at.desc(), models.ImportSession.id.desc()
    ).limit(limit)
    q = await s.execute(stmt)
    return list(q.scalars().all())


async def delete_expired_sessions(
    s: AsyncSession,
    now: datetime,
    *,
    keep_statuses: Sequence[models.ImportSessionStatus] = (),
) -> int:
    stmt = select(models.ImportSession.id).where(models.ImportSession.expires_at <= now)
    if keep_statuses:
        stmt = stmt.where(models.ImportSession.status.not_in(list(keep_statuses)))
    ids = list((await s.execute(stmt)).scalars().all())
    if not ids:
        return 0
    # Rows are removed explicitly so SQLite without foreign key enforcement stays clean
    await s.execute(delete(models.ImportErrorLog).where(models.ImportErrorLog.session_pk.in_(ids)))
    await s.execute(delete(models.ImportSession).where(models.ImportSession.id.in_(ids)))
    return len(ids)


# -----------------------------
# Import error log (append-only)
# -----------------------------


async def _next_error_sequence(s: AsyncSession, session_pk: int) -> int:
    q = await s.execute(
        select(func.max(models.ImportErrorLog.sequence_no)).where(
            models.ImportErrorLog.session_pk == session_pk
        )
    )
    current = q.scalar_one_or_none()
    return (current + 1) if current is not None else 1


async def append_error_entries(
    s: AsyncSession, session_pk: int, entries: Sequence[ErrorLogEntry]
) -> list[models.ImportErrorLog]:
    if not entries:
        return []
    seq = await _next_error_sequence(s, session_pk)
    rows: list[models.ImportErrorLog] = []
    for offset, entry in enumerate(entries):
        row = models.ImportErrorLog(
            session_pk=session_pk,
            sequence_no=seq + offset,
            record_index=entry.record_index,
            record_content=entry.record_content,
            error_code=entry.error_code,
            error_message=entry.error_message,
            severity=entry.severity.value,
            chunk_number=entry.chunk_number,
            suggestion=entry.suggestion.to_wire() if entry.suggestion else None,
            timestamp=datetime.fromisoformat(entry.timestamp.replace("Z", "+00:00")),
        )
        s.add(row)
        rows.append(row)
    await _flush_retry(s)
    return rows


async def list_error_entries(s: AsyncSession, session_pk: int) -> list[models.ImportErrorLog]:
    q = await s.execute(
        select(models.ImportErrorLog)
        .where(models.ImportErrorLog.session_pk == session_pk)
        .order_by(models.ImportErrorLog.sequence_no.asc())
    )
    return list(q.scalars().all())


async def healthcheck(s: AsyncSession) -> None:
    await s.execute(select(1))
