"""Durable progress tracking for import sessions.

Each operation runs in its own short transaction and returns a detached
``SessionSnapshot``. Count invariants are checked in Python before every
write (the database CHECK constraints back them up):

- ``processed_records <= total_records``
- ``imported_records + skipped_records + failed_records <= processed_records``
- ``last_processed_index``, when set, is the end index of the last committed
  chunk, so ``processed_records == last_processed_index + 1``
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from Tagstash import repos
from Tagstash.chunk_processor import ChunkOutcome, TransactionFactory
from Tagstash.db import session_scope
from Tagstash.errors import ImporterError
from Tagstash.metrics import record_session_transition
from Tagstash.models import RESUMABLE_STATUSES, ImportSession, ImportSessionStatus
from Tagstash.schemas import (
    ErrorLogEntry,
    ErrorSeverity,
    ErrorSummary,
    RepairSuggestion,
    ResumeInfo,
    format_timestamp,
)
from Tagstash.tags import NormalizationRules
from Tagstash.tools.ulid import new_session_id

log = structlog.get_logger()


class SessionStateError(ImporterError):
    code = "INVALID_SESSION_STATE"


class SessionNotFoundError(SessionStateError):
    code = "SESSION_NOT_FOUND"


class SessionInvariantError(SessionStateError):
    code = "SESSION_INVARIANT_VIOLATION"


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    user_id: str
    status: ImportSessionStatus
    total_records: int
    processed_records: int
    imported_records: int
    skipped_records: int
    failed_records: int
    last_processed_index: int | None
    chunk_size: int
    rules: NormalizationRules
    payload_version: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @classmethod
    def from_row(cls, row: ImportSession) -> SessionSnapshot:
        return cls(
            session_id=row.session_id,
            user_id=row.user_id,
            status=ImportSessionStatus(row.status),
            total_records=row.total_records,
            processed_records=row.processed_records,
            imported_records=row.imported_records,
            skipped_records=row.skipped_records,
            failed_records=row.failed_records,
            last_processed_index=row.last_processed_index,
            chunk_size=row.chunk_size,
            rules=NormalizationRules(
                case_sensitive=row.case_sensitive, remove_accents=row.remove_accents
            ),
            payload_version=row.payload_version,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            expires_at=_aware(row.expires_at),
        )

    @property
    def resume_point(self) -> int:
        return resume_point(self)

    @property
    def remaining_records(self) -> int:
        return self.total_records - self.resume_point


def resume_point(session: SessionSnapshot | ImportSession) -> int:
    """First record index that has not been committed yet."""
    last = session.last_processed_index
    return 0 if last is None else last + 1


def check_invariants(
    *,
    total: int,
    processed: int,
    imported: int,
    skipped: int,
    failed: int,
    last_index: int | None,
) -> None:
    if total < 0:
        raise SessionInvariantError(f"total_records must be >= 0 (got {total})")
    if processed < 0 or processed > total:
        raise SessionInvariantError(
            f"processed_records {processed} outside [0, {total}]"
        )
    if imported + skipped + failed > processed:
        raise SessionInvariantError(
            f"imported+skipped+failed ({imported}+{skipped}+{failed}) exceeds processed ({processed})"
        )
    expected = 0 if last_index is None else last_index + 1
    if processed != expected:
        raise SessionInvariantError(
            f"processed_records {processed} does not match last_processed_index {last_index}"
        )


def _row_to_entry(row) -> ErrorLogEntry:
    return ErrorLogEntry(
        record_index=row.record_index,
        record_content=row.record_content,
        error_code=row.error_code,
        error_message=row.error_message,
        timestamp=format_timestamp(_aware(row.timestamp)),
        chunk_number=row.chunk_number,
        severity=ErrorSeverity(row.severity),
        suggestion=RepairSuggestion.model_validate(row.suggestion) if row.suggestion else None,
    )


class SessionTracker:
    def __init__(
        self,
        *,
        transaction_factory: TransactionFactory = session_scope,
        expiry_hours: int = 24,
        records_per_second: int = 100,
    ) -> None:
        self._tx = transaction_factory
        self._expiry = timedelta(hours=expiry_hours)
        self._records_per_second = records_per_second

    async def _load(self, s, session_id: str, user_id: str | None = None) -> ImportSession:
        row = await repos.get_import_session(s, session_id)
        if row is None or (user_id is not None and row.user_id != user_id):
            raise SessionNotFoundError(f"Import session {session_id} not found")
        return row

    def _transition(self, row: ImportSession, status: ImportSessionStatus) -> None:
        previous = row.status
        row.status = status
        row.updated_at = _utcnow()
        record_session_transition(status.value.replace("-", "_"))
        log.info(
            "import.session.transition",
            session_id=row.session_id,
            from_status=ImportSessionStatus(previous).value,
            to_status=status.value,
        )

    # -----------------------------
    # Mutations
    # -----------------------------

    async def create(
        self,
        user_id: str,
        total_records: int,
        chunk_size: int,
        rules: NormalizationRules,
        payload_version: str,
    ) -> SessionSnapshot:
        check_invariants(
            total=total_records, processed=0, imported=0, skipped=0, failed=0, last_index=None
        )
        now = _utcnow()
        async with self._tx() as s:
            row = await repos.create_import_session(
                s,
                session_id=new_session_id(),
                user_id=user_id,
                status=ImportSessionStatus.initializing,
                total_records=total_records,
                processed_records=0,
                imported_records=0,
                skipped_records=0,
                failed_records=0,
                last_processed_index=None,
                chunk_size=chunk_size,
                payload_version=payload_version,
                case_sensitive=rules.case_sensitive,
                remove_accents=rules.remove_accents,
                created_at=now,
                updated_at=now,
                expires_at=now + self._expiry,
            )
            snap = SessionSnapshot.from_row(row)
        log.info(
            "import.session.created",
            session_id=snap.session_id,
            user_id=user_id,
            total_records=total_records,
            chunk_size=chunk_size,
        )
        return snap

    async def start(self, session_id: str, *, resumed: bool = False) -> SessionSnapshot:
        allowed = RESUMABLE_STATUSES if resumed else (ImportSessionStatus.initializing,)
        async with self._tx() as s:
            row = await self._load(s, session_id)
            if ImportSessionStatus(row.status) not in allowed:
                raise SessionStateError(
                    f"Cannot {'resume' if resumed else 'start'} session {session_id} "
                    f"in status {ImportSessionStatus(row.status).value}"
                )
            self._transition(row, ImportSessionStatus.in_progress)
            record_session_transition("resumed" if resumed else "started")
            return SessionSnapshot.from_row(row)

    async def advance(self, session_id: str, outcome: ChunkOutcome) -> SessionSnapshot:
        """Fold a committed chunk into the session; re-submitted chunks are ignored."""
        async with self._tx() as s:
            row = await self._load(s, session_id)
            last = row.last_processed_index
            if last is not None and outcome.start_index <= last:
                log.info(
                    "import.session.advance_ignored",
                    session_id=session_id,
                    chunk_number=outcome.chunk_number,
                    start_index=outcome.start_index,
                    last_processed_index=last,
                )
                return SessionSnapshot.from_row(row)
            if outcome.start_index != resume_point(row):
                raise SessionInvariantError(
                    f"Chunk {outcome.chunk_number} starts at {outcome.start_index}, "
                    f"expected {resume_point(row)}"
                )
            processed = row.processed_records + outcome.processed
            imported = row.imported_records + outcome.imported
            skipped = row.skipped_records + outcome.skipped
            failed = row.failed_records + outcome.failed
            check_invariants(
                total=row.total_records,
                processed=processed,
                imported=imported,
                skipped=skipped,
                failed=failed,
                last_index=outcome.end_index,
            )
            row.processed_records = processed
            row.imported_records = imported
            row.skipped_records = skipped
            row.failed_records = failed
            row.last_processed_index = outcome.end_index
            row.updated_at = _utcnow()
            status = ImportSessionStatus(row.status)
            # A cancel that landed mid-chunk still wins; the committed counts are kept
            if status != ImportSessionStatus.cancelled and status != ImportSessionStatus.in_progress:
                self._transition(row, ImportSessionStatus.in_progress)
            await repos.append_error_entries(s, row.id, outcome.errors)
            return SessionSnapshot.from_row(row)

    async def fail(self, session_id: str, entry: ErrorLogEntry | None = None) -> SessionSnapshot:
        async with self._tx() as s:
            row = await self._load(s, session_id)
            status = ImportSessionStatus(row.status)
            if status == ImportSessionStatus.completed:
                raise SessionStateError(f"Cannot fail completed session {session_id}")
            # A concurrent cancel keeps its status; the failure is still logged
            if status != ImportSessionStatus.cancelled:
                self._transition(row, ImportSessionStatus.failed)
            if entry is not None:
                await repos.append_error_entries(s, row.id, [entry])
            return SessionSnapshot.from_row(row)

    async def pause(self, session_id: str) -> SessionSnapshot:
        async with self._tx() as s:
            row = await self._load(s, session_id)
            if ImportSessionStatus(row.status) != ImportSessionStatus.in_progress:
                raise SessionStateError(
                    f"Cannot pause session {session_id} in status {ImportSessionStatus(row.status).value}"
                )
            self._transition(row, ImportSessionStatus.paused)
            return SessionSnapshot.from_row(row)

    async def complete(self, session_id: str) -> SessionSnapshot:
        async with self._tx() as s:
            row = await self._load(s, session_id)
            if row.processed_records != row.total_records:
                raise SessionStateError(
                    f"Cannot complete session {session_id}: "
                    f"{row.processed_records}/{row.total_records} records processed"
                )
            if ImportSessionStatus(row.status) != ImportSessionStatus.in_progress:
                raise SessionStateError(
                    f"Cannot complete session {session_id} in status "
                    f"{ImportSessionStatus(row.status).value}"
                )
            self._transition(row, ImportSessionStatus.completed)
            return SessionSnapshot.from_row(row)

    async def cancel(self, session_id: str, *, user_id: str | None = None) -> SessionSnapshot:
        async with self._tx() as s:
            row = await self._load(s, session_id, user_id)
            if ImportSessionStatus(row.status) in (
                ImportSessionStatus.completed,
                ImportSessionStatus.cancelled,
            ):
                raise SessionStateError(
                    f"Cannot cancel session {session_id} in status "
                    f"{ImportSessionStatus(row.status).value}"
                )
            self._transition(row, ImportSessionStatus.cancelled)
            return SessionSnapshot.from_row(row)

    async def append_errors(self, session_id: str, entries: Sequence[ErrorLogEntry]) -> None:
        if not entries:
            return
        async with self._tx() as s:
            row = await self._load(s, session_id)
            await repos.append_error_entries(s, row.id, entries)

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete expired sessions that are not currently running."""
        now = now or _utcnow()
        async with self._tx() as s:
            deleted = await repos.delete_expired_sessions(
                s, now, keep_statuses=(ImportSessionStatus.in_progress,)
            )
        log.info("import.session.cleanup", deleted=deleted)
        return deleted

    # -----------------------------
    # Queries
    # -----------------------------

    async def get(self, session_id: str, *, user_id: str | None = None) -> SessionSnapshot:
        async with self._tx() as s:
            return SessionSnapshot.from_row(await self._load(s, session_id, user_id))

    async def status(self, session_id: str) -> ImportSessionStatus:
        return (await self.get(session_id)).status

    async def error_log(self, session_id: str) -> list[ErrorLogEntry]:
        async with self._tx() as s:
            row = await self._load(s, session_id)
            return [_row_to_entry(r) for r in await repos.list_error_entries(s, row.id)]

    async def error_summary(self, session_id: str) -> ErrorSummary:
        snap = await self.get(session_id)
        return summarize(snap, await self.error_log(session_id))

    def can_resume(self, session: SessionSnapshot, now: datetime | None = None) -> bool:
        now = now or _utcnow()
        return (
            session.status in RESUMABLE_STATUSES
            and session.expires_at > now
            and session.resume_point < session.total_records
        )

    def resume_info(self, session: SessionSnapshot) -> ResumeInfo:
        remaining = session.remaining_records
        return ResumeInfo(
            session_id=session.session_id,
            last_processed_index=-1
            if session.last_processed_index is None
            else session.last_processed_index,
            remaining_records=remaining,
            estimated_time=math.ceil(remaining / self._records_per_second),
        )

    async def list_resumable(self, user_id: str, limit: int = 10) -> list[ResumeInfo]:
        now = _utcnow()
        async with self._tx() as s:
            rows = await repos.list_import_sessions(
                s, user_id, statuses=RESUMABLE_STATUSES, not_expired_at=now, limit=limit
            )
            snaps = [SessionSnapshot.from_row(r) for r in rows]
        return [self.resume_info(snap) for snap in snaps if self.can_resume(snap, now)]


def summarize(session: SessionSnapshot, entries: Sequence[ErrorLogEntry]) -> ErrorSummary:
    by_type = Counter(e.error_code for e in entries)
    by_severity = Counter(e.severity.value for e in entries)
    affected = sorted({e.record_index for e in entries if e.record_index >= 0})
    return ErrorSummary(
        total_errors=len(entries),
        errors_by_type=dict(by_type),
        errors_by_severity=dict(by_severity),
        affected_records=affected,
        successful_records=session.imported_records,
        failed_records=session.failed_records,
    )
