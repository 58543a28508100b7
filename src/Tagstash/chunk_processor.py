"""Transactional processing of one chunk of canonical records.

A chunk is all-or-nothing at the storage level: every record is handled
inside a single transaction opened from the injected transaction factory.
Record-level problems (empty content, bad timestamps, control characters)
become error entries and processing continues; any database error rolls the
whole chunk back and surfaces as ``ChunkFatalError``.
"""

from __future__ import annotations

import time
import unicodedata
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from Tagstash import repos
from Tagstash.db import session_scope
from Tagstash.error_classifier import (
    classify_exception,
    content_too_long_entry,
    empty_content_entry,
    invalid_characters_entry,
    invalid_date_entry,
    is_duplicate_key_violation,
    is_transient,
    record_error_entry,
    sanitize_error_message,
)
from Tagstash.errors import ImporterError
from Tagstash.format_migration import CanonicalRecord
from Tagstash.metrics import inc_counter, record_chunk_committed, record_chunk_rollback
from Tagstash.schemas import MAX_CONTENT_LENGTH, ChunkRollbackInfo, ErrorLogEntry, parse_timestamp
from Tagstash.tags import (
    TAG_NORMALIZATION_VERSION,
    NormalizationRules,
    duplicate_key,
    extract_tags,
    normalize_tags,
)

log = structlog.get_logger()

TransactionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_ALLOWED_CONTROL = frozenset("\t\n\r")


class RecordError(ImporterError):
    """A single record could not be imported; carries its log entry."""

    def __init__(self, entry: ErrorLogEntry) -> None:
        super().__init__(entry.error_message, code=entry.error_code)
        self.entry = entry


class ChunkFatalError(ImporterError):
    """The chunk's transaction was rolled back; nothing in it was persisted."""

    code = "CHUNK_FAILED"

    def __init__(self, rollback: ChunkRollbackInfo, *, cause: BaseException) -> None:
        super().__init__(rollback.reason)
        self.rollback = rollback
        self.cause = cause
        self.error_code = classify_exception(cause)
        self.transient = is_transient(cause)


@dataclass
class ChunkOutcome:
    chunk_number: int
    start_index: int
    end_index: int
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[ErrorLogEntry] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def processed(self) -> int:
        return self.end_index - self.start_index + 1


@dataclass(frozen=True)
class _PreparedRecord:
    content: str
    tags: list[str]
    normalized_tags: list[str]
    tag_key: str
    created_at: datetime
    updated_at: datetime


def _has_invalid_characters(content: str) -> bool:
    return any(
        unicodedata.category(ch) == "Cc" and ch not in _ALLOWED_CONTROL for ch in content
    )


class ChunkProcessor:
    def __init__(
        self,
        *,
        transaction_factory: TransactionFactory = session_scope,
        max_content_length: int = MAX_CONTENT_LENGTH,
        duplicate_race_retries: int = 1,
    ) -> None:
        self._transaction_factory = transaction_factory
        self._max_content_length = max_content_length
        self._duplicate_race_retries = duplicate_race_retries

    def prepare(
        self,
        record: CanonicalRecord,
        *,
        record_index: int,
        rules: NormalizationRules,
        chunk_number: int | None = None,
    ) -> _PreparedRecord:
        """Run record-level checks and derive tags; raises RecordError."""
        content = record.content
        try:
            if not content.strip():
                raise RecordError(empty_content_entry(record_index, chunk_number=chunk_number))
            if len(content) > self._max_content_length:
                raise RecordError(
                    content_too_long_entry(
                        content, record_index, self._max_content_length, chunk_number=chunk_number
                    )
                )
            if _has_invalid_characters(content):
                raise RecordError(
                    invalid_characters_entry(content, record_index, chunk_number=chunk_number)
                )
            stamps = []
            for value in (record.created_at, record.updated_at):
                try:
                    stamps.append(parse_timestamp(value))
                except ValueError:
                    raise RecordError(
                        invalid_date_entry(
                            str(value), record_index, content=content, chunk_number=chunk_number
                        )
                    ) from None
            tags = extract_tags(content)
            normalized = normalize_tags(tags, rules)
            return _PreparedRecord(
                content=content,
                tags=tags,
                normalized_tags=normalized,
                tag_key=duplicate_key(normalized),
                created_at=stamps[0],
                updated_at=stamps[1],
            )
        except (RecordError, SQLAlchemyError):
            raise
        except Exception as exc:
            raise RecordError(
                record_error_entry(exc, record_index, content=content, chunk_number=chunk_number)
            ) from exc

    async def _run(
        self,
        s: AsyncSession,
        records: Sequence[CanonicalRecord],
        outcome: ChunkOutcome,
        *,
        user_id: str,
        rules: NormalizationRules,
    ) -> None:
        for offset, record in enumerate(records):
            idx = outcome.start_index + offset
            try:
                prepared = self.prepare(
                    record, record_index=idx, rules=rules, chunk_number=outcome.chunk_number
                )
            except RecordError as exc:
                outcome.errors.append(exc.entry)
                outcome.failed += 1
                continue
            # Fast path; the unique index on (user_id, tag_key) is the final arbiter
            if await repos.record_exists(s, user_id, prepared.tag_key):
                outcome.skipped += 1
                continue
            await repos.insert_record(
                s,
                user_id=user_id,
                content=prepared.content,
                tags=prepared.tags,
                normalized_tags=prepared.normalized_tags,
                tag_key=prepared.tag_key,
                normalization_version=TAG_NORMALIZATION_VERSION,
                created_at=prepared.created_at,
                updated_at=prepared.updated_at,
            )
            outcome.imported += 1

    async def process(
        self,
        records: Sequence[CanonicalRecord],
        *,
        user_id: str,
        rules: NormalizationRules,
        chunk_number: int,
        start_index: int,
    ) -> ChunkOutcome:
        """Process ``records`` (indices ``start_index``..) in one transaction."""
        if not records:
            raise ValueError("chunk must contain at least one record")
        end_index = start_index + len(records) - 1
        t0 = time.perf_counter()
        attempts = 0
        while True:
            outcome = ChunkOutcome(
                chunk_number=chunk_number, start_index=start_index, end_index=end_index
            )
            try:
                async with self._transaction_factory() as s:
                    await self._run(s, records, outcome, user_id=user_id, rules=rules)
                break
            except IntegrityError as exc:
                if is_duplicate_key_violation(exc) and attempts < self._duplicate_race_retries:
                    attempts += 1
                    inc_counter("importer.chunk.duplicate_race_retry")
                    log.info(
                        "import.chunk.duplicate_race_retry",
                        chunk_number=chunk_number,
                        start_index=start_index,
                        attempt=attempts,
                    )
                    continue
                raise self._rolled_back(exc, records, chunk_number, start_index, end_index) from exc
            except SQLAlchemyError as exc:
                raise self._rolled_back(exc, records, chunk_number, start_index, end_index) from exc

        outcome.duration_ms = int((time.perf_counter() - t0) * 1000)
        record_chunk_committed(
            outcome.duration_ms,
            imported=outcome.imported,
            skipped=outcome.skipped,
            failed=outcome.failed,
        )
        log.info(
            "import.chunk.committed",
            chunk_number=chunk_number,
            start_index=start_index,
            end_index=end_index,
            imported=outcome.imported,
            skipped=outcome.skipped,
            failed=outcome.failed,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    def _rolled_back(
        self,
        exc: BaseException,
        records: Sequence[CanonicalRecord],
        chunk_number: int,
        start_index: int,
        end_index: int,
    ) -> ChunkFatalError:
        record_chunk_rollback()
        info = ChunkRollbackInfo(
            chunk_number=chunk_number,
            chunk_size=len(records),
            start_index=start_index,
            end_index=end_index,
            reason=f"{classify_exception(exc)}: {sanitize_error_message(str(exc))}",
            records_affected=len(records),
        )
        log.warning(
            "import.chunk.rolled_back",
            chunk_number=chunk_number,
            start_index=start_index,
            end_index=end_index,
            error_code=classify_exception(exc),
            error=type(exc).__name__,
        )
        return ChunkFatalError(info, cause=exc)
