"""Classification of import failures into error codes and repair suggestions.

Every failure resolves to exactly one ``RepairSuggestionType``; unknown codes
and arbitrary exceptions fall through to ``contact_support``. The entry
builders produce the user-facing ``ErrorLogEntry`` wording: line numbers are
1-based, content snapshots are truncated, and database messages are stripped
of credentials.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from Tagstash.errors import ImporterError
from Tagstash.schemas import (
    ErrorLogEntry,
    ErrorSeverity,
    RepairSuggestion,
    RepairSuggestionType,
    format_timestamp,
)

SuggestionType = RepairSuggestionType

DUPLICATE_INDEX_NAME = "ux_records_user_tag_key"

CODE_SUGGESTIONS: dict[str, RepairSuggestionType] = {
    "DUPLICATE_RECORD": SuggestionType.duplicate_update,
    "CONSTRAINT_VIOLATION": SuggestionType.duplicate_update,
    "INVALID_DATE_FORMAT": SuggestionType.date_format,
    "EMPTY_CONTENT": SuggestionType.remove_empty,
    "TOO_MANY_RECORDS": SuggestionType.split_batch,
    "CONTENT_TOO_LONG": SuggestionType.split_batch,
    "PAYLOAD_TOO_LARGE": SuggestionType.split_batch,
    "INVALID_CHARACTERS": SuggestionType.normalize_content,
    "NORMALIZATION_MISMATCH": SuggestionType.normalize_content,
    "CONNECTION_ERROR": SuggestionType.retry,
    "DATABASE_ERROR": SuggestionType.retry,
    "SKIPPED_BY_REQUEST": SuggestionType.retry,
}

# Chunk failures are only worth retrying when the underlying cause was transient
_CHUNK_CODES = ("CHUNK_FAILED", "CHUNK_SKIPPED")

_TRANSIENT_MARKERS = ("connection", "timeout", "timed out", "locked", "busy", "deadlock")

_DEFAULT_SUGGESTIONS: dict[RepairSuggestionType, RepairSuggestion] = {
    SuggestionType.duplicate_update: RepairSuggestion(
        type=SuggestionType.duplicate_update,
        message="Some records already exist with the same tags.",
        action="Remove duplicate records from import file or use update API",
    ),
    SuggestionType.date_format: RepairSuggestion(
        type=SuggestionType.date_format,
        message="Invalid date format detected.",
        example="2024-01-15T10:30:00.000Z",
        action="Convert dates to ISO 8601 format (YYYY-MM-DDTHH:mm:ss.sssZ)",
    ),
    SuggestionType.remove_empty: RepairSuggestion(
        type=SuggestionType.remove_empty,
        message="Records must contain at least one word.",
        action="Remove records with empty content",
    ),
    SuggestionType.split_batch: RepairSuggestion(
        type=SuggestionType.split_batch,
        message="Import file exceeds maximum size limit.",
        action="Split your import file into smaller batches",
    ),
    SuggestionType.normalize_content: RepairSuggestion(
        type=SuggestionType.normalize_content,
        message="Special or invalid characters detected in record content.",
        action="Remove or escape special characters before importing",
    ),
    SuggestionType.retry: RepairSuggestion(
        type=SuggestionType.retry,
        message="Temporary database issue detected.",
        action="Wait a few moments and retry using the resume feature",
    ),
    SuggestionType.contact_support: RepairSuggestion(
        type=SuggestionType.contact_support,
        message="An unexpected error occurred during import.",
        action="Contact support if this error persists",
    ),
}


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def truncate_content(content: str, max_length: int = 50) -> str:
    if len(content) <= max_length:
        return content
    return f"{content[:max_length]}..."


def sanitize_error_message(error: str) -> str:
    """Mask credentials that drivers echo back in error text."""
    cleaned = re.sub(r"password=[^;\s]*", "password=***", error, flags=re.IGNORECASE)
    cleaned = re.sub(r"pwd=[^;\s]*", "pwd=***", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"://([^:/@\s]+):[^@/\s]+@", r"://\1:***@", cleaned)
    return cleaned[:200]


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, DisconnectionError | PoolTimeoutError | ConnectionError | TimeoutError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, OperationalError):
        return True
    msg = str(exc).lower()
    return isinstance(exc, SQLAlchemyError) and any(m in msg for m in _TRANSIENT_MARKERS)


def is_duplicate_key_violation(exc: BaseException) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    msg = str(exc.orig if exc.orig is not None else exc).lower()
    if DUPLICATE_INDEX_NAME in msg:
        return True
    # SQLite names the columns rather than the index
    return "unique" in msg and "records.user_id" in msg and "records.tag_key" in msg


def classify_exception(exc: BaseException) -> str:
    """Map an exception to a machine-readable error code."""
    if isinstance(exc, ImporterError):
        return exc.code
    if isinstance(exc, IntegrityError):
        return "DUPLICATE_RECORD" if is_duplicate_key_violation(exc) else "CONSTRAINT_VIOLATION"
    if isinstance(exc, SQLAlchemyError):
        msg = str(exc).lower()
        if is_transient(exc) and any(m in msg for m in ("connection", "timeout", "timed out")):
            return "CONNECTION_ERROR"
        if isinstance(exc, DisconnectionError | PoolTimeoutError):
            return "CONNECTION_ERROR"
        return "DATABASE_ERROR"
    if isinstance(exc, ConnectionError | TimeoutError):
        return "CONNECTION_ERROR"
    return "IMPORT_FAILED"


def classify(code: str, *, transient: bool = False) -> RepairSuggestionType:
    """Total mapping from an error code to a suggestion type."""
    if code in _CHUNK_CODES:
        return SuggestionType.retry if transient else SuggestionType.contact_support
    return CODE_SUGGESTIONS.get(code, SuggestionType.contact_support)


def suggestion_for(code: str, *, transient: bool = False) -> RepairSuggestion:
    return _DEFAULT_SUGGESTIONS[classify(code, transient=transient)].model_copy()


def _entry(
    code: str,
    message: str,
    *,
    record_index: int = -1,
    content: str | None = None,
    severity: ErrorSeverity = ErrorSeverity.error,
    chunk_number: int | None = None,
    suggestion: RepairSuggestion | None = None,
) -> ErrorLogEntry:
    return ErrorLogEntry(
        record_index=record_index,
        record_content=truncate_content(content, 200) if content is not None else None,
        error_code=code,
        error_message=message,
        timestamp=_now(),
        chunk_number=chunk_number,
        severity=severity,
        suggestion=suggestion if suggestion is not None else suggestion_for(code),
    )


# -----------------------------
# Entry builders
# -----------------------------


def invalid_date_entry(
    value: str, record_index: int, *, content: str | None = None, chunk_number: int | None = None
) -> ErrorLogEntry:
    return _entry(
        "INVALID_DATE_FORMAT",
        f"Invalid date '{value}' in record at line {record_index + 1}",
        record_index=record_index,
        content=content,
        chunk_number=chunk_number,
        suggestion=RepairSuggestion(
            type=SuggestionType.date_format,
            message="Date must be in ISO 8601 format",
            example="2024-01-15T10:30:00.000Z",
            action="Convert date to YYYY-MM-DDTHH:mm:ss.sssZ format",
        ),
    )


def empty_content_entry(record_index: int, *, chunk_number: int | None = None) -> ErrorLogEntry:
    return _entry(
        "EMPTY_CONTENT",
        f"Record at line {record_index + 1} has no content",
        record_index=record_index,
        chunk_number=chunk_number,
        suggestion=RepairSuggestion(
            type=SuggestionType.remove_empty,
            message="Records must contain at least one word",
            action=f"Remove empty record at line {record_index + 1}",
        ),
    )


def content_too_long_entry(
    content: str, record_index: int, max_length: int, *, chunk_number: int | None = None
) -> ErrorLogEntry:
    return _entry(
        "CONTENT_TOO_LONG",
        f"Record at line {record_index + 1} is {len(content):,} characters long "
        f"(max: {max_length:,})",
        record_index=record_index,
        content=content,
        chunk_number=chunk_number,
        suggestion=RepairSuggestion(
            type=SuggestionType.split_batch,
            message="Record content exceeds the maximum length",
            action=f"Split the record into parts of at most {max_length:,} characters",
        ),
    )


def invalid_characters_entry(
    content: str, record_index: int, *, chunk_number: int | None = None
) -> ErrorLogEntry:
    return _entry(
        "INVALID_CHARACTERS",
        f"Special characters detected in record at line {record_index + 1}",
        record_index=record_index,
        content=content,
        chunk_number=chunk_number,
        suggestion=RepairSuggestion(
            type=SuggestionType.normalize_content,
            message="Content contains characters that may cause issues",
            action="Remove or escape special characters",
        ),
    )


def size_limit_entry(actual_count: int, max_count: int) -> ErrorLogEntry:
    files = -(-actual_count // max_count)
    return _entry(
        "TOO_MANY_RECORDS",
        f"Import exceeds limit: {actual_count:,} records (max: {max_count:,})",
        suggestion=RepairSuggestion(
            type=SuggestionType.split_batch,
            message="The import file is too large",
            action=f"Split into {files} files of max {max_count:,} records each",
        ),
    )


def record_error_entry(
    exc: BaseException, record_index: int, *, content: str | None = None, chunk_number: int | None = None
) -> ErrorLogEntry:
    return _entry(
        "RECORD_ERROR",
        f"Record at line {record_index + 1} could not be processed: "
        f"{sanitize_error_message(str(exc)) or type(exc).__name__}",
        record_index=record_index,
        content=content,
        chunk_number=chunk_number,
    )


def chunk_failed_entry(
    exc: BaseException,
    *,
    chunk_number: int,
    start_index: int,
    end_index: int,
    skipped: bool = False,
) -> ErrorLogEntry:
    code = "CHUNK_SKIPPED" if skipped else "CHUNK_FAILED"
    cause = classify_exception(exc)
    verb = "was skipped" if skipped else "failed and was rolled back"
    return _entry(
        code,
        f"Chunk {chunk_number} (lines {start_index + 1}-{end_index + 1}) {verb}: "
        f"{cause}: {sanitize_error_message(str(exc))}",
        record_index=start_index,
        chunk_number=chunk_number,
        suggestion=suggestion_for(code, transient=is_transient(exc)),
    )


def skipped_by_request_entry(record_index: int) -> ErrorLogEntry:
    return _entry(
        "SKIPPED_BY_REQUEST",
        f"Record at line {record_index + 1} was skipped by the recovery request",
        record_index=record_index,
        severity=ErrorSeverity.info,
        suggestion=RepairSuggestion(
            type=SuggestionType.retry,
            message="Skipped records were not imported.",
            action="Re-import the skipped records in a separate file",
        ),
    )


def normalization_mismatch_entry(declared: dict[str, bool], effective: dict[str, bool]) -> ErrorLogEntry:
    return _entry(
        "NORMALIZATION_MISMATCH",
        "Import was exported with normalization rules "
        f"{declared} but this account uses {effective}; the account rules were applied",
        severity=ErrorSeverity.warning,
        suggestion=RepairSuggestion(
            type=SuggestionType.normalize_content,
            message="Tag normalization settings differ from the exported data.",
            action="Align normalization settings before importing to avoid unexpected duplicates",
        ),
    )


_TIMESTAMP_FIELDS = ("createdAt", "updatedAt", "exportedAt")


def schema_error_entry(path: str, message: str) -> ErrorLogEntry:
    parts = path.split(".")
    record_index = int(parts[1]) if len(parts) >= 2 and parts[0] == "records" and parts[1].isdigit() else -1
    leaf = parts[-1]
    lowered = message.lower()
    if leaf in _TIMESTAMP_FIELDS and "required" not in lowered:
        code = "INVALID_DATE_FORMAT"
    elif leaf == "content" and "at least 1" in lowered:
        code = "EMPTY_CONTENT"
    elif leaf == "content" and "at most" in lowered:
        code = "CONTENT_TOO_LONG"
    else:
        code = "MALFORMED_PAYLOAD"
    return _entry(code, f"{path}: {message}", record_index=record_index)


def repair_suggestions(entries: Iterable[ErrorLogEntry]) -> list[RepairSuggestion]:
    """One suggestion per suggestion type present, in first-seen order.

    A non-empty failure always yields at least one suggestion.
    """
    seen: dict[RepairSuggestionType, RepairSuggestion] = {}
    empty_indices: list[int] = []
    for entry in entries:
        suggestion = entry.suggestion or suggestion_for(entry.error_code)
        if entry.error_code == "EMPTY_CONTENT" and entry.record_index >= 0:
            empty_indices.append(entry.record_index)
        seen.setdefault(suggestion.type, suggestion)
    if SuggestionType.remove_empty in seen and empty_indices:
        shown = ", ".join(str(i) for i in empty_indices[:10])
        more = "..." if len(empty_indices) > 10 else ""
        seen[SuggestionType.remove_empty] = RepairSuggestion(
            type=SuggestionType.remove_empty,
            message=f"Found {len(empty_indices)} record(s) with empty content.",
            action=f"Remove records at indices: {shown}{more}",
        )
    return list(seen.values())


def summarize_codes(entries: Sequence[ErrorLogEntry]) -> list[str]:
    """Flat ``CODE: message`` strings for the success response's ``errors`` list."""
    return [f"{e.error_code}: {e.error_message}" for e in entries]
