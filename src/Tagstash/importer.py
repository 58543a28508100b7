"""Bulk import coordinator.

Drives one import (or one resume of an interrupted import) through the
pipeline: validation, migration to canonical records, the size limit, then
strictly sequential chunks. Every chunk commits or rolls back on its own
transaction before the session is advanced and the next chunk is pulled, so
``last_processed_index`` on the session is always a safe restart point.

Session lifecycle::

    initializing -> in-progress -> completed
                              \\-> failed    (chunk-level error; resumable)
    paused | failed -> in-progress           (resume / retry)
    any non-terminal -> cancelled            (observed before the next chunk)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from structlog.contextvars import bound_contextvars

from Tagstash import repos
from Tagstash.chunk_processor import (
    ChunkFatalError,
    ChunkOutcome,
    ChunkProcessor,
    RecordError,
    TransactionFactory,
)
from Tagstash.config import Settings, load_settings
from Tagstash.db import session_scope
from Tagstash.error_classifier import (
    chunk_failed_entry,
    normalization_mismatch_entry,
    repair_suggestions,
    size_limit_entry,
    skipped_by_request_entry,
    summarize_codes,
)
from Tagstash.errors import ImporterError
from Tagstash.format_migration import CanonicalRecord, declared_rules, migrate_to_canonical
from Tagstash.format_validation import FieldError, SchemaValidationError, validate_import_payload
from Tagstash.importer_context import ImportProgress, ImportRunContext
from Tagstash.metrics import inc_counter
from Tagstash.models import ImportSessionStatus
from Tagstash.schemas import (
    ErrorLogEntry,
    ImportErrorResponse,
    ImportResult,
    RecoveryOptions,
)
from Tagstash.session_tracker import (
    SessionInvariantError,
    SessionNotFoundError,
    SessionSnapshot,
    SessionStateError,
    SessionTracker,
    summarize,
)
from Tagstash.tags import NormalizationRules

log = structlog.get_logger()

ProgressCallback = Callable[[ImportProgress], Awaitable[None] | None]

__all__ = [
    "ChunkFatalError",
    "ImportCoordinator",
    "ImportOutcome",
    "ImporterError",
    "LimitExceededError",
    "RecordError",
    "SchemaValidationError",
    "SessionInvariantError",
    "SessionNotFoundError",
    "SessionStateError",
    "iter_chunks",
]


class LimitExceededError(ImporterError):
    code = "TOO_MANY_RECORDS"

    def __init__(self, actual: int, maximum: int) -> None:
        self.actual = actual
        self.maximum = maximum
        self.entry: ErrorLogEntry = size_limit_entry(actual, maximum)
        super().__init__(self.entry.error_message)


@dataclass(frozen=True)
class ImportOutcome:
    """Result of a coordinator run: a success result or a structured failure."""

    session_id: str
    status: ImportSessionStatus
    result: ImportResult | None = None
    error: ImportErrorResponse | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_wire(self) -> dict[str, Any]:
        if self.error is not None:
            return self.error.to_wire()
        assert self.result is not None
        return self.result.to_wire()


def iter_chunks(
    records: Sequence[CanonicalRecord], chunk_size: int, start: int = 0
) -> Iterator[tuple[int, int, Sequence[CanonicalRecord]]]:
    """Yield ``(chunk_number, start_index, records)`` from ``start`` onwards.

    Chunk numbers are 1-based and follow the fixed grid of ``chunk_size``.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    index = start
    while index < len(records):
        chunk_number = index // chunk_size + 1
        end = min(index + chunk_size, len(records))
        yield chunk_number, index, records[index:end]
        index = end


class ImportCoordinator:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transaction_factory: TransactionFactory = session_scope,
        chunk_processor: ChunkProcessor | None = None,
        tracker: SessionTracker | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._tx = transaction_factory
        self._chunk_size = self._settings.import_chunk_size
        self._max_records = self._settings.import_max_records
        self._processor = chunk_processor or ChunkProcessor(
            transaction_factory=transaction_factory,
            max_content_length=self._settings.import_max_content_length,
        )
        self._tracker = tracker or SessionTracker(
            transaction_factory=transaction_factory,
            expiry_hours=self._settings.import_session_expiry_hours,
            records_per_second=self._settings.import_records_per_second_estimate,
        )
        self._progress_callback = progress_callback

    @property
    def tracker(self) -> SessionTracker:
        return self._tracker

    # -----------------------------
    # Entry points
    # -----------------------------

    async def run_import(self, user_id: str, payload: Any) -> ImportOutcome:
        """Import a v1.0 or v2.0 bundle for ``user_id``.

        Raises SchemaValidationError or LimitExceededError before anything is
        persisted; chunk-level failures come back as a failed ImportOutcome.
        """
        with bound_contextvars(user_id=user_id):
            records, bundle = self._validate(payload)
            rules = await self._owner_rules(user_id)
            session = await self._tracker.create(
                user_id, len(records), self._chunk_size, rules, bundle.version
            )
            with bound_contextvars(session_id=session.session_id):
                run_errors: list[ErrorLogEntry] = []
                declared = declared_rules(bundle)
                if declared is not None and declared != rules:
                    entry = normalization_mismatch_entry(declared.to_wire(), rules.to_wire())
                    log.warning(
                        "import.normalization_mismatch",
                        declared=declared.to_wire(),
                        effective=rules.to_wire(),
                    )
                    await self._tracker.append_errors(session.session_id, [entry])
                    run_errors.append(entry)
                session = await self._tracker.start(session.session_id)
                log.info(
                    "import.started",
                    total_records=session.total_records,
                    chunk_size=session.chunk_size,
                    version=bundle.version,
                )
                ctx = ImportRunContext(session_id=session.session_id, start_index=0)
                ctx.add_errors(run_errors)
                return await self._drive(session, records, ctx, skip_errors=False)

    async def resume_import(
        self, user_id: str, options: RecoveryOptions, payload: Any = None
    ) -> ImportOutcome:
        """Resume or retry a paused/failed session from its last committed chunk.

        ``payload`` (or ``options.data``) must be the original bundle; records
        at or before ``last_processed_index`` are never processed again.
        """
        if options.action == "cancel":
            snap = await self.cancel_import(user_id, options.session_id)
            return await self._finished_outcome(snap)
        with bound_contextvars(user_id=user_id, session_id=options.session_id):
            snap = await self._tracker.get(options.session_id, user_id=user_id)
            if not self._tracker.can_resume(snap):
                raise SessionStateError(
                    f"Session {snap.session_id} cannot be resumed (status {snap.status.value})"
                )
            data = payload if payload is not None else options.data
            if data is None:
                raise SchemaValidationError(
                    [FieldError("data", "The original import bundle is required to resume")]
                )
            records, _bundle = self._validate(data)
            if len(records) != snap.total_records:
                raise SchemaValidationError(
                    [
                        FieldError(
                            "data.records",
                            f"Expected {snap.total_records} records, got {len(records)}",
                        )
                    ]
                )
            start = snap.resume_point
            target = start
            if options.action == "resume" and options.start_from_index is not None:
                target = options.start_from_index
                if target < start:
                    raise SessionStateError(
                        f"startFromIndex {target} would reprocess committed records "
                        f"(resume point is {start})"
                    )
                if target > snap.total_records:
                    raise SchemaValidationError(
                        [
                            FieldError(
                                "startFromIndex",
                                f"Must be at most {snap.total_records}",
                            )
                        ]
                    )
            snap = await self._tracker.start(snap.session_id, resumed=True)
            log.info(
                "import.resumed",
                action=options.action,
                resume_point=start,
                start_from_index=target,
                skip_errors=options.skip_errors,
            )
            ctx = ImportRunContext(session_id=snap.session_id, start_index=start)
            if target > start:
                gap = ChunkOutcome(
                    chunk_number=start // snap.chunk_size + 1,
                    start_index=start,
                    end_index=target - 1,
                    failed=target - start,
                    errors=[skipped_by_request_entry(i) for i in range(start, target)],
                )
                snap = await self._tracker.advance(snap.session_id, gap)
                ctx.record_chunk(gap, skipped_chunk=True)
            return await self._drive(snap, records, ctx, skip_errors=options.skip_errors)

    async def cancel_import(self, user_id: str, session_id: str) -> SessionSnapshot:
        with bound_contextvars(user_id=user_id, session_id=session_id):
            snap = await self._tracker.cancel(session_id, user_id=user_id)
            log.info("import.cancelled", processed_records=snap.processed_records)
            return snap

    # -----------------------------
    # Internals
    # -----------------------------

    def _validate(self, payload: Any) -> tuple[tuple[CanonicalRecord, ...], Any]:
        try:
            bundle = validate_import_payload(payload)
        except SchemaValidationError as exc:
            inc_counter("importer.rejected.schema")
            log.info("import.rejected.schema", field_errors=len(exc.field_errors))
            raise
        records = migrate_to_canonical(bundle)
        if len(records) > self._max_records:
            inc_counter("importer.rejected.limit")
            log.info("import.rejected.limit", records=len(records), max_records=self._max_records)
            raise LimitExceededError(len(records), self._max_records)
        return records, bundle

    async def _owner_rules(self, user_id: str) -> NormalizationRules:
        async with self._tx() as s:
            user = await repos.get_or_create_user(s, user_id)
            return NormalizationRules(
                case_sensitive=user.case_sensitive, remove_accents=user.remove_accents
            )

    async def _notify(self, snap: SessionSnapshot, chunk_number: int) -> None:
        if self._progress_callback is None:
            return
        progress = ImportProgress(
            session_id=snap.session_id,
            chunk_number=chunk_number,
            total_records=snap.total_records,
            processed_records=snap.processed_records,
            imported_records=snap.imported_records,
            skipped_records=snap.skipped_records,
            failed_records=snap.failed_records,
            last_processed_index=snap.last_processed_index,
        )
        res = self._progress_callback(progress)
        if inspect.isawaitable(res):
            await res

    async def _drive(
        self,
        session: SessionSnapshot,
        records: Sequence[CanonicalRecord],
        ctx: ImportRunContext,
        *,
        skip_errors: bool,
    ) -> ImportOutcome:
        sid = session.session_id
        snap = session
        try:
            for chunk_number, start_index, chunk in iter_chunks(
                records, session.chunk_size, ctx.next_index
            ):
                if await self._tracker.status(sid) == ImportSessionStatus.cancelled:
                    log.info("import.cancel_observed", next_index=start_index)
                    break
                try:
                    outcome = await self._processor.process(
                        chunk,
                        user_id=session.user_id,
                        rules=session.rules,
                        chunk_number=chunk_number,
                        start_index=start_index,
                    )
                    skipped_chunk = False
                except ChunkFatalError as exc:
                    entry = chunk_failed_entry(
                        exc.cause,
                        chunk_number=chunk_number,
                        start_index=exc.rollback.start_index,
                        end_index=exc.rollback.end_index,
                        skipped=skip_errors,
                    )
                    if not skip_errors:
                        snap = await self._tracker.fail(sid, entry)
                        ctx.add_errors([entry])
                        log.warning(
                            "import.session.failed",
                            chunk_number=chunk_number,
                            error_code=exc.error_code,
                            last_processed_index=snap.last_processed_index,
                        )
                        return await self._failure_outcome(snap)
                    outcome = ChunkOutcome(
                        chunk_number=chunk_number,
                        start_index=exc.rollback.start_index,
                        end_index=exc.rollback.end_index,
                        failed=exc.rollback.records_affected,
                        errors=[entry],
                    )
                    skipped_chunk = True
                    log.warning(
                        "import.chunk.skipped",
                        chunk_number=chunk_number,
                        error_code=exc.error_code,
                    )
                snap = await self._tracker.advance(sid, outcome)
                ctx.record_chunk(outcome, skipped_chunk=skipped_chunk)
                await self._notify(snap, chunk_number)
                # Cooperative suspension point between chunks
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            log.warning("import.interrupted", next_index=ctx.next_index)
            try:
                await self._tracker.pause(sid)
            except SessionStateError:
                log.info("import.interrupted.not_paused")
            raise

        snap = await self._tracker.get(sid)
        if snap.status == ImportSessionStatus.cancelled:
            return await self._finished_outcome(snap)
        if not ctx.covers(len(records)):
            raise SessionInvariantError(
                f"Run for {sid} did not account for every record from {ctx.start_index}"
            )
        snap = await self._tracker.complete(sid)
        log.info(
            "import.completed",
            **ctx.summary_counts(),
            run_digest=ctx.compute_run_digest(),
        )
        return await self._finished_outcome(snap)

    async def _finished_outcome(self, snap: SessionSnapshot) -> ImportOutcome:
        entries = await self._tracker.error_log(snap.session_id)
        return ImportOutcome(
            session_id=snap.session_id,
            status=snap.status,
            result=ImportResult(
                imported=snap.imported_records,
                skipped=snap.skipped_records,
                errors=summarize_codes(entries),
                session_id=snap.session_id,
                status=snap.status.value,
            ),
        )

    async def _failure_outcome(self, snap: SessionSnapshot) -> ImportOutcome:
        entries = await self._tracker.error_log(snap.session_id)
        resumable = self._tracker.can_resume(snap)
        return ImportOutcome(
            session_id=snap.session_id,
            status=snap.status,
            error=ImportErrorResponse(
                session_id=snap.session_id,
                can_resume=resumable,
                error_summary=summarize(snap, entries),
                errors=entries,
                repair_suggestions=repair_suggestions(entries),
                resume_info=self._tracker.resume_info(snap) if resumable else None,
            ),
        )

