"""End-to-end import runs through the coordinator against the test database."""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from Tagstash import repos
from Tagstash.config import Settings
from Tagstash.db import session_scope
from Tagstash.exporter import build_export
from Tagstash.importer import (
    ImportCoordinator,
    LimitExceededError,
    SchemaValidationError,
    SessionNotFoundError,
    SessionStateError,
    iter_chunks,
)
from Tagstash.format_migration import CanonicalRecord
from Tagstash.metrics import get_counter
from Tagstash.models import ImportSession, ImportSessionStatus
from Tagstash.schemas import RecoveryOptions

USER = "importer-user"


def _failing_insert(fail_on_calls):
    """Wrap repos.insert_record so the given 1-based call numbers raise."""
    real_insert = repos.insert_record
    calls = {"n": 0}

    async def insert(s, **kwargs):
        calls["n"] += 1
        if calls["n"] in fail_on_calls:
            raise OperationalError("INSERT INTO records", {}, Exception("database is locked"))
        return await real_insert(s, **kwargs)

    return insert


async def _record_count(user_id: str = USER) -> int:
    async with session_scope() as s:
        return await repos.count_records(s, user_id)


async def _session_count() -> int:
    async with session_scope() as s:
        return (await s.execute(select(func.count()).select_from(ImportSession))).scalar_one()


async def _failed_at_second_chunk(coordinator, bundle):
    with patch.object(repos, "insert_record", side_effect=_failing_insert({501})):
        outcome = await coordinator.run_import(USER, bundle)
    assert not outcome.success
    return outcome


def test_iter_chunks_follows_fixed_grid():
    records = [CanonicalRecord(f"r{i}", "t", "t") for i in range(1200)]
    spans = [(n, start, len(chunk)) for n, start, chunk in iter_chunks(records, 500)]
    assert spans == [(1, 0, 500), (2, 500, 500), (3, 1000, 200)]
    spans = [(n, start, len(chunk)) for n, start, chunk in iter_chunks(records, 500, 600)]
    assert spans == [(2, 600, 500), (3, 1100, 100)]
    with pytest.raises(ValueError):
        list(iter_chunks(records, 0))


@pytest.mark.asyncio
async def test_imports_all_records(coordinator, bundle_factory):
    outcome = await coordinator.run_import(USER, bundle_factory(1200))
    assert outcome.success
    assert outcome.status == ImportSessionStatus.completed
    wire = outcome.to_wire()
    assert wire["imported"] == 1200
    assert wire["skipped"] == 0
    assert wire["errors"] == []
    assert wire["status"] == "completed"
    assert wire["sessionId"] == outcome.session_id
    assert await _record_count() == 1200
    assert get_counter("importer.chunk.committed") == 3


@pytest.mark.asyncio
async def test_v1_bundle_without_metadata(coordinator, bundle_factory):
    bundle = bundle_factory(3, version="1.0")
    outcome = await coordinator.run_import(USER, bundle)
    assert outcome.result.imported == 3
    async with session_scope() as s:
        rows = await repos.list_records(s, USER)
    assert all(r.updated_at == r.created_at for r in rows)


@pytest.mark.asyncio
async def test_empty_bundle_completes(coordinator, bundle_factory):
    outcome = await coordinator.run_import(USER, bundle_factory(0))
    assert outcome.status == ImportSessionStatus.completed
    assert (outcome.result.imported, outcome.result.skipped) == (0, 0)


@pytest.mark.asyncio
async def test_failure_in_second_chunk_keeps_first_and_resumes(coordinator, bundle_factory):
    bundle = bundle_factory(1200)
    outcome = await _failed_at_second_chunk(coordinator, bundle)

    assert outcome.status == ImportSessionStatus.failed
    wire = outcome.to_wire()
    assert wire["success"] is False
    assert wire["canResume"] is True
    assert wire["resumeInfo"]["lastProcessedIndex"] == 499
    assert wire["resumeInfo"]["remainingRecords"] == 700
    assert [e["errorCode"] for e in wire["errors"]] == ["CHUNK_FAILED"]
    assert wire["errors"][0]["recordIndex"] == 500
    assert wire["repairSuggestions"][0]["type"] == "retry"
    assert await _record_count() == 500

    snap = await coordinator.tracker.get(outcome.session_id)
    assert (snap.processed_records, snap.last_processed_index) == (500, 499)

    inserted = {"n": 0}
    real_insert = repos.insert_record

    async def counting_insert(s, **kwargs):
        inserted["n"] += 1
        return await real_insert(s, **kwargs)

    options = RecoveryOptions(action="resume", session_id=outcome.session_id)
    with patch.object(repos, "insert_record", side_effect=counting_insert):
        resumed = await coordinator.resume_import(USER, options, bundle)
    assert resumed.success
    assert resumed.status == ImportSessionStatus.completed
    assert inserted["n"] == 700
    assert resumed.result.imported == 1200
    assert await _record_count() == 1200


@pytest.mark.asyncio
async def test_retry_ignores_start_from_index(coordinator, bundle_factory):
    bundle = bundle_factory(1200)
    failed = await _failed_at_second_chunk(coordinator, bundle)
    options = RecoveryOptions(
        action="retry", session_id=failed.session_id, start_from_index=900, data=bundle
    )
    outcome = await coordinator.resume_import(USER, options)
    assert outcome.result.imported == 1200


@pytest.mark.asyncio
async def test_existing_records_are_skipped(coordinator, bundle_factory):
    records = [
        {"content": "alpha beta", "createdAt": "2024-01-01T00:00:00Z", "updatedAt": "2024-01-01T00:00:00Z"}
    ]
    await coordinator.run_import(USER, bundle_factory(records=records))
    records = [
        {"content": "Beta ALPHA", "createdAt": "2024-03-01T00:00:00Z", "updatedAt": "2024-03-01T00:00:00Z"},
        {"content": "gamma", "createdAt": "2024-03-01T00:00:00Z", "updatedAt": "2024-03-01T00:00:00Z"},
    ]
    outcome = await coordinator.run_import(USER, bundle_factory(records=records))
    assert (outcome.result.imported, outcome.result.skipped) == (1, 1)
    assert outcome.result.errors == []


@pytest.mark.asyncio
async def test_export_then_reimport_skips_everything(coordinator, bundle_factory):
    await coordinator.run_import(USER, bundle_factory(40))
    async with session_scope() as s:
        exported = await build_export(s, USER, "2.0")
    assert exported["metadata"]["recordCount"] == 40
    outcome = await coordinator.run_import(USER, exported)
    assert (outcome.result.imported, outcome.result.skipped) == (0, 40)
    assert outcome.result.errors == []


@pytest.mark.asyncio
async def test_too_many_records_rejected_before_session(coordinator, bundle_factory):
    with pytest.raises(LimitExceededError) as ei:
        await coordinator.run_import(USER, bundle_factory(50_001))
    assert ei.value.code == "TOO_MANY_RECORDS"
    assert ei.value.entry.error_message == "Import exceeds limit: 50,001 records (max: 50,000)"
    assert await _session_count() == 0
    assert await _record_count() == 0
    assert get_counter("importer.rejected.limit") == 1


@pytest.mark.asyncio
async def test_invalid_payload_rejected_before_session(coordinator, bundle_factory):
    bundle = bundle_factory(3)
    bundle["records"][1]["createdAt"] = "yesterday"
    with pytest.raises(SchemaValidationError) as ei:
        await coordinator.run_import(USER, bundle)
    assert [fe.path for fe in ei.value.field_errors] == ["records.1.createdAt"]
    assert await _session_count() == 0
    assert get_counter("importer.rejected.schema") == 1


@pytest.mark.asyncio
async def test_normalization_mismatch_is_reported(coordinator, bundle_factory):
    outcome = await coordinator.run_import(USER, bundle_factory(5, case_sensitive=True))
    assert outcome.status == ImportSessionStatus.completed
    assert outcome.result.imported == 5
    assert len(outcome.result.errors) == 1
    assert outcome.result.errors[0].startswith("NORMALIZATION_MISMATCH:")
    log = await coordinator.tracker.error_log(outcome.session_id)
    assert log[0].record_index == -1
    assert log[0].severity.value == "warning"


@pytest.mark.asyncio
async def test_cancel_is_observed_before_next_chunk(import_settings, bundle_factory):
    holder: dict = {}

    async def on_progress(progress):
        if progress.chunk_number == 1:
            await holder["coordinator"].cancel_import(USER, progress.session_id)

    coordinator = ImportCoordinator(settings=import_settings, progress_callback=on_progress)
    holder["coordinator"] = coordinator
    outcome = await coordinator.run_import(USER, bundle_factory(1200))
    assert outcome.status == ImportSessionStatus.cancelled
    assert outcome.result.imported == 500
    assert await _record_count() == 500

    options = RecoveryOptions(action="resume", session_id=outcome.session_id)
    with pytest.raises(SessionStateError):
        await coordinator.resume_import(USER, options, bundle_factory(1200))


@pytest.mark.asyncio
async def test_task_cancellation_pauses_session(import_settings, bundle_factory):
    seen: list[str] = []

    def on_progress(progress):
        seen.append(progress.session_id)
        raise asyncio.CancelledError()

    coordinator = ImportCoordinator(settings=import_settings, progress_callback=on_progress)
    bundle = bundle_factory(1200)
    with pytest.raises(asyncio.CancelledError):
        await coordinator.run_import(USER, bundle)
    snap = await coordinator.tracker.get(seen[0])
    assert snap.status == ImportSessionStatus.paused
    assert snap.last_processed_index == 499

    resumed = await ImportCoordinator(settings=import_settings).resume_import(
        USER, RecoveryOptions(action="resume", session_id=seen[0]), bundle
    )
    assert resumed.status == ImportSessionStatus.completed
    assert await _record_count() == 1200


@pytest.mark.asyncio
async def test_recover_cancel_action(coordinator, bundle_factory):
    failed = await _failed_at_second_chunk(coordinator, bundle_factory(1200))
    outcome = await coordinator.resume_import(
        USER, RecoveryOptions(action="cancel", session_id=failed.session_id)
    )
    assert outcome.status == ImportSessionStatus.cancelled
    assert outcome.result.imported == 500


@pytest.mark.asyncio
async def test_skip_errors_continues_past_failed_chunk(coordinator, bundle_factory):
    bundle = bundle_factory(1200)
    failed = await _failed_at_second_chunk(coordinator, bundle)
    options = RecoveryOptions(action="resume", session_id=failed.session_id, skip_errors=True)
    with patch.object(repos, "insert_record", side_effect=_failing_insert({1})):
        outcome = await coordinator.resume_import(USER, options, bundle)
    assert outcome.status == ImportSessionStatus.completed
    snap = await coordinator.tracker.get(failed.session_id)
    assert (snap.imported_records, snap.failed_records) == (700, 500)
    codes = [e.error_code for e in await coordinator.tracker.error_log(failed.session_id)]
    assert codes == ["CHUNK_FAILED", "CHUNK_SKIPPED"]
    assert await _record_count() == 700


@pytest.mark.asyncio
async def test_start_from_index_records_skipped_gap(coordinator, bundle_factory):
    bundle = bundle_factory(1200)
    failed = await _failed_at_second_chunk(coordinator, bundle)
    options = RecoveryOptions(action="resume", session_id=failed.session_id, start_from_index=600)
    outcome = await coordinator.resume_import(USER, options, bundle)
    assert outcome.status == ImportSessionStatus.completed
    snap = await coordinator.tracker.get(failed.session_id)
    assert (snap.imported_records, snap.failed_records, snap.processed_records) == (1100, 100, 1200)
    summary = await coordinator.tracker.error_summary(failed.session_id)
    assert summary.errors_by_type == {"CHUNK_FAILED": 1, "SKIPPED_BY_REQUEST": 100}
    assert await _record_count() == 1100


@pytest.mark.asyncio
async def test_start_from_index_cannot_rewind(coordinator, bundle_factory):
    bundle = bundle_factory(1200)
    failed = await _failed_at_second_chunk(coordinator, bundle)
    options = RecoveryOptions(action="resume", session_id=failed.session_id, start_from_index=100)
    with pytest.raises(SessionStateError):
        await coordinator.resume_import(USER, options, bundle)
    with pytest.raises(SchemaValidationError):
        await coordinator.resume_import(
            USER, options.model_copy(update={"start_from_index": 5000}), bundle
        )
    assert (await coordinator.tracker.get(failed.session_id)).status == ImportSessionStatus.failed


@pytest.mark.asyncio
async def test_resume_requires_matching_bundle(coordinator, bundle_factory):
    failed = await _failed_at_second_chunk(coordinator, bundle_factory(1200))
    options = RecoveryOptions(action="resume", session_id=failed.session_id)
    with pytest.raises(SchemaValidationError):
        await coordinator.resume_import(USER, options)
    with pytest.raises(SchemaValidationError):
        await coordinator.resume_import(USER, options, bundle_factory(1100))


@pytest.mark.asyncio
async def test_resume_completed_or_foreign_session(coordinator, bundle_factory):
    done = await coordinator.run_import(USER, bundle_factory(10))
    options = RecoveryOptions(action="resume", session_id=done.session_id)
    with pytest.raises(SessionStateError):
        await coordinator.resume_import(USER, options, bundle_factory(10))
    with pytest.raises(SessionNotFoundError):
        await coordinator.resume_import("intruder", options, bundle_factory(10))


@pytest.mark.asyncio
async def test_small_chunk_size_from_settings(bundle_factory):
    coordinator = ImportCoordinator(
        settings=Settings(import_chunk_size=3, logging_enabled=False)
    )
    outcome = await coordinator.run_import(USER, bundle_factory(10))
    assert outcome.result.imported == 10
    assert get_counter("importer.chunk.committed") == 4
