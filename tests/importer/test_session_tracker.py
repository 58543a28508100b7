"""Import session lifecycle, counters and resumability."""

from datetime import datetime, timedelta, timezone

import pytest

from Tagstash import repos
from Tagstash.chunk_processor import ChunkOutcome
from Tagstash.db import session_scope
from Tagstash.error_classifier import empty_content_entry, skipped_by_request_entry
from Tagstash.models import ImportSessionStatus
from Tagstash.session_tracker import (
    SessionInvariantError,
    SessionNotFoundError,
    SessionStateError,
    SessionTracker,
    check_invariants,
)
from Tagstash.tags import DEFAULT_RULES

USER = "tracker-user"


@pytest.fixture
async def tracker() -> SessionTracker:
    async with session_scope() as s:
        await repos.get_or_create_user(s, USER)
    return SessionTracker(records_per_second=100)


async def _started(tracker: SessionTracker, total: int = 1200, chunk_size: int = 500):
    snap = await tracker.create(USER, total, chunk_size, DEFAULT_RULES, "2.0")
    return await tracker.start(snap.session_id)


def _outcome(chunk_number, start, end, *, imported=None, skipped=0, failed=0, errors=None):
    count = end - start + 1
    return ChunkOutcome(
        chunk_number=chunk_number,
        start_index=start,
        end_index=end,
        imported=count - skipped - failed if imported is None else imported,
        skipped=skipped,
        failed=failed,
        errors=errors or [],
    )


def test_check_invariants_rejects_inconsistent_counts():
    check_invariants(total=10, processed=5, imported=3, skipped=1, failed=1, last_index=4)
    with pytest.raises(SessionInvariantError):
        check_invariants(total=10, processed=11, imported=0, skipped=0, failed=0, last_index=10)
    with pytest.raises(SessionInvariantError):
        check_invariants(total=10, processed=5, imported=4, skipped=1, failed=1, last_index=4)
    with pytest.raises(SessionInvariantError):
        check_invariants(total=10, processed=5, imported=0, skipped=0, failed=0, last_index=2)
    check_invariants(total=0, processed=0, imported=0, skipped=0, failed=0, last_index=None)


@pytest.mark.asyncio
async def test_create_sets_initial_state(tracker):
    snap = await tracker.create(USER, 1200, 500, DEFAULT_RULES, "2.0")
    assert snap.session_id.startswith("import-")
    assert snap.status == ImportSessionStatus.initializing
    assert snap.processed_records == 0
    assert snap.last_processed_index is None
    assert snap.resume_point == 0
    assert snap.expires_at - snap.created_at == timedelta(hours=24)


@pytest.mark.asyncio
async def test_advance_accumulates_and_ignores_resubmitted_chunk(tracker):
    snap = await _started(tracker)
    first = _outcome(1, 0, 499, skipped=10, failed=2, errors=[empty_content_entry(7)])
    after = await tracker.advance(snap.session_id, first)
    assert after.processed_records == 500
    assert (after.imported_records, after.skipped_records, after.failed_records) == (488, 10, 2)
    assert after.last_processed_index == 499

    again = await tracker.advance(snap.session_id, first)
    assert again.processed_records == 500
    assert again.imported_records == 488
    assert len(await tracker.error_log(snap.session_id)) == 1


@pytest.mark.asyncio
async def test_advance_rejects_gap(tracker):
    snap = await _started(tracker)
    with pytest.raises(SessionInvariantError):
        await tracker.advance(snap.session_id, _outcome(2, 500, 999))
    assert (await tracker.get(snap.session_id)).processed_records == 0


@pytest.mark.asyncio
async def test_advance_rejects_overrun(tracker):
    snap = await _started(tracker, total=100, chunk_size=100)
    with pytest.raises(SessionInvariantError):
        await tracker.advance(snap.session_id, _outcome(1, 0, 100))


@pytest.mark.asyncio
async def test_complete_requires_all_records_processed(tracker):
    snap = await _started(tracker, total=600)
    await tracker.advance(snap.session_id, _outcome(1, 0, 499))
    with pytest.raises(SessionStateError):
        await tracker.complete(snap.session_id)
    await tracker.advance(snap.session_id, _outcome(2, 500, 599))
    done = await tracker.complete(snap.session_id)
    assert done.status == ImportSessionStatus.completed


@pytest.mark.asyncio
async def test_fail_then_resume(tracker):
    snap = await _started(tracker)
    await tracker.advance(snap.session_id, _outcome(1, 0, 499))
    failed = await tracker.fail(snap.session_id)
    assert failed.status == ImportSessionStatus.failed
    assert tracker.can_resume(failed)

    resumed = await tracker.start(snap.session_id, resumed=True)
    assert resumed.status == ImportSessionStatus.in_progress
    assert resumed.resume_point == 500


@pytest.mark.asyncio
async def test_start_rejects_wrong_status(tracker):
    snap = await _started(tracker)
    with pytest.raises(SessionStateError):
        await tracker.start(snap.session_id)
    with pytest.raises(SessionStateError):
        await tracker.start(snap.session_id, resumed=True)


@pytest.mark.asyncio
async def test_cancel_rules(tracker):
    snap = await _started(tracker)
    with pytest.raises(SessionNotFoundError):
        await tracker.cancel(snap.session_id, user_id="someone-else")
    cancelled = await tracker.cancel(snap.session_id, user_id=USER)
    assert cancelled.status == ImportSessionStatus.cancelled
    with pytest.raises(SessionStateError):
        await tracker.cancel(snap.session_id)

    # A chunk that finished after the cancel still counts, status stays cancelled
    after = await tracker.advance(snap.session_id, _outcome(1, 0, 499))
    assert after.status == ImportSessionStatus.cancelled
    assert after.processed_records == 500
    assert not tracker.can_resume(after)


@pytest.mark.asyncio
async def test_fail_keeps_cancelled_status_and_logs_entry(tracker):
    snap = await _started(tracker)
    await tracker.cancel(snap.session_id)
    after = await tracker.fail(snap.session_id, empty_content_entry(3))
    assert after.status == ImportSessionStatus.cancelled
    assert [e.error_code for e in await tracker.error_log(snap.session_id)] == ["EMPTY_CONTENT"]


@pytest.mark.asyncio
async def test_cannot_cancel_or_fail_completed(tracker):
    snap = await _started(tracker, total=10, chunk_size=10)
    await tracker.advance(snap.session_id, _outcome(1, 0, 9))
    await tracker.complete(snap.session_id)
    with pytest.raises(SessionStateError):
        await tracker.cancel(snap.session_id)
    with pytest.raises(SessionStateError):
        await tracker.fail(snap.session_id)


@pytest.mark.asyncio
async def test_unknown_session(tracker):
    with pytest.raises(SessionNotFoundError):
        await tracker.get("import-doesnotexist")


@pytest.mark.asyncio
async def test_list_resumable_and_resume_info(tracker):
    paused = await _started(tracker, total=1200)
    await tracker.advance(paused.session_id, _outcome(1, 0, 499))
    await tracker.pause(paused.session_id)

    running = await _started(tracker)
    assert running.status == ImportSessionStatus.in_progress

    infos = await tracker.list_resumable(USER)
    assert [i.session_id for i in infos] == [paused.session_id]
    info = infos[0]
    assert info.last_processed_index == 499
    assert info.remaining_records == 700
    assert info.estimated_time == 7
    assert await tracker.list_resumable("nobody") == []


@pytest.mark.asyncio
async def test_expired_sessions_not_resumable_and_cleaned_up(tracker):
    snap = await _started(tracker, total=100, chunk_size=50)
    await tracker.advance(snap.session_id, _outcome(1, 0, 49, errors=[empty_content_entry(4)]))
    paused = await tracker.pause(snap.session_id)
    later = datetime.now(timezone.utc) + timedelta(hours=25)
    assert not tracker.can_resume(paused, later)

    running = await _started(tracker, total=100, chunk_size=50)
    deleted = await tracker.cleanup_expired(later)
    assert deleted == 1
    with pytest.raises(SessionNotFoundError):
        await tracker.get(snap.session_id)
    assert (await tracker.get(running.session_id)).status == ImportSessionStatus.in_progress


@pytest.mark.asyncio
async def test_error_summary(tracker):
    snap = await _started(tracker, total=10, chunk_size=10)
    await tracker.advance(
        snap.session_id,
        _outcome(1, 0, 9, failed=2, errors=[empty_content_entry(2), empty_content_entry(5)]),
    )
    await tracker.append_errors(snap.session_id, [skipped_by_request_entry(9)])
    summary = await tracker.error_summary(snap.session_id)
    assert summary.total_errors == 3
    assert summary.errors_by_type == {"EMPTY_CONTENT": 2, "SKIPPED_BY_REQUEST": 1}
    assert summary.errors_by_severity == {"error": 2, "info": 1}
    assert summary.affected_records == [2, 5, 9]
    assert summary.successful_records == 8
    assert summary.failed_records == 2
