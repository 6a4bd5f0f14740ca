"""Tests for SyncRun lifecycle tracking."""

import pytest

from pmpulse.common.upsert_strategies import UpsertResult
from pmpulse.datalayer.sync_tracker import (
    MAX_RECENT_ERRORS,
    ActiveSyncError,
    InvalidTransitionError,
    ResourceMetrics,
    SyncRunMetadata,
    SyncRunTracker,
)


@pytest.fixture
def tracker(session_manager, clock):
    return SyncRunTracker(session_manager, active_window_minutes=120, clock=clock)


def test_create_run_is_pending(tracker):
    run = tracker.create_run('incremental', triggered_by='command', options={'from_date': '2026-01-01'})

    assert run.status == 'pending'
    extra = SyncRunMetadata.from_dict(run.run_metadata).extra
    assert extra['triggered_by'] == 'command'
    assert extra['from_date'] == '2026-01-01'


def test_invalid_mode_rejected(tracker):
    with pytest.raises(ValueError):
        tracker.create_run('partial')


def test_full_lifecycle(tracker, clock):
    run = tracker.create_run('full')
    tracker.start(run)
    clock.advance(seconds=90)
    done = tracker.complete(run)

    assert done.status == 'completed'
    assert done.started_at is not None
    assert done.duration_seconds == pytest.approx(90)


def test_illegal_transitions(tracker):
    run = tracker.create_run('full')

    with pytest.raises(InvalidTransitionError):
        tracker.complete(run)

    tracker.start(run)
    tracker.fail(run, 'credentials missing')

    with pytest.raises(InvalidTransitionError):
        tracker.start(run)
    with pytest.raises(InvalidTransitionError):
        tracker.complete(run)


def test_guard_refuses_second_run(tracker):
    first = tracker.create_run('incremental')
    tracker.start(first)

    with pytest.raises(ActiveSyncError) as exc:
        tracker.create_run('full')
    assert exc.value.active_run_id == first.id


def test_force_overrides_guard(tracker):
    tracker.start(tracker.create_run('incremental'))
    forced = tracker.create_run('full', force=True)
    assert forced.status == 'pending'


def test_stale_running_run_does_not_block(tracker, clock):
    tracker.start(tracker.create_run('incremental'))
    clock.advance(minutes=121)

    assert tracker.find_active_run() is None
    assert tracker.create_run('incremental').status == 'pending'


def test_pending_run_does_not_block(tracker):
    tracker.create_run('incremental')
    assert tracker.create_run('incremental').status == 'pending'
    assert len(tracker.pending_runs()) == 2


def test_error_ledger_keeps_most_recent(tracker):
    run = tracker.create_run('full')
    tracker.start(run)
    resource = tracker.resource(run, 'units')
    for n in range(15):
        resource.record(UpsertResult.SKIPPED)
        resource.record_error(f"bad record {n}", item_id=n)
    resource.finish()

    metrics = tracker.metadata(run).resources['units']
    assert metrics.errors == 15
    assert len(metrics.recent_errors) == MAX_RECENT_ERRORS
    assert metrics.recent_errors[0].message == 'bad record 5'
    assert metrics.recent_errors[-1].message == 'bad record 14'


def test_complete_summarizes_record_errors(tracker):
    run = tracker.create_run('full')
    tracker.start(run)
    resource = tracker.resource(run, 'properties')
    resource.record(UpsertResult.CREATED)
    resource.record(UpsertResult.UPDATED)
    resource.record(UpsertResult.SKIPPED)
    resource.record_error('Missing external id', item_id=None)
    resource.finish()

    done = tracker.complete(run)

    assert done.status == 'completed'
    assert done.resources_synced == 3
    assert done.errors_count == 1
    assert 'properties: Missing external id' in done.error_summary


def test_metrics_frozen_after_terminal_state(tracker):
    run = tracker.create_run('full')
    tracker.start(run)
    tracker.complete(run)

    with pytest.raises(InvalidTransitionError):
        tracker.save_resource_metrics(run, 'units', ResourceMetrics(created=1))


def test_summary_totals(tracker):
    run = tracker.create_run('full')
    tracker.start(run)
    tracker.save_resource_metrics(run, 'properties', ResourceMetrics(created=2, updated=1))
    tracker.save_resource_metrics(run, 'units', ResourceMetrics(created=3, errors=1))

    summary = tracker.summary(run)
    assert summary['created'] == 5
    assert summary['updated'] == 1
    assert summary['errors'] == 1
    assert set(summary['resources']) == {'properties', 'units'}


def test_metadata_round_trip_keeps_extra():
    metadata = SyncRunMetadata(extra={'triggered_by': 'scheduler'})
    metadata.for_resource('vendors').record_error('boom', item_id='V1')

    restored = SyncRunMetadata.from_dict(metadata.to_dict())
    assert restored.extra == {'triggered_by': 'scheduler'}
    assert restored.resources['vendors'].recent_errors[0].item_id == 'V1'
