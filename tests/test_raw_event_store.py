"""Tests for raw event capture."""

import pytest

from pmpulse.datalayer.raw_event_store import RawEventAlreadyProcessedError, RawEventStore
from pmpulse.datalayer.sync_tracker import SyncRunTracker


@pytest.fixture
def store(session_manager):
    return RawEventStore(session_manager)


@pytest.fixture
def run(session_manager):
    return SyncRunTracker(session_manager).create_run('full')


def test_capture_persists_before_processing(store, run):
    event = store.capture(run.id, 'properties', 'P1', {'property_id': 'P1', 'name': 'Elm'})

    assert event.id is not None
    assert event.processed_at is None
    assert event.pulled_at is not None
    assert [e.id for e in store.unprocessed('properties')] == [event.id]


def test_mark_processed_exactly_once(store, run):
    event = store.capture(run.id, 'units', 'U1', {'unit_id': 'U1'})

    store.mark_processed(event)
    assert event.processed_at is not None
    assert store.unprocessed('units') == []

    with pytest.raises(RawEventAlreadyProcessedError):
        store.mark_processed(event)


def test_unprocessed_filters_by_type_and_run(store, session_manager, run):
    other_run = SyncRunTracker(session_manager).create_run('incremental', force=True)
    first = store.capture(run.id, 'vendors', 'V1', {'vendor_id': 'V1'})
    store.capture(other_run.id, 'vendors', 'V2', {'vendor_id': 'V2'})
    store.capture(run.id, 'units', 'U1', {'unit_id': 'U1'})

    assert len(store.unprocessed('vendors')) == 2
    assert [e.id for e in store.unprocessed('vendors', sync_run_id=run.id)] == [first.id]


def test_for_sync_run_returns_every_event(store, run):
    store.capture(run.id, 'properties', 'P1', {'property_id': 'P1'})
    store.capture(run.id, 'units', None, {'name': 'no id'})

    events = store.for_sync_run(run.id)
    assert [e.resource_type for e in events] == ['properties', 'units']
    assert events[1].external_id is None
    assert store.for_sync_run(run.id, 'units')[0].payload == {'name': 'no id'}
