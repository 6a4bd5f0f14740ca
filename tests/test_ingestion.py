"""Tests for the ingestion pipeline."""

from datetime import date

import pytest

from pmpulse.common.config import SyncConfig
from pmpulse.common.http_client import TransientApiError
from pmpulse.common.models import Lease, Property, Unit
from pmpulse.datalayer.ingestion import IngestionService
from pmpulse.datalayer.raw_event_store import RawEventStore
from pmpulse.datalayer.sync_tracker import SyncRunTracker


@pytest.fixture
def tracker(session_manager):
    return SyncRunTracker(session_manager)


@pytest.fixture
def run_sync(session_manager, tracker, fake_client_factory):
    """Run a full sync against canned pages and return (run, service, client)."""

    def run(pages, resources, mode='full', options=None, prefetch=False):
        client = fake_client_factory(pages)
        config = SyncConfig(resources=resources, prefetch_pages=prefetch)
        service = IngestionService(session_manager, client, config, tracker=tracker, show_progress=False)
        sync_run = tracker.create_run(mode, options=options)
        service.start_sync(sync_run)
        service.process_all(sync_run)
        return service.complete_sync(sync_run), service, client

    return run


def properties(ids):
    return [{'property_id': f"P{n}", 'property_name': f"Property {n}"} for n in ids]


@pytest.mark.parametrize('prefetch', [False, True])
def test_three_page_sync_with_one_malformed_record(run_sync, tracker, session_manager, prefetch):
    pages = {
        'properties': [
            properties(range(50)),
            properties(range(50)),
            properties(range(11)) + [{'property_name': 'No identifier'}],
        ]
    }

    run, _, client = run_sync(pages, ['properties'], prefetch=prefetch)

    assert run.status == 'completed'
    metrics = tracker.metadata(run).resources['properties']
    assert (metrics.created, metrics.updated, metrics.skipped, metrics.errors) == (50, 61, 1, 1)
    assert len(metrics.recent_errors) == 1
    assert run.errors_count == 1
    assert run.resources_synced == 112
    assert client.success_marked == 1
    assert client.ended == 1

    with session_manager.session_scope() as session:
        assert session.query(Property).count() == 50
    assert RawEventStore(session_manager).unprocessed('properties') == []
    assert len(RawEventStore(session_manager).for_sync_run(run.id)) == 112


def test_child_before_parent_is_deferred_and_resolved(run_sync, tracker, session_manager):
    pages = {
        'units': [[{'unit_id': 'U1', 'property_id': 'P1', 'unit_name': '1A'}]],
        'properties': [properties([1])],
    }

    run, service, _ = run_sync(pages, ['units', 'properties'])

    assert run.status == 'completed'
    assert service.deferred_count() == 0
    units = tracker.metadata(run).resources['units']
    assert (units.created, units.skipped, units.errors) == (1, 0, 0)
    with session_manager.session_scope() as session:
        unit = session.query(Unit).one()
        assert unit.property_id == session.query(Property.id).filter_by(external_id='P1').scalar()


def test_unresolvable_record_is_skipped_not_failed(run_sync, tracker, session_manager):
    pages = {
        'properties': [properties([1])],
        'units': [[
            {'unit_id': 'U1', 'property_id': 'P1'},
            {'unit_id': 'U2', 'property_id': 'P404'},
        ]],
    }

    run, _, _ = run_sync(pages, ['properties', 'units'])

    assert run.status == 'completed'
    units = tracker.metadata(run).resources['units']
    assert (units.created, units.skipped, units.errors) == (1, 1, 0)
    assert RawEventStore(session_manager).unprocessed('units') == []


def test_record_errors_do_not_abort_resource(run_sync, tracker):
    pages = {
        'properties': [properties([1, 2])],
        'units': [[
            {'unit_id': 'U1', 'property_id': 'P1'},
            'garbage',
            {'unit_id': 'U2', 'property_id': 'P2'},
        ]],
    }

    run, _, _ = run_sync(pages, ['properties', 'units'])

    units = tracker.metadata(run).resources['units']
    assert (units.created, units.skipped, units.errors) == (2, 1, 1)
    assert 'not an object' in units.recent_errors[0].message


def test_fetch_failure_propagates_and_keeps_metrics(session_manager, tracker, fake_client_factory):
    client = fake_client_factory({'properties': [properties([1]), TransientApiError('HTTP 503 after 5 retries')]})
    service = IngestionService(session_manager, client, SyncConfig(resources=['properties'], prefetch_pages=False),
                               tracker=tracker, show_progress=False)
    run = tracker.create_run('full')
    service.start_sync(run)

    with pytest.raises(TransientApiError):
        service.process_all(run)

    assert tracker.metadata(run).resources['properties'].created == 1
    failed = service.fail_sync(run, 'AppFolio API unavailable')
    assert failed.status == 'failed'
    assert client.errors_marked == ['AppFolio API unavailable']


def test_query_params(session_manager, tracker, fake_client_factory):
    service = IngestionService(session_manager, fake_client_factory(),
                               SyncConfig(incremental_days=7, full_sync_lookback_days=365), tracker=tracker)
    today = date(2026, 3, 10)

    incremental = tracker.create_run('incremental')
    assert service.query_params(incremental, 'properties', today) == {'modified_since': '2026-03-03'}
    assert service.query_params(incremental, 'bill_details', today) == {
        'from_date': '2026-03-03', 'to_date': '2026-03-10',
    }

    full = tracker.create_run('full', options={'from_date': '2025-01-01', 'to_date': '2025-12-31'})
    assert service.query_params(full, 'properties', today) == {}
    assert service.query_params(full, 'work_orders', today) == {
        'from_date': '2025-01-01', 'to_date': '2025-12-31',
    }


def test_unit_status_follows_leases(run_sync, session_manager):
    pages = {
        'properties': [properties([1])],
        'units': [[
            {'unit_id': 'U1', 'property_id': 'P1', 'unit_status': 'Vacant'},
            {'unit_id': 'U2', 'property_id': 'P1', 'unit_status': 'Occupied'},
            {'unit_id': 'U3', 'property_id': 'P1', 'unit_status': 'Not Ready'},
        ]],
        'rent_roll': [[
            {'occupancy_id': 'O1', 'unit_id': 'U1', 'lease_from': '2020-01-01', 'rent': '900'},
            {'occupancy_id': 'O3', 'unit_id': 'U3', 'lease_from': '2020-01-01', 'rent': '900'},
        ]],
    }

    _, service, _ = run_sync(pages, ['properties', 'units', 'rent_roll'])

    with session_manager.session_scope() as session:
        statuses = {u.external_id: u.status for u in session.query(Unit).all()}
        assert session.query(Lease).count() == 2
    assert statuses == {'U1': 'occupied', 'U2': 'vacant', 'U3': 'not_ready'}
    assert service.update_unit_status_from_leases() == 0


def test_lease_without_start_date_occupies_unit(run_sync, session_manager):
    pages = {
        'properties': [properties([1])],
        'units': [[{'unit_id': 'U1', 'property_id': 'P1', 'unit_status': 'Vacant'}]],
        'rent_roll': [[{'occupancy_id': 'O1', 'unit_id': 'U1', 'rent': '900'}]],
    }

    run_sync(pages, ['properties', 'units', 'rent_roll'])

    with session_manager.session_scope() as session:
        assert session.query(Lease).one().start_date is None
        assert session.query(Unit).one().status == 'occupied'


def test_ended_lease_frees_unit(run_sync, session_manager):
    pages = {
        'properties': [properties([1])],
        'units': [[{'unit_id': 'U1', 'property_id': 'P1', 'unit_status': 'Occupied'}]],
        'rent_roll': [[{'occupancy_id': 'O1', 'unit_id': 'U1', 'lease_from': '2020-01-01',
                        'lease_to': '2021-01-01', 'rent': '900'}]],
    }

    run_sync(pages, ['properties', 'units', 'rent_roll'])

    with session_manager.session_scope() as session:
        assert session.query(Unit).one().status == 'vacant'
