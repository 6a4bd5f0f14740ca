"""Tests for record normalization and upserts."""

from datetime import date
from decimal import Decimal

import pytest

from pmpulse.common.models import BillDetail, Lease, LedgerTransaction, Property, Unit, WorkOrder
from pmpulse.common.upsert_strategies import UpsertResult
from pmpulse.datalayer.normalizer import (
    MalformedRecordError,
    NormalizationUpsertEngine,
    UnresolvedReferenceError,
    external_id_for,
)


@pytest.fixture
def normalizer(session_manager):
    return NormalizationUpsertEngine(session_manager)


def normalize(session_manager, normalizer, resource_type, item):
    with session_manager.session_scope() as session:
        return normalizer.normalize_item(session, resource_type, item).result


def seed_property(session_manager, normalizer, property_id='P1'):
    return normalize(session_manager, normalizer, 'properties', {
        'property_id': property_id, 'property_name': f"Property {property_id}",
    })


def test_external_id_fields():
    assert external_id_for('properties', {'property_id': 12}) == '12'
    assert external_id_for('rent_roll', {'occupancy_id': 'OCC-1', 'id': 'x'}) == 'OCC-1'
    assert external_id_for('bill_details', {'id': 5}) is None


def test_property_upsert_is_idempotent(session_manager, normalizer):
    item = {'property_id': 'P1', 'property_name': None, 'property_address': '12 Elm St', 'units': '4'}

    assert normalize(session_manager, normalizer, 'properties', item) is UpsertResult.CREATED
    assert normalize(session_manager, normalizer, 'properties', item) is UpsertResult.UPDATED

    with session_manager.session_scope() as session:
        properties = session.query(Property).all()
        assert len(properties) == 1
        assert properties[0].name == '12 Elm St'
        assert properties[0].unit_count == 4


def test_missing_external_id_is_malformed(session_manager, normalizer):
    with pytest.raises(MalformedRecordError):
        normalize(session_manager, normalizer, 'properties', {'property_name': 'No id'})


def test_non_object_payload_is_malformed(session_manager, normalizer):
    with pytest.raises(MalformedRecordError):
        normalize(session_manager, normalizer, 'units', ['not', 'a', 'record'])


def test_unmapped_resource_type_is_skipped(session_manager, normalizer):
    assert normalize(session_manager, normalizer, 'delinquency', {'unit_id': 'U1'}) is UpsertResult.SKIPPED


def test_unit_requires_property(session_manager, normalizer):
    with pytest.raises(UnresolvedReferenceError) as exc:
        normalize(session_manager, normalizer, 'units', {'unit_id': 'U1', 'property_id': 'P404'})
    assert exc.value.parent_type == 'properties'
    assert exc.value.parent_external_id == 'P404'


def test_unit_status_mapping(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    normalize(session_manager, normalizer, 'units', {
        'unit_id': 'U1', 'property_id': 'P1', 'unit_name': '1A', 'unit_status': 'Not Ready',
        'market_rent': '$1,250.00',
    })

    with session_manager.session_scope() as session:
        unit = session.query(Unit).one()
        assert unit.status == 'not_ready'
        assert unit.market_rent == Decimal('1250.00')


def test_rent_roll_becomes_lease(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    normalize(session_manager, normalizer, 'units', {'unit_id': 'U1', 'property_id': 'P1'})
    normalize(session_manager, normalizer, 'rent_roll', {
        'occupancy_id': 'OCC-9', 'unit_id': 'U1', 'status': 'Current',
        'lease_from': '2025-06-01', 'lease_to': '2026-05-31', 'rent': '1,400.00',
    })

    with session_manager.session_scope() as session:
        lease = session.query(Lease).one()
        assert lease.external_id == 'OCC-9'
        assert lease.status == 'active'
        assert lease.start_date == date(2025, 6, 1)
        assert lease.rent == Decimal('1400.00')


def test_unparsable_required_amount_is_malformed(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    normalize(session_manager, normalizer, 'units', {'unit_id': 'U1', 'property_id': 'P1'})

    with pytest.raises(MalformedRecordError):
        normalize(session_manager, normalizer, 'rent_roll', {
            'occupancy_id': 'OCC-1', 'unit_id': 'U1', 'rent': 'call office',
        })


def test_work_order_vendor_reference_is_soft(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    normalize(session_manager, normalizer, 'work_orders', {
        'work_order_id': 'WO-1', 'property_id': 'P1', 'vendor_id': 'V404', 'vendor': 'Ace Plumbing',
        'status': 'Assigned', 'priority': 'Urgent',
    })

    with session_manager.session_scope() as session:
        work_order = session.query(WorkOrder).one()
        assert work_order.vendor_id is None
        assert work_order.vendor_name == 'Ace Plumbing'
        assert work_order.status == 'in_progress'
        assert work_order.priority == 'high'


def test_work_order_with_unknown_unit_is_deferred(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    with pytest.raises(UnresolvedReferenceError):
        normalize(session_manager, normalizer, 'work_orders', {
            'work_order_id': 'WO-2', 'property_id': 'P1', 'unit_id': 'U404',
        })


def test_bill_detail_keyed_on_txn_id(session_manager, normalizer):
    normalizer.sync_run_id = None
    item = {
        'txn_id': '9001', 'bill_date': '2026-02-03', 'account': '6210 - Water',
        'property_id': 'P-missing', 'paid': '100.00', 'unpaid': '25.50',
    }

    assert normalize(session_manager, normalizer, 'bill_details', item) is UpsertResult.CREATED
    assert normalize(session_manager, normalizer, 'bill_details', {**item, 'paid': '110.00'}) is UpsertResult.UPDATED

    with session_manager.session_scope() as session:
        bill = session.query(BillDetail).one()
        assert bill.txn_id == 9001
        assert bill.gl_account_number == '6210'
        assert bill.property_id is None
        assert bill.property_external_id == 'P-missing'
        assert bill.paid == Decimal('110.00')


def test_bill_detail_with_bad_txn_id_is_malformed(session_manager, normalizer):
    with pytest.raises(MalformedRecordError):
        normalize(session_manager, normalizer, 'bill_details', {'txn_id': 'abc'})


# ============================================================================
# Replay
# ============================================================================

REPLAY_CASES = [
    ('work_orders', WorkOrder, {
        'work_order_id': 'WO-7', 'property_id': 'P1', 'unit_id': 'U1', 'status': 'New',
        'job_description': 'Leaking faucet', 'amount': '85.00',
    }),
    ('leases', Lease, {
        'id': 'L-7', 'unit_id': 'U1', 'rent': '1,100.00', 'status': 'Current',
    }),
    ('rent_roll', Lease, {
        'occupancy_id': 'OCC-7', 'unit_id': 'U1', 'rent': '950.00', 'lease_to': '2026-12-31',
    }),
    ('ledger_transactions', LedgerTransaction, {
        'id': 'T-7', 'property_id': 'P1', 'unit_id': 'U1', 'type': 'Charge', 'amount': '-42.10',
    }),
    ('bill_details', BillDetail, {
        'txn_id': '7007', 'account': '6210 - Water', 'property_id': 'P1', 'paid': '12.00',
    }),
]


def mapped_rows(session_manager, model):
    skipped = {'created_at', 'updated_at'}
    with session_manager.session_scope() as session:
        return [
            {c.name: getattr(row, c.name) for c in model.__table__.columns if c.name not in skipped}
            for row in session.query(model).order_by(model.id)
        ]


@pytest.mark.parametrize('resource_type, model, item', REPLAY_CASES, ids=[c[0] for c in REPLAY_CASES])
def test_replaying_a_payload_leaves_columns_unchanged(session_manager, normalizer, resource_type, model, item):
    seed_property(session_manager, normalizer)
    normalize(session_manager, normalizer, 'units', {'unit_id': 'U1', 'property_id': 'P1'})

    assert normalize(session_manager, normalizer, resource_type, item) is UpsertResult.CREATED
    first = mapped_rows(session_manager, model)
    assert normalize(session_manager, normalizer, resource_type, item) is UpsertResult.UPDATED
    second = mapped_rows(session_manager, model)

    assert len(first) == 1
    assert second == first


def test_missing_dates_are_stored_as_null(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    normalize(session_manager, normalizer, 'units', {'unit_id': 'U1', 'property_id': 'P1'})
    for resource_type, _, item in REPLAY_CASES:
        normalize(session_manager, normalizer, resource_type, item)

    with session_manager.session_scope() as session:
        assert session.query(WorkOrder).one().opened_at is None
        assert {lease.start_date for lease in session.query(Lease)} == {None}
        assert session.query(LedgerTransaction).one().date is None
        bill = session.query(BillDetail).one()
        assert bill.bill_date is None
        assert bill.pulled_at is not None


def test_pulled_at_is_set_on_insert_only(session_manager, normalizer):
    item = {'txn_id': '8008', 'paid': '10.00'}
    normalize(session_manager, normalizer, 'bill_details', item)
    with session_manager.session_scope() as session:
        pulled_at = session.query(BillDetail).one().pulled_at

    normalize(session_manager, normalizer, 'bill_details', {**item, 'paid': '20.00'})

    with session_manager.session_scope() as session:
        bill = session.query(BillDetail).one()
        assert bill.paid == Decimal('20.00')
        assert bill.pulled_at == pulled_at


def test_parent_cache_reset(session_manager, normalizer):
    seed_property(session_manager, normalizer)
    with session_manager.session_scope() as session:
        assert normalizer.lookup_id(session, 'properties', 'P1') is not None
    normalizer.reset_caches()
    with session_manager.session_scope() as session:
        assert normalizer.lookup_id(session, 'properties', 'P2') is None
