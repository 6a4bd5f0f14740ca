"""
Normalization of raw AppFolio payloads into typed entities.

Each resource type has a mapper that turns a provider record into the
column values of its entity, followed by an upsert keyed on the natural
key. Parent references are resolved to local surrogate ids before the
child is written; an unknown required parent raises UnresolvedReferenceError
so the caller can defer the record and retry it later in the run.

Mapped values come only from the payload; a date the payload lacks is
stored as NULL.
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Type

from sqlalchemy.orm import Session

from pmpulse.common.data_utils import (
    coalesce,
    convert_to_bool,
    convert_to_date,
    convert_to_datetime,
    convert_to_decimal,
    convert_to_int,
    extract_gl_account_number,
    parse_amount,
)
from pmpulse.common.models import (
    BillDetail, Lease, LedgerTransaction, Person, Property, Unit, Vendor, WorkOrder
)
from pmpulse.common.session import SessionManager
from pmpulse.common.upsert_strategies import (
    UpsertFactory, UpsertOutcome, UpsertResult, UpsertStrategy
)
from pmpulse.scheduler.models import RawEvent


logger = logging.getLogger(__name__)


# Provider field(s) holding the external id, per resource type
EXTERNAL_ID_FIELDS = {
    'properties': ('property_id', 'id'),
    'units': ('unit_id', 'id'),
    'vendors': ('vendor_id', 'id'),
    'people': ('id', 'person_id'),
    'leases': ('id', 'lease_id'),
    'rent_roll': ('occupancy_id',),
    'ledger_transactions': ('id', 'transaction_id'),
    'work_orders': ('work_order_id', 'id'),
    'bill_details': ('txn_id',),
    'delinquency': ('unit_id',),
}


class MalformedRecordError(ValueError):
    """A record is missing its identifier or holds an unparsable required value."""
    pass


class UnresolvedReferenceError(LookupError):
    """A required parent entity has not been synced (yet)."""

    def __init__(self, resource_type: str, parent_type: str, parent_external_id: Optional[str]):
        super().__init__(
            f"{resource_type} references {parent_type} '{parent_external_id}' which does not exist yet"
        )
        self.resource_type = resource_type
        self.parent_type = parent_type
        self.parent_external_id = parent_external_id


# ============================================================================
# Status mappings
# ============================================================================

UNIT_STATUS = {
    'occupied': 'occupied', 'rented': 'occupied', 'leased': 'occupied',
    'vacant': 'vacant', 'available': 'vacant', 'empty': 'vacant',
    'not ready': 'not_ready', 'not_ready': 'not_ready', 'maintenance': 'not_ready',
}
RENT_ROLL_STATUS = {
    'current': 'active', 'notice': 'active',
    'past': 'past', 'evict': 'past',
    'future': 'future',
}
LEASE_STATUS = {
    'active': 'active', 'current': 'active', 'in_progress': 'active',
    'past': 'past', 'expired': 'past', 'ended': 'past', 'terminated': 'past',
    'future': 'future', 'pending': 'future', 'upcoming': 'future',
}
PERSON_TYPE = {
    'tenant': 'tenant', 'resident': 'tenant', 'renter': 'tenant',
    'owner': 'owner', 'landlord': 'owner', 'property_owner': 'owner',
    'vendor': 'vendor', 'contractor': 'vendor', 'service_provider': 'vendor',
}
TRANSACTION_TYPE = {
    'charge': 'charge', 'debit': 'charge', 'invoice': 'charge',
    'payment': 'payment', 'credit': 'payment', 'receipt': 'payment',
    'adjustment': 'adjustment', 'correction': 'adjustment',
}
WORK_ORDER_STATUS = {
    'open': 'open', 'new': 'open', 'pending': 'open', 'submitted': 'open',
    'in_progress': 'in_progress', 'assigned': 'in_progress', 'working': 'in_progress',
    'scheduled': 'in_progress',
    'completed': 'completed', 'done': 'completed', 'closed': 'completed', 'resolved': 'completed',
    'cancelled': 'cancelled', 'canceled': 'cancelled', 'rejected': 'cancelled',
}
WORK_ORDER_PRIORITY = {
    'low': 'low', 'minor': 'low',
    'normal': 'normal', 'medium': 'normal', 'standard': 'normal',
    'high': 'high', 'urgent': 'high', 'important': 'high',
    'emergency': 'emergency', 'critical': 'emergency', 'immediate': 'emergency',
}


def _map(mapping: Dict[str, str], value: Any, default: str) -> str:
    if value is None:
        return default
    return mapping.get(str(value).strip().lower(), default)


def _required_date(item: Dict[str, Any], *keys: str) -> Optional[date]:
    """Date from the first present key; present but unparsable is malformed."""
    raw = coalesce(item, *keys)
    if raw is None or raw == '':
        return None
    parsed = convert_to_date(raw)
    if parsed is None:
        raise MalformedRecordError(f"Unparsable date in {'/'.join(keys)}: {raw!r}")
    return parsed


def _required_amount(item: Dict[str, Any], *keys: str) -> Optional[Decimal]:
    """Amount from the first present key; present but unparsable is malformed."""
    raw = coalesce(item, *keys)
    if raw is None or raw == '':
        return None
    parsed = parse_amount(raw)
    if parsed is None:
        raise MalformedRecordError(f"Unparsable amount in {'/'.join(keys)}: {raw!r}")
    return parsed


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


def _account_label(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = coalesce(value, 'name', 'number')
    return _str_or_none(value)


def _nested_id(item: Dict[str, Any], key: str, nested: str) -> Optional[str]:
    value = item.get(key)
    if value is None and isinstance(item.get(nested), dict):
        value = item[nested].get('id')
    return _str_or_none(value)


def external_id_for(resource_type: str, item: Dict[str, Any]) -> Optional[str]:
    """
    Extract the provider identifier of a record.

    Args:
        resource_type: Resource type
        item: Raw record

    Returns:
        External id as string, or None when absent
    """
    fields = EXTERNAL_ID_FIELDS.get(resource_type, ('id',))
    return _str_or_none(coalesce(item, *fields))


class NormalizationUpsertEngine:
    """
    Maps raw records to entities and upserts them by natural key.

    Per-run caches map external ids to surrogate ids for parents
    (properties, units, people, vendors) to avoid a lookup per child.
    """

    PARENT_MODELS = {
        'properties': Property,
        'units': Unit,
        'people': Person,
        'vendors': Vendor,
    }

    def __init__(
        self,
        session_manager: SessionManager,
        strategy: Optional[UpsertStrategy] = None,
        sync_run_id: Optional[int] = None
    ):
        """
        Initialize engine.

        Args:
            session_manager: Session manager for database access
            strategy: Upsert strategy (default: chosen from the engine dialect)
            sync_run_id: Run stamped onto bill details
        """
        self.session_manager = session_manager
        self.strategy = strategy or UpsertFactory.for_dialect(session_manager.dialect_name)
        self.sync_run_id = sync_run_id
        self._cache: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._mappers: Dict[str, Callable[[Session, Dict[str, Any]], UpsertOutcome]] = {
            'properties': self._upsert_property,
            'units': self._upsert_unit,
            'vendors': self._upsert_vendor,
            'people': self._upsert_person,
            'leases': self._upsert_lease,
            'rent_roll': self._upsert_rent_roll,
            'ledger_transactions': self._upsert_ledger_transaction,
            'work_orders': self._upsert_work_order,
            'bill_details': self._upsert_bill_detail,
        }

    def supports(self, resource_type: str) -> bool:
        return resource_type in self._mappers

    def reset_caches(self) -> None:
        """Drop cached parent ids (after a rollback they may be stale)."""
        self._cache.clear()

    # ========================================================================
    # Entry points
    # ========================================================================

    def normalize(self, event: RawEvent, session: Optional[Session] = None) -> UpsertResult:
        """
        Normalize one raw event into its entity.

        Args:
            event: Captured raw event
            session: Open session to write in (default: a new transactional scope)

        Returns:
            UpsertResult: CREATED, UPDATED, or SKIPPED for types with no entity

        Raises:
            MalformedRecordError: Missing identifier or unparsable required value
            UnresolvedReferenceError: Required parent not present yet
        """
        if session is not None:
            return self.normalize_item(session, event.resource_type, event.payload).result
        with self.session_manager.session_scope() as own_session:
            return self.normalize_item(own_session, event.resource_type, event.payload).result

    def normalize_item(self, session: Session, resource_type: str, item: Dict[str, Any]) -> UpsertOutcome:
        """Normalize a raw record dict without a RawEvent wrapper."""
        if not isinstance(item, dict):
            raise MalformedRecordError(f"{resource_type} payload is not an object: {type(item).__name__}")

        mapper = self._mappers.get(resource_type)
        if mapper is None:
            logger.debug(f"No entity mapping for {resource_type}; raw event kept only")
            return UpsertOutcome.skipped()

        if external_id_for(resource_type, item) is None:
            fields = '/'.join(EXTERNAL_ID_FIELDS.get(resource_type, ('id',)))
            raise MalformedRecordError(f"Missing external id ({fields}) for {resource_type} record")

        return mapper(session, item)

    # ========================================================================
    # Reference resolution
    # ========================================================================

    def lookup_id(self, session: Session, parent_type: str, external_id: Optional[str]) -> Optional[int]:
        """Resolve a parent's surrogate id from its external id (cached)."""
        if not external_id:
            return None
        cache = self._cache[parent_type]
        if external_id in cache:
            return cache[external_id]

        model = self.PARENT_MODELS[parent_type]
        row = session.query(model.id).filter(model.external_id == external_id).first()
        if row is None:
            return None
        cache[external_id] = row.id
        return row.id

    def _require(self, session: Session, resource_type: str, parent_type: str,
                 external_id: Optional[str]) -> int:
        parent_id = self.lookup_id(session, parent_type, external_id)
        if parent_id is None:
            raise UnresolvedReferenceError(resource_type, parent_type, external_id)
        return parent_id

    def _upsert(self, session: Session, model: Type, values: Dict[str, Any],
                key: str = 'external_id', cache_as: Optional[str] = None) -> UpsertOutcome:
        outcome = self.strategy.upsert(session, model, values, [key])
        if cache_as and outcome.id is not None:
            self._cache[cache_as][values[key]] = outcome.id
        return outcome

    # ========================================================================
    # Mappers
    # ========================================================================

    def _upsert_property(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        values = {
            'external_id': external_id_for('properties', item),
            # property_name is often null; fall back to the address
            'name': str(coalesce(item, 'property_name', 'property_address', 'property',
                                 'property_street', 'name', default='Unknown Property')),
            'address_line1': coalesce(item, 'property_street', 'address'),
            'address_line2': coalesce(item, 'property_street2', 'address2'),
            'city': coalesce(item, 'property_city', 'city'),
            'state': coalesce(item, 'property_state', 'state'),
            'zip': _str_or_none(coalesce(item, 'property_zip', 'zip')),
            'county': coalesce(item, 'property_county', 'county'),
            'portfolio': coalesce(item, 'portfolio'),
            'portfolio_id': convert_to_int(item.get('portfolio_id')),
            'property_type': coalesce(item, 'property_type', 'type', default='residential'),
            'year_built': convert_to_int(item.get('year_built')),
            'total_sqft': convert_to_int(item.get('sqft')),
            'unit_count': convert_to_int(coalesce(item, 'units', 'number_of_units', 'unit_count')) or 0,
            'is_active': coalesce(item, 'visibility', default='Active') == 'Active',
        }
        return self._upsert(session, Property, values, cache_as='properties')

    def _upsert_unit(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        property_id = self._require(session, 'units', 'properties', _nested_id(item, 'property_id', 'property'))
        values = {
            'external_id': external_id_for('units', item),
            'property_id': property_id,
            'unit_number': str(coalesce(item, 'unit_name', 'unit_number', 'name', default='Unknown')),
            'unit_type': coalesce(item, 'unit_type', 'billed_as'),
            'sqft': convert_to_int(item.get('sqft')),
            'bedrooms': convert_to_int(item.get('bedrooms')),
            'bathrooms': convert_to_decimal(item.get('bathrooms')),
            'status': _map(UNIT_STATUS, coalesce(item, 'unit_status', 'status'), 'vacant'),
            'market_rent': parse_amount(item.get('market_rent')),
            'advertised_rent': parse_amount(item.get('advertised_rent')),
            'is_active': coalesce(item, 'visibility', default='Active') == 'Active',
            'rentable': convert_to_bool(item.get('rentable'), default=True),
        }
        return self._upsert(session, Unit, values, cache_as='units')

    def _upsert_vendor(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        values = {
            'external_id': external_id_for('vendors', item),
            'company_name': str(coalesce(item, 'company_name', 'name', default='Unknown Vendor')),
            'contact_name': coalesce(item, 'name', 'contact_name'),
            'email': coalesce(item, 'email', 'primary_email'),
            'phone': _str_or_none(coalesce(item, 'phone', 'primary_phone')),
            'address_street': coalesce(item, 'address', 'street'),
            'address_city': item.get('city'),
            'address_state': item.get('state'),
            'address_zip': _str_or_none(coalesce(item, 'zip', 'postal_code')),
            'vendor_type': item.get('vendor_type'),
            'vendor_trades': item.get('vendor_trades'),
            'workers_comp_expires': convert_to_date(item.get('workers_comp_expires')),
            'liability_ins_expires': convert_to_date(item.get('liability_ins_expires')),
            'auto_ins_expires': convert_to_date(item.get('auto_ins_expires')),
            'state_lic_expires': convert_to_date(item.get('state_lic_expires')),
            'do_not_use': convert_to_bool(coalesce(item, 'do_not_use_for_work_order', 'do_not_use')),
            'is_active': coalesce(item, 'visibility', default='Active') == 'Active',
        }
        return self._upsert(session, Vendor, values, cache_as='vendors')

    def _upsert_person(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        name = coalesce(item, 'name')
        if not name:
            name = f"{item.get('first_name') or ''} {item.get('last_name') or ''}".strip() or 'Unknown'
        values = {
            'external_id': external_id_for('people', item),
            'name': name,
            'email': coalesce(item, 'email', 'primary_email'),
            'phone': _str_or_none(coalesce(item, 'phone', 'primary_phone', 'mobile')),
            'type': _map(PERSON_TYPE, coalesce(item, 'type', 'person_type'), 'tenant'),
            'is_active': convert_to_bool(coalesce(item, 'active', 'is_active'), default=True),
        }
        return self._upsert(session, Person, values, cache_as='people')

    def _upsert_lease(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        unit_id = self._require(session, 'leases', 'units', _nested_id(item, 'unit_id', 'unit'))
        person_id = self.lookup_id(
            session, 'people', _str_or_none(coalesce(item, 'tenant_id', 'person_id', 'resident_id'))
        )
        values = {
            'external_id': external_id_for('leases', item),
            'unit_id': unit_id,
            'person_id': person_id,
            'start_date': _required_date(item, 'start_date', 'lease_start', 'move_in_date'),
            'end_date': _required_date(item, 'end_date', 'lease_end', 'move_out_date'),
            'rent': _required_amount(item, 'rent', 'monthly_rent', 'rent_amount') or Decimal('0'),
            'security_deposit': parse_amount(coalesce(item, 'security_deposit', 'deposit')),
            'status': _map(LEASE_STATUS, coalesce(item, 'status', 'lease_status'), 'active'),
        }
        return self._upsert(session, Lease, values)

    def _upsert_rent_roll(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        """Rent roll rows become leases keyed by occupancy id; tenant PII is not stored."""
        unit_id = self._require(session, 'rent_roll', 'units', _str_or_none(item.get('unit_id')))
        values = {
            'external_id': external_id_for('rent_roll', item),
            'unit_id': unit_id,
            'person_id': None,
            'start_date': _required_date(item, 'lease_from', 'move_in'),
            'end_date': _required_date(item, 'lease_to'),
            'rent': _required_amount(item, 'rent') or Decimal('0'),
            'security_deposit': parse_amount(item.get('deposit')),
            'status': _map(RENT_ROLL_STATUS, item.get('status'), 'active'),
        }
        return self._upsert(session, Lease, values)

    def _upsert_ledger_transaction(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        amount = _required_amount(item, 'amount', 'transaction_amount')
        if amount is None:
            raise MalformedRecordError("Ledger transaction has no amount")
        values = {
            'external_id': external_id_for('ledger_transactions', item),
            'property_id': self.lookup_id(session, 'properties', _nested_id(item, 'property_id', 'property')),
            'unit_id': self.lookup_id(session, 'units', _nested_id(item, 'unit_id', 'unit')),
            'date': _required_date(item, 'date', 'transaction_date', 'posted_date'),
            'type': _map(TRANSACTION_TYPE, coalesce(item, 'type', 'transaction_type'), 'charge'),
            'amount': abs(amount),
            'balance': parse_amount(coalesce(item, 'balance', 'running_balance')),
            'category': coalesce(item, 'category', 'charge_type', 'gl_account'),
            'description': coalesce(item, 'description', 'memo', 'notes'),
        }
        return self._upsert(session, LedgerTransaction, values)

    def _upsert_work_order(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        property_id = self._require(session, 'work_orders', 'properties', _str_or_none(item.get('property_id')))

        # unit_id is empty for building-wide work orders
        unit_external_id = _str_or_none(item.get('unit_id'))
        unit_id = self._require(session, 'work_orders', 'units', unit_external_id) if unit_external_id else None

        # A vendor missing locally does not block the work order; the name is kept
        vendor_id = self.lookup_id(session, 'vendors', _str_or_none(item.get('vendor_id')))

        values = {
            'external_id': external_id_for('work_orders', item),
            'property_id': property_id,
            'unit_id': unit_id,
            'vendor_id': vendor_id,
            'vendor_name': coalesce(item, 'vendor_name', 'vendor'),
            'opened_at': convert_to_datetime(item.get('created_at')),
            'closed_at': convert_to_datetime(coalesce(item, 'completed_on', 'work_completed_on')),
            'status': _map(WORK_ORDER_STATUS, item.get('status'), 'open'),
            'priority': _map(WORK_ORDER_PRIORITY, item.get('priority'), 'normal'),
            'category': coalesce(item, 'work_order_type', 'work_order_issue'),
            'description': coalesce(item, 'job_description', 'service_request_description', 'instructions'),
            'amount': parse_amount(item.get('amount')),
            'vendor_bill_amount': parse_amount(item.get('vendor_bill_amount')),
            'estimate_amount': parse_amount(coalesce(item, 'estimate_amount', 'estimate')),
            'vendor_trade': item.get('vendor_trade'),
            'work_order_type': item.get('work_order_type'),
        }
        return self._upsert(session, WorkOrder, values)

    def _upsert_bill_detail(self, session: Session, item: Dict[str, Any]) -> UpsertOutcome:
        txn_id = convert_to_int(item.get('txn_id'))
        if txn_id is None:
            raise MalformedRecordError(f"Unparsable txn_id: {item.get('txn_id')!r}")

        property_external_id = _str_or_none(item.get('property_id'))
        unit_external_id = _str_or_none(item.get('unit_id'))
        values = {
            'txn_id': txn_id,
            'sync_run_id': self.sync_run_id,
            'reference_number': _str_or_none(item.get('reference_number')),
            'bill_date': _required_date(item, 'bill_date'),
            'due_date': convert_to_date(item.get('due_date')),
            'description': item.get('description'),
            'gl_account': _account_label(item.get('account')),
            'gl_account_name': item.get('account_name'),
            'gl_account_number': extract_gl_account_number(item),
            'property_external_id': property_external_id,
            'property_id': self.lookup_id(session, 'properties', property_external_id),
            'unit_external_id': unit_external_id,
            'unit_id': self.lookup_id(session, 'units', unit_external_id),
            'payee_name': item.get('payee_name'),
            'vendor_external_id': _str_or_none(item.get('vendor_id')),
            'paid': parse_amount(item.get('paid')),
            'unpaid': parse_amount(item.get('unpaid')),
            'quantity': parse_amount(item.get('quantity')),
            'rate': parse_amount(item.get('rate')),
            'check_number': _str_or_none(item.get('check_number')),
            'payment_date': convert_to_date(item.get('payment_date')),
            'service_from': convert_to_date(item.get('service_from')),
            'service_to': convert_to_date(item.get('service_to')),
            'work_order_id': _str_or_none(item.get('work_order_id')),
            'approval_status': item.get('approval_status'),
            'txn_created_at': convert_to_datetime(item.get('txn_created_at')),
            'txn_updated_at': convert_to_datetime(item.get('txn_updated_at')),
        }
        return self._upsert(session, BillDetail, values, key='txn_id')
