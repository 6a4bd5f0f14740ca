"""
SQLAlchemy ORM models with base classes and mixins.

Entity tables mirror the AppFolio report resources. Every entity is keyed
locally by a surrogate integer id and carries the provider's identifier in a
unique ``external_id`` column (``txn_id`` for bill details), which is the
natural key for upserts.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Dict, Any
from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Date, Boolean, Numeric, Text,
    ForeignKey, Index, JSON, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from .date_utils import utc_now


# Declarative base for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), 'postgresql')


class TimestampMixin:
    """Mixin for automatic timestamp tracking"""
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class BaseModel:
    """Base model with common functionality"""

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model instance to dictionary.

        Returns:
            dict: Dictionary representation of the model
        """
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            elif isinstance(value, Decimal):
                value = float(value)
            result[column.key] = value
        return result

    def __repr__(self) -> str:
        """String representation of model"""
        return f"<{self.__class__.__name__}(id={getattr(self, 'id', None)})>"


# ============================================================================
# Settings
# ============================================================================


class Setting(Base, BaseModel, TimestampMixin):
    """
    Key-value settings grouped by category.

    Holds API credentials ('appfolio' category), connection status and
    feature toggles ('features' category). Values are stored as JSON.
    """
    __tablename__ = 'settings'

    id = Column(Integer, primary_key=True)
    category = Column(String(50), nullable=False)
    key = Column(String(100), nullable=False)
    value = Column(JSONType)
    description = Column(Text)

    __table_args__ = (
        UniqueConstraint('category', 'key', name='uq_settings_category_key'),
    )


# ============================================================================
# Entity Models
# ============================================================================


class Property(Base, BaseModel, TimestampMixin):
    """Property from the property_directory report."""
    __tablename__ = 'properties'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address_line1 = Column(String(255))
    address_line2 = Column(String(255))
    city = Column(String(100))
    state = Column(String(50))
    zip = Column(String(20))
    county = Column(String(100))
    portfolio = Column(String(255))
    portfolio_id = Column(Integer)
    property_type = Column(String(50), default='residential')
    year_built = Column(Integer)
    total_sqft = Column(Integer)
    unit_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    units = relationship('Unit', back_populates='property')


class Unit(Base, BaseModel, TimestampMixin):
    """Unit from the unit_directory report. Always belongs to a property."""
    __tablename__ = 'units'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    property_id = Column(Integer, ForeignKey('properties.id'), nullable=False, index=True)
    unit_number = Column(String(100), nullable=False)
    unit_type = Column(String(100))
    sqft = Column(Integer)
    bedrooms = Column(Integer)
    bathrooms = Column(Numeric(4, 1))
    status = Column(String(20), default='vacant', nullable=False)  # occupied, vacant, not_ready
    market_rent = Column(Numeric(12, 2))
    advertised_rent = Column(Numeric(12, 2))
    is_active = Column(Boolean, default=True, nullable=False)
    rentable = Column(Boolean, default=True, nullable=False)

    property = relationship('Property', back_populates='units')


class Person(Base, BaseModel, TimestampMixin):
    """Tenant, owner or vendor contact."""
    __tablename__ = 'people'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    type = Column(String(20), default='tenant', nullable=False)  # tenant, owner, vendor
    is_active = Column(Boolean, default=True, nullable=False)


class Lease(Base, BaseModel, TimestampMixin):
    """
    Lease from the rent_roll report, keyed by occupancy id.
    Tenant PII is not stored; person_id stays empty for rent roll rows.
    """
    __tablename__ = 'leases'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    unit_id = Column(Integer, ForeignKey('units.id'), nullable=False, index=True)
    person_id = Column(Integer, ForeignKey('people.id'))
    start_date = Column(Date)
    end_date = Column(Date)
    rent = Column(Numeric(12, 2), nullable=False, default=0)
    security_deposit = Column(Numeric(12, 2))
    status = Column(String(20), default='active', nullable=False)  # active, past, future


class LedgerTransaction(Base, BaseModel, TimestampMixin):
    """Charge, payment or adjustment posted to a property ledger."""
    __tablename__ = 'ledger_transactions'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    property_id = Column(Integer, ForeignKey('properties.id'), index=True)
    unit_id = Column(Integer, ForeignKey('units.id'))
    date = Column(Date)
    type = Column(String(20), nullable=False)  # charge, payment, adjustment
    amount = Column(Numeric(12, 2), nullable=False)
    balance = Column(Numeric(12, 2))
    category = Column(String(255))
    description = Column(Text)


class Vendor(Base, BaseModel, TimestampMixin):
    """
    Vendor from the vendor_directory report.

    canonical_vendor_id points at the canonical record when this vendor has
    been marked as a duplicate. Chains are always collapsed to one level.
    """
    __tablename__ = 'vendors'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    company_name = Column(String(255), nullable=False)
    contact_name = Column(String(255))
    email = Column(String(255))
    phone = Column(String(50))
    address_street = Column(String(255))
    address_city = Column(String(100))
    address_state = Column(String(50))
    address_zip = Column(String(20))
    vendor_type = Column(String(100))
    vendor_trades = Column(String(255))
    workers_comp_expires = Column(Date)
    liability_ins_expires = Column(Date)
    auto_ins_expires = Column(Date)
    state_lic_expires = Column(Date)
    do_not_use = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # ========================================================================
    # Deduplication
    # ========================================================================
    canonical_vendor_id = Column(Integer, ForeignKey('vendors.id'), nullable=True, index=True,
                                 comment="Canonical vendor when this record is a duplicate")

    canonical_vendor = relationship('Vendor', remote_side=[id], back_populates='duplicates')
    duplicates = relationship('Vendor', back_populates='canonical_vendor')

    @property
    def is_canonical(self) -> bool:
        return self.canonical_vendor_id is None

    @property
    def effective_vendor_id(self) -> int:
        """Id to aggregate under: the canonical vendor for duplicates, self otherwise."""
        return self.canonical_vendor_id or self.id


class WorkOrder(Base, BaseModel, TimestampMixin):
    """Work order from the work_order report."""
    __tablename__ = 'work_orders'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    property_id = Column(Integer, ForeignKey('properties.id'), nullable=False, index=True)
    unit_id = Column(Integer, ForeignKey('units.id'))  # Null for building-wide work orders
    vendor_id = Column(Integer, ForeignKey('vendors.id'), index=True)
    vendor_name = Column(String(255))
    opened_at = Column(DateTime)
    closed_at = Column(DateTime)
    status = Column(String(20), default='open', nullable=False)  # open, in_progress, completed, cancelled
    priority = Column(String(20), default='normal', nullable=False)  # low, normal, high, emergency
    category = Column(String(255))
    description = Column(Text)
    amount = Column(Numeric(12, 2))
    vendor_bill_amount = Column(Numeric(12, 2))
    estimate_amount = Column(Numeric(12, 2))
    vendor_trade = Column(String(255))
    work_order_type = Column(String(100))


class BillDetail(Base, BaseModel, TimestampMixin):
    """
    Bill line from the bill_detail report. Natural key: txn_id.

    Bill details are the immutable source for derived utility expenses;
    reclassification only ever reads them.
    """
    __tablename__ = 'bill_details'

    id = Column(Integer, primary_key=True)
    txn_id = Column(BigInteger, unique=True, nullable=False, index=True)
    sync_run_id = Column(Integer, ForeignKey('sync_runs.id'), index=True)
    reference_number = Column(String(100))
    bill_date = Column(Date, index=True)
    due_date = Column(Date)
    description = Column(Text)

    # ========================================================================
    # GL Account
    # ========================================================================
    gl_account = Column(String(255))
    gl_account_name = Column(String(255))
    gl_account_number = Column(String(50), index=True)

    # ========================================================================
    # Linkage
    # ========================================================================
    property_external_id = Column(String(64))
    property_id = Column(Integer, ForeignKey('properties.id'), index=True)
    unit_external_id = Column(String(64))
    unit_id = Column(Integer, ForeignKey('units.id'))
    payee_name = Column(String(255))
    vendor_external_id = Column(String(64))

    # ========================================================================
    # Amounts
    # ========================================================================
    paid = Column(Numeric(12, 2))
    unpaid = Column(Numeric(12, 2))
    quantity = Column(Numeric(12, 4))
    rate = Column(Numeric(12, 4))
    check_number = Column(String(50))
    payment_date = Column(Date)
    service_from = Column(Date)
    service_to = Column(Date)
    work_order_id = Column(String(64))
    approval_status = Column(String(50))
    txn_created_at = Column(DateTime)
    txn_updated_at = Column(DateTime)
    pulled_at = Column(DateTime, default=utc_now)


# ============================================================================
# Utility Classification
# ============================================================================


class UtilityAccount(Base, BaseModel, TimestampMixin):
    """GL account number to utility type mapping."""
    __tablename__ = 'utility_accounts'

    id = Column(Integer, primary_key=True)
    gl_account_number = Column(String(50), unique=True, nullable=False, index=True)
    gl_account_name = Column(String(255))
    utility_type = Column(String(50), nullable=False)  # water, electric, gas, trash, sewer, ...
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(100))


class UtilityExpense(Base, BaseModel, TimestampMixin):
    """
    Utility expense derived from a bill detail and the active GL mappings.
    Rows are disposable: reclassification deletes and recreates them.
    """
    __tablename__ = 'utility_expenses'

    id = Column(Integer, primary_key=True)
    external_expense_id = Column(String(100), unique=True, nullable=False, index=True)
    bill_detail_id = Column(Integer, ForeignKey('bill_details.id'), index=True)
    property_id = Column(Integer, ForeignKey('properties.id'), nullable=False, index=True)
    utility_type = Column(String(50), nullable=False)
    gl_account_number = Column(String(50), index=True)
    expense_date = Column(Date, index=True)
    period_start = Column(Date)
    period_end = Column(Date)
    amount = Column(Numeric(12, 2), nullable=False)
    vendor_name = Column(String(255))
    description = Column(Text)

    __table_args__ = (
        Index('idx_utility_expenses_property_date', 'property_id', 'expense_date'),
    )
