"""
Utility expense classification.

UtilityExpense rows are derived data: each one is computed from a
BillDetail and the active GL account -> utility type mapping. They can
therefore be deleted and recomputed at any time, and BillDetail rows are
never modified here.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pmpulse.common.data_utils import extract_gl_account_number
from pmpulse.common.date_utils import utc_now
from pmpulse.common.models import BillDetail, Property, UtilityAccount, UtilityExpense
from pmpulse.common.session import SessionManager
from pmpulse.common.upsert_strategies import (
    UpsertFactory, UpsertResult, UpsertStrategy, delete_records_in_range
)


logger = logging.getLogger(__name__)


@dataclass
class ReprocessStats:
    """Counters for one classification pass."""
    deleted: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    unmatched: int = 0
    errors: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, result: UpsertResult) -> None:
        if result == UpsertResult.CREATED:
            self.created += 1
        elif result == UpsertResult.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def bill_gl_account(bill: BillDetail) -> Optional[str]:
    """GL account number of a stored bill, falling back to its account label."""
    if bill.gl_account_number:
        return bill.gl_account_number
    return extract_gl_account_number({'gl_account': bill.gl_account})


def bill_amount(bill: BillDetail) -> Decimal:
    """Total bill amount: abs(paid + unpaid)."""
    return abs((bill.paid or Decimal('0')) + (bill.unpaid or Decimal('0')))


class ReclassificationEngine:
    """
    Computes UtilityExpense rows from BillDetail rows.

    Usage:
        engine = ReclassificationEngine(session_manager)
        stats = engine.reprocess_all(date(2026, 1, 1), date(2026, 3, 31))
    """

    def __init__(self, session_manager: SessionManager, strategy: Optional[UpsertStrategy] = None):
        self.session_manager = session_manager
        self.strategy = strategy or UpsertFactory.for_dialect(session_manager.dialect_name)

    # ========================================================================
    # Mappings
    # ========================================================================

    @staticmethod
    def active_mappings(session: Session) -> Dict[str, str]:
        """GL account number -> utility type, active accounts only."""
        rows = (
            session.query(UtilityAccount.gl_account_number, UtilityAccount.utility_type)
            .filter(UtilityAccount.is_active.is_(True))
            .all()
        )
        return {row.gl_account_number: row.utility_type for row in rows}

    def update_mapping(
        self,
        gl_account_number: str,
        utility_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        gl_account_name: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> ReprocessStats:
        """
        Create or change a GL account mapping and recompute that account's expenses.

        Args:
            gl_account_number: GL account to map
            utility_type: New utility type (required when creating a mapping)
            is_active: Activate or deactivate the mapping
            gl_account_name: Optional display name
            created_by: User creating the mapping

        Returns:
            ReprocessStats for the recomputation

        Raises:
            ValueError: When creating a mapping without a utility type
        """
        with self.session_manager.session_scope() as session:
            account = session.query(UtilityAccount).filter_by(gl_account_number=gl_account_number).first()
            if account is None:
                if not utility_type:
                    raise ValueError(f"utility_type is required to create a mapping for GL {gl_account_number}")
                account = UtilityAccount(
                    gl_account_number=gl_account_number,
                    utility_type=utility_type,
                    is_active=True if is_active is None else is_active,
                    gl_account_name=gl_account_name,
                    created_by=created_by,
                )
                session.add(account)
            else:
                if utility_type is not None:
                    account.utility_type = utility_type
                if is_active is not None:
                    account.is_active = is_active
                if gl_account_name is not None:
                    account.gl_account_name = gl_account_name

        logger.info(f"Updated utility mapping for GL {gl_account_number}; recomputing its expenses")
        return self.recompute_account(gl_account_number)

    def recompute_account(self, gl_account_number: str) -> ReprocessStats:
        """Delete and rebuild the expenses derived from one GL account's bills."""
        stats = ReprocessStats()
        with self.session_manager.session_scope() as session:
            stats.deleted = (
                session.query(UtilityExpense)
                .filter(UtilityExpense.gl_account_number == gl_account_number)
                .delete(synchronize_session=False)
            )
            bills = (
                session.query(BillDetail)
                .filter(BillDetail.gl_account_number == gl_account_number)
                .order_by(BillDetail.txn_id)
                .all()
            )
        self._classify(bills, stats)
        return stats

    # ========================================================================
    # Classification
    # ========================================================================

    def reprocess_all(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> ReprocessStats:
        """
        Delete derived expenses in a range and recreate them with current mappings.

        Args:
            from_date: Inclusive lower bound on expense/bill date (optional)
            to_date: Inclusive upper bound on expense/bill date (optional)

        Returns:
            ReprocessStats with the deleted count and classification counters
        """
        stats = ReprocessStats()
        with self.session_manager.session_scope() as session:
            stats.deleted = delete_records_in_range(session, UtilityExpense, 'expense_date', from_date, to_date)
            query = session.query(BillDetail)
            if from_date is not None:
                query = query.filter(BillDetail.bill_date >= from_date)
            if to_date is not None:
                query = query.filter(BillDetail.bill_date <= to_date)
            bills = query.order_by(BillDetail.txn_id).all()

        logger.info(f"Reprocessing {len(bills)} bill details ({from_date or '-inf'} .. {to_date or '+inf'})")
        self._classify(bills, stats)
        self._log_summary(stats)
        return stats

    def process_from_bill_details(self, sync_run_id: int) -> ReprocessStats:
        """Classify the bill details pulled by one sync run."""
        stats = ReprocessStats()
        with self.session_manager.session_scope() as session:
            bills = (
                session.query(BillDetail)
                .filter(BillDetail.sync_run_id == sync_run_id)
                .order_by(BillDetail.txn_id)
                .all()
            )
        if not bills:
            return stats

        self._classify(bills, stats)
        self._log_summary(stats)
        return stats

    def _classify(self, bills: List[BillDetail], stats: ReprocessStats) -> None:
        with self.session_manager.session_scope() as session:
            mappings = self.active_mappings(session)

        property_cache: Dict[str, Optional[int]] = {}
        for bill in bills:
            try:
                with self.session_manager.session_scope() as session:
                    self._classify_bill(session, bill, mappings, property_cache, stats)
            except Exception as e:
                stats.errors += 1
                stats.error_details.append({'txn_id': bill.txn_id, 'error': str(e)})
                logger.error(f"Failed to classify bill {bill.txn_id}: {e}")

    def _classify_bill(
        self,
        session: Session,
        bill: BillDetail,
        mappings: Dict[str, str],
        property_cache: Dict[str, Optional[int]],
        stats: ReprocessStats
    ) -> None:
        gl_account_number = bill_gl_account(bill)
        if not gl_account_number:
            stats.skipped += 1
            return

        utility_type = mappings.get(gl_account_number)
        if utility_type is None:
            stats.unmatched += 1
            logger.debug(f"Bill {bill.txn_id}: GL account {gl_account_number} not mapped to a utility type")
            return

        property_id = bill.property_id or self._lookup_property(session, bill.property_external_id, property_cache)
        if property_id is None:
            stats.skipped += 1
            logger.warning(
                f"Bill {bill.txn_id}: property '{bill.property_external_id}' not found; utility expense skipped"
            )
            return

        values = {
            'external_expense_id': f"bill:{bill.txn_id}",
            'bill_detail_id': bill.id,
            'property_id': property_id,
            'utility_type': utility_type,
            'gl_account_number': gl_account_number,
            'expense_date': bill.bill_date,
            'period_start': bill.service_from,
            'period_end': bill.service_to,
            'amount': bill_amount(bill),
            'vendor_name': bill.payee_name,
            'description': bill.description,
        }
        outcome = self.strategy.upsert(session, UtilityExpense, values, ['external_expense_id'])
        stats.record(outcome.result)

    @staticmethod
    def _lookup_property(session: Session, external_id: Optional[str],
                         cache: Dict[str, Optional[int]]) -> Optional[int]:
        if not external_id:
            return None
        if external_id not in cache:
            row = session.query(Property.id).filter(Property.external_id == external_id).first()
            cache[external_id] = row.id if row else None
        return cache[external_id]

    # ========================================================================
    # Reporting
    # ========================================================================

    def unmatched_accounts(self, days: int = 30) -> Dict[str, int]:
        """
        GL accounts on recently pulled bills that have no active mapping.

        Args:
            days: Look-back window on pulled_at

        Returns:
            GL account -> number of bills, most frequent first
        """
        cutoff = utc_now() - timedelta(days=days)
        counts: Dict[str, int] = {}
        with self.session_manager.session_scope() as session:
            mappings = self.active_mappings(session)
            bills = session.query(BillDetail).filter(BillDetail.pulled_at >= cutoff).all()
            for bill in bills:
                gl_account_number = bill_gl_account(bill)
                if gl_account_number and gl_account_number not in mappings:
                    counts[gl_account_number] = counts.get(gl_account_number, 0) + 1

        return dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))

    @staticmethod
    def _log_summary(stats: ReprocessStats) -> None:
        logger.info(
            f"Utility expense processing complete: deleted={stats.deleted} created={stats.created} "
            f"updated={stats.updated} skipped={stats.skipped} unmatched={stats.unmatched} errors={stats.errors}"
        )
