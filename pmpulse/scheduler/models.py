"""
SQLAlchemy models for sync tracking, raw event capture, failure alerting
and vendor duplicate analysis.
Follows the patterns established in common/models.py.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, Text, ForeignKey, Index, CheckConstraint
)

from pmpulse.common.date_utils import utc_now, minutes_since
from pmpulse.common.models import Base, JSONType, TimestampMixin

# Keep the last N failure details on an alert
MAX_FAILURE_DETAILS = 10


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SyncRun(Base, TimestampMixin):
    """
    One ingestion execution.

    Status lifecycle: pending -> running -> completed | failed.
    The metadata column holds resource_metrics and resource_errors keyed by
    resource type (see datalayer.sync_tracker.SyncRunMetadata).
    """
    __tablename__ = 'sync_runs'

    id = Column(Integer, primary_key=True)
    mode = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='pending', index=True)

    # Timing
    started_at = Column(DateTime, index=True)
    ended_at = Column(DateTime)

    # Totals
    resources_synced = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)
    error_summary = Column(Text)

    # 'metadata' is reserved on declarative classes
    run_metadata = Column('metadata', JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_sync_runs_status_started', status, started_at),
        CheckConstraint("mode IN ('full', 'incremental')", name='chk_sync_run_mode'),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name='chk_sync_run_status'
        ),
    )

    def __repr__(self):
        return f"<SyncRun(id={self.id}, mode={self.mode}, status={self.status})>"

    @property
    def is_terminal(self) -> bool:
        """Check if the run is in a terminal state."""
        return self.status in ('completed', 'failed')

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.started_at or not self.ended_at:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for API/CLI output."""
        return {
            'id': self.id,
            'mode': self.mode,
            'status': self.status,
            'started_at': _iso(self.started_at),
            'ended_at': _iso(self.ended_at),
            'duration_seconds': self.duration_seconds,
            'resources_synced': self.resources_synced,
            'errors_count': self.errors_count,
            'error_summary': self.error_summary,
            'metadata': self.run_metadata or {},
        }


class RawEvent(Base):
    """
    One fetched payload, retained for replay and debugging.
    processed_at is written exactly once, by the normalization step.
    """
    __tablename__ = 'raw_events'

    id = Column(Integer, primary_key=True)
    sync_run_id = Column(Integer, ForeignKey('sync_runs.id'), nullable=False, index=True)
    resource_type = Column(String(50), nullable=False)
    external_id = Column(String(64))
    payload = Column(JSONType, nullable=False)
    pulled_at = Column(DateTime, nullable=False, default=utc_now)
    processed_at = Column(DateTime)

    __table_args__ = (
        Index('idx_raw_events_type_processed', resource_type, processed_at),
    )

    def __repr__(self):
        return (f"<RawEvent(id={self.id}, type={self.resource_type}, "
                f"external_id={self.external_id}, processed={self.processed_at is not None})>")

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


class SyncFailureAlert(Base, TimestampMixin):
    """
    Consecutive run-level failure counter for a connection.

    A new failure always clears a previous acknowledgment so that the alert
    becomes active again.
    """
    __tablename__ = 'sync_failure_alerts'

    id = Column(Integer, primary_key=True)
    connection = Column(String(50), nullable=False, unique=True, default='appfolio')
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime)
    last_alert_sent_at = Column(DateTime)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(100))
    failure_details = Column(JSONType, nullable=False, default=list)

    def __repr__(self):
        return f"<SyncFailureAlert(connection={self.connection}, failures={self.consecutive_failures})>"

    def record_failure(self, details: Dict[str, Any], now: Optional[datetime] = None) -> None:
        """Count a failure, clear any acknowledgment and keep the last details."""
        now = now or utc_now()
        entries: List[Dict[str, Any]] = list(self.failure_details or [])
        entries.append({**details, 'failed_at': now.isoformat()})
        self.failure_details = entries[-MAX_FAILURE_DETAILS:]
        self.consecutive_failures = (self.consecutive_failures or 0) + 1
        self.last_failure_at = now
        self.acknowledged_at = None
        self.acknowledged_by = None

    def reset_failures(self) -> None:
        """Reset after a successful run."""
        self.consecutive_failures = 0
        self.failure_details = []
        self.acknowledged_at = None
        self.acknowledged_by = None

    def mark_alert_sent(self, now: Optional[datetime] = None) -> None:
        self.last_alert_sent_at = now or utc_now()

    def acknowledge(self, user: str, now: Optional[datetime] = None) -> None:
        self.acknowledged_at = now or utc_now()
        self.acknowledged_by = user

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None

    @property
    def is_active(self) -> bool:
        """Failing and not yet acknowledged."""
        return (self.consecutive_failures or 0) > 0 and not self.is_acknowledged

    def should_send_alert(self, cooldown_minutes: int, now: Optional[datetime] = None) -> bool:
        """
        Check the acknowledgment and the cooldown since the last alert.

        Args:
            cooldown_minutes: Minimum minutes between alerts
            now: Reference time (default: utc_now())

        Returns:
            True if an alert may be sent now
        """
        if self.is_acknowledged:
            return False
        if self.last_alert_sent_at is None:
            return True
        return minutes_since(self.last_alert_sent_at, now) >= cooldown_minutes

    def to_dict(self) -> dict:
        return {
            'connection': self.connection,
            'consecutive_failures': self.consecutive_failures,
            'last_failure_at': _iso(self.last_failure_at),
            'last_alert_sent_at': _iso(self.last_alert_sent_at),
            'acknowledged_at': _iso(self.acknowledged_at),
            'acknowledged_by': self.acknowledged_by,
            'is_active': self.is_active,
            'failure_details': self.failure_details or [],
        }


class VendorDuplicateAnalysis(Base, TimestampMixin):
    """
    Background vendor duplicate scan.
    Status lifecycle: pending -> processing -> completed | failed.
    """
    __tablename__ = 'vendor_duplicate_analyses'

    id = Column(Integer, primary_key=True)
    status = Column(String(20), nullable=False, default='pending', index=True)
    threshold = Column(Numeric(4, 3), nullable=False, default=0.6)
    limit = Column(Integer, nullable=False, default=50)
    results = Column(JSONType)
    total_vendors = Column(Integer)
    comparisons_made = Column(Integer)
    duplicates_found = Column(Integer)
    error_message = Column(Text)
    requested_by = Column(String(100))
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='chk_vendor_analysis_status'
        ),
    )

    def __repr__(self):
        return f"<VendorDuplicateAnalysis(id={self.id}, status={self.status})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in ('completed', 'failed')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'status': self.status,
            'threshold': float(self.threshold) if self.threshold is not None else None,
            'limit': self.limit,
            'total_vendors': self.total_vendors,
            'comparisons_made': self.comparisons_made,
            'duplicates_found': self.duplicates_found,
            'error_message': self.error_message,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'results': self.results or [],
        }


def create_tables(engine):
    """Create all tables (entities and sync tracking) if they don't exist."""
    Base.metadata.create_all(engine)


def drop_tables(engine):
    """Drop all tables (use with caution!)."""
    Base.metadata.drop_all(engine)
