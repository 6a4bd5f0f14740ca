"""
Sync run lifecycle tracking.

Features:
- State machine pending -> running -> completed | failed, enforced on every transition
- Typed per-resource metrics with a bounded ledger of the 10 most recent errors
- Recency guard refusing to start a run while another one is running
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from pmpulse.common.date_utils import utc_now
from pmpulse.common.session import SessionManager
from pmpulse.common.upsert_strategies import UpsertResult
from pmpulse.scheduler.models import SyncRun


logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 10
VALID_MODES = ('full', 'incremental')

# Legal status transitions; terminal states have none
TRANSITIONS = {
    'pending': {'running'},
    'running': {'completed', 'failed'},
    'completed': set(),
    'failed': set(),
}


class InvalidTransitionError(Exception):
    """Raised on an illegal SyncRun status transition."""
    pass


class ActiveSyncError(Exception):
    """Raised when another run is already running within the recency window."""

    def __init__(self, active_run_id: int, started_at: Optional[datetime]):
        started = started_at.isoformat() if started_at else 'unknown'
        super().__init__(
            f"Sync run {active_run_id} is already running (started {started}). Use --force to override."
        )
        self.active_run_id = active_run_id
        self.started_at = started_at


# ============================================================================
# Typed metadata
# ============================================================================


@dataclass
class ErrorEntry:
    """One record-level error in a resource's ledger."""
    message: str
    timestamp: str
    item_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'message': self.message, 'item_id': self.item_id, 'timestamp': self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ErrorEntry':
        return cls(message=data.get('message', ''), timestamp=data.get('timestamp', ''),
                   item_id=data.get('item_id'))


def _error_ledger(entries=()) -> Deque[ErrorEntry]:
    return deque(entries, maxlen=MAX_RECENT_ERRORS)


@dataclass
class ResourceMetrics:
    """
    Outcome counters for one resource type in one run.

    ``errors`` counts every error; ``recent_errors`` keeps only the last
    MAX_RECENT_ERRORS, dropping the oldest first.
    """
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0
    recent_errors: Deque[ErrorEntry] = field(default_factory=_error_ledger)

    def record(self, result: UpsertResult) -> None:
        if result is UpsertResult.CREATED:
            self.created += 1
        elif result is UpsertResult.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1

    def record_error(self, message: str, item_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> None:
        self.errors += 1
        self.recent_errors.append(ErrorEntry(
            message=message,
            item_id=str(item_id) if item_id is not None else None,
            timestamp=(now or utc_now()).isoformat(),
        ))

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped

    def metrics_dict(self) -> Dict[str, int]:
        return {
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'errors': self.errors,
            'duration_ms': self.duration_ms,
        }

    @classmethod
    def from_dict(cls, metrics: Optional[Dict[str, Any]], errors: Optional[List[Dict[str, Any]]] = None) -> 'ResourceMetrics':
        metrics = metrics or {}
        return cls(
            created=int(metrics.get('created', 0)),
            updated=int(metrics.get('updated', 0)),
            skipped=int(metrics.get('skipped', 0)),
            errors=int(metrics.get('errors', 0)),
            duration_ms=int(metrics.get('duration_ms', 0)),
            recent_errors=_error_ledger(ErrorEntry.from_dict(e) for e in (errors or [])),
        )


@dataclass
class SyncRunMetadata:
    """
    Typed view of SyncRun.metadata.

    Serialized as:
        {
            'resource_metrics': {type: {created, updated, skipped, errors, duration_ms}},
            'resource_errors': {type: [{message, item_id, timestamp}, ...]},
            ...extra keys (triggered_by, forced, from_date, to_date)
        }
    """
    resources: Dict[str, ResourceMetrics] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def for_resource(self, resource_type: str) -> ResourceMetrics:
        if resource_type not in self.resources:
            self.resources[resource_type] = ResourceMetrics()
        return self.resources[resource_type]

    def totals(self) -> Dict[str, int]:
        totals = {'created': 0, 'updated': 0, 'skipped': 0, 'errors': 0, 'duration_ms': 0}
        for metrics in self.resources.values():
            for key, value in metrics.metrics_dict().items():
                totals[key] += value
        return totals

    def recent_error_messages(self) -> List[str]:
        messages = []
        for resource_type, metrics in self.resources.items():
            for entry in metrics.recent_errors:
                item = f" [{entry.item_id}]" if entry.item_id else ''
                messages.append(f"{resource_type}{item}: {entry.message}")
        return messages

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data['resource_metrics'] = {t: m.metrics_dict() for t, m in self.resources.items()}
        data['resource_errors'] = {t: [e.to_dict() for e in m.recent_errors] for t, m in self.resources.items()}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SyncRunMetadata':
        data = dict(data or {})
        metrics = data.pop('resource_metrics', None) or {}
        errors = data.pop('resource_errors', None) or {}
        resources = {
            resource_type: ResourceMetrics.from_dict(metrics.get(resource_type), errors.get(resource_type))
            for resource_type in dict.fromkeys([*metrics, *errors])
        }
        return cls(resources=resources, extra=data)


# ============================================================================
# Tracker
# ============================================================================


RunRef = Union[int, SyncRun]


def _run_id(run: RunRef) -> int:
    return run.id if isinstance(run, SyncRun) else int(run)


class ResourceSyncTracker:
    """
    Collects outcomes for one resource type and flushes them into the run.

    Re-opening a resource in the same run (e.g. for deferred records)
    continues from the stored counters.
    """

    def __init__(self, tracker: 'SyncRunTracker', run_id: int, resource_type: str, metrics: ResourceMetrics):
        self.tracker = tracker
        self.run_id = run_id
        self.resource_type = resource_type
        self.metrics = metrics
        self._started = time.monotonic()

    def record(self, result: UpsertResult) -> None:
        self.metrics.record(result)

    def record_error(self, message: str, item_id: Optional[str] = None) -> None:
        self.metrics.record_error(message, item_id)
        logger.error(f"{self.resource_type} record {item_id or '?'} failed: {message}")

    def finish(self) -> ResourceMetrics:
        """Persist metrics and the capped error ledger into SyncRun.metadata."""
        elapsed_ms = int((time.monotonic() - self._started) * 1000)
        self.metrics.duration_ms += elapsed_ms
        self._started = time.monotonic()
        self.tracker.save_resource_metrics(self.run_id, self.resource_type, self.metrics)
        logger.info(
            f"{self.resource_type}: created={self.metrics.created} updated={self.metrics.updated} "
            f"skipped={self.metrics.skipped} errors={self.metrics.errors} ({self.metrics.duration_ms}ms)"
        )
        return self.metrics


class SyncRunTracker:
    """
    Creates SyncRuns and drives them through their lifecycle.

    Every transition loads the row under a row lock and checks TRANSITIONS,
    so a terminal run can never be restarted.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        active_window_minutes: int = 120,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize tracker.

        Args:
            session_manager: Session manager for database access
            active_window_minutes: Recency window for the running-run guard
            clock: Source of naive-UTC "now"
        """
        self.session_manager = session_manager
        self.active_window = timedelta(minutes=active_window_minutes)
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation and guard
    # ------------------------------------------------------------------

    def find_active_run(self) -> Optional[SyncRun]:
        """Most recent run in 'running' state started within the recency window."""
        cutoff = self._clock() - self.active_window
        with self.session_manager.session_scope() as session:
            return (
                session.query(SyncRun)
                .filter(SyncRun.status == 'running', SyncRun.started_at >= cutoff)
                .order_by(SyncRun.started_at.desc())
                .first()
            )

    def create_run(
        self,
        mode: str,
        triggered_by: str = 'command',
        force: bool = False,
        options: Optional[Dict[str, Any]] = None
    ) -> SyncRun:
        """
        Create a pending SyncRun.

        Args:
            mode: 'full' or 'incremental'
            triggered_by: Origin of the run (command, scheduler, api)
            force: Skip the running-run guard
            options: Extra metadata (e.g. from_date/to_date overrides)

        Returns:
            SyncRun: The new pending run

        Raises:
            ValueError: For an invalid mode
            ActiveSyncError: If another run is running and force is False
        """
        if mode not in VALID_MODES:
            raise ValueError(f"Invalid sync mode '{mode}'. Must be one of: {', '.join(VALID_MODES)}")

        if not force:
            active = self.find_active_run()
            if active is not None:
                logger.warning(f"Refusing to start {mode} sync: run {active.id} is still running")
                raise ActiveSyncError(active.id, active.started_at)
        else:
            logger.warning(f"Creating {mode} sync run with force=True (running-run guard skipped)")

        metadata = SyncRunMetadata(extra={'triggered_by': triggered_by, 'forced': force, **(options or {})})
        with self.session_manager.session_scope() as session:
            run = SyncRun(mode=mode, status='pending', run_metadata=metadata.to_dict())
            session.add(run)
            session.flush()
        logger.info(f"Created sync run {run.id} (mode={mode}, triggered_by={triggered_by})")
        return run

    def pending_runs(self) -> List[SyncRun]:
        """Runs queued but not yet started, oldest first."""
        with self.session_manager.session_scope() as session:
            return (
                session.query(SyncRun)
                .filter(SyncRun.status == 'pending')
                .order_by(SyncRun.id)
                .all()
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def get(self, run: RunRef) -> Optional[SyncRun]:
        with self.session_manager.session_scope() as session:
            return session.get(SyncRun, _run_id(run))

    def _load_for_update(self, session, run: RunRef) -> SyncRun:
        run_id = _run_id(run)
        stored = session.get(SyncRun, run_id, with_for_update=True)
        if stored is None:
            raise ValueError(f"SyncRun {run_id} does not exist")
        return stored

    @staticmethod
    def _transition(stored: SyncRun, target: str) -> None:
        if target not in TRANSITIONS.get(stored.status, set()):
            raise InvalidTransitionError(
                f"SyncRun {stored.id}: illegal transition {stored.status} -> {target}"
            )
        stored.status = target

    def start(self, run: RunRef) -> SyncRun:
        """pending -> running."""
        with self.session_manager.session_scope() as session:
            stored = self._load_for_update(session, run)
            self._transition(stored, 'running')
            stored.started_at = self._clock()
        logger.info(f"Sync run {stored.id} running (mode={stored.mode})")
        return stored

    def complete(self, run: RunRef, resources_synced: Optional[int] = None) -> SyncRun:
        """
        running -> completed.

        Record-level errors do not fail a run; they are summarized in
        errors_count and error_summary.

        Args:
            run: Run or run id
            resources_synced: Total processed records (default: from metrics)
        """
        with self.session_manager.session_scope() as session:
            stored = self._load_for_update(session, run)
            self._transition(stored, 'completed')
            metadata = SyncRunMetadata.from_dict(stored.run_metadata)
            totals = metadata.totals()

            stored.ended_at = self._clock()
            stored.resources_synced = (
                resources_synced if resources_synced is not None
                else totals['created'] + totals['updated'] + totals['skipped']
            )
            stored.errors_count = totals['errors']
            stored.error_summary = self._error_summary(metadata, totals['errors'])

        logger.info(
            f"Sync run {stored.id} completed: {stored.resources_synced} records, "
            f"{stored.errors_count} errors"
        )
        return stored

    def fail(self, run: RunRef, summary: str, errors_count: int = 1) -> SyncRun:
        """running -> failed, for run-level failures only."""
        with self.session_manager.session_scope() as session:
            stored = self._load_for_update(session, run)
            self._transition(stored, 'failed')
            stored.ended_at = self._clock()
            stored.error_summary = summary
            stored.errors_count = max(1, errors_count, stored.errors_count or 0)
        logger.error(f"Sync run {stored.id} failed: {summary}")
        return stored

    @staticmethod
    def _error_summary(metadata: SyncRunMetadata, total_errors: int) -> Optional[str]:
        if total_errors == 0:
            return None
        messages = metadata.recent_error_messages()[:MAX_RECENT_ERRORS]
        summary = "\n".join(messages)
        hidden = total_errors - len(messages)
        if hidden > 0:
            summary += f"\n... and {hidden} more errors"
        return summary

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metadata(self, run: RunRef) -> SyncRunMetadata:
        stored = self.get(run)
        if stored is None:
            raise ValueError(f"SyncRun {_run_id(run)} does not exist")
        return SyncRunMetadata.from_dict(stored.run_metadata)

    def resource(self, run: RunRef, resource_type: str) -> ResourceSyncTracker:
        """Open a metrics collector for a resource type, continuing stored counters."""
        metrics = self.metadata(run).for_resource(resource_type)
        return ResourceSyncTracker(self, _run_id(run), resource_type, metrics)

    def save_resource_metrics(self, run: RunRef, resource_type: str, metrics: ResourceMetrics) -> None:
        with self.session_manager.session_scope() as session:
            stored = self._load_for_update(session, run)
            if stored.status != 'running':
                raise InvalidTransitionError(
                    f"SyncRun {stored.id} is {stored.status}; metrics can only change while running"
                )
            metadata = SyncRunMetadata.from_dict(stored.run_metadata)
            metadata.resources[resource_type] = metrics
            # Assign a new dict so the JSON column is flagged dirty
            stored.run_metadata = metadata.to_dict()

    def summary(self, run: RunRef) -> Dict[str, Any]:
        """Totals across resource types plus run status."""
        stored = self.get(run)
        if stored is None:
            raise ValueError(f"SyncRun {_run_id(run)} does not exist")
        metadata = SyncRunMetadata.from_dict(stored.run_metadata)
        return {
            'id': stored.id,
            'mode': stored.mode,
            'status': stored.status,
            'duration_seconds': stored.duration_seconds,
            **metadata.totals(),
            'resources': {t: m.metrics_dict() for t, m in metadata.resources.items()},
        }
