"""
AppFolio ingestion pipeline.

Fetches each configured report page by page, captures every record as a
RawEvent, normalizes it into its entity and records the outcome on the
SyncRun. Record-level failures are counted and never abort the run;
run-level failures (credentials, exhausted retries) propagate to the job
which fails the run.

Records whose required parent has not been synced yet are deferred and
retried once all resource types have been fetched.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Dict, Iterable, Iterator, List, Optional

from tqdm import tqdm

from pmpulse.common.config import SyncConfig
from pmpulse.common.date_utils import get_sync_date_range, utc_now
from pmpulse.common.http_client import Page, RateLimitedClient
from pmpulse.common.models import BillDetail, Lease, Unit
from pmpulse.common.session import SessionManager
from pmpulse.common.upsert_strategies import UpsertResult
from pmpulse.datalayer.normalizer import (
    MalformedRecordError,
    NormalizationUpsertEngine,
    UnresolvedReferenceError,
    external_id_for,
)
from pmpulse.datalayer.raw_event_store import RawEventStore
from pmpulse.datalayer.reclassification import ReclassificationEngine
from pmpulse.datalayer.sync_tracker import (
    ResourceMetrics, ResourceSyncTracker, SyncRunMetadata, SyncRunTracker, RunRef, _run_id
)
from pmpulse.scheduler.models import RawEvent, SyncRun


logger = logging.getLogger(__name__)


# Reports that take an explicit from_date/to_date window
DATE_RANGE_RESOURCES = ('bill_details', 'work_orders')

# Parents before children when draining deferred records
DEPENDENCY_ORDER = (
    'properties', 'units', 'vendors', 'people', 'leases', 'rent_roll',
    'ledger_transactions', 'work_orders', 'bill_details', 'delinquency',
)


class IngestionService:
    """
    Drives one SyncRun through fetch, capture and normalization.

    One instance per run: deferred records are held in memory until
    complete_sync() drains them.

    Usage:
        service = IngestionService(session_manager, client, config.sync)
        service.start_sync(run)
        service.process_all(run)
        service.complete_sync(run)
    """

    def __init__(
        self,
        session_manager: SessionManager,
        client: RateLimitedClient,
        config: Optional[SyncConfig] = None,
        tracker: Optional[SyncRunTracker] = None,
        raw_events: Optional[RawEventStore] = None,
        normalizer: Optional[NormalizationUpsertEngine] = None,
        reclassification: Optional[ReclassificationEngine] = None,
        show_progress: bool = True
    ):
        """
        Initialize the service.

        Args:
            session_manager: Session manager for database access
            client: AppFolio API client
            config: Sync configuration (resources, windows, prefetch)
            tracker: SyncRun tracker (default: built from config)
            raw_events: Raw event store
            normalizer: Normalization engine
            reclassification: Utility expense engine run after bill details sync
            show_progress: Show tqdm progress bars
        """
        self.session_manager = session_manager
        self.client = client
        self.config = config or SyncConfig()
        self.tracker = tracker or SyncRunTracker(session_manager, self.config.active_run_window_minutes)
        self.raw_events = raw_events or RawEventStore(session_manager)
        self.normalizer = normalizer or NormalizationUpsertEngine(session_manager)
        self.reclassification = reclassification or ReclassificationEngine(session_manager)
        self.show_progress = show_progress
        self._deferred: Dict[str, List[RawEvent]] = {}

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start_sync(self, run: RunRef) -> SyncRun:
        """
        Move the run to running and load API credentials.

        Raises:
            InvalidTransitionError: If the run is not pending
            ConfigurationError: If credentials are missing (the run is left running
                for the caller to fail)
        """
        stored = self.tracker.start(run)
        self._deferred = {}
        self.normalizer.sync_run_id = stored.id
        self.normalizer.reset_caches()
        self.client.begin_run()
        return stored

    def process_all(self, run: RunRef, resource_types: Optional[Iterable[str]] = None) -> Dict[str, ResourceMetrics]:
        """Process every resource type in order and return their metrics."""
        results = {}
        for resource_type in list(resource_types or self.config.resources):
            results[resource_type] = self.process_resource(run, resource_type)
        return results

    def complete_sync(self, run: RunRef) -> SyncRun:
        """
        Finish a run: drain deferred records, derive utility expenses and
        unit status, then mark the connection healthy and complete the run.
        """
        self.drain_deferred(run)
        self._process_utility_expenses(run)
        self.update_unit_status_from_leases()
        self.client.mark_connection_success()
        self.client.end_run()
        return self.tracker.complete(run)

    def fail_sync(self, run: RunRef, error: str) -> SyncRun:
        """Fail the run with a run-level error and record it on the connection."""
        self.client.mark_connection_error(error)
        self.client.end_run()
        return self.tracker.fail(run, error)

    # ========================================================================
    # Fetch loop
    # ========================================================================

    def query_params(self, run: SyncRun, resource_type: str, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Report filters for a resource type.

        bill_details and work_orders always get a from_date/to_date window,
        taken from the run metadata when set there. Other reports get
        modified_since on incremental runs.
        """
        params: Dict[str, Any] = {}
        extra = SyncRunMetadata.from_dict(run.run_metadata).extra
        from_date, to_date = get_sync_date_range(
            run.mode, self.config.incremental_days, self.config.full_sync_lookback_days, today
        )

        if resource_type in DATE_RANGE_RESOURCES:
            if extra.get('from_date') and extra.get('to_date'):
                params['from_date'] = str(extra['from_date'])
                params['to_date'] = str(extra['to_date'])
            else:
                params['from_date'] = from_date.isoformat()
                params['to_date'] = to_date.isoformat()
        elif run.mode == 'incremental':
            params['modified_since'] = from_date.isoformat()

        return params

    def process_resource(self, run: RunRef, resource_type: str) -> ResourceMetrics:
        """
        Fetch, capture and normalize every record of one resource type.

        Args:
            run: Running SyncRun or its id
            resource_type: Resource type to sync

        Returns:
            ResourceMetrics for the resource type (persisted on the run)

        Raises:
            TransientApiError, NonRetryableApiError: Run-level fetch failures
        """
        stored = self.tracker.get(run)
        if stored is None:
            raise ValueError(f"SyncRun {_run_id(run)} does not exist")

        params = self.query_params(stored, resource_type)
        resource = self.tracker.resource(stored, resource_type)
        logger.info(f"Syncing {resource_type} for run {stored.id} (params={params})")

        pages = self.client.fetch_resource(resource_type, params=params)
        try:
            with tqdm(desc=f"  {resource_type}", unit="rec", disable=not self.show_progress) as pbar:
                for page in self._prefetched(pages):
                    for item in page.results:
                        self._process_item(stored.id, resource_type, item, resource)
                        pbar.update(1)
                    pbar.set_postfix({"page": page.page_number})
                    logger.info(f"{resource_type}: page {page.page_number} processed ({len(page.results)} records)")
        finally:
            resource.finish()

        return resource.metrics

    def _prefetched(self, pages: Iterator[Page]) -> Iterator[Page]:
        """Fetch the next page in a worker thread while the current one is normalized."""
        if not self.config.prefetch_pages:
            yield from pages
            return

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix='page-prefetch') as pool:
            future = pool.submit(next, pages, None)
            while True:
                page = future.result()
                if page is None:
                    return
                future = pool.submit(next, pages, None)
                yield page

    def _process_item(self, run_id: int, resource_type: str, item: Any, resource: ResourceSyncTracker) -> None:
        external_id = external_id_for(resource_type, item) if isinstance(item, dict) else None
        event = self.raw_events.capture(run_id, resource_type, external_id, item)
        try:
            result = self._normalize_and_mark(event)
        except UnresolvedReferenceError as e:
            logger.warning(f"Deferring {resource_type} {external_id}: {e}")
            self._deferred.setdefault(resource_type, []).append(event)
            return
        except Exception as e:
            self._record_failure(event, resource, e)
            return
        resource.record(result)

    def _normalize_and_mark(self, event: RawEvent) -> UpsertResult:
        """Write the entity and the processed mark in one transaction."""
        with self.session_manager.session_scope() as session:
            result = self.normalizer.normalize(event, session=session)
            self.raw_events.mark_processed(event, session=session)
        return result

    def _record_failure(self, event: RawEvent, resource: ResourceSyncTracker, error: Exception) -> None:
        # The failed transaction may have cached ids of rows it never committed
        self.normalizer.reset_caches()
        if not isinstance(error, MalformedRecordError):
            logger.exception(f"Unexpected error normalizing {event.resource_type} {event.external_id}")
        self.raw_events.mark_processed(event)
        resource.record(UpsertResult.SKIPPED)
        resource.record_error(str(error), event.external_id)

    # ========================================================================
    # Deferred records
    # ========================================================================

    def deferred_count(self) -> int:
        return sum(len(events) for events in self._deferred.values())

    def drain_deferred(self, run: RunRef) -> int:
        """
        Retry deferred records until a pass makes no progress.

        Records still unresolved after that are marked processed and counted
        as skipped.

        Returns:
            int: Number of records that were resolved
        """
        if not self._deferred:
            return 0

        logger.info(f"Retrying {self.deferred_count()} deferred records")
        resolved = 0
        trackers: Dict[str, ResourceSyncTracker] = {}
        progress = True
        while progress and self._deferred:
            progress = False
            for resource_type in self._ordered(self._deferred):
                resource = trackers.get(resource_type) or self.tracker.resource(run, resource_type)
                trackers[resource_type] = resource
                pending, self._deferred[resource_type] = self._deferred[resource_type], []
                for event in pending:
                    try:
                        result = self._normalize_and_mark(event)
                    except UnresolvedReferenceError:
                        self._deferred[resource_type].append(event)
                        continue
                    except Exception as e:
                        self._record_failure(event, resource, e)
                    else:
                        resource.record(result)
                    resolved += 1
                    progress = True
                if not self._deferred[resource_type]:
                    del self._deferred[resource_type]

        for resource_type, events in self._deferred.items():
            resource = trackers[resource_type]
            for event in events:
                logger.warning(
                    f"Skipping {resource_type} {event.external_id}: required parent never appeared in this run"
                )
                self.raw_events.mark_processed(event)
                resource.record(UpsertResult.SKIPPED)
        self._deferred = {}

        for resource in trackers.values():
            resource.finish()
        return resolved

    @staticmethod
    def _ordered(resource_types: Iterable[str]) -> List[str]:
        rank = {t: i for i, t in enumerate(DEPENDENCY_ORDER)}
        return sorted(resource_types, key=lambda t: (rank.get(t, len(rank)), t))

    # ========================================================================
    # Post-processing
    # ========================================================================

    def _process_utility_expenses(self, run: RunRef) -> None:
        run_id = _run_id(run)
        with self.session_manager.session_scope() as session:
            bill_count = session.query(BillDetail).filter(BillDetail.sync_run_id == run_id).count()
        if bill_count == 0:
            return

        try:
            stats = self.reclassification.process_from_bill_details(run_id)
        except Exception as e:
            logger.error(f"Failed to process utility expenses for run {run_id}: {e}")
            resource = self.tracker.resource(run, 'utility_expenses')
            resource.record_error(f"Failed to process utility expenses: {e}")
            resource.finish()
            return

        logger.info(
            f"Utility expenses for run {run_id}: {bill_count} bills, created={stats.created} "
            f"updated={stats.updated} skipped={stats.skipped} unmatched={stats.unmatched}"
        )

    def update_unit_status_from_leases(self, today: Optional[date] = None) -> int:
        """
        Derive occupied/vacant from active leases. not_ready units are left alone.

        A lease is active from start_date (or always, when unknown) through end_date (open-ended when empty).

        Returns:
            int: Number of units whose status changed
        """
        today = today or utc_now().date()
        updated = 0
        with self.session_manager.session_scope() as session:
            occupied_ids = {
                row.unit_id for row in
                session.query(Lease.unit_id)
                .filter((Lease.start_date.is_(None)) | (Lease.start_date <= today))
                .filter((Lease.end_date.is_(None)) | (Lease.end_date >= today))
                .distinct()
            }
            units = session.query(Unit).filter(Unit.status != 'not_ready').all()
            for unit in units:
                status = 'occupied' if unit.id in occupied_ids else 'vacant'
                if unit.status != status:
                    unit.status = status
                    updated += 1

        logger.info(f"Updated unit statuses from leases: {len(units)} checked, {updated} changed")
        return updated
