"""
Background job bodies and the service wiring they run with.

Jobs receive a SyncServices container instead of reaching for globals, so
the CLI, the daemon and the tests all build their own.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine

from pmpulse.common.config import AppConfig
from pmpulse.common.engine import create_engine_from_config
from pmpulse.common.http_client import (
    ConfigurationError, NonRetryableApiError, RateLimitedClient, TransientApiError
)
from pmpulse.common.session import SessionManager
from pmpulse.common.settings_store import SettingsStore
from pmpulse.datalayer.ingestion import IngestionService
from pmpulse.datalayer.reclassification import ReclassificationEngine
from pmpulse.datalayer.sync_tracker import ActiveSyncError, InvalidTransitionError, SyncRunTracker
from pmpulse.datalayer.vendor_dedup import VendorDeduplicationEngine
from pmpulse.scheduler.alert_manager import AlertManager
from pmpulse.scheduler.config import SchedulerConfig
from pmpulse.scheduler.failure_alerts import SyncFailureAlertService
from pmpulse.scheduler.models import SyncRun, VendorDuplicateAnalysis, create_tables


logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    """Everything a job needs, built once per process."""
    config: AppConfig
    session_manager: SessionManager
    settings: SettingsStore
    tracker: SyncRunTracker
    alert_service: SyncFailureAlertService
    vendor_dedup: VendorDeduplicationEngine
    reclassification: ReclassificationEngine
    client_factory: Callable[[], RateLimitedClient]
    scheduler_config: SchedulerConfig = field(default_factory=SchedulerConfig)
    show_progress: bool = True

    def ingestion_service(self) -> IngestionService:
        """A fresh ingestion service (one per run) with its own API client."""
        return IngestionService(
            self.session_manager,
            self.client_factory(),
            self.config.sync,
            tracker=self.tracker,
            reclassification=self.reclassification,
            show_progress=self.show_progress,
        )


def build_services(
    config: AppConfig,
    scheduler_config: Optional[SchedulerConfig] = None,
    engine: Optional[Engine] = None,
    client_factory: Optional[Callable[[], RateLimitedClient]] = None,
    show_progress: bool = True
) -> SyncServices:
    """
    Wire the sync engine from configuration.

    Args:
        config: Application configuration
        scheduler_config: Alert channel configuration (default: from_yaml())
        engine: Pre-built SQLAlchemy engine (default: from config.database)
        client_factory: Builds API clients (default: RateLimitedClient from settings)
        show_progress: Show tqdm progress bars while syncing

    Returns:
        SyncServices
    """
    engine = engine or create_engine_from_config(config.database)
    create_tables(engine)
    session_manager = SessionManager(engine)
    settings = SettingsStore(session_manager)
    scheduler_config = scheduler_config or SchedulerConfig.from_yaml()

    alert_manager = AlertManager(scheduler_config.alerts, recipients=config.alerts.recipients)
    alert_service = SyncFailureAlertService(session_manager, settings, alert_manager, config.alerts)

    return SyncServices(
        config=config,
        session_manager=session_manager,
        settings=settings,
        tracker=SyncRunTracker(session_manager, config.sync.active_run_window_minutes),
        alert_service=alert_service,
        vendor_dedup=VendorDeduplicationEngine(session_manager),
        reclassification=ReclassificationEngine(session_manager),
        client_factory=client_factory or (lambda: RateLimitedClient(settings, config.client)),
        scheduler_config=scheduler_config,
        show_progress=show_progress,
    )


# ============================================================================
# Jobs
# ============================================================================

def sync_job(services: SyncServices, run_id: int) -> Optional[SyncRun]:
    """
    Execute a pending SyncRun end to end.

    Record-level errors are tolerated; any run-level error fails the run.
    The failure-alert service sees every terminal run.

    Args:
        services: Service container
        run_id: Pending SyncRun id

    Returns:
        The terminal SyncRun, or None if the run could not be started
    """
    service = services.ingestion_service()
    try:
        service.start_sync(run_id)
        service.process_all(run_id)
        run = service.complete_sync(run_id)

    except InvalidTransitionError as e:
        logger.error(f"Sync run {run_id} cannot be executed: {e}")
        return None

    except ConfigurationError as e:
        run = service.fail_sync(run_id, f"AppFolio connection not configured: {e}")

    except NonRetryableApiError as e:
        run = service.fail_sync(run_id, f"AppFolio API rejected the request: {e}")

    except TransientApiError as e:
        run = service.fail_sync(run_id, f"AppFolio API unavailable after retries: {e}")

    except Exception as e:
        logger.exception(f"Sync run {run_id} failed unexpectedly")
        run = service.fail_sync(run_id, f"Sync failed: {e}")

    try:
        services.alert_service.handle_sync_completed(run)
    except Exception as e:
        logger.error(f"Failure alert handling for run {run.id} failed: {e}")

    return run


def scheduled_sync_job(services: SyncServices, mode: str = 'incremental') -> Optional[SyncRun]:
    """Recurring sync: create a run unless one is active, then execute it."""
    try:
        run = services.tracker.create_run(mode, triggered_by='scheduler')
    except ActiveSyncError as e:
        logger.warning(f"Skipping scheduled {mode} sync: {e}")
        return None
    return sync_job(services, run.id)


def vendor_analysis_job(services: SyncServices, analysis_id: int) -> VendorDuplicateAnalysis:
    """Run a pending vendor duplicate analysis."""
    return services.vendor_dedup.run_analysis(analysis_id)


def pending_runs_job(services: SyncServices) -> List[SyncRun]:
    """Execute runs queued with `sync --no-wait`, oldest first."""
    finished = []
    for run in services.tracker.pending_runs():
        logger.info(f"Executing queued sync run {run.id} (mode={run.mode})")
        result = sync_job(services, run.id)
        if result is not None:
            finished.append(result)
    return finished
