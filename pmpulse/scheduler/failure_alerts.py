"""
Repeated sync failure alerting.

Every terminal SyncRun is reported here. Completed runs reset the
consecutive failure counter of the connection; failed runs increment it and
send an alert once the threshold is reached, at most once per cooldown and
never while the alert is acknowledged.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from pmpulse.common.config import AlertThresholds
from pmpulse.common.date_utils import utc_now
from pmpulse.common.session import SessionManager
from pmpulse.common.settings_store import CONNECTION_CATEGORY, SettingsStore
from pmpulse.scheduler.alert_manager import AlertManager
from pmpulse.scheduler.models import SyncFailureAlert, SyncRun


logger = logging.getLogger(__name__)

NOTIFICATIONS_FEATURE = 'notifications'


class SyncFailureAlertService:
    """Tracks consecutive run failures per connection and raises alerts."""

    def __init__(
        self,
        session_manager: SessionManager,
        settings: SettingsStore,
        alert_manager: AlertManager,
        config: Optional[AlertThresholds] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize service.

        Args:
            session_manager: Session manager for database access
            settings: Settings store (feature toggles)
            alert_manager: Delivery channels
            config: Threshold and cooldown
            clock: Source of naive-UTC "now"
        """
        self.session_manager = session_manager
        self.settings = settings
        self.alert_manager = alert_manager
        self.config = config or AlertThresholds()
        self._clock = clock

    @staticmethod
    def _for_connection(session: Session, connection: str) -> SyncFailureAlert:
        alert = (
            session.query(SyncFailureAlert)
            .filter(SyncFailureAlert.connection == connection)
            .with_for_update()
            .first()
        )
        if alert is None:
            alert = SyncFailureAlert(connection=connection, consecutive_failures=0, failure_details=[])
            session.add(alert)
            session.flush()
        return alert

    def handle_sync_completed(self, run: SyncRun, connection: str = CONNECTION_CATEGORY) -> bool:
        """
        Update the failure counter for a terminal run and alert if warranted.

        Args:
            run: Terminal SyncRun
            connection: Connection the run synced

        Returns:
            bool: True if an alert was sent
        """
        if run.status == 'completed':
            self._handle_success(connection)
            return False
        if run.status == 'failed':
            return self._handle_failure(connection, run)
        logger.warning(f"Sync run {run.id} is {run.status}; failure alerting only handles terminal runs")
        return False

    def _handle_success(self, connection: str) -> None:
        with self.session_manager.session_scope() as session:
            alert = (
                session.query(SyncFailureAlert)
                .filter(SyncFailureAlert.connection == connection)
                .with_for_update()
                .first()
            )
            if alert is not None and alert.consecutive_failures > 0:
                logger.info(
                    f"Sync succeeded, resetting failure count for {connection} "
                    f"(was {alert.consecutive_failures})"
                )
                alert.reset_failures()

    def _handle_failure(self, connection: str, run: SyncRun) -> bool:
        now = self._clock()
        notifications_enabled = self.settings.is_feature_enabled(NOTIFICATIONS_FEATURE, default=True)
        with self.session_manager.session_scope() as session:
            alert = self._for_connection(session, connection)
            alert.record_failure({
                'sync_run_id': run.id,
                'error': run.error_summary or 'Unknown error',
                'errors_count': run.errors_count,
                'mode': run.mode,
            }, now=now)
            consecutive_failures = alert.consecutive_failures
            recent_failures = list(alert.failure_details)
            should_alert = self._should_alert(alert, now, notifications_enabled)
        logger.info(f"Sync failure recorded for {connection}: {consecutive_failures} consecutive")

        if not should_alert:
            return False

        # The failure is committed and no row lock is held while channels send
        delivered = self.alert_manager.send_sync_failure_alert(
            connection=connection,
            consecutive_failures=consecutive_failures,
            sync_run_id=run.id,
            mode=run.mode,
            error_message=run.error_summary,
            recent_failures=recent_failures,
        )
        if delivered == 0:
            logger.warning(f"No alert channel delivered the sync failure alert for {connection}")
            return False

        with self.session_manager.session_scope() as session:
            self._for_connection(session, connection).mark_alert_sent(now)
        return True

    def _should_alert(self, alert: SyncFailureAlert, now: datetime, notifications_enabled: bool) -> bool:
        if not notifications_enabled:
            logger.info("Notifications disabled, skipping sync failure alert")
            return False
        if alert.consecutive_failures < self.config.failure_threshold:
            logger.debug(
                f"Failure threshold not reached ({alert.consecutive_failures}/{self.config.failure_threshold})"
            )
            return False
        if not alert.should_send_alert(self.config.cooldown_minutes, now):
            logger.info(
                f"Alert rate limited or acknowledged (last sent {alert.last_alert_sent_at}, "
                f"cooldown {self.config.cooldown_minutes} min)"
            )
            return False
        return True

    def acknowledge(self, connection: str = CONNECTION_CATEGORY, user: str = 'unknown') -> bool:
        """
        Acknowledge the active alert of a connection.

        Returns:
            bool: False when there is nothing to acknowledge
        """
        with self.session_manager.session_scope() as session:
            alert = (
                session.query(SyncFailureAlert)
                .filter(SyncFailureAlert.connection == connection)
                .with_for_update()
                .first()
            )
            if alert is None or alert.consecutive_failures == 0:
                return False
            alert.acknowledge(user, self._clock())
        logger.info(f"Sync failure alert for {connection} acknowledged by {user}")
        return True

    def get_alert_status(self, connection: str = CONNECTION_CATEGORY) -> Dict[str, Any]:
        with self.session_manager.session_scope() as session:
            alert = session.query(SyncFailureAlert).filter(SyncFailureAlert.connection == connection).first()
            if alert is None:
                return {
                    'connection': connection,
                    'has_alert': False,
                    'consecutive_failures': 0,
                    'is_acknowledged': False,
                }
            return {
                'has_alert': alert.is_active,
                'is_acknowledged': alert.is_acknowledged,
                **alert.to_dict(),
            }

    def get_active_alerts(self) -> List[Dict[str, Any]]:
        """Unacknowledged alerts with at least one failure."""
        with self.session_manager.session_scope() as session:
            alerts = (
                session.query(SyncFailureAlert)
                .filter(SyncFailureAlert.consecutive_failures > 0)
                .filter(SyncFailureAlert.acknowledged_at.is_(None))
                .order_by(SyncFailureAlert.last_failure_at.desc())
                .all()
            )
            return [alert.to_dict() for alert in alerts]
