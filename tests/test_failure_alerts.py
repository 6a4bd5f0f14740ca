"""Tests for repeated sync failure alerting."""

from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from pmpulse.common.config import AlertThresholds
from pmpulse.common.settings_store import FEATURES_CATEGORY
from pmpulse.scheduler.alert_manager import AlertManager
from pmpulse.scheduler.failure_alerts import NOTIFICATIONS_FEATURE, SyncFailureAlertService
from pmpulse.scheduler.models import SyncRun


@pytest.fixture
def channel():
    channel = MagicMock()
    channel.is_configured.return_value = True
    channel.send.return_value = True
    return channel


@pytest.fixture
def service(session_manager, settings, channel, clock):
    alert_manager = AlertManager()
    alert_manager.channels.append(channel)
    return SyncFailureAlertService(
        session_manager, settings, alert_manager,
        AlertThresholds(failure_threshold=3, cooldown_minutes=60),
        clock=clock,
    )


def failed_run(run_id, error='HTTP 503 after 5 retries'):
    return SyncRun(id=run_id, mode='incremental', status='failed', error_summary=error, errors_count=1)


def completed_run(run_id):
    return SyncRun(id=run_id, mode='incremental', status='completed', errors_count=0)


def test_alert_only_at_threshold(service, channel):
    assert service.handle_sync_completed(failed_run(1)) is False
    assert service.handle_sync_completed(failed_run(2)) is False
    assert channel.send.call_count == 0

    assert service.handle_sync_completed(failed_run(3)) is True

    context, message = channel.send.call_args.args
    assert context.consecutive_failures == 3
    assert context.sync_run_id == 3
    assert 'failed 3 consecutive times' in message
    assert 'HTTP 503' in message


def test_cooldown_limits_alerts(service, channel, clock):
    for run_id in range(1, 4):
        service.handle_sync_completed(failed_run(run_id))
    assert channel.send.call_count == 1

    clock.advance(minutes=30)
    assert service.handle_sync_completed(failed_run(4)) is False

    clock.advance(minutes=31)
    assert service.handle_sync_completed(failed_run(5)) is True
    assert channel.send.call_count == 2


def test_success_resets_counter(service, channel):
    service.handle_sync_completed(failed_run(1))
    service.handle_sync_completed(failed_run(2))
    service.handle_sync_completed(completed_run(3))

    assert service.get_alert_status()['consecutive_failures'] == 0
    assert service.handle_sync_completed(failed_run(4)) is False
    assert channel.send.call_count == 0


def test_acknowledge_and_next_failure_clears_it(service, channel, clock):
    for run_id in range(1, 4):
        service.handle_sync_completed(failed_run(run_id))

    assert service.acknowledge(user='ops') is True
    status = service.get_alert_status()
    assert status['is_acknowledged'] is True
    assert status['acknowledged_by'] == 'ops'
    assert status['has_alert'] is False
    assert service.get_active_alerts() == []

    clock.advance(minutes=61)
    assert service.handle_sync_completed(failed_run(4)) is True
    assert service.get_alert_status()['is_acknowledged'] is False


def test_acknowledge_without_failures(service):
    assert service.acknowledge(user='ops') is False


def test_notifications_toggle_off(service, channel, settings):
    settings.set(FEATURES_CATEGORY, NOTIFICATIONS_FEATURE, False)
    for run_id in range(1, 5):
        assert service.handle_sync_completed(failed_run(run_id)) is False

    assert channel.send.call_count == 0
    assert service.get_alert_status()['consecutive_failures'] == 4


def test_undelivered_alert_is_retried(service, channel):
    channel.send.return_value = False
    for run_id in range(1, 4):
        service.handle_sync_completed(failed_run(run_id))
    assert service.get_alert_status()['last_alert_sent_at'] is None

    channel.send.return_value = True
    assert service.handle_sync_completed(failed_run(4)) is True


def test_failure_details_are_capped(service):
    for run_id in range(1, 16):
        service.handle_sync_completed(failed_run(run_id, error=f"error {run_id}"))

    details = service.get_alert_status()['failure_details']
    assert len(details) == 10
    assert details[0]['sync_run_id'] == 6
    assert details[-1]['error'] == 'error 15'


def test_channel_exception_does_not_stop_others(service, channel):
    broken = MagicMock()
    broken.is_configured.return_value = True
    broken.send.side_effect = RuntimeError('smtp down')
    service.alert_manager.channels.insert(0, broken)

    for run_id in range(1, 4):
        service.handle_sync_completed(failed_run(run_id))

    assert channel.send.call_count == 1


def test_alert_is_sent_outside_the_failure_transaction(service, channel, session_manager, monkeypatch):
    open_scopes = []
    session_scope = session_manager.session_scope

    @contextmanager
    def tracked_scope():
        open_scopes.append(True)
        try:
            with session_scope() as session:
                yield session
        finally:
            open_scopes.pop()

    def send(context, message):
        assert not open_scopes
        assert service.get_alert_status()['consecutive_failures'] == context.consecutive_failures
        return True

    monkeypatch.setattr(session_manager, 'session_scope', tracked_scope)
    channel.send.side_effect = send
    for run_id in range(1, 3):
        service.handle_sync_completed(failed_run(run_id))

    assert service.handle_sync_completed(failed_run(3)) is True
    assert channel.send.call_count == 1
    assert service.get_alert_status()['last_alert_sent_at'] is not None
