"""Tests for the click command-line interface."""

from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from pmpulse import __version__
from pmpulse.cli.main import cli
from pmpulse.common.models import Vendor
from pmpulse.scheduler.config import SchedulerConfig
from pmpulse.scheduler.jobs import build_services


PAGES = {
    'properties': [[{'property_id': 'P1', 'property_name': 'Elm'}]],
    'units': [[{'unit_id': 'U1', 'property_id': 'P1'}]],
}


@pytest.fixture
def services(engine, app_config, fake_client_factory):
    client = fake_client_factory(PAGES)
    return build_services(
        app_config, SchedulerConfig(), engine=engine,
        client_factory=lambda: client, show_progress=False,
    )


@pytest.fixture
def invoke(services):
    runner = CliRunner()

    def run(*args, input=None):
        return runner.invoke(cli, ['--log-level', 'WARNING', *args], obj={'services': services}, input=input)

    return run


def test_version():
    result = CliRunner().invoke(cli, ['--version'])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_sync_runs_to_completion(invoke, services):
    result = invoke('sync', '--mode', 'full')

    assert result.exit_code == 0, result.output
    assert 'Sync completed successfully' in result.output
    run = services.tracker.get(1)
    assert run.status == 'completed'
    assert services.tracker.metadata(run).extra['triggered_by'] == 'command'


def test_sync_refused_while_run_active(invoke, services):
    services.tracker.start(services.tracker.create_run('incremental'))

    result = invoke('sync')

    assert result.exit_code == 1


def test_sync_no_wait_leaves_pending_run(invoke, services):
    result = invoke('sync', '--no-wait', '--from', '2026-01-01', '--to', '2026-01-31')

    assert result.exit_code == 0, result.output
    assert 'queued' in result.output
    (pending,) = services.tracker.pending_runs()
    extra = services.tracker.metadata(pending).extra
    assert (extra['from_date'], extra['to_date']) == ('2026-01-01', '2026-01-31')


def test_sync_requires_both_dates(invoke):
    result = invoke('sync', '--from', '2026-01-01')
    assert result.exit_code == 2


def test_reprocess_with_force(invoke):
    result = invoke('utilities:reprocess', '--force')

    assert result.exit_code == 0, result.output
    assert 'Utility Expense Reprocessing' in result.output


def test_reprocess_aborted_at_prompt(invoke):
    result = invoke('utilities:reprocess', input='n\n')

    assert result.exit_code == 0
    assert 'Aborted' in result.output


def test_vendor_link_and_unlink(invoke, services):
    with services.session_manager.session_scope() as session:
        session.add_all([Vendor(external_id='V1', company_name='A'), Vendor(external_id='V2', company_name='B')])

    result = invoke('vendors:link', '2', '1')
    assert result.exit_code == 0, result.output
    assert services.vendor_dedup.effective_vendor_id(2) == 1

    result = invoke('vendors:unlink', '2')
    assert result.exit_code == 0, result.output
    assert services.vendor_dedup.effective_vendor_id(2) == 2


def test_vendor_link_rejects_unknown_vendor(invoke):
    result = invoke('vendors:link', '1', '2')
    assert result.exit_code == 1


def test_vendor_duplicates(invoke):
    result = invoke('vendors:duplicates', '--threshold', '0.5')

    assert result.exit_code == 0, result.output
    assert '0 vendors' in result.output


def test_alert_status_and_ack(invoke, services):
    result = invoke('alerts:status')
    assert result.exit_code == 0, result.output
    assert 'Sync Failure Alert' in result.output

    result = invoke('alerts:ack', '--user', 'ops')
    assert result.exit_code == 0
    assert 'No active alert' in result.output


@pytest.mark.parametrize('outcome, exit_code, text', [
    ((True, 'Connected'), 0, 'Connected'),
    ((False, 'HTTP 403: Forbidden'), 1, 'Connection failed: HTTP 403'),
])
def test_connection_command(invoke, services, outcome, exit_code, text):
    client = MagicMock()
    client.test_connection.return_value = outcome
    services.client_factory = lambda: client

    result = invoke('connection:test')

    assert result.exit_code == exit_code, result.output
    assert text in result.output
    client.test_connection.assert_called_once_with()
