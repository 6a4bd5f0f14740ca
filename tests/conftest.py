"""
Shared fixtures: in-memory SQLite database, session manager, settings store,
and fakes for the AppFolio API.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from pmpulse.common.config import AppConfig, DatabaseConfig, DatabaseType, SyncConfig
from pmpulse.common.engine import create_engine_from_config
from pmpulse.common.http_client import Page
from pmpulse.common.session import SessionManager
from pmpulse.common.settings_store import CONNECTION_CATEGORY, SettingsStore
from pmpulse.scheduler.models import create_tables, drop_tables


@pytest.fixture
def engine():
    engine = create_engine_from_config(DatabaseConfig(db_type=DatabaseType.SQLITE, url='sqlite://'))
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session_manager(engine):
    return SessionManager(engine)


@pytest.fixture
def settings(session_manager):
    return SettingsStore(session_manager)


@pytest.fixture
def credentials(settings):
    settings.set(CONNECTION_CATEGORY, 'client_id', 'client-123')
    settings.set(CONNECTION_CATEGORY, 'client_secret', 's3cret')
    settings.set(CONNECTION_CATEGORY, 'database', 'acme')
    return settings


def make_response(status_code=200, json_data=None, headers=None, text=''):
    """Fake requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.headers = headers or {}
    response.text = text
    response.ok = status_code < 400
    return response


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def http_session():
    """Fake requests.Session; set .request.side_effect to a list of responses."""
    return MagicMock()


class FakeClient:
    """
    Stand-in for RateLimitedClient serving canned pages per resource type.

    Pages are lists of records; an Exception instance in the list is raised
    when that page is requested.
    """

    def __init__(self, pages=None, begin_error=None):
        self.pages = pages or {}
        self.begin_error = begin_error
        self.calls = []
        self.began = 0
        self.ended = 0
        self.success_marked = 0
        self.errors_marked = []

    def begin_run(self):
        self.began += 1
        if self.begin_error is not None:
            raise self.begin_error

    def end_run(self):
        self.ended += 1

    def mark_connection_success(self):
        self.success_marked += 1

    def mark_connection_error(self, message):
        self.errors_marked.append(message)

    def fetch_resource(self, resource_type, since_cursor=None, params=None):
        self.calls.append((resource_type, dict(params or {})))
        return self._pages(resource_type)

    def _pages(self, resource_type):
        pages = self.pages.get(resource_type, [[]])
        for number, records in enumerate(pages, start=1):
            if isinstance(records, Exception):
                raise records
            next_url = f"/next/{resource_type}/{number + 1}" if number < len(pages) else None
            yield Page(results=list(records), page_number=number, next_page_url=next_url)


@pytest.fixture
def fake_client_factory():
    return FakeClient


@pytest.fixture
def sync_config():
    return SyncConfig(resources=['properties', 'units'], prefetch_pages=False)


@pytest.fixture
def app_config(sync_config):
    return AppConfig(
        database=DatabaseConfig(db_type=DatabaseType.SQLITE, url='sqlite://'),
        sync=sync_config,
    )


class Clock:
    """Settable naive-UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()
