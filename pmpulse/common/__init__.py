"""
Common Data Layer Module (API -> raw events -> SQL)

Shared building blocks for the sync engine:
- Configuration from environment / .env (python-decouple)
- SQLAlchemy engine and session management (PostgreSQL, SQLite)
- Dialect-aware upsert strategies
- Rate-limited AppFolio API client
- Settings store for credentials and feature toggles

Example Usage:
    from pmpulse.common import AppConfig, create_engine_from_config, SessionManager

    config = AppConfig.from_env()
    engine = create_engine_from_config(config.database)
    session_manager = SessionManager(engine)

    with session_manager.session_scope() as session:
        ...
"""

from .config import AppConfig, ClientConfig, DatabaseConfig, DatabaseType, SyncConfig
from .engine import create_engine_from_config
from .session import SessionManager
from .settings_store import SettingsStore
from .upsert_strategies import UpsertFactory, UpsertOutcome, UpsertResult

__all__ = [
    'AppConfig',
    'ClientConfig',
    'DatabaseConfig',
    'DatabaseType',
    'SyncConfig',
    'create_engine_from_config',
    'SessionManager',
    'SettingsStore',
    'UpsertFactory',
    'UpsertOutcome',
    'UpsertResult',
]
