"""
Configuration management for the sync engine.
Handles .env-based configuration for the database, the AppFolio client,
sync windows and failure alert thresholds.

API credentials are not part of this configuration: they are read from the
settings store at the start of every sync run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from decouple import config as env_config, Csv


class DatabaseType(Enum):
    """Supported database types"""
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"


# Resource types in the order they must be synced (parents before children)
DEFAULT_RESOURCES = [
    'properties',
    'units',
    'vendors',
    'work_orders',
    'bill_details',
    'rent_roll',
]


@dataclass
class DatabaseConfig:
    """
    Database connection configuration.
    Either a full SQLAlchemy URL or discrete PostgreSQL connection parts.
    """
    db_type: DatabaseType
    url: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    # Connection pool settings
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 60
    pool_recycle: int = 1800
    pool_pre_ping: bool = True

    def __repr__(self) -> str:
        """Safe representation without password"""
        return (f"DatabaseConfig(db_type={self.db_type.value}, host={self.host}, "
                f"database={self.database}, username={self.username})")


@dataclass
class ClientConfig:
    """
    AppFolio API client configuration.
    Retry and rate-limit settings for the RateLimitedClient.
    """
    base_url: Optional[str] = None  # Defaults to https://{database}.appfolio.com
    timeout: int = 30
    max_retries: int = 5
    initial_backoff: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 60.0
    requests_per_minute: int = 60
    per_page: int = 100
    user_agent: str = 'PMPulse/1.0'


@dataclass
class SyncConfig:
    """Sync window and scheduling configuration."""
    resources: List[str] = field(default_factory=lambda: list(DEFAULT_RESOURCES))
    incremental_days: int = 7
    full_sync_lookback_days: int = 365
    active_run_window_minutes: int = 120
    prefetch_pages: bool = True
    schedule_cron: str = '0 */4 * * *'


@dataclass
class AlertThresholds:
    """Consecutive-failure alerting thresholds."""
    failure_threshold: int = 3
    cooldown_minutes: int = 60
    recipients: List[str] = field(default_factory=list)


@dataclass
class AppConfig:
    """
    Main configuration class for the sync engine.
    Passed explicitly into the components that need it.
    """
    database: DatabaseConfig = field(
        default_factory=lambda: DatabaseConfig(db_type=DatabaseType.SQLITE, url='sqlite:///pmpulse.db')
    )
    client: ClientConfig = field(default_factory=ClientConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    alerts: AlertThresholds = field(default_factory=AlertThresholds)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """
        Load configuration from environment variables (.env file).

        Returns:
            AppConfig: Configuration loaded from environment
        """
        return cls(
            database=_database_from_env(),
            client=ClientConfig(
                base_url=env_config('APPFOLIO_BASE_URL', default=None),
                timeout=env_config('APPFOLIO_TIMEOUT', default=30, cast=int),
                max_retries=env_config('APPFOLIO_MAX_RETRIES', default=5, cast=int),
                initial_backoff=env_config('APPFOLIO_INITIAL_BACKOFF', default=1.0, cast=float),
                backoff_multiplier=env_config('APPFOLIO_BACKOFF_MULTIPLIER', default=2.0, cast=float),
                max_backoff=env_config('APPFOLIO_MAX_BACKOFF', default=60.0, cast=float),
                requests_per_minute=env_config('APPFOLIO_REQUESTS_PER_MINUTE', default=60, cast=int),
                per_page=env_config('APPFOLIO_SYNC_BATCH_SIZE', default=100, cast=int),
            ),
            sync=SyncConfig(
                resources=env_config('APPFOLIO_SYNC_RESOURCES', default=','.join(DEFAULT_RESOURCES), cast=Csv()),
                incremental_days=env_config('APPFOLIO_INCREMENTAL_DAYS', default=7, cast=int),
                full_sync_lookback_days=env_config('APPFOLIO_FULL_SYNC_LOOKBACK_DAYS', default=365, cast=int),
                active_run_window_minutes=env_config('SYNC_ACTIVE_RUN_WINDOW_MINUTES', default=120, cast=int),
                prefetch_pages=env_config('SYNC_PREFETCH_PAGES', default=True, cast=bool),
                schedule_cron=env_config('SYNC_SCHEDULE_CRON', default='0 */4 * * *'),
            ),
            alerts=AlertThresholds(
                failure_threshold=env_config('SYNC_ALERT_FAILURE_THRESHOLD', default=3, cast=int),
                cooldown_minutes=env_config('SYNC_ALERT_COOLDOWN_MINUTES', default=60, cast=int),
                recipients=env_config('SYNC_ALERT_RECIPIENTS', default='', cast=Csv()),
            ),
        )


def _database_from_env() -> DatabaseConfig:
    """Build the database config from DATABASE_URL or POSTGRESQL_* parts."""
    pool_kwargs = dict(
        pool_size=env_config('DB_POOL_SIZE', default=5, cast=int),
        max_overflow=env_config('DB_MAX_OVERFLOW', default=10, cast=int),
        pool_timeout=env_config('DB_POOL_TIMEOUT', default=60, cast=int),
        pool_recycle=env_config('DB_POOL_RECYCLE', default=1800, cast=int),
    )

    url = env_config('DATABASE_URL', default=None)
    if url:
        db_type = DatabaseType.SQLITE if url.startswith('sqlite') else DatabaseType.POSTGRESQL
        return DatabaseConfig(db_type=db_type, url=url, **pool_kwargs)

    pg_host = env_config('POSTGRESQL_HOST', default=None)
    if pg_host:
        return DatabaseConfig(
            db_type=DatabaseType.POSTGRESQL,
            host=pg_host,
            port=env_config('POSTGRESQL_PORT', default=5432, cast=int),
            database=env_config('POSTGRESQL_DATABASE'),
            username=env_config('POSTGRESQL_USERNAME'),
            password=env_config('POSTGRESQL_PASSWORD'),
            **pool_kwargs
        )

    return DatabaseConfig(db_type=DatabaseType.SQLITE, url='sqlite:///pmpulse.db')
