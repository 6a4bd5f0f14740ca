"""
Database engine factory for PostgreSQL (production) and SQLite (local runs, tests).
"""

import time
import logging
from typing import Any, Dict, Union

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig, DatabaseType


logger = logging.getLogger(__name__)

IN_MEMORY_SQLITE = ('sqlite://', 'sqlite:///:memory:')


def create_engine_from_config(
    db_config: DatabaseConfig,
    retries: int = 3,
    retry_delay: int = 5
) -> Engine:
    """
    Create an engine and verify that it can connect.

    An in-memory SQLite database lives on one connection, so it gets a
    StaticPool shared across threads (the job queue runs syncs on worker
    threads).

    Args:
        db_config: Database configuration
        retries: Connection attempts before giving up (default: 3)
        retry_delay: Seconds between attempts (default: 5)

    Returns:
        Engine: Connected SQLAlchemy engine

    Raises:
        ValueError: If the configuration cannot produce a URL
        OperationalError: If every connection attempt fails
    """
    url = build_url(db_config)
    engine = create_engine(url, **_engine_options(db_config, url))

    for attempt in range(1, retries + 1):
        try:
            with engine.connect():
                pass
        except OperationalError as e:
            logger.warning(f"Database not reachable ({attempt}/{retries}): {e}")
            if attempt == retries:
                logger.critical(f"Giving up on {db_config.db_type.value} after {retries} attempts")
                engine.dispose()
                raise
            time.sleep(retry_delay)
        else:
            logger.info(f"Database engine ready: {db_config.db_type.value} ({db_config!r})")
            return engine

    raise ValueError("retries must be at least 1")


def _engine_options(db_config: DatabaseConfig, url: Union[str, URL]) -> Dict[str, Any]:
    if db_config.db_type == DatabaseType.SQLITE:
        options: Dict[str, Any] = {'connect_args': {'check_same_thread': False}}
        if str(url) in IN_MEMORY_SQLITE:
            options['poolclass'] = StaticPool
        return options

    return {
        'pool_size': db_config.pool_size,
        'max_overflow': db_config.max_overflow,
        'pool_timeout': db_config.pool_timeout,
        'pool_recycle': db_config.pool_recycle,
        'pool_pre_ping': db_config.pool_pre_ping,
    }


def build_url(db_config: DatabaseConfig) -> Union[str, URL]:
    """
    SQLAlchemy URL for the configuration.

    DATABASE_URL wins when set. Otherwise PostgreSQL is assembled from its
    parts and SQLite defaults to an in-memory database.
    """
    if db_config.url:
        return db_config.url

    if db_config.db_type == DatabaseType.SQLITE:
        return IN_MEMORY_SQLITE[0]

    missing = [name for name in ('host', 'database', 'username') if not getattr(db_config, name)]
    if missing:
        raise ValueError(f"PostgreSQL configuration incomplete, missing: {', '.join(missing)}")

    return URL.create(
        'postgresql+psycopg2',
        username=db_config.username,
        password=db_config.password or None,
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
    )
