"""
Session management for database operations with context managers.
Provides transaction safety with automatic commit/rollback.
"""

import logging
from contextlib import contextmanager
from typing import Generator
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.engine import Engine


logger = logging.getLogger(__name__)


class SessionManager:
    """
    Manages database sessions with automatic transaction handling.

    Every unit of work in the sync engine (capturing a raw event, normalizing
    one record, a state transition on a SyncRun) runs in its own scope, so a
    failure in one record never rolls back the work of another.
    """

    def __init__(self, engine: Engine):
        """
        Initialize session manager.

        Args:
            engine: SQLAlchemy engine
        """
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        logger.debug("Session manager initialized")

    @property
    def dialect_name(self) -> str:
        """Name of the bound engine's dialect ('postgresql', 'sqlite', ...)."""
        return self.engine.dialect.name

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for database operations.

        Yields:
            Session: SQLAlchemy session

        Example:
            with session_manager.session_scope() as session:
                run = session.get(SyncRun, run_id)
                # Auto-commit on success, auto-rollback on exception
        """
        session = self.Session()
        try:
            yield session
            session.commit()
            logger.debug("Session committed successfully")

        except Exception as e:
            session.rollback()
            logger.error(f"Session rolled back due to error: {e}")
            raise

        finally:
            session.close()
            logger.debug("Session closed")
