"""
Append-only capture of every fetched payload.

Each record is committed before normalization is attempted, so a crash
mid-run leaves the payload on disk and replayable. processed_at is the only
field ever mutated, and only once.
"""

import logging
from typing import Any, Dict, List, Optional

from pmpulse.common.date_utils import utc_now
from pmpulse.common.session import SessionManager
from pmpulse.scheduler.models import RawEvent


logger = logging.getLogger(__name__)


class RawEventAlreadyProcessedError(Exception):
    """Raised when marking an event that was already marked processed."""
    pass


class RawEventStore:
    """Durable buffer of raw API payloads tagged by sync run and resource type."""

    def __init__(self, session_manager: SessionManager):
        self.session_manager = session_manager

    def capture(
        self,
        sync_run_id: int,
        resource_type: str,
        external_id: Optional[str],
        payload: Dict[str, Any]
    ) -> RawEvent:
        """
        Persist one payload and return it once committed.

        Args:
            sync_run_id: Owning SyncRun id
            resource_type: Resource type the payload was fetched for
            external_id: Provider identifier, when the payload carries one
            payload: Raw record as received

        Returns:
            RawEvent: The committed (detached) event
        """
        with self.session_manager.session_scope() as session:
            event = RawEvent(
                sync_run_id=sync_run_id,
                resource_type=resource_type,
                external_id=str(external_id) if external_id is not None else None,
                payload=payload,
                pulled_at=utc_now(),
            )
            session.add(event)
            session.flush()
        return event

    def unprocessed(self, resource_type: str, sync_run_id: Optional[int] = None) -> List[RawEvent]:
        """
        Events of a type that have not been normalized yet, oldest first.

        Args:
            resource_type: Resource type to filter on
            sync_run_id: Optionally restrict to one run

        Returns:
            List of detached RawEvent objects
        """
        with self.session_manager.session_scope() as session:
            query = session.query(RawEvent).filter(
                RawEvent.resource_type == resource_type,
                RawEvent.processed_at.is_(None)
            )
            if sync_run_id is not None:
                query = query.filter(RawEvent.sync_run_id == sync_run_id)
            return query.order_by(RawEvent.id).all()

    def for_sync_run(self, sync_run_id: int, resource_type: Optional[str] = None) -> List[RawEvent]:
        """Every event captured by a run, for replay and debugging."""
        with self.session_manager.session_scope() as session:
            query = session.query(RawEvent).filter(RawEvent.sync_run_id == sync_run_id)
            if resource_type:
                query = query.filter(RawEvent.resource_type == resource_type)
            return query.order_by(RawEvent.id).all()

    def mark_processed(self, event: RawEvent, session=None) -> RawEvent:
        """
        Set processed_at on an event. Valid exactly once per event.

        Args:
            event: Event to mark
            session: Optional open session, so the mark commits together
                with the normalized entity

        Returns:
            RawEvent: The marked event

        Raises:
            RawEventAlreadyProcessedError: If the event was already marked
        """
        if session is not None:
            return self._mark(session, event)
        with self.session_manager.session_scope() as own_session:
            return self._mark(own_session, event)

    @staticmethod
    def _mark(session, event: RawEvent) -> RawEvent:
        stored = session.get(RawEvent, event.id, with_for_update=True)
        if stored is None:
            raise ValueError(f"RawEvent {event.id} does not exist")
        if stored.processed_at is not None:
            raise RawEventAlreadyProcessedError(
                f"RawEvent {event.id} already processed at {stored.processed_at.isoformat()}"
            )
        stored.processed_at = utc_now()
        event.processed_at = stored.processed_at
        return stored
