"""
Database-specific upsert strategies using the Strategy pattern.

Each strategy writes one record keyed on its natural key and reports what
happened as an explicit UpsertOutcome, so callers never have to inspect
ORM state to learn whether a row was created or updated.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import delete, literal_column
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from .config import DatabaseType
from .date_utils import utc_now


logger = logging.getLogger(__name__)


class UpsertResult(Enum):
    """Outcome of normalizing one record."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of a single upsert plus the surrogate id of the affected row."""
    result: UpsertResult
    id: Optional[int] = None

    @classmethod
    def skipped(cls) -> 'UpsertOutcome':
        return cls(UpsertResult.SKIPPED)


class UpsertStrategy(ABC):
    """Abstract base class for database-specific upsert strategies"""

    # Columns never overwritten on update (auto-managed)
    EXCLUDED_UPDATE_COLUMNS = {'id', 'created_at', 'updated_at'}

    @abstractmethod
    def upsert(
        self,
        session: Session,
        model: Type,
        values: Dict[str, Any],
        constraint_columns: List[str]
    ) -> UpsertOutcome:
        """
        Insert the record, or update every mapped field if a row with the same
        natural key already exists.

        Args:
            session: SQLAlchemy session
            model: SQLAlchemy model class
            values: Dictionary of column name -> value (must include constraint columns)
            constraint_columns: Columns that determine uniqueness

        Returns:
            UpsertOutcome: CREATED or UPDATED with the row id
        """
        pass


class ORMUpsertStrategy(UpsertStrategy):
    """
    Dialect-agnostic upsert: look the row up by natural key, then update it
    in place or add a new instance.

    Used for SQLite and as the fallback for any dialect without a native
    conflict clause. Relies on the unique constraint on the natural key to
    reject a concurrent duplicate insert.
    """

    def upsert(
        self,
        session: Session,
        model: Type,
        values: Dict[str, Any],
        constraint_columns: List[str]
    ) -> UpsertOutcome:
        where_clause = {k: values[k] for k in constraint_columns}
        existing = session.query(model).filter_by(**where_clause).first()

        if existing:
            for key, value in values.items():
                if key not in constraint_columns and key not in self.EXCLUDED_UPDATE_COLUMNS:
                    setattr(existing, key, value)
            # Touch even when nothing changed so updated_at reflects the sync
            existing.updated_at = utc_now()
            session.flush()
            logger.debug(f"ORM upsert (update): {model.__tablename__} {where_clause}")
            return UpsertOutcome(UpsertResult.UPDATED, existing.id)

        instance = model(**values)
        session.add(instance)
        session.flush()
        logger.debug(f"ORM upsert (insert): {model.__tablename__} {where_clause}")
        return UpsertOutcome(UpsertResult.CREATED, instance.id)


class PostgreSQLUpsertStrategy(UpsertStrategy):
    """
    PostgreSQL upsert using ON CONFLICT ... DO UPDATE.

    Syntax:
        INSERT INTO table (col1, col2) VALUES (:val1, :val2)
        ON CONFLICT (col1) DO UPDATE SET col2 = EXCLUDED.col2
        RETURNING id, (xmax = 0) AS inserted

    xmax is zero only for rows inserted by the current statement, which tells
    a fresh insert apart from a conflict update in a single round trip.
    """

    def upsert(
        self,
        session: Session,
        model: Type,
        values: Dict[str, Any],
        constraint_columns: List[str]
    ) -> UpsertOutcome:
        stmt = postgresql.insert(model).values(**values)
        excluded_cols = set(constraint_columns) | self.EXCLUDED_UPDATE_COLUMNS
        update_dict = {k: stmt.excluded[k] for k in values.keys() if k not in excluded_cols}
        update_dict['updated_at'] = utc_now()

        stmt = stmt.on_conflict_do_update(
            index_elements=constraint_columns,
            set_=update_dict
        ).returning(model.id, literal_column('(xmax = 0)').label('inserted'))

        row = session.execute(stmt).one()
        result = UpsertResult.CREATED if row.inserted else UpsertResult.UPDATED
        logger.debug(f"PostgreSQL upsert ({result.value}): {model.__tablename__}")
        return UpsertOutcome(result, row.id)


class UpsertFactory:
    """Factory for creating database-specific upsert strategies"""

    _strategies = {
        DatabaseType.POSTGRESQL: PostgreSQLUpsertStrategy,
        DatabaseType.SQLITE: ORMUpsertStrategy,
    }

    @classmethod
    def get_strategy(cls, db_type: DatabaseType) -> UpsertStrategy:
        """
        Get upsert strategy for database type.

        Args:
            db_type: Database type

        Returns:
            UpsertStrategy: Strategy instance

        Raises:
            ValueError: If database type is unsupported
        """
        strategy_class = cls._strategies.get(db_type)
        if not strategy_class:
            raise ValueError(f"Unsupported database type: {db_type}")
        return strategy_class()

    @classmethod
    def for_dialect(cls, dialect_name: str) -> UpsertStrategy:
        """Strategy for a SQLAlchemy dialect name; unknown dialects use the ORM strategy."""
        if dialect_name == 'postgresql':
            return PostgreSQLUpsertStrategy()
        return ORMUpsertStrategy()


def delete_records_in_range(
    session: Session,
    model: Type,
    date_column: str,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None
) -> int:
    """
    Delete records whose date column falls within an inclusive range.

    Open bounds are unbounded; with neither bound every row is deleted.

    Args:
        session: SQLAlchemy session
        model: SQLAlchemy model class
        date_column: Name of the date column to filter on
        from_date: Inclusive lower bound (optional)
        to_date: Inclusive upper bound (optional)

    Returns:
        int: Number of deleted records
    """
    column = getattr(model, date_column)
    stmt = delete(model)
    if from_date is not None:
        stmt = stmt.where(column >= from_date)
    if to_date is not None:
        stmt = stmt.where(column <= to_date)

    result = session.execute(stmt)
    deleted_count = result.rowcount or 0
    logger.info(
        f"Deleted {deleted_count} records from {model.__tablename__} "
        f"({date_column} {from_date or '-inf'} .. {to_date or '+inf'})"
    )
    return deleted_count
