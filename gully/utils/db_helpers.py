"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers that degrade to plain reads on SQLite
- Compare-and-swap version bumps
- Atomic counter increments
"""

import logging
from typing import Optional, TypeVar, Type, List
from sqlalchemy import update, func
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == 'postgresql'


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter to find the row
        nowait: If True, raise error immediately if lock unavailable (PostgreSQL only)
        skip_locked: If True, skip locked rows (PostgreSQL only)

    Returns:
        The locked model instance, or None if not found

    Raises:
        OperationalError: If nowait=True and row is locked by another transaction

    Example:
        venue = acquire_row_lock(db, Venue, Venue.id == venue_id)
    """
    query = db.query(model).filter(filter_condition)

    # Only apply locking on PostgreSQL
    if is_postgres(db):
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        elif nowait:
            query = query.with_for_update(nowait=True)
        else:
            query = query.with_for_update()

    return query.first()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> List[T]:
    """
    Get queued records with skip_locked so parallel workers never pick the same row.
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()


def compare_and_swap_version(
    db: Session,
    model: Type[T],
    filter_condition,
    version_column: str,
    expected: int
) -> bool:
    """
    Bump ``version_column`` by one only if it still equals ``expected``.

    Returns False when another transaction moved the version first. Runs
    inside the caller's transaction; the caller commits or rolls back.
    """
    column = getattr(model, version_column)
    result = db.execute(
        update(model)
        .where(filter_condition, column == expected)
        .values({version_column: expected + 1})
        .execution_options(synchronize_session=False)
    )
    swapped = result.rowcount == 1
    if not swapped:
        logger.info(f"CAS miss on {model.__name__}.{version_column} (expected {expected})")
    return swapped


class AtomicCounter:
    """
    Helper for atomic counter increments.

    Prevents lost updates on concurrent increments.

    Example:
        AtomicCounter.increment(db, Venue, Venue.id == venue_id, 'total_bookings')
    """

    @staticmethod
    def increment(
        db: Session,
        model: Type[T],
        filter_condition,
        column_name: str,
        increment_by=1
    ) -> None:
        """Atomically add ``increment_by`` (may be negative) to a numeric column."""
        column = getattr(model, column_name)
        db.execute(
            update(model)
            .where(filter_condition)
            .values({column_name: func.coalesce(column, 0) + increment_by})
            .execution_options(synchronize_session=False)
        )
