# backend/sahayak/api/dependencies/database.py
"""
Database-related dependencies.
"""

from typing import Callable, Generator

from sqlalchemy.orm import Session

from ...database import SessionLocal, get_db as original_get_db


def get_db() -> Generator[Session, None, None]:
    """
    Get database session dependency.

    Yields:
        Database session that will be closed after use
    """
    yield from original_get_db()


def get_session_factory() -> Callable[[], Session]:
    """
    Session factory for work that outlives the request, such as webhook
    processing scheduled as a background task.
    """
    return SessionLocal
