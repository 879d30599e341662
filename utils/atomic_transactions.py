"""Atomic transaction utilities for ledger units of work"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional
from sqlalchemy.orm import Session

import database

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None,
                       session_factory: Optional[Callable[[], Session]] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for one atomic unit of work.

    With no session a fresh one is opened, committed on success, rolled back on
    any exception and closed. A provided session is used as-is and left for the
    caller to commit, so nested units join the outer transaction.
    """
    if session is not None:
        yield session
        return

    factory = session_factory or database.SessionLocal
    new_session = factory()
    try:
        yield new_session
        new_session.commit()
        logger.debug("Atomic transaction committed successfully")
    except Exception as e:
        new_session.rollback()
        logger.debug(f"Atomic transaction rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        new_session.close()
