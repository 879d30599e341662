"""
Optimistic Locking Infrastructure
Conditional writes and version-based concurrency control for ledger rows
"""

import logging
import time
from typing import Any, Dict, Type
from functools import wraps
from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from models import Base
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ConflictError

logger = logging.getLogger(__name__)


class OptimisticLockingError(Exception):
    """Raised when a single conditional write loses a race; retried before surfacing as ConflictError"""
    pass


def conditional_update(
    session: Session,
    model_class: Type[Base],
    entity_id: Any,
    values: Dict[str, Any],
    *conditions,
) -> bool:
    """
    UPDATE ... WHERE id = :id AND <conditions>

    Returns:
        bool: True when exactly one row matched, False when the guard rejected the write
    """
    stmt = (
        update(model_class)
        .where(model_class.id == entity_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"❌ Database error during conditional update of {model_class.__name__} {entity_id}: {e}")
        raise

    matched = result.rowcount == 1
    if not matched:
        logger.debug(f"🔒 Conditional update rejected: {model_class.__name__} id={entity_id}")
    return matched


def versioned_update(
    session: Session,
    model_class: Type[Base],
    entity_id: Any,
    updates: Dict[str, Any],
    current_version: int,
) -> None:
    """
    Perform version-controlled update

    Raises:
        OptimisticLockingError: If another writer bumped the version first
    """
    update_values = {
        **updates,
        'version': current_version + 1,
        'updated_at': get_naive_utc_now(),
    }

    if not conditional_update(
        session, model_class, entity_id, update_values, model_class.version == current_version
    ):
        logger.warning(
            f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
            f"expected_version={current_version}"
        )
        raise OptimisticLockingError(
            f"Version conflict for {model_class.__name__} id={entity_id}. "
            f"Expected version {current_version} but entity was modified by another process."
        )

    logger.debug(
        f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
        f"v{current_version} → v{current_version + 1}"
    )


def with_optimistic_locking(
    max_retries: int = None,
    retry_delay: float = None,
    backoff_factor: float = 2.0
):
    """
    Decorator retrying a whole unit of work on OptimisticLockingError.

    The wrapped function must open its own transaction so every attempt starts
    from a fresh read. Once retries are exhausted a ConflictError is raised.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempts = Config.OPTIMISTIC_LOCK_MAX_RETRIES if max_retries is None else max_retries
            current_delay = Config.OPTIMISTIC_LOCK_RETRY_DELAY if retry_delay is None else retry_delay

            for attempt in range(attempts + 1):
                try:
                    return func(*args, **kwargs)

                except OptimisticLockingError as e:
                    if attempt < attempts:
                        logger.info(
                            f"🔄 Optimistic lock retry {attempt + 1}/{attempts} "
                            f"for {func.__name__}: {e}"
                        )
                        time.sleep(current_delay)
                        current_delay *= backoff_factor
                    else:
                        logger.error(
                            f"❌ Optimistic lock failed after {attempts} retries "
                            f"for {func.__name__}: {e}"
                        )
                        raise ConflictError(str(e)) from e

        return wrapper
    return decorator
