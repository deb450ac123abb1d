"""Translate SQLAlchemy failures into StoreError for the service layer."""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import StoreError

logger = logging.getLogger(__name__)


@contextmanager
def store_call(db: Session, action: str):
    """Run one store operation; roll back and raise StoreError on failure.

    OperationalError covers lock/statement timeouts and dropped connections,
    which are worth retrying. Everything else (constraint violations, bad
    SQL) is not.
    """
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        retryable = isinstance(e, OperationalError) or (
            isinstance(e, DBAPIError) and e.connection_invalidated
        )
        logger.error(f"[STORE] {action} failed: {type(e).__name__}: {e}")
        raise StoreError(f"{action} failed", retryable=retryable) from e
