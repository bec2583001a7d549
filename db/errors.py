"""Error taxonomy for the custom-attribute engine."""
import functools
import logging

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class AttributeEngineError(Exception):
    """Base class for every error raised by the attribute engine."""


class ValidationError(AttributeEngineError):
    """Input rejected before any write: bad label, bad value, forbidden edit."""


class ConflictError(AttributeEngineError):
    """A definition with the same name already exists for tenant + entity type."""


class NotFoundError(AttributeEngineError):
    """Definition absent, or not visible to the requesting tenant."""


class StorageError(AttributeEngineError):
    """Unexpected storage engine failure. The cause is chained, not exposed."""


def storage_errors(operation: str):
    """Translate SQLAlchemy failures raised by a repository coroutine into StorageError.

    Taxonomy errors raised inside the coroutine pass through untouched.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except SQLAlchemyError as exc:
                logger.exception("Storage failure during %s", operation)
                raise StorageError(f"Storage failure during {operation}") from exc

        return wrapper

    return decorator
