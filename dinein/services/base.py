"""
Service boundary helpers
"""

from typing import Any, Awaitable, Callable, TypeVar
from sqlalchemy.exc import SQLAlchemyError
import functools
import structlog

from dinein.core.errors import DomainError, StoreUnavailable
from dinein.core.results import Result

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def service_operation(operation: str):
    """
    Wrap an async service method so it returns a Result.

    DomainError raised inside the method (typically to roll back a
    transaction) becomes a failed Result. Store faults are logged and
    returned as StoreUnavailable. Anything else propagates.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[Result[T]]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
            try:
                return Result.success(await func(*args, **kwargs))
            except DomainError as e:
                logger.info(
                    "Operation rejected",
                    operation=operation,
                    code=e.code,
                    kind=e.kind.value,
                    message=e.message,
                )
                return Result.failure(e)
            except SQLAlchemyError as e:
                logger.error("Store error", operation=operation, error=str(e), exc_info=True)
                return Result.failure(StoreUnavailable(operation))
        return wrapper
    return decorator
