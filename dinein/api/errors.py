"""
Mapping from domain results to HTTP responses
"""

from fastapi import HTTPException, status
from typing import TypeVar

from dinein.core.errors import DomainError, ErrorKind
from dinein.core.results import Result

T = TypeVar("T")

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INFRASTRUCTURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_error(error: DomainError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=error.to_dict(),
    )


def unwrap_or_raise(result: Result[T]) -> T:
    """Return the result value or raise the matching HTTPException"""
    if not result.ok:
        raise http_error(result.error)
    return result.value
