"""Map ledger errors onto HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from ..errors import (
    Conflict,
    LedgerError,
    NotFound,
    ProcessorError,
    Transient,
    Unauthorized,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[LedgerError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Unauthorized, status.HTTP_403_FORBIDDEN),
    (Conflict, status.HTTP_409_CONFLICT),
    (Transient, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProcessorError, status.HTTP_502_BAD_GATEWAY),
)


def to_http(exc: LedgerError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            headers = {"Retry-After": "1"} if isinstance(exc, Transient) else None
            return HTTPException(status_code=status_code, detail=str(exc), headers=headers)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")
