from __future__ import annotations

from fastapi import HTTPException, status

from services.errors import (
    NotFoundError,
    ValidationError,
    WinterModeActiveError,
    ZoneConflictError,
)


def to_http_error(exc: Exception) -> HTTPException:
    """Translate a service failure into the HTTP status the clients expect."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ZoneConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, WinterModeActiveError):
        return HTTPException(status_code=status.HTTP_423_LOCKED, detail=str(exc))
    if isinstance(exc, (ValidationError, ValueError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
