import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from evently.domain.exceptions import (
    AuthError,
    ConflictError,
    EventlyError,
    ForbiddenError,
    NotFoundError,
    SignatureMismatchError,
    TransientInfraError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their parents.
_STATUS_BY_ERROR: list[tuple[type[EventlyError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (TransientInfraError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SignatureMismatchError, status.HTTP_400_BAD_REQUEST),
]


def status_for(exc: EventlyError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def detail_for(exc: EventlyError) -> str:
    # Auth failures never reveal which check failed.
    if isinstance(exc, ForbiddenError):
        return "Forbidden"
    if isinstance(exc, AuthError):
        return "Unauthorized"
    return str(exc)


async def evently_error_handler(request: Request, exc: EventlyError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("Transient failure on %s %s: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail_for(exc)},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EventlyError, evently_error_handler)
