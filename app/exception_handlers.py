"""Global exception handlers for delivery engine errors.

Routes translate the errors they expect; these handlers map whatever
escapes onto status codes so clients never see a bare 500 for a domain
error.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.services.errors import (
    DeliveryEngineError,
    DeliveryValidationError,
    JobStateError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


def _status_for(exc: DeliveryEngineError) -> int:
    if isinstance(exc, DeliveryValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, JobStateError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def delivery_engine_exception_handler(
    request: Request, exc: DeliveryEngineError
) -> JSONResponse:
    """Convert a domain exception into a JSON error response."""
    status_code = _status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        f"Request failed: {exc.__class__.__name__}",
        extra={"path": request.url.path, "status_code": status_code, "error": str(exc)},
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def configure_exception_handlers(app: FastAPI) -> None:
    """Register the domain exception handlers on an application."""
    app.add_exception_handler(DeliveryEngineError, delivery_engine_exception_handler)
