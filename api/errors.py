"""
Mapping of broker failures to HTTP responses.

Internal details (store messages, collaborator errors) are logged, never
returned to the caller.
"""

import logging

from fastapi import HTTPException

from domain.errors import (
    ConflictError,
    NotFoundError,
    StorageError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def http_error_for(exc: Exception) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (StorageError, UpstreamError)):
        logger.error("Dependency failure", extra={"error": str(exc)})
        return HTTPException(status_code=503, detail="Service temporarily unavailable")

    logger.exception("Unhandled error", exc_info=exc)
    return HTTPException(status_code=500, detail="Internal server error")
