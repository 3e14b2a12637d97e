"""
Typed failures raised by the algorithm components.

Components never build HTTP responses themselves: they raise one of these and
the handler registered in main.py turns it into a JSON `{error, message}`
body with the matching status code.
"""
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AlgorithmError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.error)
        self.message = message


class Unauthorized(AlgorithmError):
    status_code = 401
    error = "Unauthorized"


class Forbidden(AlgorithmError):
    status_code = 403
    error = "Forbidden"


class NotFound(AlgorithmError):
    status_code = 404
    error = "Not found"


class ValidationError(AlgorithmError):
    status_code = 400
    error = "Validation error"


class DependencyFailure(AlgorithmError):
    """An injected collaborator (DB, cache, upstream fetch) raised."""

    status_code = 500
    error = "Internal server error"


class InternalError(AlgorithmError):
    status_code = 500
    error = "Internal server error"


async def algorithm_error_handler(request: Request, exc: AlgorithmError) -> JSONResponse:
    body = {"error": exc.error}
    if exc.message:
        body["message"] = exc.message
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": InternalError.error, "message": str(exc) or "Unknown error"},
    )
