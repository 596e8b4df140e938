"""
Error Handling

Two layers:
1. Exception handlers map ``GenGuardError`` subclasses to HTTP status codes and
   render ``error.to_dict()`` as the body.
2. ``ErrorHandlingMiddleware`` is the last line of defense for anything else:
   the error is logged with its stack trace and the client gets a generic 500.
"""

import traceback
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from genguard.core.exceptions import (
    ConcurrencyLimitError,
    ConfigurationError,
    GenGuardError,
    InsufficientCreditsError,
    JobNotFoundError,
    JobStoreError,
)
from genguard.core.logging.logger import get_logger
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins
STATUS_CODES: tuple[tuple[type[GenGuardError], int], ...] = (
    (JobNotFoundError, 404),
    (InsufficientCreditsError, 402),
    (ConcurrencyLimitError, 429),
    (JobStoreError, 503),
    (ConfigurationError, 500),
)


def status_code_for(exc: GenGuardError) -> int:
    for error_cls, status_code in STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 500


async def genguard_exception_handler(request: Request, exc: GenGuardError) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"Request failed: {exc.message}",
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        job_id=exc.job_id,
    )
    get_metrics_collector().record_error(type(exc).__name__, "handled")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Catch-all for exceptions no handler claimed.

    Internal details stay in the logs; the response carries only the error type
    unless ``include_traceback`` is set (development only).
    """

    def __init__(self, app, include_traceback: bool = False):
        super().__init__(app)
        self.include_traceback = include_traceback

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            method = request.method
            path = request.url.path
            error_type = type(e).__name__

            logger.error(
                f"Unhandled exception in request: {method} {path}",
                method=method,
                path=path,
                error_type=error_type,
                error_message=str(e),
                exc_info=True,
            )
            get_metrics_collector().record_error(error_type, "unhandled_exception")

            error_response = {
                "error": "internal_server_error",
                "message": "An unexpected error occurred while processing your request",
                "error_type": error_type,
            }
            if self.include_traceback:
                error_response["traceback"] = traceback.format_exc()
                error_response["detail"] = str(e)

            return JSONResponse(status_code=500, content=error_response)


def register_error_handling(app: FastAPI, include_traceback: bool = False) -> None:
    app.add_exception_handler(GenGuardError, genguard_exception_handler)
    app.add_middleware(ErrorHandlingMiddleware, include_traceback=include_traceback)
    logger.info("Error handling registered", include_traceback=include_traceback)
