"""
Middleware Package

error_handler: maps GenGuardError subclasses to HTTP responses and catches
anything unhandled with a generic 500.
"""

from genguard.application.api.middleware.error_handler import (
    ErrorHandlingMiddleware,
    genguard_exception_handler,
    register_error_handling,
    status_code_for,
)

__all__ = [
    "ErrorHandlingMiddleware",
    "genguard_exception_handler",
    "register_error_handling",
    "status_code_for",
]
