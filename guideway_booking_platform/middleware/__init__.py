"""Middleware components for the Guideway Booking Platform."""

from .error_handler import (
    ErrorHandlerMiddleware,
    http_exception_handler,
    request_validation_exception_handler,
)
from .logging import LoggingMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "LoggingMiddleware",
    "http_exception_handler",
    "request_validation_exception_handler",
]
