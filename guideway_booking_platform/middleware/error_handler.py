"""
Error handling middleware that renders every failure in the API error envelope.

Error envelope::

    {"success": false, "message": "...", "errors": [...], "error_code": "...", "error_id": "..."}
"""

import logging
import traceback
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as SQLTimeoutError

from ..utils.exceptions import (
    GuidewayError,
    ErrorCode,
    ValidationError,
    InvalidInputError,
    NotFoundError,
    AuthorizationError,
    ConflictError,
    ConcurrencyError,
    ExternalServiceError,
)

logger = logging.getLogger(__name__)


STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.INVALID_STATE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.OPTIMISTIC_LOCK_FAILURE: status.HTTP_409_CONFLICT,
    ErrorCode.EXTERNAL_SERVICE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PAYMENT_SERVICE_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.INVALID_SIGNATURE: status.HTTP_400_BAD_REQUEST,
}


def error_envelope(
    message: str,
    error_code: str,
    errors: Optional[List[Dict[str, Any]]] = None,
    error_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the error response body."""
    return {
        "success": False,
        "message": message,
        "errors": errors or [],
        "error_code": error_code,
        "error_id": error_id or str(uuid4()),
    }


def _errors_for(exc: GuidewayError) -> List[Dict[str, Any]]:
    if isinstance(exc, ValidationError) and exc.field_errors:
        return [
            {"field": field, "message": message}
            for field, messages in exc.field_errors.items()
            for message in messages
        ]
    if isinstance(exc, InvalidInputError) and exc.field:
        return [{"field": exc.field, "message": exc.message}]
    entry: Dict[str, Any] = {"message": exc.message}
    if exc.details:
        entry["details"] = exc.details
    if exc.suggestions:
        entry["suggestions"] = exc.suggestions
    return [entry]


def guideway_error_response(exc: GuidewayError, error_id: Optional[str] = None) -> JSONResponse:
    """Render a platform error with its mapped HTTP status."""
    headers = {}
    if exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=STATUS_MAP.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=error_envelope(exc.message, exc.error_code.value, _errors_for(exc), error_id),
        headers=headers,
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI request validation failures as VALIDATION_ERROR envelopes."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Request validation failed: {request.method} {request.url.path}",
        extra={"validation_errors": errors},
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_envelope("Request validation failed", ErrorCode.VALIDATION_ERROR.value, errors),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework HTTP errors (401 from auth dependencies, 404 routes) in the envelope."""
    code_map = {
        status.HTTP_401_UNAUTHORIZED: ErrorCode.UNAUTHORIZED,
        status.HTTP_403_FORBIDDEN: ErrorCode.FORBIDDEN,
        status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    }
    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.INVALID_INPUT)
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(message, error_code.value, [{"message": message}]),
        headers=getattr(exc, "headers", None),
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware that turns escaped exceptions into error envelopes."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        error_id = str(uuid4())

        try:
            return await call_next(request)
        except Exception as exc:
            return self._handle_exception(request, exc, error_id)

    def _handle_exception(self, request: Request, exc: Exception, error_id: str) -> JSONResponse:
        self._log_error(request, exc, error_id)

        if isinstance(exc, GuidewayError):
            return guideway_error_response(exc, error_id)
        elif isinstance(exc, IntegrityError):
            return self._handle_integrity_error(exc, error_id)
        elif isinstance(exc, (OperationalError, SQLTimeoutError)):
            return self._handle_database_error(exc, error_id)
        return self._handle_unexpected_error(exc, error_id)

    def _handle_integrity_error(self, exc: IntegrityError, error_id: str) -> JSONResponse:
        conflict = ConflictError(
            "A record with this information already exists",
            details={"constraint_type": "integrity"}
        )
        return guideway_error_response(conflict, error_id)

    def _handle_database_error(self, exc: Exception, error_id: str) -> JSONResponse:
        unavailable = ExternalServiceError(
            "database",
            "Database service temporarily unavailable",
            details={"error_type": type(exc).__name__}
        )
        response = guideway_error_response(unavailable, error_id)
        response.headers["Retry-After"] = "30"
        return response

    def _handle_unexpected_error(self, exc: Exception, error_id: str) -> JSONResponse:
        content = error_envelope(
            "An unexpected error occurred",
            ErrorCode.INTERNAL_ERROR.value,
            [{"message": "An unexpected error occurred"}],
            error_id,
        )
        if self.debug:
            content["debug"] = {
                "exception": str(exc),
                "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
            }
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)

    def _log_error(self, request: Request, exc: Exception, error_id: str) -> None:
        context = {
            "error_id": error_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
        user = getattr(request.state, "user", None)
        if user is not None:
            context["user_id"] = str(user.id)
            context["role"] = user.role.value

        if isinstance(exc, GuidewayError):
            context["error_code"] = exc.error_code.value
            context["details"] = exc.details
            if isinstance(exc, (NotFoundError, ValidationError, InvalidInputError, AuthorizationError)):
                logger.warning(f"Client error [{error_id}]: {exc.message}", extra=context)
            elif isinstance(exc, (ConcurrencyError, ExternalServiceError)):
                logger.error(f"System error [{error_id}]: {exc.message}", extra=context)
            else:
                logger.info(f"Business rule rejected request [{error_id}]: {exc.message}", extra=context)
        else:
            logger.error(
                f"Unexpected error [{error_id}]: {exc}",
                extra={**context, "error_type": type(exc).__name__},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
