"""Error taxonomy and FastAPI exception handlers.

Every failure that reaches a client is one of the ``ParleyError`` subclasses
below. Handlers turn them into a flat JSON body::

    {"error": "<human message>", "code": "<machine code>"}

plus ``field`` for validation failures and ``retry_after`` for rate limits.
The same classes are reused by the WebSocket layer, which renders them as
``{"type": "error", ...}`` events instead of HTTP responses.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ParleyError(Exception):
    """Base class for all errors surfaced to clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None):
        self.message = message or self.message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(ParleyError):
    """Malformed or missing input. ``field`` names the offending field."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    message = "Invalid request"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None,
                 code: Optional[str] = None):
        super().__init__(message, code=code)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class AuthError(ParleyError):
    """Missing, invalid, expired or revoked credentials.

    The message never says which verification step failed.
    """

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_token"
    message = "Invalid or expired token"


class AuthorizationError(ParleyError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    message = "Access denied"


class NotFoundError(ParleyError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    message = "Not found"


class ConflictError(ParleyError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    message = "Resource already exists"


class RateLimitError(ParleyError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
    message = "Too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class InternalError(ParleyError):
    """Unexpected fault. Details stay in the server log."""


# =============================================================================
# FastAPI handlers
# =============================================================================


def error_response(exc: ParleyError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers(),
    )


async def parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[errors] %s %s -> %s", request.method, request.url.path, exc.code)
    else:
        logger.info(
            "[errors] %s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code
        )
    return error_response(exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Translate pydantic request validation into a ``ValidationError``.

    Only the first failing field is reported; ``body``/``query``/``path``
    prefixes are stripped from its location.
    """
    errors = exc.errors()
    field = None
    message = "Invalid request"
    if errors:
        first = errors[0]
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or None
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    logger.info("[errors] Validation failed on %s %s: %s", request.method, request.url.path, message)
    return error_response(ValidationError(message, field=field))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Keep framework-raised HTTP errors (404 route, 405 method) in the same body shape."""
    exception_map = {
        status.HTTP_400_BAD_REQUEST: ValidationError,
        status.HTTP_401_UNAUTHORIZED: AuthError,
        status.HTTP_403_FORBIDDEN: AuthorizationError,
        status.HTTP_404_NOT_FOUND: NotFoundError,
    }
    exception_class = exception_map.get(exc.status_code)
    if exception_class is None:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "code": f"http_{exc.status_code}"},
            headers=getattr(exc, "headers", None),
        )
    return error_response(exception_class(str(exc.detail)))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("[errors] Unhandled error on %s %s", request.method, request.url.path)
    return error_response(InternalError())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ParleyError, parley_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
