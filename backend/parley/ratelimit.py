"""Request rate limiting (slowapi).

Authenticated requests are counted per user, anonymous ones per client
address. The slowapi ``Limiter`` has to exist at import time for the route
decorators, so each application carries its own ``RateLimits`` (settings plus
a counter namespace) and ``RateLimitContextMiddleware`` makes it current for
the duration of a request. Limit strings, the enabled switch and the counter
keys are all read from that per-app object.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.types import ASGIApp, Receive, Scope, Send

from parley.config import RateLimitSettings
from parley.errors import RateLimitError, error_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimits:
    """One application's limit settings and the namespace of its counters."""
    settings: RateLimitSettings
    namespace: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


_current: ContextVar[RateLimits] = ContextVar(
    "parley_rate_limits", default=RateLimits(RateLimitSettings(), namespace="default")
)


def current_limits() -> RateLimits:
    return _current.get()


def rate_limit_key(request: Request) -> str:
    namespace = current_limits().namespace
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"{namespace}:user:{user_id}"
    return f"{namespace}:ip:{get_remote_address(request)}"


def login_limit() -> str:
    return current_limits().settings.login


def messages_limit() -> str:
    return current_limits().settings.messages


def default_limit() -> str:
    return current_limits().settings.default


def limits_disabled() -> bool:
    return not current_limits().settings.enabled


limiter = Limiter(key_func=rate_limit_key, default_limits=[default_limit])


class RateLimitContextMiddleware:
    """Makes an application's ``RateLimits`` current for each request."""

    def __init__(self, app: ASGIApp, limits: RateLimits) -> None:
        self.app = app
        self.limits = limits

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        token = _current.set(self.limits)
        try:
            await self.app(scope, receive, send)
        finally:
            _current.reset(token)


def build_rate_limits(settings: RateLimitSettings) -> RateLimits:
    limits = RateLimits(settings)
    logger.info(
        "[ratelimit] enabled=%s login=%s messages=%s default=%s namespace=%s",
        settings.enabled, settings.login, settings.messages, settings.default, limits.namespace,
    )
    return limits


def _retry_after(request: Request) -> int:
    view_limit = getattr(request.state, "view_rate_limit", None)
    if view_limit is None:
        return 60
    reset_at, _remaining = limiter.limiter.get_window_stats(view_limit[0], *view_limit[1])
    return int(reset_at - time.time()) + 1


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = _retry_after(request)
    logger.warning(
        "[ratelimit] %s %s over limit (%s) for %s",
        request.method, request.url.path, exc.detail, rate_limit_key(request),
    )
    return error_response(RateLimitError(retry_after=retry_after))
