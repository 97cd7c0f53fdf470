"""Parley backend application.

Parley is a small real-time messaging service: token-based accounts,
room-scoped message history over REST, and a WebSocket channel for
presence, typing indicators and live message delivery.

Modules:
    - auth: accounts, sessions, signed tokens and the /auth endpoints
    - rooms: room metadata and access control
    - messages: per-room message log and the /messages endpoints
    - chat: WebSocket endpoint and connection manager
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIASGIMiddleware

from parley import __version__
from parley.auth.router import router as auth_router
from parley.chat.router import router as chat_router
from parley.config import AppConfig, get_config
from parley.errors import register_exception_handlers
from parley.messages.router import router as messages_router
from parley.ratelimit import (
    RateLimitContextMiddleware,
    build_rate_limits,
    limiter,
    rate_limit_exceeded_handler,
)
from parley.services import build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("httpx", "httpcore", "uvicorn.access", "websockets"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config
    services = app.state.services

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in parley.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    background = [
        asyncio.create_task(
            services.manager.run_heartbeat(config.websocket.heartbeat_interval_seconds)
        ),
        asyncio.create_task(
            services.sessions.run_cleanup(config.auth.session_cleanup_interval_seconds)
        ),
    ]
    logger.info(
        "Parley %s ready on http://%s:%s", __version__, config.server.host, config.server.port
    )

    yield  # Application runs here

    # Shutdown
    for task in background:
        task.cancel()
    for task in background:
        with suppress(asyncio.CancelledError):
            await task
    await services.manager.shutdown()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build an application with its own stores and connection manager."""
    config = config if config is not None else get_config()

    app = FastAPI(
        title="Parley API",
        description="Real-time messaging backend: auth, rooms, messages and WebSocket presence",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.services = build_services(config)
    app.state.limiter = limiter
    app.state.rate_limits = build_rate_limits(config.rate_limit)

    if config.rate_limit.enabled:
        app.add_middleware(SlowAPIASGIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Outermost, so every layer below sees this app's limits
    app.add_middleware(RateLimitContextMiddleware, limits=app.state.rate_limits)

    register_exception_handlers(app)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # Register all routers
    app.include_router(auth_router)
    app.include_router(messages_router)
    app.include_router(chat_router)

    @app.get("/health")
    async def health(request: Request) -> dict:
        """Health check endpoint.

        Returns:
            dict: Status, server time and live connection counters.
        """
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connections": request.app.state.services.manager.stats(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    heartbeat = config.websocket.heartbeat_interval_seconds
    uvicorn.run(
        "parley.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        # Protocol-level ping/pong; unanswered peers are dropped by uvicorn
        ws_ping_interval=heartbeat,
        ws_ping_timeout=heartbeat,
    )
