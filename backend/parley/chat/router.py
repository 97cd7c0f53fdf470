"""Real-time WebSocket endpoint.

This module provides:
    - WebSocket /ws: the single real-time channel
    - GET /ws/stats: live connection counters

A client may authenticate in the handshake (``/ws?token=...``), in which
case an invalid token closes the socket with 4001, or later with an
``auth`` message, in which case a bad token only yields an error event and
the connection stays pending. See ``parley.chat.protocol`` for inbound
frames and ``parley.chat.manager`` for outbound events.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, WebSocket
from fastapi.responses import JSONResponse

from parley.errors import AuthError

from .manager import Connection

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Close code for a handshake carrying a bad token
INVALID_TOKEN_CLOSE_CODE = 4001


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Session token for handshake authentication"),
) -> None:
    """Serve one WebSocket client for its whole lifetime.

    Protocol Flow:
        1. Connect with ``?token=`` -> {type: "connected", userId, username}
           or connect bare and send {type: "auth", token}
           -> {type: "authenticated", userId, username}
        2. {type: "join_room", roomId} -> {type: "joined_room", roomId}
        3. {type: "typing", roomId, isTyping} -> typing_start / typing_stop to others
        4. Messages are posted over HTTP and arrive as {type: "new_message", ...}
        5. On close the user's subscriptions and typing timers are cleaned up
    """
    services = websocket.app.state.services
    manager = services.manager

    await websocket.accept()
    conn = Connection(websocket)
    manager.attach(conn)
    logger.info("[WS] New connection %s (handshake token: %s)", conn.id[:8], token is not None)

    try:
        if token is not None:
            try:
                principal = services.tokens.authenticate(token)
            except AuthError:
                logger.warning("[WS] Handshake rejected for %s: invalid token", conn.id[:8])
                manager.detach(conn)
                await websocket.close(code=INVALID_TOKEN_CLOSE_CODE, reason="Invalid token")
                return
            await manager.deliver(manager.authenticate(conn, principal, "connected"))

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("[WS] Client closed %s (code=%s)", conn.id[:8], message.get("code"))
                break
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            await manager.dispatch(conn, raw)
    finally:
        await manager.disconnect(conn)


@router.get("/ws/stats")
async def websocket_stats(request: Request) -> JSONResponse:
    """Connection, user and room counters for the live channel."""
    return JSONResponse(request.app.state.services.manager.stats())
