"""Real-time channel: WebSocket endpoint, inbound protocol and connection manager."""
