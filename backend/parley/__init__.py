"""Parley: real-time messaging backend.

Token-based authentication, room-scoped message CRUD and a WebSocket layer
for presence, typing indicators and message fan-out.
"""
__version__ = "0.1.0"
