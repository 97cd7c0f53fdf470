"""Accounts, sessions, signed tokens and the auth HTTP endpoints."""
