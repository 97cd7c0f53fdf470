"""Room-scoped message log and its REST endpoints."""
