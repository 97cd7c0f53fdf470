"""Limit/offset clamping shared by list endpoints."""
from typing import NamedTuple, Optional

from parley.config import PaginationSettings


class Page(NamedTuple):
    limit: int
    offset: int


def clamp_page(limit: Optional[int], offset: Optional[int], settings: PaginationSettings) -> Page:
    """Out-of-range values are clamped, never rejected."""
    if not limit:
        limit = settings.default_limit
    limit = max(1, min(limit, settings.max_limit))
    offset = max(0, offset or 0)
    return Page(limit, offset)


def pagination_view(page: Page, total: int) -> dict:
    return {
        "total": total,
        "limit": page.limit,
        "offset": page.offset,
        "hasMore": page.offset + page.limit < total,
    }
