from __future__ import annotations

MAX_PAGE_SIZE = 200


def clamp_page(limit, offset, *, default_limit: int = 50) -> tuple[int, int]:
    try:
        limit = int(limit if limit not in (None, "") else default_limit)
    except (TypeError, ValueError):
        limit = default_limit
    try:
        offset = int(offset or 0)
    except (TypeError, ValueError):
        offset = 0
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)
