from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from backend.app.cursors import Cursor, decode_cursor, encode_cursor
from backend.app.errors import ValidationError


Row = Dict[str, Any]
PageFetcher = Callable[[Cursor | None, int], List[Row]]


@dataclass(frozen=True)
class PageLimits:
    default: int
    maximum: int
    minimum: int = 1

    def clamp(self, requested: int | None) -> int:
        if requested is None:
            return self.default
        return max(self.minimum, min(self.maximum, requested))


FEED_LIMITS = PageLimits(default=10, maximum=30)
COMMENT_LIMITS = PageLimits(default=20, maximum=50)


@dataclass
class Page:
    rows: List[Row]
    next_cursor: str | None


def parse_cursor_param(token: str | None) -> Cursor | None:
    """Decode a client-supplied cursor; absent means the first page."""

    if token is None or token == "":
        return None
    cursor = decode_cursor(token)
    if cursor is None:
        raise ValidationError("Invalid cursor")
    return cursor


class FeedPaginator:
    """Assembles keyset pages over rows ordered by ``(created_at desc, id desc)``.

    ``fetch`` receives the exclusive lower bound and the number of rows to
    load; it is responsible for applying filters, ordering and the bound.
    """

    def __init__(self, limits: PageLimits):
        self.limits = limits

    def page(self, fetch: PageFetcher, cursor: Cursor | None, limit: int | None) -> Page:
        size = self.limits.clamp(limit)
        rows = fetch(cursor, size + 1)

        if len(rows) <= size:
            return Page(rows=rows, next_cursor=None)

        page_rows = rows[:size]
        return Page(rows=page_rows, next_cursor=encode_cursor(Cursor.from_row(page_rows[-1])))
