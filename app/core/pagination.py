"""Offset pagination over Beanie find queries (members, activity feed)."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

MAX_PAGE_SIZE = 500


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    total: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def clamp(limit: int, offset: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    return max(1, min(limit, max_limit)), max(0, offset)


async def fetch_page(query: Any, limit: int, offset: int, *sort: Any) -> Page:
    """Count, then fetch one window of ``query`` in ``sort`` order."""
    limit, offset = clamp(limit, offset)
    total = await query.count()
    if sort:
        query = query.sort(*sort)
    items = await query.skip(offset).limit(limit).to_list()
    return Page(items=items, limit=limit, offset=offset, total=total)
