"""
Pagination over ordered query sources.

Two modes live side by side:
- keyset (default): `WHERE key > cursor ORDER BY key LIMIT page_size + 1`;
  cost does not depend on how deep the client has paged
- offset (legacy): `OFFSET (page - 1) * page_size`; cost grows with depth,
  kept for clients that need page numbers and totals

The source MUST already be sorted ascending by the cursor key. Nothing here
checks that; an unsorted source silently yields duplicate/missing rows.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from operator import itemgetter
from typing import Any, AsyncIterator, Callable, Generic, Protocol, Sequence, TypeVar

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


class InvalidPageSize(ValueError):
    pass


class OrderedSource(Protocol[T_co]):
    """
    Rows ordered ascending by a unique, monotonic key.
    """

    async def fetch_after(self, cursor: Any | None, limit: int) -> Sequence[T_co]:
        ...

    def stream_after(self, cursor: Any | None) -> AsyncIterator[T_co]:
        ...


class OffsetSource(Protocol[T_co]):
    async def fetch_slice(self, offset: int, limit: int) -> Sequence[T_co]:
        ...

    async def count(self) -> int:
        ...


@dataclass(frozen=True)
class PageResult(Generic[T]):
    items: list[T]
    has_more: bool
    next_cursor: Any | None
    page_size: int

    def to_response(self) -> dict:
        return {
            "data": self.items,
            "page_size": self.page_size,
            "has_more": self.has_more,
            "next_cursor": self.next_cursor,
        }


@dataclass(frozen=True)
class OffsetPage(Generic[T]):
    items: list[T]
    page: int
    page_size: int
    total_count: int
    total_pages: int = field(init=False)

    def __post_init__(self) -> None:
        pages = math.ceil(self.total_count / self.page_size) if self.page_size > 0 else 0
        object.__setattr__(self, "total_pages", pages)

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    def to_response(self) -> dict:
        return {
            "data": self.items,
            "page": self.page,
            "page_size": self.page_size,
            "total_count": self.total_count,
            "total_pages": self.total_pages,
            "has_previous": self.has_previous,
            "has_next": self.has_next,
        }


def clamp_page_size(page_size: int, *, maximum: int = MAX_PAGE_SIZE) -> int:
    """
    Cap at `maximum`; a non-positive size is a caller error, not something to round up.
    """
    if page_size < 1:
        raise InvalidPageSize(f"page_size must be >= 1, got {page_size}.")
    return min(page_size, maximum)


async def keyset_page(
    source: OrderedSource[T],
    cursor: Any | None,
    page_size: int,
    *,
    key: Callable[[T], Any] = itemgetter("id"),
) -> PageResult[T]:
    """
    Fetch one keyset page.

    One extra row is requested so "more exist" is known without a COUNT round-trip.
    The extra row is dropped before building the result.
    """
    size = clamp_page_size(page_size)
    rows = await source.fetch_after(cursor, size + 1)

    has_more = len(rows) > size
    items = list(rows[:size])
    next_cursor = key(items[-1]) if has_more and items else None
    return PageResult(items=items, has_more=has_more, next_cursor=next_cursor, page_size=size)


async def offset_page(
    source: OffsetSource[T],
    page: int,
    page_size: int,
    *,
    total_count: int | None = None,
) -> OffsetPage[T]:
    """
    Fetch one offset page. `total_count` may be passed in when the caller has it cached.
    """
    if page < 1:
        raise InvalidPageSize(f"page must be >= 1, got {page}.")
    size = clamp_page_size(page_size)

    if total_count is None:
        total_count = await source.count()
    rows = await source.fetch_slice((page - 1) * size, size)
    return OffsetPage(items=list(rows), page=page, page_size=size, total_count=total_count)
