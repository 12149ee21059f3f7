"""Tests for the row-tracking bulk session against a fake asyncpg connection."""

from unittest.mock import AsyncMock

import pytest

from catalog.repository import ProductBulkSession


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for row in self.rows:
            yield row


class FakeConnection:
    def __init__(self, rows):
        self.rows = rows
        self.cursor_args = None
        self.executemany = AsyncMock()

    def cursor(self, sql, *args, prefetch=None):
        self.cursor_args = (sql, args, prefetch)
        return FakeCursor([dict(r) for r in self.rows])


def product(product_id, name):
    return {
        "id": product_id,
        "name": name,
        "description": None,
        "price": 10,
        "stock": 1,
        "category_id": 1,
        "updated_date": None,
    }


@pytest.mark.asyncio
async def test_matching_locks_rows_with_cursor_prefetch():
    conn = FakeConnection([product(1, "a")])
    session = ProductBulkSession(conn, prefetch=25)

    rows = [row async for row in session.matching([1, 2])]

    sql, args, prefetch = conn.cursor_args
    assert "FOR UPDATE" in sql
    assert args == ([1, 2],)
    assert prefetch == 25
    assert [r["id"] for r in rows] == [1]


@pytest.mark.asyncio
async def test_save_writes_the_tracked_rows():
    conn = FakeConnection([product(1, "a"), product(2, "b")])
    session = ProductBulkSession(conn)

    rows = [row async for row in session.matching([1, 2])]
    for row in rows:
        row["name"] = f"renamed {row['id']}"
    await session.save([{"id": 2}, {"id": 1}])

    statement, params = conn.executemany.await_args.args
    assert "UPDATE products" in statement
    assert [(p[0], p[1]) for p in params] == [(2, "renamed 2"), (1, "renamed 1")]


@pytest.mark.asyncio
async def test_released_rows_can_no_longer_be_saved():
    conn = FakeConnection([product(1, "a")])
    session = ProductBulkSession(conn)
    rows = [row async for row in session.matching([1])]

    session.release()

    with pytest.raises(KeyError):
        await session.save(rows)
    conn.executemany.assert_not_awaited()


@pytest.mark.asyncio
async def test_untracked_row_is_rejected():
    session = ProductBulkSession(FakeConnection([]))

    with pytest.raises(KeyError):
        await session.save([product(7, "never read")])
