"""
Product persistence (raw SQL).

Read shapes:
- `ProductSource`: ordered-by-id access for keyset pages, offset pages and
  streaming exports, all sharing the same optional filters
- single-row and by-category lookups for cached reads

Write shapes:
- single create/update/delete
- bulk insert and bulk delete as set-based statements
- `ProductBulkStore`: one transaction plus a row-tracking session for the
  batched bulk update pipeline (`core.bulk`)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Sequence

import asyncpg

from core import db

PRODUCT_COLUMNS = "id, name, description, price, stock, category_id, created_date, updated_date"
# Lists and exports leave out the description and timestamps.
PRODUCT_LIST_COLUMNS = "id, name, price, stock, category_id"


@dataclass(frozen=True)
class ProductFilters:
    category_id: int | None = None
    min_price: Decimal | None = None
    max_price: Decimal | None = None
    in_stock: bool | None = None
    modified_after: datetime | None = None

    def where(self, start: int = 1) -> tuple[list[str], list[Any]]:
        """
        Build `WHERE` clauses with asyncpg placeholders numbered from `start`.
        """
        clauses: list[str] = []
        args: list[Any] = []

        def add(template: str, value: Any) -> None:
            args.append(value)
            clauses.append(template.format(f"${start + len(args) - 1}"))

        if self.category_id is not None:
            add("category_id = {}", self.category_id)
        if self.min_price is not None:
            add("price >= {}", self.min_price)
        if self.max_price is not None:
            add("price <= {}", self.max_price)
        if self.in_stock is True:
            clauses.append("stock > 0")
        elif self.in_stock is False:
            clauses.append("stock = 0")
        if self.modified_after is not None:
            add("COALESCE(updated_date, created_date) > {}", self.modified_after)
        return clauses, args


def _where_sql(clauses: list[str]) -> str:
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


class ProductSource:
    """
    Products ordered ascending by id.

    `limit` caps `stream_after()` in SQL; pages carry their own limit.
    """

    def __init__(
        self,
        filters: ProductFilters | None = None,
        *,
        limit: int | None = None,
        prefetch: int = 500,
        columns: str = PRODUCT_LIST_COLUMNS,
    ) -> None:
        self.filters = filters or ProductFilters()
        self.limit = limit
        self.prefetch = prefetch
        self.columns = columns

    def _after(self, cursor: int | None) -> tuple[list[str], list[Any]]:
        clauses, args = self.filters.where()
        if cursor is not None:
            args.append(cursor)
            clauses.append(f"id > ${len(args)}")
        return clauses, args

    async def fetch_after(self, cursor: int | None, limit: int) -> list[dict]:
        clauses, args = self._after(cursor)
        args.append(limit)
        return await db.fetch_all(
            f"""
            SELECT {self.columns}
            FROM products
            {_where_sql(clauses)}
            ORDER BY id ASC
            LIMIT ${len(args)}
            """,
            *args,
        )

    async def stream_after(self, cursor: int | None = None) -> AsyncIterator[dict]:
        clauses, args = self._after(cursor)
        limit_sql = ""
        if self.limit is not None:
            args.append(self.limit)
            limit_sql = f"LIMIT ${len(args)}"
        sql = f"""
            SELECT {self.columns}
            FROM products
            {_where_sql(clauses)}
            ORDER BY id ASC
            {limit_sql}
        """
        async for row in db.stream(sql, *args, prefetch=self.prefetch):
            yield row

    async def fetch_slice(self, offset: int, limit: int) -> list[dict]:
        clauses, args = self.filters.where()
        args.extend([limit, offset])
        return await db.fetch_all(
            f"""
            SELECT {self.columns}
            FROM products
            {_where_sql(clauses)}
            ORDER BY id ASC
            LIMIT ${len(args) - 1} OFFSET ${len(args)}
            """,
            *args,
        )

    async def count(self) -> int:
        clauses, args = self.filters.where()
        value = await db.fetch_val(f"SELECT count(*) FROM products {_where_sql(clauses)}", *args)
        return int(value or 0)


def product_source(
    filters: ProductFilters | None = None,
    *,
    limit: int | None = None,
    prefetch: int = 500,
) -> ProductSource:
    return ProductSource(filters, limit=limit, prefetch=prefetch)


async def get_product(product_id: int) -> dict | None:
    return await db.fetch_one(
        f"""
        SELECT {PRODUCT_COLUMNS}
        FROM products
        WHERE id = $1
        """,
        product_id,
    )


async def list_by_category(category_id: int) -> list[dict]:
    return await db.fetch_all(
        f"""
        SELECT {PRODUCT_LIST_COLUMNS}
        FROM products
        WHERE category_id = $1
        ORDER BY id ASC
        """,
        category_id,
    )


async def create_product(data: dict) -> dict:
    row = await db.fetch_one(
        f"""
        INSERT INTO products (name, description, price, stock, category_id, created_date)
        VALUES ($1, $2, $3, $4, $5, $6)
        RETURNING {PRODUCT_COLUMNS}
        """,
        data["name"],
        data.get("description"),
        data["price"],
        data.get("stock", 0),
        data["category_id"],
        _now(),
    )
    if row is None:
        raise RuntimeError("INSERT INTO products returned no row.")
    return row


async def update_product(product_id: int, data: dict) -> tuple[dict, dict] | None:
    """
    Returns (before, after) so callers can invalidate both categories, or None if missing.
    """
    async with db.transaction() as conn:
        before = await conn.fetchrow(
            f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = $1 FOR UPDATE",
            product_id,
        )
        if before is None:
            return None
        after = await conn.fetchrow(
            f"""
            UPDATE products
            SET name = $2,
                description = $3,
                price = $4,
                stock = $5,
                category_id = $6,
                updated_date = $7
            WHERE id = $1
            RETURNING {PRODUCT_COLUMNS}
            """,
            product_id,
            data["name"],
            data.get("description"),
            data["price"],
            data.get("stock", 0),
            data["category_id"],
            _now(),
        )
    return dict(before), dict(after)


async def delete_product(product_id: int) -> dict | None:
    return await db.fetch_one(
        "DELETE FROM products WHERE id = $1 RETURNING id, category_id",
        product_id,
    )


async def bulk_insert(products: Sequence[dict], *, batch_size: int) -> list[int]:
    """
    Insert in batches inside one transaction. Returns new ids in input order.
    """
    created: list[int] = []
    now = _now()
    async with db.transaction() as conn:
        for start in range(0, len(products), batch_size):
            chunk = products[start:start + batch_size]
            rows = await conn.fetch(
                """
                INSERT INTO products (name, description, price, stock, category_id, created_date)
                SELECT name, description, price, stock, category_id, $6
                FROM unnest($1::text[], $2::text[], $3::numeric[], $4::int[], $5::int[])
                    WITH ORDINALITY AS t(name, description, price, stock, category_id, ord)
                ORDER BY ord
                RETURNING id
                """,
                [p["name"] for p in chunk],
                [p.get("description") for p in chunk],
                [p["price"] for p in chunk],
                [p.get("stock", 0) for p in chunk],
                [p["category_id"] for p in chunk],
                now,
            )
            created.extend(int(r["id"]) for r in rows)
    return created


async def bulk_delete(ids: Sequence[int]) -> list[dict]:
    return await db.fetch_all(
        "DELETE FROM products WHERE id = ANY($1::int[]) RETURNING id, category_id",
        list(ids),
    )


async def adjust_stock(category_id: int, adjustment: int) -> int:
    value = await db.fetch_val(
        """
        WITH updated AS (
            UPDATE products
            SET stock = stock + $2,
                updated_date = $3
            WHERE category_id = $1
            RETURNING 1
        )
        SELECT count(*) FROM updated
        """,
        category_id,
        adjustment,
        _now(),
    )
    return int(value or 0)


class ProductBulkSession:
    """
    Row-tracking session bound to one open transaction.

    Rows handed out by `matching()` stay tracked until `release()`; the bulk
    pipeline releases after every written batch, which keeps tracked state
    bounded by the batch size.
    """

    def __init__(self, conn: asyncpg.Connection, *, prefetch: int = 500) -> None:
        self._conn = conn
        self._prefetch = prefetch
        self._tracked: dict[int, dict] = {}

    async def matching(self, ids: Sequence[int]) -> AsyncIterator[dict]:
        cursor = self._conn.cursor(
            f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = ANY($1::int[]) FOR UPDATE",
            list(ids),
            prefetch=self._prefetch,
        )
        async for record in cursor:
            row = dict(record)
            self._tracked[row["id"]] = row
            yield row

    async def save(self, rows: Sequence[dict]) -> None:
        """
        Write back tracked rows. Values come from the tracked copies, so a row
        must have been handed out by `matching()` and not yet released.
        """
        tracked = []
        for row in rows:
            current = self._tracked.get(row["id"])
            if current is None:
                raise KeyError(f"Product {row['id']} is not tracked by this session.")
            tracked.append(current)
        await self._conn.executemany(
            """
            UPDATE products
            SET name = $2,
                description = $3,
                price = $4,
                stock = $5,
                category_id = $6,
                updated_date = $7
            WHERE id = $1
            """,
            [
                (
                    r["id"],
                    r["name"],
                    r.get("description"),
                    r["price"],
                    r["stock"],
                    r["category_id"],
                    r["updated_date"],
                )
                for r in tracked
            ],
        )

    def release(self) -> None:
        self._tracked.clear()


class ProductBulkStore:
    def __init__(self, *, prefetch: int = 500) -> None:
        self.prefetch = prefetch

    @asynccontextmanager
    async def session(self) -> AsyncIterator[ProductBulkSession]:
        async with db.transaction() as conn:
            session = ProductBulkSession(conn, prefetch=self.prefetch)
            try:
                yield session
            finally:
                session.release()


def bulk_store(*, prefetch: int = 500) -> ProductBulkStore:
    return ProductBulkStore(prefetch=prefetch)


def _now() -> datetime:
    return datetime.now(timezone.utc)
