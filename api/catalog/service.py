"""
Catalog business logic.

Scope:
- cached product reads (by id, by category, offset pages and total count)
- keyset pages
- streaming exports (negotiated format or forced NDJSON)
- single and bulk writes, each followed by cache invalidation
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, TypeVar

from fastapi import HTTPException

from core import cache_keys
from core.bulk import BulkOperationFailed, EmptyBulkInput, apply_bulk
from core.cache import COUNT_TTL, ENTITY_TTL, LIST_TTL, get_cache
from core.pagination import InvalidPageSize, keyset_page, offset_page
from core.settings import bulk_batch_size, streaming_settings
from core.streaming import ExportStream, StreamFormat
from core.transport import ExportResponse

from . import repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIST_TAGS = (cache_keys.PRODUCT_TAG, cache_keys.PRODUCT_LIST_TAG)


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


async def get_product(product_id: int) -> dict:
    row = await get_cache().get_or_create(
        cache_keys.product_key(product_id),
        lambda: repository.get_product(product_id),
        ttl=ENTITY_TTL,
        tags=(cache_keys.PRODUCT_TAG,),
    )
    if row is None:
        raise HTTPException(status_code=404, detail="Product not found.")
    return row


async def products_by_category(category_id: int) -> dict:
    rows = await get_cache().get_or_create(
        cache_keys.category_key(category_id),
        lambda: repository.list_by_category(category_id),
        ttl=LIST_TTL,
        tags=(*LIST_TAGS, cache_keys.category_tag(category_id)),
    )
    return {"data": rows, "count": len(rows), "category_id": category_id}


async def list_products(page: int, page_size: int) -> dict:
    """
    Legacy offset listing. Page bodies and the total count are cached separately.
    """
    source = repository.product_source()
    cache = get_cache()
    try:
        total = await cache.get_or_create(
            cache_keys.count_key(),
            source.count,
            ttl=COUNT_TTL,
            tags=LIST_TAGS,
        )

        async def load_page() -> dict:
            result = await offset_page(source, page, page_size, total_count=total)
            return result.to_response()

        return await cache.get_or_create(
            cache_keys.page_key(page, page_size),
            load_page,
            ttl=LIST_TTL,
            tags=LIST_TAGS,
        )
    except InvalidPageSize as exc:
        raise _bad_request(exc) from exc


async def list_products_cursor(after_id: int | None, page_size: int) -> dict:
    try:
        result = await keyset_page(repository.product_source(), after_id, page_size)
    except InvalidPageSize as exc:
        raise _bad_request(exc) from exc
    return result.to_response()


def _stream_limit(limit: int | None) -> int:
    """
    Client `limit` becomes SQL LIMIT, capped at the hard cap. Asking for more
    than the safeguard ceiling is refused before anything is sent.
    """
    settings = streaming_settings()
    if limit is None:
        return settings.hard_cap
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1.")
    if limit > settings.max_records:
        raise HTTPException(
            status_code=413,
            detail=(
                f"Stream limit exceeded. Maximum {settings.max_records} records allowed. "
                "Consider using filters to narrow results."
            ),
        )
    return min(limit, settings.hard_cap)


def stream_products(
    filters: repository.ProductFilters,
    *,
    limit: int | None,
    accept: str | None,
    force: StreamFormat | None = None,
    label: str = "products_stream",
    headers: dict[str, str] | None = None,
) -> ExportResponse:
    settings = streaming_settings()
    source = repository.product_source(
        filters,
        limit=_stream_limit(limit),
        prefetch=settings.prefetch,
    )

    export = ExportStream(settings, label=label)
    export.negotiate(accept, force=force)

    async def run(sink, cancel):
        return await export.run(source.stream_after(None), sink, cancel)

    return ExportResponse(run, media_type=export.media_type, headers=headers)


def export_ndjson(filters: repository.ProductFilters, *, limit: int | None = None) -> ExportResponse:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return stream_products(
        filters,
        limit=limit,
        accept=None,
        force=StreamFormat.NDJSON,
        label="products_export_ndjson",
        headers={"Content-Disposition": f'attachment; filename="products-{stamp}.ndjson"'},
    )


async def _invalidate_product(product_id: int, *category_ids: int) -> None:
    cache = get_cache()
    await cache.invalidate(cache_keys.product_key(product_id))
    await cache.invalidate_tags(
        [cache_keys.PRODUCT_LIST_TAG, *(cache_keys.category_tag(c) for c in set(category_ids))]
    )


async def create_product(data: dict) -> dict:
    row = await repository.create_product(data)
    await _invalidate_product(int(row["id"]), int(row["category_id"]))
    return row


async def update_product(product_id: int, data: dict) -> dict:
    result = await repository.update_product(product_id, data)
    if result is None:
        raise HTTPException(status_code=404, detail="Product not found.")
    before, after = result
    await _invalidate_product(product_id, int(before["category_id"]), int(after["category_id"]))
    return after


async def delete_product(product_id: int) -> None:
    row = await repository.delete_product(product_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Product not found.")
    await _invalidate_product(product_id, int(row["category_id"]))


async def _shielded(awaitable: Awaitable[T]) -> T:
    # A client disconnect must not abort a bulk write halfway; it runs to commit or rollback.
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(_report_detached)
        raise


def _report_detached(task: asyncio.Future) -> None:
    """Outcome of a bulk write whose caller went away before it finished."""
    if task.cancelled():
        logger.warning("products_bulk_detached_cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("products_bulk_detached_failed error=%s", exc)
    else:
        logger.info("products_bulk_detached_completed")


def _apply_product_fields(row: dict[str, Any], payload: dict[str, Any], now: datetime) -> None:
    row["name"] = payload["name"]
    row["description"] = payload.get("description")
    row["price"] = Decimal(str(payload["price"]))
    row["stock"] = payload.get("stock", 0)
    row["category_id"] = payload["category_id"]
    row["updated_date"] = now


async def bulk_update(items: list[dict]) -> dict:
    now = datetime.now(timezone.utc)
    try:
        result = await _shielded(
            apply_bulk(
                items,
                repository.bulk_store(prefetch=streaming_settings().prefetch),
                batch_size=bulk_batch_size(),
                apply=lambda row, payload: _apply_product_fields(row, payload, now),
                label="products_bulk_update",
            )
        )
    except EmptyBulkInput as exc:
        raise _bad_request(exc) from exc
    except BulkOperationFailed as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    await get_cache().invalidate_by_tag(cache_keys.PRODUCT_TAG)
    return result.to_response(noun="products", verb="Updated")


async def bulk_create(items: list[dict]) -> dict:
    if not items:
        raise HTTPException(status_code=400, detail="Product list cannot be empty.")
    try:
        ids = await _shielded(repository.bulk_insert(items, batch_size=bulk_batch_size()))
    except Exception as exc:
        logger.error("products_bulk_create_rolled_back total=%s error=%s", len(items), exc)
        raise HTTPException(status_code=500, detail=f"Bulk operation failed, rolled back: {exc}") from exc

    logger.info("products_bulk_create_committed created=%s", len(ids))
    await get_cache().invalidate_tags(
        [cache_keys.PRODUCT_LIST_TAG, *(cache_keys.category_tag(c) for c in {i["category_id"] for i in items})]
    )
    return {"created_count": len(ids), "ids": ids, "message": f"Created {len(ids)} products"}


async def bulk_delete(ids: list[int]) -> dict:
    if not ids:
        raise HTTPException(status_code=400, detail="Product id list cannot be empty.")
    requested = list(dict.fromkeys(ids))
    rows = await _shielded(repository.bulk_delete(requested))
    deleted = {int(r["id"]) for r in rows}
    not_found = [i for i in requested if i not in deleted]

    await get_cache().invalidate_by_tag(cache_keys.PRODUCT_TAG)
    logger.info("products_bulk_delete deleted=%s not_found=%s", len(deleted), len(not_found))
    return {
        "deleted_count": len(deleted),
        "unresolved_ids": not_found,
        "message": f"Deleted {len(deleted)} products, {len(not_found)} not found",
    }


async def adjust_category_stock(category_id: int, adjustment: int) -> dict:
    affected = await _shielded(repository.adjust_stock(category_id, adjustment))
    await get_cache().invalidate_by_tag(cache_keys.PRODUCT_TAG)
    return {
        "affected_rows": affected,
        "message": f"Updated stock for {affected} products in category {category_id}",
    }
