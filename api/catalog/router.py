"""
Product catalog API endpoints.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, Query, Response

from core.pagination import DEFAULT_PAGE_SIZE
from core.rate_limit import limit_exports

from . import repository, schemas, service

router = APIRouter(prefix="/products")


# Static paths first so they are not captured by `/{product_id}`.
@router.get("")
async def list_products(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE),
) -> dict:
    return await service.list_products(page, page_size)


@router.get("/cursor")
async def list_products_cursor(
    after_id: int | None = Query(default=None, ge=0),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE),
) -> dict:
    return await service.list_products_cursor(after_id, page_size)


@router.get("/stream", dependencies=[Depends(limit_exports)])
async def stream_products(
    category_id: int | None = Query(default=None, ge=1),
    min_price: Decimal | None = Query(default=None, ge=0),
    max_price: Decimal | None = Query(default=None, ge=0),
    in_stock: bool | None = Query(default=None),
    limit: int | None = Query(default=None),
    accept: str | None = Header(default=None),
) -> Response:
    filters = repository.ProductFilters(
        category_id=category_id,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
    )
    return service.stream_products(filters, limit=limit, accept=accept)


@router.get("/export/ndjson", dependencies=[Depends(limit_exports)])
async def export_products_ndjson(
    category_id: int | None = Query(default=None, ge=1),
    min_price: Decimal | None = Query(default=None, ge=0),
    max_price: Decimal | None = Query(default=None, ge=0),
    modified_after: datetime | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> Response:
    filters = repository.ProductFilters(
        category_id=category_id,
        min_price=min_price,
        max_price=max_price,
        modified_after=modified_after,
    )
    return service.export_ndjson(filters, limit=limit)


@router.get("/category/{category_id}")
async def products_by_category(category_id: int) -> dict:
    return await service.products_by_category(category_id)


@router.post("/bulk")
async def bulk_create_products(items: list[schemas.ProductCreateRequest]) -> dict:
    return await service.bulk_create([i.model_dump() for i in items])


@router.put("/bulk")
async def bulk_update_products(items: list[schemas.ProductBulkUpdateItem]) -> dict:
    return await service.bulk_update([i.model_dump() for i in items])


@router.delete("/bulk")
async def bulk_delete_products(request: schemas.ProductBulkDeleteRequest) -> dict:
    return await service.bulk_delete(request.ids)


@router.patch("/bulk-update-stock")
async def bulk_update_stock(
    category_id: int = Query(..., ge=1),
    stock_adjustment: int = Query(...),
) -> dict:
    return await service.adjust_category_stock(category_id, stock_adjustment)


@router.get("/{product_id}")
async def get_product(product_id: int) -> dict:
    return await service.get_product(product_id)


@router.post("", status_code=201)
async def create_product(request: schemas.ProductCreateRequest) -> dict:
    return await service.create_product(request.model_dump())


@router.put("/{product_id}")
async def update_product(product_id: int, request: schemas.ProductUpdateRequest) -> dict:
    return await service.update_product(product_id, request.model_dump())


@router.delete("/{product_id}", status_code=204)
async def delete_product(product_id: int) -> Response:
    await service.delete_product(product_id)
    return Response(status_code=204)
