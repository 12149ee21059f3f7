"""
Pydantic schemas for catalog endpoints.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=4000)
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    stock: int = Field(default=0, ge=0)
    category_id: int = Field(..., ge=1)


class ProductCreateRequest(ProductIn):
    pass


class ProductUpdateRequest(ProductIn):
    pass


class ProductBulkUpdateItem(ProductIn):
    id: int = Field(..., ge=1)


class ProductBulkDeleteRequest(BaseModel):
    ids: list[int] = Field(default_factory=list)
