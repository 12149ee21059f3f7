"""
Cache key and tag conventions for catalog entities.

Keys are namespaced by the deployment prefix (`catalog:<env>` by default) so
several environments can share one Redis.
"""

from __future__ import annotations

from .settings import cache_settings

PRODUCT_TAG = "product"
PRODUCT_LIST_TAG = "product-list"


def _prefix() -> str:
    return cache_settings().key_prefix


def product_key(product_id: int) -> str:
    return f"{_prefix()}:Product:{product_id}"


def category_key(category_id: int) -> str:
    return f"{_prefix()}:Products:Category:{category_id}"


def page_key(page: int, page_size: int) -> str:
    return f"{_prefix()}:Products:Page:{page}:{page_size}"


def count_key() -> str:
    return f"{_prefix()}:Products:Count"


def category_tag(category_id: int) -> str:
    return f"product-category-{category_id}"
