"""Router tests for the product catalog endpoints with in-memory sources patched in."""

import json
from unittest.mock import AsyncMock

import msgpack
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from catalog import repository, router as catalog_router, service
from core import cache as cache_module
from core import rate_limit
from core.cache import LocalTier, TieredCache
from core.rate_limit import FixedWindowRateLimiter
from core.settings import StreamingSettings


@pytest.fixture
def stream_settings():
    return StreamingSettings(max_records=1_000, flush_interval=5, hard_cap=20, prefetch=50)


@pytest.fixture
def app(monkeypatch, make_source, products, stream_settings):
    monkeypatch.setattr(cache_module, "_cache", TieredCache(local=LocalTier(), key_prefix="catalog:test"))
    monkeypatch.setattr(service, "streaming_settings", lambda: stream_settings)
    rate_limit.configure_export_limiter(FixedWindowRateLimiter(permit_limit=3, window_s=60))

    sources = []

    def fake_source(filters=None, *, limit=None, prefetch=500):
        source = make_source(products, limit=limit)
        sources.append((filters, source))
        return source

    monkeypatch.setattr(repository, "product_source", fake_source)

    application = FastAPI()
    application.include_router(catalog_router.router)
    application.state.sources = sources
    yield application
    rate_limit.configure_export_limiter(None)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def test_cursor_listing_walks_all_products(client, products):
    ids = []
    after_id = None
    while True:
        params = {"page_size": 10}
        if after_id is not None:
            params["after_id"] = after_id
        body = client.get("/products/cursor", params=params).json()
        ids.extend(p["id"] for p in body["data"])
        if not body["has_more"]:
            break
        after_id = body["next_cursor"]

    assert ids == [p["id"] for p in products]


@pytest.mark.parametrize("path", ["/products/cursor", "/products"])
def test_non_positive_page_size_is_400(client, path):
    response = client.get(path, params={"page_size": 0})

    assert response.status_code == 400


def test_offset_listing_is_cached(client, app):
    first = client.get("/products", params={"page": 2, "page_size": 10}).json()
    calls = len(app.state.sources)
    second = client.get("/products", params={"page": 2, "page_size": 10}).json()

    assert first == second
    assert first["total_count"] == 25
    assert first["total_pages"] == 3
    assert len(app.state.sources) == calls + 1


def test_stream_ndjson_respects_client_limit(client):
    response = client.get(
        "/products/stream",
        params={"limit": 7},
        headers={"Accept": "application/x-ndjson"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    lines = [json.loads(line) for line in response.text.splitlines()]
    assert [r["id"] for r in lines] == list(range(1, 8))


def test_stream_limit_is_capped_at_hard_cap(client, app):
    response = client.get("/products/stream", params={"limit": 500})

    assert response.status_code == 200
    assert len(response.json()) == 20
    assert app.state.sources[-1][1].limit == 20


def test_stream_limit_above_ceiling_is_413_before_streaming(client):
    response = client.get("/products/stream", params={"limit": 5_000})

    assert response.status_code == 413


def test_stream_defaults_to_json_array_and_supports_msgpack(client):
    as_json = client.get("/products/stream", params={"limit": 3})
    as_msgpack = client.get(
        "/products/stream",
        params={"limit": 3},
        headers={"Accept": "application/x-msgpack"},
    )

    assert [r["id"] for r in as_json.json()] == [1, 2, 3]
    unpacker = msgpack.Unpacker(raw=False)
    unpacker.feed(as_msgpack.content)
    assert [r["id"] for r in unpacker] == [1, 2, 3]


def test_stream_passes_filters(client, app):
    client.get("/products/stream", params={"category_id": 4, "min_price": "5.5", "in_stock": "true"})

    filters = app.state.sources[-1][0]
    assert filters.category_id == 4
    assert str(filters.min_price) == "5.5"
    assert filters.in_stock is True


def test_stream_failure_ends_with_sentinel(client, monkeypatch, make_source, products):
    monkeypatch.setattr(
        repository,
        "product_source",
        lambda filters=None, *, limit=None, prefetch=500: make_source(products, fail_after=3),
    )

    response = client.get("/products/stream", headers={"Accept": "application/x-ndjson"})

    assert response.status_code == 200
    lines = [json.loads(line) for line in response.text.splitlines()]
    assert len(lines) == 4
    assert lines[-1]["error"] is True
    assert lines[-1]["records_before_error"] == 3


def test_export_ndjson_is_attachment(client, app):
    response = client.get("/products/export/ndjson", params={"modified_after": "2024-01-01T00:00:00Z"})

    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["content-disposition"].startswith("attachment;")
    assert app.state.sources[-1][0].modified_after is not None


def test_exports_are_rate_limited(client):
    statuses = [client.get("/products/stream", params={"limit": 1}).status_code for _ in range(4)]

    assert statuses == [200, 200, 200, 429]


def test_rejected_export_has_retry_after(client):
    for _ in range(3):
        client.get("/products/export/ndjson", headers={"X-User-Id": "9"})

    response = client.get("/products/export/ndjson", headers={"X-User-Id": "9"})

    assert response.status_code == 429
    assert int(response.headers["retry-after"]) >= 1


def test_get_product_is_cached_and_404s(client, monkeypatch):
    lookup = AsyncMock(side_effect=lambda product_id: {"id": product_id, "name": "x"} if product_id == 1 else None)
    monkeypatch.setattr(repository, "get_product", lookup)

    assert client.get("/products/1").json() == {"id": 1, "name": "x"}
    assert client.get("/products/1").status_code == 200
    assert client.get("/products/2").status_code == 404
    assert lookup.await_count == 2


def test_update_invalidates_cached_product(client, monkeypatch):
    lookup = AsyncMock(return_value={"id": 1, "name": "old", "category_id": 1})
    monkeypatch.setattr(repository, "get_product", lookup)
    monkeypatch.setattr(
        repository,
        "update_product",
        AsyncMock(return_value=({"id": 1, "category_id": 1}, {"id": 1, "name": "new", "category_id": 2})),
    )

    client.get("/products/1")
    response = client.put(
        "/products/1",
        json={"name": "new", "price": "9.99", "stock": 1, "category_id": 2},
    )
    client.get("/products/1")

    assert response.status_code == 200
    assert lookup.await_count == 2


def test_bulk_update_reports_unresolved(client, monkeypatch, make_bulk_store, products):
    store = make_bulk_store(products[:2])
    monkeypatch.setattr(repository, "bulk_store", lambda prefetch=500: store)

    items = [
        {"id": i, "name": f"renamed {i}", "price": "1.00", "stock": 0, "category_id": 1}
        for i in (1, 2, 3)
    ]
    response = client.put("/products/bulk", json=items)

    assert response.status_code == 200
    body = response.json()
    assert body["applied_count"] == 2
    assert body["unresolved_ids"] == [3]
    assert store.rows[1]["name"] == "renamed 1"


def test_bulk_update_rollback_is_500(client, monkeypatch, make_bulk_store, products):
    store = make_bulk_store(products[:2], fail_on_save=1)
    monkeypatch.setattr(repository, "bulk_store", lambda prefetch=500: store)

    response = client.put(
        "/products/bulk",
        json=[{"id": 1, "name": "x", "price": "1.00", "stock": 0, "category_id": 1}],
    )

    assert response.status_code == 500
    assert "rolled back" in response.json()["detail"]


@pytest.mark.parametrize(
    "method, path, payload",
    [
        ("PUT", "/products/bulk", []),
        ("POST", "/products/bulk", []),
        ("DELETE", "/products/bulk", {"ids": []}),
    ],
)
def test_empty_bulk_input_is_400(client, method, path, payload):
    response = client.request(method, path, json=payload)

    assert response.status_code == 400


def test_bulk_delete_reports_not_found(client, monkeypatch):
    monkeypatch.setattr(repository, "bulk_delete", AsyncMock(return_value=[{"id": 1, "category_id": 1}]))

    response = client.request("DELETE", "/products/bulk", json={"ids": [1, 2, 2]})

    assert response.json()["deleted_count"] == 1
    assert response.json()["unresolved_ids"] == [2]


def test_bulk_create_returns_ids(client, monkeypatch):
    insert = AsyncMock(return_value=[10, 11])
    monkeypatch.setattr(repository, "bulk_insert", insert)

    response = client.post(
        "/products/bulk",
        json=[
            {"name": "a", "price": "1.00", "category_id": 1},
            {"name": "b", "price": "2.00", "category_id": 2},
        ],
    )

    assert response.json()["ids"] == [10, 11]
    assert insert.await_args.kwargs["batch_size"] == 500


def test_bulk_stock_adjustment(client, monkeypatch):
    monkeypatch.setattr(repository, "adjust_stock", AsyncMock(return_value=4))

    response = client.patch("/products/bulk-update-stock", params={"category_id": 3, "stock_adjustment": -2})

    assert response.json()["affected_rows"] == 4
