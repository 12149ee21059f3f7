"""Shared fixtures and in-memory test doubles."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from core import settings


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings loaders are lru-cached; each test starts from the current env."""
    for loader in (settings.streaming_settings, settings.rate_limit_settings, settings.cache_settings):
        loader.cache_clear()
    yield
    for loader in (settings.streaming_settings, settings.rate_limit_settings, settings.cache_settings):
        loader.cache_clear()


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """
    Subset of redis.asyncio.Redis used by the cache tier.

    Expiry follows `clock` (seconds). `fail` breaks every command; `fail_ops`
    breaks only the named ones, including when queued in a pipeline.
    """

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.values = {}
        self.sets = {}
        self.ttls = {}
        self.deadlines = {}
        self.fail = False
        self.fail_ops = set()
        self.calls = []
        self.closed = False

    def _check(self, op):
        self.calls.append(op)
        if self.fail or op in self.fail_ops:
            raise ConnectionError("redis unavailable")

    def _purge(self):
        now = self.clock()
        for key, deadline in list(self.deadlines.items()):
            if deadline <= now:
                self.values.pop(key, None)
                self.sets.pop(key, None)
                self.ttls.pop(key, None)
                del self.deadlines[key]

    def _exists(self, key):
        return key in self.values or key in self.sets

    def _set(self, key, value, px=None):
        self.values[key] = value
        self.ttls[key] = px
        if px is None:
            self.deadlines.pop(key, None)
        else:
            self.deadlines[key] = self.clock() + px / 1000
        return True

    def _sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(m.encode() if isinstance(m, str) else m for m in members)
        return len(members)

    def _pexpire(self, key, ms, nx=False, gt=False):
        if not self._exists(key):
            return False
        current = self.deadlines.get(key)
        deadline = self.clock() + ms / 1000
        if nx and current is not None:
            return False
        # A key without expiry counts as infinite for GT.
        if gt and (current is None or deadline <= current):
            return False
        self.deadlines[key] = deadline
        self.ttls[key] = ms
        return True

    async def ping(self):
        self._check("ping")
        return True

    async def get(self, key):
        self._check("get")
        self._purge()
        return self.values.get(key)

    async def set(self, key, value, px=None):
        self._check("set")
        self._purge()
        return self._set(key, value, px)

    async def sadd(self, key, *members):
        self._check("sadd")
        self._purge()
        return self._sadd(key, *members)

    async def smembers(self, key):
        self._check("smembers")
        self._purge()
        return set(self.sets.get(key, set()))

    async def pexpire(self, key, ms, nx=False, gt=False):
        self._check("pexpire")
        self._purge()
        return self._pexpire(key, ms, nx=nx, gt=gt)

    async def delete(self, *keys):
        self._check("delete")
        self._purge()
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
            removed += int(self.sets.pop(key, None) is not None)
            self.deadlines.pop(key, None)
        return removed

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


class FakePipeline:
    """MULTI/EXEC: queued commands apply all together or not at all."""

    def __init__(self, redis):
        self.redis = redis
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.queued.clear()

    def set(self, key, value, px=None):
        self.queued.append(("set", (key, value), {"px": px}))
        return self

    def sadd(self, key, *members):
        self.queued.append(("sadd", (key, *members), {}))
        return self

    def pexpire(self, key, ms, nx=False, gt=False):
        self.queued.append(("pexpire", (key, ms), {"nx": nx, "gt": gt}))
        return self

    async def execute(self):
        for op, _, _ in self.queued:
            self.redis._check(op)
        self.redis._purge()
        results = [getattr(self.redis, f"_{op}")(*args, **kwargs) for op, args, kwargs in self.queued]
        self.queued.clear()
        return results


class InMemorySource:
    """Ordered product rows with the same access shapes as ProductSource."""

    def __init__(self, rows, *, limit=None, fail_after=None):
        self.rows = sorted(rows, key=lambda r: r["id"])
        self.limit = limit
        self.fail_after = fail_after
        self.fetch_calls = 0

    async def fetch_after(self, cursor, limit):
        self.fetch_calls += 1
        rows = [r for r in self.rows if cursor is None or r["id"] > cursor]
        return rows[:limit]

    async def stream_after(self, cursor=None):
        rows = [r for r in self.rows if cursor is None or r["id"] > cursor]
        if self.limit is not None:
            rows = rows[: self.limit]
        for index, row in enumerate(rows):
            if self.fail_after is not None and index == self.fail_after:
                raise RuntimeError("connection reset by peer")
            await asyncio.sleep(0)
            yield row

    async def fetch_slice(self, offset, limit):
        return self.rows[offset: offset + limit]

    async def count(self):
        return len(self.rows)


class FakeBulkSession:
    def __init__(self, store, staged):
        self.store = store
        self.staged = staged
        self.tracked = {}

    async def matching(self, ids):
        wanted = set(ids)
        for row_id in sorted(self.staged):
            if row_id in wanted:
                row = dict(self.staged[row_id])
                self.tracked[row_id] = row
                self.store.max_tracked = max(self.store.max_tracked, len(self.tracked))
                await asyncio.sleep(0)
                yield row

    async def save(self, rows):
        self.store.save_calls += 1
        if self.store.fail_on_save is not None and self.store.save_calls == self.store.fail_on_save:
            raise RuntimeError("deadlock detected")
        for row in rows:
            self.staged[row["id"]] = dict(row)

    def release(self):
        self.tracked.clear()


class FakeBulkStore:
    """Commits staged rows on clean exit, discards them on error."""

    def __init__(self, rows, *, fail_on_save=None):
        self.rows = {r["id"]: dict(r) for r in rows}
        self.fail_on_save = fail_on_save
        self.save_calls = 0
        self.max_tracked = 0
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def session(self):
        staged = {k: dict(v) for k, v in self.rows.items()}
        try:
            yield FakeBulkSession(self, staged)
        except BaseException:
            self.rollbacks += 1
            raise
        self.rows = staged
        self.commits += 1


def make_products(count, *, start=1, category_id=1):
    return [
        {"id": i, "name": f"Product {i}", "price": 10 + i, "stock": i % 3, "category_id": category_id}
        for i in range(start, start + count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def products():
    return make_products(25)


@pytest.fixture
def make_source():
    return InMemorySource


@pytest.fixture
def make_bulk_store():
    return FakeBulkStore
