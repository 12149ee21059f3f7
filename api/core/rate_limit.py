"""
Fixed-window admission control for expensive endpoints (streaming exports).

Each partition (user id, API key or client address) gets its own window that
starts with its first request, so windows are rolling per partition rather than
aligned to the wall clock.

All state is mutated on the event loop without awaiting in between reading and
writing a window, so there is exactly one writer and no lock is needed.
Counters are per process; several workers each enforce the limit on their own.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from fastapi import HTTPException, Request

from .settings import RateLimitSettings, rate_limit_settings

logger = logging.getLogger(__name__)

_SWEEP_EVERY = 1024


class Admission(str, enum.Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    QUEUED = "queued"


@dataclass
class RateLimitWindow:
    partition_key: str
    window_start: float
    limit: int
    window_s: float
    count: int = 0
    waiters: deque = field(default_factory=deque)
    drain_handle: asyncio.TimerHandle | None = None

    def window_end(self) -> float:
        return self.window_start + self.window_s

    def elapsed(self, now: float) -> bool:
        return now >= self.window_end()

    def reset(self, now: float) -> None:
        self.window_start = now
        self.count = 0

    def retry_after(self, now: float) -> float:
        return max(0.0, self.window_end() - now)

    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class Decision:
    admission: Admission
    retry_after: float = 0.0
    remaining: int = 0
    waiter: asyncio.Future | None = None


class FixedWindowRateLimiter:
    def __init__(
        self,
        *,
        permit_limit: int,
        window_s: float,
        queueing: bool = False,
        max_queue: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if permit_limit <= 0:
            raise ValueError("permit_limit must be > 0")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self.permit_limit = permit_limit
        self.window_s = window_s
        self.queueing = queueing and max_queue > 0
        self.max_queue = max_queue
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._calls = 0

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> "FixedWindowRateLimiter":
        return cls(
            permit_limit=settings.permit_limit,
            window_s=settings.window_s,
            queueing=settings.queueing,
            max_queue=settings.max_queue,
        )

    def window(self, key: str) -> RateLimitWindow | None:
        return self._windows.get(key)

    def try_admit(self, key: str) -> Decision:
        now = self._clock()
        self._calls += 1
        if self._calls % _SWEEP_EVERY == 0:
            self._sweep(now)

        window = self._windows.get(key)
        if window is None:
            window = RateLimitWindow(
                partition_key=key,
                window_start=now,
                limit=self.permit_limit,
                window_s=self.window_s,
            )
            self._windows[key] = window
        elif window.elapsed(now):
            window.reset(now)
            # Queued requests were first in line for the new window.
            self._release_waiters(window)

        if window.count < window.limit and not window.waiters:
            window.count += 1
            return Decision(Admission.ADMITTED, remaining=window.remaining())

        retry_after = window.retry_after(now)
        if self.queueing and len(window.waiters) < self.max_queue:
            waiter = asyncio.get_running_loop().create_future()
            window.waiters.append(waiter)
            self._schedule_drain(window, retry_after)
            return Decision(Admission.QUEUED, retry_after=retry_after, waiter=waiter)

        return Decision(Admission.REJECTED, retry_after=retry_after)

    def _release_waiters(self, window: RateLimitWindow) -> None:
        while window.waiters and window.count < window.limit:
            waiter = window.waiters.popleft()
            if waiter.done():
                # The queued request was cancelled (client left); its slot goes to the next one.
                continue
            window.count += 1
            waiter.set_result(None)

    def _schedule_drain(self, window: RateLimitWindow, delay: float) -> None:
        if window.drain_handle is not None:
            return
        loop = asyncio.get_running_loop()
        window.drain_handle = loop.call_later(delay, self._drain, window.partition_key)

    def _drain(self, key: str) -> None:
        window = self._windows.get(key)
        if window is None:
            return
        if window.drain_handle is not None:
            window.drain_handle.cancel()
            window.drain_handle = None
        now = self._clock()
        if window.elapsed(now):
            window.reset(now)
            self._release_waiters(window)
        if window.waiters:
            self._schedule_drain(window, window.retry_after(now) or self.window_s)

    def _sweep(self, now: float) -> None:
        idle = [k for k, w in self._windows.items() if w.elapsed(now) and not w.waiters]
        for key in idle:
            del self._windows[key]

    def close(self) -> None:
        for window in self._windows.values():
            if window.drain_handle is not None:
                window.drain_handle.cancel()
            while window.waiters:
                waiter = window.waiters.popleft()
                if not waiter.done():
                    waiter.cancel()
        self._windows.clear()


def partition_key(request: Request, strategy: str = "user") -> str:
    """
    Resolve the caller identity for `strategy`, falling back user id -> API key -> address.
    """
    user_id = (request.headers.get("x-user-id") or "").strip()
    api_key = (request.headers.get("x-api-key") or "").strip()
    address = request.client.host if request.client else "unknown"

    if strategy == "user" and user_id:
        return f"user:{user_id}"
    if strategy in {"user", "api_key"} and api_key:
        return f"api_key:{api_key}"
    return f"address:{address}"


_limiter: FixedWindowRateLimiter | None = None


def export_limiter() -> FixedWindowRateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = FixedWindowRateLimiter.from_settings(rate_limit_settings())
    return _limiter


def configure_export_limiter(limiter: FixedWindowRateLimiter | None) -> None:
    global _limiter
    if _limiter is not None and _limiter is not limiter:
        _limiter.close()
    _limiter = limiter


async def limit_exports(request: Request) -> None:
    """
    FastAPI dependency guarding export endpoints.
    """
    key = partition_key(request, rate_limit_settings().partition)
    decision = export_limiter().try_admit(key)

    if decision.admission is Admission.ADMITTED:
        return None

    if decision.admission is Admission.QUEUED:
        logger.info("rate_limit_queued partition=%s retry_after=%.2f", key, decision.retry_after)
        await decision.waiter
        return None

    retry_after = max(1, math.ceil(decision.retry_after))
    logger.warning("rate_limit_rejected partition=%s retry_after=%s", key, retry_after)
    raise HTTPException(
        status_code=429,
        detail="Too many export requests. Retry later.",
        headers={"Retry-After": str(retry_after)},
    )
