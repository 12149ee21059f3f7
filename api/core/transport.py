"""
ASGI plumbing for streamed exports.

`ExportResponse` sends the status line and headers, then hands an append/flush
sink and a cancel event to the export pipeline. The cancel event is set when
the server reports `http.disconnect` (client went away).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Mapping

from starlette.background import BackgroundTask
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


class AsgiSink:
    """
    Buffers writes; each `flush()` becomes one `http.response.body` message.
    """

    def __init__(self, send: Send) -> None:
        self._send = send
        self._buffer = bytearray()
        self.bytes_sent = 0
        self.closed = False

    def write(self, data: bytes) -> None:
        if data:
            self._buffer.extend(data)

    async def flush(self) -> None:
        if not self._buffer:
            return
        chunk = bytes(self._buffer)
        self._buffer.clear()
        await self._send({"type": "http.response.body", "body": chunk, "more_body": True})
        self.bytes_sent += len(chunk)

    async def close(self) -> None:
        if self.closed:
            return
        chunk = bytes(self._buffer)
        self._buffer.clear()
        self.closed = True
        await self._send({"type": "http.response.body", "body": chunk, "more_body": False})
        self.bytes_sent += len(chunk)


StreamRunner = Callable[[AsgiSink, asyncio.Event], Awaitable[Any]]


class ExportResponse(Response):
    def __init__(
        self,
        runner: StreamRunner,
        *,
        media_type: str,
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
        background: BackgroundTask | None = None,
    ) -> None:
        self.runner = runner
        self.status_code = status_code
        self.media_type = media_type
        self.background = background
        merged = dict(NO_CACHE_HEADERS)
        merged.update(headers or {})
        self.init_headers(merged)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        cancel = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(receive, cancel))
        sink = AsgiSink(send)
        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": self.status_code,
                    "headers": self.raw_headers,
                }
            )
            await self.runner(sink, cancel)
            if not cancel.is_set():
                await sink.close()
        except OSError:
            # Writing to a closed connection; the client is gone either way.
            logger.info("export_transport_closed bytes_sent=%s", sink.bytes_sent)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        if self.background is not None:
            await self.background()


async def _watch_disconnect(receive: Receive, cancel: asyncio.Event) -> None:
    while True:
        try:
            message = await receive()
        except Exception as exc:
            # Disconnects can no longer be observed; a dead socket still fails the next send.
            logger.warning("export_receive_failed error=%s", exc)
            return
        if message["type"] == "http.disconnect":
            cancel.set()
            return
