"""
Bounded streaming export pipeline.

Stages, in order:
1) format negotiation (once per request, from the Accept header)
2) safeguard-wrapped iteration (record cap + cancel signal)
3) incremental encode-and-flush (one record at a time, flush every N records)
4) failure containment (the status line is already on the wire, so failures
   become an in-band sentinel record)

The pipeline only ever holds one encoded record plus whatever the sink buffers
between flushes; memory does not depend on result size.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from contextlib import aclosing, nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterable, AsyncIterator, Protocol, TypeVar

import msgpack
from fastapi.encoders import jsonable_encoder

from .settings import StreamingSettings

T = TypeVar("T")

logger = logging.getLogger(__name__)

MSGPACK_MEDIA_TYPE = "application/x-msgpack"
NDJSON_MEDIA_TYPE = "application/x-ndjson"
JSON_MEDIA_TYPE = "application/json"

SENTINEL_MESSAGE = "Stream terminated due to server error"


class StreamLimitExceeded(RuntimeError):
    """
    The stream would return more than `max_records` rows.

    Separate from ordinary failures: the client should narrow the request,
    retrying it unchanged will fail the same way.
    """

    def __init__(self, max_records: int, seen: int) -> None:
        self.max_records = max_records
        self.seen = seen
        super().__init__(
            f"Stream limit exceeded. Maximum {max_records} records allowed. "
            f"Requested stream would return at least {seen} records. "
            "Consider using filters to narrow results."
        )


class Sink(Protocol):
    """
    Outbound response body: append bytes, push them to the client on flush.
    """

    def write(self, data: bytes) -> None:
        ...

    async def flush(self) -> None:
        ...


class StreamFormat(str, enum.Enum):
    MSGPACK = "msgpack"
    NDJSON = "ndjson"
    JSON = "json"

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES[self]


_MEDIA_TYPES = {
    StreamFormat.MSGPACK: MSGPACK_MEDIA_TYPE,
    StreamFormat.NDJSON: NDJSON_MEDIA_TYPE,
    StreamFormat.JSON: JSON_MEDIA_TYPE,
}


class StreamState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED_CLEAN = "cancelled_clean"
    FAILED_WITH_SENTINEL = "failed_with_sentinel"
    FAILED_SILENTLY = "failed_silently"


TERMINAL_STATES = {
    StreamState.COMPLETED,
    StreamState.CANCELLED_CLEAN,
    StreamState.FAILED_WITH_SENTINEL,
    StreamState.FAILED_SILENTLY,
}

_TRANSITIONS = {
    StreamState.IDLE: {StreamState.NEGOTIATING},
    StreamState.NEGOTIATING: {StreamState.STREAMING},
    StreamState.STREAMING: TERMINAL_STATES,
}


def negotiate_format(accept: str | None) -> StreamFormat:
    """
    Fixed priority: msgpack > NDJSON > JSON array (fallback).
    """
    accept = (accept or "").lower()
    if MSGPACK_MEDIA_TYPE in accept:
        return StreamFormat.MSGPACK
    if NDJSON_MEDIA_TYPE in accept:
        return StreamFormat.NDJSON
    return StreamFormat.JSON


async def stream_with_safeguards(
    source: AsyncIterable[T],
    max_records: int,
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[T]:
    """
    Lazily re-yield `source`, failing once it produces more than `max_records` items.

    The count is checked before an item is handed on, so at most `max_records`
    items ever reach the consumer. When `cancel` is set, iteration stops after
    the current item without raising.
    """
    if max_records <= 0:
        raise ValueError("max_records must be > 0")

    if cancel is not None and cancel.is_set():
        return

    count = 0
    iterator = aiter(source)
    async with aclosing(iterator) if hasattr(iterator, "aclose") else nullcontext():
        async for item in iterator:
            count += 1
            if count > max_records:
                raise StreamLimitExceeded(max_records, count)
            yield item
            if cancel is not None and cancel.is_set():
                return


def _to_primitive(record: Any) -> Any:
    return jsonable_encoder(record)


def _json_bytes(value: Any) -> bytes:
    return json.dumps(_to_primitive(value), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class RecordEncoder:
    """
    Frames records for one format. Each record is encoded on its own.
    """

    def open(self) -> bytes:
        return b""

    def encode(self, record: Any, index: int) -> bytes:
        raise NotImplementedError

    def close(self, count: int) -> bytes:
        return b""

    def sentinel(self, marker: dict[str, Any], count: int) -> bytes:
        return self.encode(marker, count)


class NdjsonEncoder(RecordEncoder):
    def encode(self, record: Any, index: int) -> bytes:
        return _json_bytes(record) + b"\n"


class JsonArrayEncoder(RecordEncoder):
    def open(self) -> bytes:
        return b"["

    def encode(self, record: Any, index: int) -> bytes:
        body = _json_bytes(record)
        return body if index == 0 else b"," + body

    def close(self, count: int) -> bytes:
        return b"]"

    def sentinel(self, marker: dict[str, Any], count: int) -> bytes:
        # The marker becomes the last array element so the body stays valid JSON.
        return self.encode(marker, count) + b"]"


class MsgpackEncoder(RecordEncoder):
    # msgpack objects are self-delimiting; no separators needed.
    def encode(self, record: Any, index: int) -> bytes:
        return msgpack.packb(_to_primitive(record), use_bin_type=True)


def encoder_for(fmt: StreamFormat) -> RecordEncoder:
    if fmt is StreamFormat.MSGPACK:
        return MsgpackEncoder()
    if fmt is StreamFormat.NDJSON:
        return NdjsonEncoder()
    return JsonArrayEncoder()


def sentinel_record(records_before_error: int, *, reason: str) -> dict[str, Any]:
    return {
        "error": True,
        "reason": reason,
        "message": SENTINEL_MESSAGE,
        "records_before_error": records_before_error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@dataclass(frozen=True)
class StreamResult:
    state: StreamState
    records: int
    duration_ms: int
    error: BaseException | None = None


class ExportStream:
    """
    One export run: Idle -> Negotiating -> Streaming -> terminal state.

    Create one per request. `negotiate()` fixes the format before any byte is
    written (the response headers depend on it); `run()` drives the stream.
    """

    def __init__(self, settings: StreamingSettings, *, label: str = "export") -> None:
        self.settings = settings
        self.label = label
        self.state = StreamState.IDLE
        self.format: StreamFormat | None = None

    def _transition(self, target: StreamState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise RuntimeError(f"Invalid stream transition {self.state.value} -> {target.value}.")
        self.state = target

    def negotiate(self, accept: str | None = None, *, force: StreamFormat | None = None) -> StreamFormat:
        self._transition(StreamState.NEGOTIATING)
        self.format = force or negotiate_format(accept)
        return self.format

    @property
    def media_type(self) -> str:
        if self.format is None:
            raise RuntimeError("Stream format is not negotiated yet.")
        return self.format.media_type

    async def run(
        self,
        source: AsyncIterable[Any],
        sink: Sink,
        cancel: asyncio.Event | None = None,
    ) -> StreamResult:
        if self.format is None:
            raise RuntimeError("Call negotiate() before run().")
        self._transition(StreamState.STREAMING)

        cancel = cancel or asyncio.Event()
        encoder = encoder_for(self.format)
        flush_interval = self.settings.flush_interval
        started = time.monotonic()
        count = 0

        try:
            sink.write(encoder.open())
            async for record in stream_with_safeguards(source, self.settings.max_records, cancel):
                sink.write(encoder.encode(record, count))
                count += 1
                if count % flush_interval == 0:
                    await sink.flush()

            if cancel.is_set():
                return self._cancelled(count, started)

            sink.write(encoder.close(count))
            await sink.flush()
        except asyncio.CancelledError:
            self._cancelled(count, started)
            raise
        except Exception as exc:
            if cancel.is_set():
                # Transport errors after a disconnect are the disconnect, not a failure.
                return self._cancelled(count, started)
            return await self._fail(exc, encoder, sink, count, started)

        self._transition(StreamState.COMPLETED)
        duration_ms = _elapsed_ms(started)
        if self.settings.log_successful:
            logger.info(
                "stream_completed label=%s format=%s records=%s duration_ms=%s",
                self.label,
                self.format.value,
                count,
                duration_ms,
            )
        return StreamResult(self.state, count, duration_ms)

    def _cancelled(self, count: int, started: float) -> StreamResult:
        self._transition(StreamState.CANCELLED_CLEAN)
        duration_ms = _elapsed_ms(started)
        logger.info(
            "stream_cancelled label=%s records_sent=%s duration_ms=%s",
            self.label,
            count,
            duration_ms,
        )
        return StreamResult(self.state, count, duration_ms)

    async def _fail(
        self,
        exc: Exception,
        encoder: RecordEncoder,
        sink: Sink,
        count: int,
        started: float,
    ) -> StreamResult:
        duration_ms = _elapsed_ms(started)
        logger.error(
            "stream_failed label=%s records_before_error=%s duration_ms=%s",
            self.label,
            count,
            duration_ms,
            exc_info=exc,
        )
        reason = "limit_exceeded" if isinstance(exc, StreamLimitExceeded) else "server_error"
        try:
            sink.write(encoder.sentinel(sentinel_record(count, reason=reason), count))
            await sink.flush()
        except Exception:
            # Transport is gone; nothing else can reach the client.
            logger.debug("stream_sentinel_failed label=%s", self.label, exc_info=True)
            self._transition(StreamState.FAILED_SILENTLY)
            return StreamResult(self.state, count, duration_ms, exc)

        self._transition(StreamState.FAILED_WITH_SENTINEL)
        return StreamResult(self.state, count, duration_ms, exc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
