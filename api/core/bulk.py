"""
Batched transactional bulk-mutation pipeline.

Flow for one bulk update:
1) index the client payload by id
2) open one transaction
3) stream the matching stored rows (no particular order)
4) apply the payload onto each row, collect a batch
5) every `batch_size` rows: write the batch, then release the written rows
6) commit; ids that never matched are reported back as unresolved

Memory is bounded by the payload plus one batch of stored rows. Any failure
rolls the whole transaction back, including batches already written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)


class EmptyBulkInput(ValueError):
    pass


class BulkOperationFailed(RuntimeError):
    """
    The transaction was rolled back; nothing from the request was applied.
    """

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Bulk operation failed, rolled back: {cause}")


class BulkSession(Protocol):
    def matching(self, ids: Sequence[Any]) -> AsyncIterator[dict[str, Any]]:
        ...

    async def save(self, rows: Sequence[dict[str, Any]]) -> None:
        ...

    def release(self) -> None:
        ...


class BulkStore(Protocol):
    def session(self) -> AsyncContextManager[BulkSession]:
        ...


@dataclass
class BulkResult:
    applied_count: int = 0
    unresolved_ids: list[Any] = field(default_factory=list)
    batches: int = 0

    def to_response(self, noun: str = "records", verb: str = "Updated") -> dict:
        return {
            "applied_count": self.applied_count,
            "unresolved_ids": self.unresolved_ids,
            "message": (
                f"{verb} {self.applied_count} {noun}, "
                f"{len(self.unresolved_ids)} not found"
            ),
        }


def index_by_id(records: Sequence[Mapping[str, Any]], id_field: str = "id") -> dict[Any, Mapping[str, Any]]:
    """
    Later duplicates win, same as applying the payload in order.
    """
    if not records:
        raise EmptyBulkInput("Bulk input cannot be empty.")
    lookup: dict[Any, Mapping[str, Any]] = {}
    for record in records:
        if record.get(id_field) is None:
            raise EmptyBulkInput(f"Every bulk record needs `{id_field}`.")
        lookup[record[id_field]] = record
    return lookup


async def apply_bulk(
    records: Sequence[Mapping[str, Any]],
    store: BulkStore,
    *,
    batch_size: int,
    apply: Callable[[dict[str, Any], Mapping[str, Any]], None],
    id_field: str = "id",
    label: str = "bulk_update",
) -> BulkResult:
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    pending = index_by_id(records, id_field)
    total = len(pending)
    result = BulkResult()

    try:
        async with store.session() as session:
            batch: list[dict[str, Any]] = []
            async for row in session.matching(list(pending)):
                payload = pending.pop(row[id_field], None)
                if payload is None:
                    continue
                apply(row, payload)
                batch.append(row)

                if len(batch) >= batch_size:
                    await _write_batch(session, batch, result)
                    logger.info(
                        "%s_batch applied=%s/%s batches=%s",
                        label,
                        result.applied_count,
                        total,
                        result.batches,
                    )

            if batch:
                await _write_batch(session, batch, result)
    except Exception as exc:
        logger.error(
            "%s_rolled_back applied_before_error=%s total=%s error=%s",
            label,
            result.applied_count,
            total,
            exc,
        )
        raise BulkOperationFailed(exc) from exc

    result.unresolved_ids = list(pending)
    logger.info(
        "%s_committed applied=%s unresolved=%s batches=%s",
        label,
        result.applied_count,
        len(result.unresolved_ids),
        result.batches,
    )
    return result


async def _write_batch(session: BulkSession, batch: list[dict[str, Any]], result: BulkResult) -> None:
    await session.save(batch)
    session.release()
    result.applied_count += len(batch)
    result.batches += 1
    batch.clear()
