"""Idempotent batch upserts against a uniqueness constraint."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from vendsync.config import config
from vendsync.errors import InvariantViolation
from vendsync.jobs.run_control import RunControl
from vendsync.store.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    received: int = 0
    unique: int = 0
    written: int = 0
    batches: int = 0


def conflict_columns(on_conflict: str) -> list[str]:
    return [c.strip() for c in on_conflict.split(",") if c.strip()]


def row_key(row: dict, columns: Sequence[str]) -> tuple:
    return tuple(row.get(c) for c in columns)


def dedupe_last_wins(rows: Iterable[dict], columns: Sequence[str]) -> list[dict]:
    """One row per key: the last occurrence's values, at the key's first position."""
    unique: dict[tuple, dict] = {}
    for row in rows:
        unique[row_key(row, columns)] = row
    return list(unique.values())


def chunked(rows: list[dict], size: int) -> list[list[dict]]:
    return [rows[i : i + size] for i in range(0, len(rows), size)]


class BatchUpserter:
    """Dedupe, split into bounded sub-batches and upsert each one.

    A storage error aborts the remaining sub-batches and propagates; sub-batches
    already written stay written (there is no transaction across them).
    """

    def __init__(
        self,
        storage: Storage,
        batch_size: Optional[int] = None,
        pause: Optional[float] = None,
        run_control: Optional[RunControl] = None,
    ):
        self.storage = storage
        self.batch_size = config.UPSERT_BATCH_SIZE if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.pause = config.UPSERT_PAUSE if pause is None else pause
        self.run_control = run_control

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> UpsertResult:
        columns = conflict_columns(on_conflict)
        result = UpsertResult(received=len(rows))
        if not rows:
            return result

        unique_rows = dedupe_last_wins(rows, columns)
        result.unique = len(unique_rows)
        if result.unique != result.received:
            logger.info(f"[{table}] Duplicates removed: {result.received} -> {result.unique} rows")

        batches = chunked(unique_rows, self.batch_size)
        for i, batch in enumerate(batches, start=1):
            if self.run_control:
                self.run_control.raise_if_stopped()

            keys = [row_key(row, columns) for row in batch]
            if len(set(keys)) != len(keys):
                seen, dupes = set(), []
                for key in keys:
                    if key in seen:
                        dupes.append(key)
                    seen.add(key)
                logger.error(f"[{table}] Duplicate keys in sub-batch {i}/{len(batches)}: {dupes[:10]}")
                raise InvariantViolation(f"Duplicate keys survived deduplication in sub-batch {i} of {table}")

            logger.debug(f"[{table}] Upserting sub-batch {i}/{len(batches)}: {len(batch)} rows")
            try:
                await self.storage.upsert(table, batch, on_conflict)
            except Exception as e:
                logger.error(f"[{table}] Sub-batch {i}/{len(batches)} failed, aborting: {e}")
                raise
            result.written += len(batch)
            result.batches += 1

            if i < len(batches) and self.pause:
                await asyncio.sleep(self.pause)

        logger.info(f"[{table}] Upserted {result.written} rows in {result.batches} sub-batches")
        return result
