"""In-memory storage backend for dry runs and tests."""
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from vendsync.errors import StorageError
from vendsync.store.storage import Filter

logger = logging.getLogger(__name__)


def _comparable(value: Any) -> Any:
    """ISO timestamps compare as datetimes so offsets do not break ordering."""
    if isinstance(value, str) and len(value) >= 10 and value[4:5] == "-" and value[7:8] == "-":
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _matches(row: dict, f: Filter) -> bool:
    value = row.get(f.column)
    if f.op == "eq":
        return value == f.value
    if f.op == "neq":
        return value != f.value
    if f.op == "in":
        return value in f.value
    if value is None:
        return False
    left, right = _comparable(value), _comparable(f.value)
    try:
        return left >= right if f.op == "gte" else left <= right
    except TypeError:
        return False


class MemoryStorage:
    """Dict-backed tables with upsert-on-conflict semantics.

    Like Postgres, a single upsert statement may not touch the same conflict key twice.
    """

    def __init__(self):
        self.tables: dict[str, dict[tuple, dict]] = {}
        self.upsert_calls: list[tuple[str, int]] = []

    def rows(self, table: str) -> list[dict]:
        return [dict(r) for r in self.tables.get(table, {}).values()]

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> int:
        columns = [c.strip() for c in on_conflict.split(",")]
        keys = [tuple(row.get(c) for c in columns) for row in rows]
        if len(set(keys)) != len(keys):
            raise StorageError(
                "ON CONFLICT DO UPDATE command cannot affect row a second time", table=table
            )
        target = self.tables.setdefault(table, {})
        for key, row in zip(keys, rows):
            target[key] = {**target.get(key, {}), **row}
        self.upsert_calls.append((table, len(rows)))
        return len(rows)

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        result = [r for r in self.rows(table) if all(_matches(r, f) for f in filters)]
        if order_by:
            result.sort(key=lambda r: (_comparable(r.get(order_by)) is None, _comparable(r.get(order_by))), reverse=descending)
        end = offset + limit if limit is not None else None
        return result[offset:end]

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        return len(await self.query(table, filters))

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        if not filters:
            raise ValueError("delete requires at least one filter")
        target = self.tables.get(table, {})
        doomed = [k for k, r in target.items() if all(_matches(r, f) for f in filters)]
        for key in doomed:
            del target[key]
        return len(doomed)

    async def ping(self) -> bool:
        return True
