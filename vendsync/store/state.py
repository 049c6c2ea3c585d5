"""SQLite journal of sync runs."""
import aiosqlite
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from vendsync.config import STATE_DB

logger = logging.getLogger(__name__)


class StateDB:
    """Local record of every sync run and its outcome."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_runs (
                    run_id TEXT PRIMARY KEY,
                    mode TEXT NOT NULL,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TIMESTAMP NOT NULL,
                    finished_at TIMESTAMP,
                    totals TEXT,
                    error TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_sync_runs_status ON sync_runs(status)
                """
            )
            await db.commit()
            logger.debug(f"State database initialized at {self.db_path}")

    async def start_run(self, run_id: str, mode: str, start_date: str, end_date: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO sync_runs (run_id, mode, start_date, end_date, status, started_at)
                VALUES (?, ?, ?, ?, 'running', ?)
                """,
                (run_id, mode, start_date, end_date, datetime.now(timezone.utc).isoformat()),
            )
            await db.commit()

    async def finish_run(
        self, run_id: str, status: str, totals: dict, error: Optional[str] = None
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE sync_runs SET status = ?, finished_at = ?, totals = ?, error = ?
                WHERE run_id = ?
                """,
                (
                    status,
                    datetime.now(timezone.utc).isoformat(),
                    json.dumps(totals),
                    error[:500] if error else None,
                    run_id,
                ),
            )
            await db.commit()

    async def last_successful_end_date(self) -> Optional[str]:
        """End date of the most recent successful run, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT end_date FROM sync_runs
                WHERE status = 'success'
                ORDER BY finished_at DESC LIMIT 1
                """
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    async def get_stats(self) -> dict:
        """Run counts by status."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT status, COUNT(*) FROM sync_runs
                GROUP BY status
                """
            )
            return {row[0]: row[1] for row in await cursor.fetchall()}
