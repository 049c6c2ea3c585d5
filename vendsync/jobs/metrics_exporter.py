"""Metrics exporter for observability."""
import json
import time
from pathlib import Path
from typing import Optional
import aiofiles

from vendsync.config import DATA_DIR

METRICS_FILE = DATA_DIR / "metrics.jsonl"


class MetricsExporter:
    """Appends one JSON line per sync run to a JSONL file."""

    def __init__(self, run_id: str, metrics_file: Optional[Path] = None):
        self.run_id = run_id
        self.metrics_file = metrics_file or METRICS_FILE

    async def export_run(self, status: str, mode: str, totals: dict, elapsed: float) -> None:
        """Export run totals to JSONL file."""
        metrics = {
            "ts": time.time(),
            "run_id": self.run_id,
            "status": status,
            "mode": mode,
            "elapsed_seconds": round(elapsed, 2),
            **totals,
        }

        line = json.dumps(metrics) + "\n"
        async with aiofiles.open(self.metrics_file, "a") as f:
            await f.write(line)
