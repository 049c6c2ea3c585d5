"""Counters for a sync run."""
import time
import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Dict

logger = logging.getLogger(__name__)


@dataclass
class SyncTotals:
    """What a sync run reports when it finishes."""

    pages: int = 0
    sales_seen: int = 0
    line_items: int = 0
    order_summaries: int = 0
    skipped_empty: int = 0
    skipped_unknown: int = 0
    placeholders: int = 0
    deleted_orders: int = 0
    deleted_sales: int = 0
    daily_stats: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class Metrics:
    """Track sync throughput."""

    def __init__(self):
        self.start_time = time.time()
        self.counters: Dict[str, int] = defaultdict(int)

    def increment(self, key: str, amount: int = 1) -> None:
        """Increment a counter."""
        self.counters[key] += amount

    def get_rate(self) -> float:
        """Upstream sales processed per second."""
        elapsed = time.time() - self.start_time
        processed = self.counters.get("sales_seen", 0)
        if elapsed > 0:
            return processed / elapsed
        return 0.0

    def report(self) -> None:
        """Log current progress."""
        logger.info(
            f"Progress: pages={self.counters.get('pages', 0)} | "
            f"sales={self.counters.get('sales_seen', 0)} | "
            f"lines={self.counters.get('line_items', 0)} | "
            f"summaries={self.counters.get('order_summaries', 0)} | "
            f"rate={self.get_rate():.2f} sales/s"
        )

    def get_summary(self) -> Dict:
        """Get summary statistics."""
        return {
            **self.counters,
            "rate": round(self.get_rate(), 2),
            "elapsed_seconds": round(time.time() - self.start_time, 2),
        }
