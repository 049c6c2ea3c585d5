"""Run control: cooperative cancellation and time limits."""
import time
import logging
from typing import Optional
from dataclasses import dataclass, field

from vendsync.errors import SyncCancelled

logger = logging.getLogger(__name__)


@dataclass
class RunControl:
    """Stop conditions checked between pages and between sub-batches."""

    stop_after_minutes: Optional[float] = None

    # Internal state
    start_time: float = field(default_factory=time.time)
    cancelled: bool = False
    cancel_reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request a stop; the running job observes it at its next checkpoint."""
        if not self.cancelled:
            logger.warning(f"Cancellation requested: {reason}")
        self.cancelled = True
        self.cancel_reason = self.cancel_reason or reason

    def should_stop(self) -> tuple[bool, Optional[str]]:
        """Check if run should stop. Returns (should_stop, reason)."""
        if self.cancelled:
            return True, self.cancel_reason

        elapsed_minutes = (time.time() - self.start_time) / 60
        if self.stop_after_minutes and elapsed_minutes >= self.stop_after_minutes:
            return True, f"Reached stop_after_minutes={self.stop_after_minutes}"

        return False, None

    def raise_if_stopped(self) -> None:
        stop, reason = self.should_stop()
        if stop:
            raise SyncCancelled(reason or "stopped")

    def get_summary(self) -> dict:
        """Get summary statistics."""
        elapsed_minutes = (time.time() - self.start_time) / 60
        return {
            "elapsed_minutes": round(elapsed_minutes, 2),
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
        }
