"""Exception types shared across the sync pipeline and the proxy."""
from typing import Optional


class VendsyncError(Exception):
    """Base class for all vendsync errors."""


class UpstreamError(VendsyncError):
    """VendLive answered with a non-2xx status."""

    def __init__(
        self, status_code: int, url: str, reason: str = "", retry_after: Optional[float] = None
    ):
        self.status_code = status_code
        self.url = url
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"VendLive API error {status_code}: {reason or 'request failed'} ({url})")


class StorageError(VendsyncError):
    """The backing store rejected a write, query or delete."""

    def __init__(self, message: str, table: Optional[str] = None):
        self.table = table
        super().__init__(f"[{table}] {message}" if table else message)


class InvariantViolation(VendsyncError):
    """An internal guarantee was broken (signals a bug, never bad input)."""


class SyncCancelled(VendsyncError):
    """A sync run observed a cancellation request and stopped."""
