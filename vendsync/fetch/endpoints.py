"""Path builders for VendLive API 2.0 endpoints."""
from typing import Optional

API_PREFIX = "/api/2.0"


def machines_path() -> str:
    return f"{API_PREFIX}/machines/"


def devices_path(machine_id: int | str) -> str:
    """Device lookup for a single machine (carries the `enabled` flag)."""
    return f"{API_PREFIX}/devices/?machineId={machine_id}"


def sales_path() -> str:
    return f"{API_PREFIX}/sales/"


def order_sales_path(account_id: Optional[str] = None) -> str:
    """Order-sales listing, scoped to an account when one is given."""
    if account_id:
        return f"{API_PREFIX}/accounts/{account_id}/order-sales/"
    return f"{API_PREFIX}/order-sales/"


def passthrough_path(path: str) -> str:
    """Normalize a client-supplied path for the generic proxy route."""
    path = path.lstrip("/")
    if not path.startswith("api/"):
        path = f"api/2.0/{path}"
    return f"/{path}"
