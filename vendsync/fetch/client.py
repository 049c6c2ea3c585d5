"""VendLive HTTP client with retries, Retry-After handling and machine enrichment."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)
from tenacity.wait import wait_base

from vendsync.config import config
from vendsync.errors import UpstreamError
from vendsync.fetch.endpoints import devices_path

logger = logging.getLogger(__name__)

USER_AGENT = "ShapeEat-Backend/1.0"

# Longest server-requested pause we will honor before retrying
RETRY_AFTER_CAP = 60.0


def is_retryable_status(status_code: int) -> bool:
    """Check if status code is retryable."""
    return status_code in (429, 500, 502, 503, 504)


def is_retryable_error(exc: BaseException) -> bool:
    """Transport failures and retryable statuses are retried, other errors are not."""
    if isinstance(exc, UpstreamError):
        return is_retryable_status(exc.status_code)
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header; HTTP-date values are ignored."""
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


class wait_retry_after(wait_base):
    """Wait what VendLive asked for on 429/503, otherwise defer to ``fallback``."""

    def __init__(self, fallback: wait_base, cap: float = RETRY_AFTER_CAP):
        self.fallback = fallback
        self.cap = cap

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, UpstreamError) and exc.retry_after is not None:
            return min(exc.retry_after, self.cap)
        return self.fallback(retry_state)


class VendLiveClient:
    """Async client for the VendLive API.

    ``max_attempts`` selects the retry policy: the batch sync uses a single attempt
    (any failure is fatal to the run), the proxy retries with a linearly growing
    delay of ``retry_delay * attempt``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        max_attempts: int = 1,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.VENDLIVE_BASE_URL).rstrip("/")
        self.token = token if token is not None else config.VENDLIVE_TOKEN
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = config.RETRY_DELAY if retry_delay is None else retry_delay
        self.timeout = timeout or config.TIMEOUT

        limits = httpx.Limits(max_connections=50, max_keepalive_connections=10)
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=self.timeout,
            limits=limits,
            headers=self._headers(),
            transport=transport,
        )
        self.request_count = 0
        self.retry_count = 0

    @classmethod
    def for_sync(cls, **kwargs) -> "VendLiveClient":
        """Client for batch sync: no retry, whole run aborts on failure."""
        kwargs.setdefault("max_attempts", 1)
        return cls(**kwargs)

    @classmethod
    def for_proxy(cls, **kwargs) -> "VendLiveClient":
        """Client for interactive proxy calls: bounded retries with linear backoff."""
        kwargs.setdefault("max_attempts", config.MAX_RETRIES)
        return cls(**kwargs)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Token {self.token}"
        return headers

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def url_for(self, path_or_url: str) -> str:
        """Absolute URLs (pagination cursors) pass through, paths join the base URL."""
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def _get_once(self, url: str, params: Optional[dict]) -> Any:
        self.request_count += 1
        try:
            response = await self.client.get(url, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.warning(f"Network error for {url}: {e!r}")
            raise

        if response.status_code < 200 or response.status_code >= 300:
            retry_after = None
            if response.status_code in (429, 503):
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise UpstreamError(response.status_code, url, response.reason_phrase, retry_after)
        return response.json()

    async def get_json(self, path_or_url: str, params: Optional[dict] = None) -> Any:
        """GET a VendLive resource and decode its JSON body."""
        url = self.url_for(path_or_url)
        params = {k: v for k, v in (params or {}).items() if v is not None} or None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_retry_after(
                wait_incrementing(start=self.retry_delay, increment=self.retry_delay)
            ),
            retry=retry_if_exception(is_retryable_error),
            reraise=True,
            sleep=asyncio.sleep,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.retry_count += 1
                    logger.warning(
                        f"Retrying {url} (attempt {attempt.retry_state.attempt_number}/{self.max_attempts})"
                    )
                return await self._get_once(url, params)

    async def get_device_enabled(self, machine_id: Any) -> bool:
        """Whether the device attached to a machine is enabled (missing device → enabled)."""
        data = await self.get_json(devices_path(machine_id))
        results = (data.get("results") or []) if isinstance(data, dict) else []
        if not results:
            return True
        enabled = results[0].get("enabled")
        return True if enabled is None else bool(enabled)

    async def enrich_machines(
        self, machines: list[dict], concurrency: Optional[int] = None
    ) -> list[dict]:
        """Add ``isEnabled`` and ``lastCheck`` to each machine.

        Lookups run concurrently, at most ``concurrency`` in flight. A failed lookup
        only affects its own machine, which falls back to ``isEnabled=True``.
        """
        semaphore = asyncio.Semaphore(concurrency or config.ENRICH_CONCURRENCY)

        async def enrich(machine: dict) -> dict:
            async with semaphore:
                try:
                    enabled = await self.get_device_enabled(machine.get("id"))
                except Exception as e:
                    logger.warning(f"Device lookup failed for machine {machine.get('id')}: {e}")
                    enabled = True
            return {
                **machine,
                "isEnabled": enabled,
                "lastCheck": datetime.now(timezone.utc).isoformat(),
            }

        return list(await asyncio.gather(*(enrich(m) for m in machines)))
