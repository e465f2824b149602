"""HTTP client for the authoritative event backend.

Handles retry with exponential backoff. Exhausted retries surface as
TransportError so callers keep their events queued.
"""

import asyncio
import logging
from typing import Any, Protocol

import httpx

from treesync.errors import TransportError
from treesync.models import BatchResponse, BatchSubmission, EventEnvelope

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def submit_batch(self, tree_id: str, batch: BatchSubmission) -> BatchResponse: ...

    async def fetch_events(self, tree_id: str, since: int = 0) -> list[EventEnvelope]: ...


class HttpTransport:
    """Submits event batches and fetches server history over HTTP."""

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        backoff: float = 0.5,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Backend root, e.g. "http://localhost:8000".
            max_retries: Attempts per request before giving up.
            backoff: Initial delay in seconds, doubled after each failure.
            timeout: Request timeout in seconds.
            client: Optional preconfigured client (tests pass an ASGI one).
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff = backoff
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit_batch(self, tree_id: str, batch: BatchSubmission) -> BatchResponse:
        data = await self._request(
            "POST", f"/api/trees/{tree_id}/events", json=batch.model_dump(mode="json")
        )
        return BatchResponse.model_validate(data)

    async def fetch_events(self, tree_id: str, since: int = 0) -> list[EventEnvelope]:
        data = await self._request(
            "GET", f"/api/trees/{tree_id}/events", params={"since": since}
        )
        return [EventEnvelope.model_validate(item) for item in data]

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        delay = self.backoff
        last_error = "no attempt made"

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "%s %s failed (%s), attempt %d/%d",
                    method, path, last_error, attempt, self.max_retries,
                )
            except httpx.HTTPError as e:
                raise TransportError(f"{method} {path}: {e}") from e
            else:
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    raise TransportError(
                        f"{method} {path}: HTTP {response.status_code}: {response.text}"
                    )
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "%s %s returned %d, attempt %d/%d",
                    method, path, response.status_code, attempt, self.max_retries,
                )

            if attempt < self.max_retries:
                await asyncio.sleep(delay)
                delay *= 2

        raise TransportError(
            f"{method} {path}: giving up after {self.max_retries} attempts ({last_error})"
        )
