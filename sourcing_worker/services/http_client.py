from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "sourcing-worker/1.0"


class ExternalApiError(Exception):
    """Raised when an outbound call keeps failing after local retries."""


class ExternalApiStatusError(ExternalApiError):
    """Raised when the remote service answers with a non-success status."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(ExternalApiStatusError):
    """Raised when the remote service keeps answering 429."""


class RateLimitedHttpClient:
    """Async HTTP client spacing consecutive requests and retrying transient failures.

    Every attempt, including the ones answered with 429, consumes one unit of
    ``max_attempts``. Backoff between attempts is linear: ``retry_base_seconds * attempt``.
    A ``Retry-After`` header on a 429 overrides the computed delay.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float = 0.1,
        max_attempts: int = 3,
        retry_base_seconds: float = 2.0,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.timeout = httpx.Timeout(timeout_seconds)
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_request_at: float | None = None

    async def __aenter__(self) -> "RateLimitedHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_with_retry(
        self,
        url: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        last_error: ExternalApiError | None = None
        last_cause: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            await self._wait_for_slot()
            try:
                response = await self._get_client().request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"User-Agent": DEFAULT_USER_AGENT, **(headers or {})},
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as exc:
                last_error = ExternalApiError(f"request timed out: {method} {url}")
                last_cause = exc
            except httpx.HTTPError as exc:
                last_error = ExternalApiError(f"request failed: {method} {url}: {exc}")
                last_cause = exc
            else:
                last_cause = None
                if response.status_code == 429:
                    last_error = RateLimitedError(
                        f"rate limited: {method} {url}",
                        status_code=response.status_code,
                    )
                    if attempt < self.max_attempts:
                        delay = self._retry_after_seconds(response)
                        if delay is None:
                            delay = self._compute_retry_delay_seconds(attempt=attempt)
                        logger.warning(
                            "rate limited url=%s attempt=%s/%s retry_in=%.1fs",
                            url,
                            attempt,
                            self.max_attempts,
                            delay,
                        )
                        await self._sleep(delay)
                    continue
                if response.is_success:
                    return response
                last_error = ExternalApiStatusError(
                    f"HTTP {response.status_code}: {response.reason_phrase} ({method} {url})",
                    status_code=response.status_code,
                )

            if attempt < self.max_attempts:
                delay = self._compute_retry_delay_seconds(attempt=attempt)
                logger.warning(
                    "request failed url=%s attempt=%s/%s error=%s retry_in=%.1fs",
                    url,
                    attempt,
                    self.max_attempts,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        assert last_error is not None
        logger.error("request exhausted retries url=%s attempts=%s error=%s", url, self.max_attempts, last_error)
        raise last_error from last_cause

    async def _wait_for_slot(self) -> None:
        async with self._lock:
            if self._last_request_at is not None:
                elapsed = self._clock() - self._last_request_at
                remaining = self.min_interval_seconds - elapsed
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_request_at = self._clock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _compute_retry_delay_seconds(self, *, attempt: int) -> float:
        return self.retry_base_seconds * attempt

    @staticmethod
    def _retry_after_seconds(response: httpx.Response) -> float | None:
        raw = response.headers.get("retry-after")
        if raw is None:
            return None
        try:
            return max(0.0, float(raw.strip()))
        except ValueError:
            return None
