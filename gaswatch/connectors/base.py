"""
Shared async JSON-over-HTTP plumbing for the upstream feeds.

Each request is bounded by an ``aiohttp.ClientTimeout`` and retried with
exponential backoff; once attempts are exhausted the request raises
:class:`UpstreamUnavailable`.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from ..core.errors import UpstreamUnavailable
from ..core.logger import get_connector_logger

_DEFAULT_TIMEOUT_S = 5.0
_ERROR_EXCERPT_LIMIT = 200


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (0-based ``attempt``)."""
        return self.backoff_seconds * (self.backoff_multiplier ** attempt)


class JsonApiClient:
    """Base class: session management, retries and request telemetry.

    Parameters
    ----------
    name : str
        Used for the logger and in error messages.
    timeout_seconds : float
        Total timeout for a single attempt.
    retry : RetryConfig
        Attempt count and backoff schedule.
    session : aiohttp.ClientSession or None
        Optional shared session. If None, creates one internally.
    """

    def __init__(
        self,
        name: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_S,
        retry: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.name = name
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._retry = retry or RetryConfig()
        self._session = session
        self._owns_session = session is None
        self._logger = get_connector_logger(name)

        self.request_count = 0
        self.error_count = 0
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_success_ts: Optional[float] = None
        self.last_latency_ms: Optional[float] = None
        self.avg_latency_ms: Optional[float] = None
        self.last_http_status: Optional[int] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close HTTP session if we created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        """Issue a request and return the decoded JSON body.

        Retries transport errors, timeouts, HTTP 429 and 5xx.  Other HTTP
        errors fail immediately.
        """
        session = await self._get_session()
        attempts = max(1, max_attempts or self._retry.max_attempts)
        last_error = "no attempt made"

        for attempt in range(attempts):
            start = time.perf_counter()
            self.request_count += 1
            retryable = True
            try:
                async with session.request(
                    method, url, params=params, json=json, headers=headers,
                    timeout=self._timeout,
                ) as resp:
                    self.last_http_status = resp.status
                    if resp.status == 200:
                        payload = await resp.json(content_type=None)
                        self._note_success(start)
                        return payload
                    body = await resp.text()
                    last_error = f"http_{resp.status}: {body[:_ERROR_EXCERPT_LIMIT]}"
                    retryable = resp.status == 429 or resp.status >= 500
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"

            self._note_failure(last_error)
            if not retryable or attempt >= attempts - 1:
                break
            delay = self._retry.delay(attempt)
            self._logger.debug(
                "%s %s attempt %d/%d failed (%s); retrying in %.1fs",
                method, url, attempt + 1, attempts, last_error, delay,
            )
            await asyncio.sleep(delay)

        raise UpstreamUnavailable(f"{self.name}: {method} {url} failed: {last_error}")

    def _note_success(self, start: float) -> None:
        latency_ms = (time.perf_counter() - start) * 1000
        self.last_latency_ms = latency_ms
        self.avg_latency_ms = (
            latency_ms if self.avg_latency_ms is None
            else (latency_ms * 0.2) + (self.avg_latency_ms * 0.8)
        )
        self.last_success_ts = time.time()
        self.consecutive_failures = 0
        self.last_error = None

    def _note_failure(self, error: str) -> None:
        self.error_count += 1
        self.consecutive_failures += 1
        self.last_error = error

    def get_health_status(self) -> Dict[str, Any]:
        return {
            'request_count': self.request_count,
            'error_count': self.error_count,
            'consecutive_failures': self.consecutive_failures,
            'last_error': self.last_error,
            'last_success_ts': self.last_success_ts,
            'last_http_status': self.last_http_status,
            'avg_latency_ms': (
                round(self.avg_latency_ms, 1) if self.avg_latency_ms is not None else None
            ),
        }
