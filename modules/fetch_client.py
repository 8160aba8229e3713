"""
fetch_client.py
---------------
Retrying HTTP client used for every broker call: trade book fetches, token
checks and follower order placement.

A :class:`RetryPolicy` says how many attempts to make and how long to wait
between them; :class:`ResilientFetchClient` turns it into a tenacity
``AsyncRetrying`` loop for a single request.  Non-2xx responses,
``aiohttp.ClientError`` and timeouts are all failed attempts.  When the
policy is exhausted a :class:`NetworkError` carrying the last status and body
is raised.  Nothing is retried forever and callers never see a partial
response.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from utils.exceptions import NetworkError

SUPPORTED_METHODS = {"GET", "POST", "PUT", "DELETE"}
LATENCY_WINDOW = 1000


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base_delay * multiplier ** attempt``."""

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.multiplier < 1:
            raise ValueError("base_delay must be >= 0 and multiplier >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the 0-based ``attempt`` failed."""
        return self.base_delay * (self.multiplier ** attempt)

    def delays(self) -> List[float]:
        """Every wait the policy can incur (none after the last attempt)."""
        return [self.delay_for(i) for i in range(self.max_attempts - 1)]

    def wait(self) -> wait_exponential:
        # tenacity counts attempts from 1, so the first wait is base_delay
        return wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier)


@dataclass
class FetchResponse:
    status: int
    body: str
    data: Any = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class BadStatus(Exception):
    """Non-2xx response, raised inside the retry loop so it is retried."""

    def __init__(self, response: FetchResponse) -> None:
        super().__init__(f"HTTP {response.status}")
        self.response = response


RETRYABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, BadStatus)


class ResilientFetchClient:
    """Asynchronous HTTP client with a bounded retry/backoff loop."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._session = session
        self._owns_session = session is None

        self.metrics = {
            "requests_sent": 0,
            "errors": 0,
            "latencies": deque(maxlen=LATENCY_WINDOW),
        }

    # -------------------------------------------------------------------- #
    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "ResilientFetchClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -------------------------------------------------------------------- #
    @staticmethod
    def _decode(body: str) -> Any:
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError:
            return {}

    @staticmethod
    async def _backoff(seconds: float) -> None:
        await asyncio.sleep(seconds)

    def _retrying(self, policy: RetryPolicy) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.wait(),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=self._backoff,
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True,
        )

    async def _attempt(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        json_body: Any,
        params: Optional[Mapping[str, Any]],
    ) -> FetchResponse:
        t0 = time.monotonic()
        try:
            async with session.request(
                method, url, headers=headers, json=json_body, params=params
            ) as resp:
                self.metrics["requests_sent"] += 1
                # brokers occasionally send bytes that are not valid UTF-8
                body = await resp.text(errors="replace")
                self.metrics["latencies"].append(time.monotonic() - t0)
                response = FetchResponse(status=resp.status, body=body, data=self._decode(body))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.metrics["errors"] += 1
            self.logger.warning("[FETCH] %s %s failed: %r", method, url, exc)
            raise
        if not response.ok:
            self.metrics["errors"] += 1
            self.logger.warning("[FETCH] %s %s -> HTTP %s", method, url, response.status)
            raise BadStatus(response)
        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> FetchResponse:
        """Perform ``method url`` under the retry policy.

        Raises ``ValueError`` for caller mistakes before touching the
        network, and ``NetworkError`` once every attempt has failed.
        """
        method = (method or "").upper()
        if not url:
            raise ValueError("url is required")
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method!r}")

        policy = policy or self.policy
        session = await self._get_session()

        try:
            async for attempt in self._retrying(policy):
                with attempt:
                    response = await self._attempt(session, method, url, headers, json, params)
        except BadStatus as exc:
            last = exc.response
            message = f"HTTP {last.status}: {last.body}"
            self.logger.error("[FETCH] Retries exhausted for %s %s: %s", method, url, message)
            raise NetworkError(
                message, status=last.status, body=last.body, url=url, attempts=policy.max_attempts
            ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            message = f"{method} {url} failed after {policy.max_attempts} attempts: {exc!r}"
            self.logger.error("[FETCH] Retries exhausted for %s %s: %s", method, url, message)
            raise NetworkError(
                message, status=None, body="", url=url, attempts=policy.max_attempts
            ) from exc
        return response

    async def get(self, url: str, **kwargs) -> FetchResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> FetchResponse:
        return await self.request("POST", url, **kwargs)
