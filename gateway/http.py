from __future__ import annotations

import asyncio
import logging
import time

import httpx

from .constants import IDEMPOTENT_METHODS, LOGGER


def _seconds_until_retry(retry_after: str | None, *, now: float | None = None) -> int | None:
    """Seconds from a ``Retry-After`` header given as delay or epoch seconds."""
    if retry_after is None:
        return None
    try:
        value = int(retry_after)
    except ValueError:
        return None

    current = int(time.time() if now is None else now)
    if value > current:
        return value - current
    return max(0, value)


class RetryTransport(httpx.AsyncBaseTransport):
    """Retries idempotent requests on 429 and 5xx.

    Token requests are POSTs carrying single-use codes, so they pass through
    untouched. A 429 asking for a longer wait than ``max_wait`` is returned
    as-is.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = 2,
        max_wait: float | None = None,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._max_retries = max(0, max_retries)
        self._max_wait = max_wait
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method.upper() not in IDEMPOTENT_METHODS or self._max_retries == 0:
            return await self._transport.handle_async_request(request)

        retries = 0
        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                extensions=request.extensions,
            )
            response = await self._transport.handle_async_request(next_request)

            if response.status_code == 429 and retries < min(self._max_retries, 1):
                wait_seconds = _seconds_until_retry(response.headers.get("retry-after"))
                if wait_seconds is None:
                    wait_seconds = 1
                if self._max_wait is not None and wait_seconds > self._max_wait:
                    self._logger.warning(
                        "Not retrying 429: retry-after %ss exceeds %ss (%s %s)",
                        wait_seconds,
                        self._max_wait,
                        request.method,
                        request.url.host,
                    )
                    return response
                self._logger.warning(
                    "Retrying 429 after %ss (%s %s)",
                    wait_seconds,
                    request.method,
                    request.url.host,
                )
                await response.aclose()
                await self._sleep(wait_seconds)
                retries += 1
                continue

            if 500 <= response.status_code < 600 and retries < self._max_retries:
                backoff_seconds = 2**retries
                self._logger.warning(
                    "Retrying %s after %ss (%s %s)",
                    response.status_code,
                    backoff_seconds,
                    request.method,
                    request.url.host,
                )
                await response.aclose()
                await self._sleep(backoff_seconds)
                retries += 1
                continue

            return response

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_http_client(
    *,
    timeout: float,
    max_retries: int = 2,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    retry_transport = RetryTransport(
        transport or httpx.AsyncHTTPTransport(),
        max_retries=max_retries,
        max_wait=timeout,
        logger=LOGGER,
    )
    return httpx.AsyncClient(timeout=timeout, transport=retry_transport)
