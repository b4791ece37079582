from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ProviderAPIError(RuntimeError):
    def __init__(self, provider: str, status_code: int | None, message: str, *, retryable: bool = False) -> None:
        super().__init__(f"{provider} API error ({status_code if status_code is not None else 'no status'}): {message}")
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


def _retry_after_seconds(response: httpx.Response, default: float) -> float:
    value = response.headers.get("retry-after")
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


class ProviderHTTPClient:
    """Shared request loop for provider REST clients.

    429 waits for the exact ``Retry-After`` duration, 5xx and timeouts back off
    exponentially, any other 4xx raises immediately.
    """

    provider = "provider"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        *,
        timeout_seconds: float,
        max_attempts: int,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=float(timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _backoff(attempt: int) -> float:
        return float(min(2 ** (attempt - 1), 8))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        return_rate_limited: bool = False,
    ) -> httpx.Response:
        clean_params = {key: value for key, value in (params or {}).items() if value is not None}
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.request(method, path, params=clean_params, json=json)
            except httpx.TimeoutException as exc:
                if attempt >= self.max_attempts:
                    raise ProviderAPIError(self.provider, None, "request timed out", retryable=True) from exc
                await self._sleep(self._backoff(attempt))
                continue
            except httpx.TransportError as exc:
                if attempt >= self.max_attempts:
                    raise ProviderAPIError(self.provider, None, str(exc), retryable=True) from exc
                await self._sleep(self._backoff(attempt))
                continue

            status = response.status_code
            if status == 429:
                if return_rate_limited:
                    return response
                if attempt >= self.max_attempts:
                    raise ProviderAPIError(self.provider, status, "rate limited", retryable=True)
                wait_seconds = _retry_after_seconds(response, self._backoff(attempt))
                LOGGER.warning(
                    "provider_rate_limited",
                    extra={"provider": self.provider, "retry_after_seconds": wait_seconds, "path": path},
                )
                await self._sleep(wait_seconds)
                continue
            if status >= 500:
                if attempt >= self.max_attempts:
                    raise ProviderAPIError(self.provider, status, response.text[:200], retryable=True)
                await self._sleep(self._backoff(attempt))
                continue
            if status >= 400:
                raise ProviderAPIError(self.provider, status, response.text[:200], retryable=False)
            return response
        raise ProviderAPIError(self.provider, None, "retry budget exhausted", retryable=True)
