"""Async registry client with bearer auth, retries and streamed downloads."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from forge import __version__
from forge.exceptions import RegistryError

log = structlog.get_logger("forge.http")

_RETRY_BASE_DELAY = 0.5  # seconds
_CHUNK_SIZE = 64 * 1024

USER_AGENT = f"forge/{__version__}"


class RegistryClient:
    """Thin async wrapper around one package registry.

    *transport* is forwarded to :class:`httpx.AsyncClient` so tests can plug
    in an :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        retries: int = 3,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._retries = max(retries, 1)
        merged: dict[str, str] = {"User-Agent": USER_AGENT}
        merged.update(headers or {})
        if token:
            merged["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            headers=merged,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """GET *path* and decode the JSON body.

        Raises :class:`RegistryError` on 4xx, after retries are exhausted on
        5xx/timeouts, or when the body is not JSON.
        """
        response = await self._request_with_retry(self.url(path), params, headers)
        try:
            return response.json()
        except ValueError as exc:
            raise RegistryError(f"invalid JSON from {response.url}") from exc

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        """Yield the body of *url* in chunks.

        Connection errors are retried only before the first chunk has been
        produced. A failure after that raises :class:`RegistryError` at once.
        """
        url = self.url(url)
        last_exc: Exception | None = None
        yielded = False
        for attempt in range(self._retries):
            try:
                async with self._client.stream("GET", url) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        if resp.status_code < 500:
                            raise RegistryError(f"GET {url} returned {resp.status_code}")
                        last_exc = RegistryError(f"GET {url} returned {resp.status_code}")
                        log.warning(
                            "http.server_error",
                            url=url,
                            status=resp.status_code,
                            attempt=attempt + 1,
                        )
                    else:
                        async for chunk in resp.aiter_bytes(_CHUNK_SIZE):
                            yielded = True
                            yield chunk
                        return
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if yielded:
                    log.warning("http.stream_interrupted", url=url, error=str(exc))
                    raise RegistryError(f"download interrupted for {url}: {exc}") from exc
                log.warning("http.transport_error", url=url, error=str(exc), attempt=attempt + 1)
                last_exc = exc
            if attempt < self._retries - 1:
                await asyncio.sleep(_RETRY_BASE_DELAY * (2**attempt))
        raise RegistryError(f"download failed for {url}: {last_exc}")

    # ── internal ───────────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """GET with exponential backoff on 5xx, timeout and transport errors."""
        last_exc: Exception | None = None
        for attempt in range(self._retries):
            try:
                resp = await self._client.get(url, params=params, headers=headers)
                if resp.status_code < 400:
                    return resp
                if resp.status_code < 500:
                    raise RegistryError(f"GET {url} returned {resp.status_code}")
                log.warning(
                    "http.server_error",
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=self._retries,
                )
                last_exc = RegistryError(f"GET {url} returned {resp.status_code}")
            except httpx.TimeoutException as exc:
                log.warning("http.timeout", url=url, attempt=attempt + 1, max_retries=self._retries)
                last_exc = exc
            except httpx.TransportError as exc:
                log.warning("http.transport_error", url=url, error=str(exc), attempt=attempt + 1)
                last_exc = exc

            if attempt < self._retries - 1:
                await asyncio.sleep(_RETRY_BASE_DELAY * (2**attempt))

        if isinstance(last_exc, RegistryError):
            raise last_exc
        raise RegistryError(f"GET {url} failed: {last_exc}") from last_exc
