"""Pooled HTTP transport for the memory client.

``ManagedConnection`` owns the single ``httpx.AsyncClient`` a MemoryClient
talks through. It opens the pool on first use, turns httpx failures into
the client's transport errors, and throws the pool away after any
timeout or connection failure so the next request starts on fresh
sockets. Status codes are returned untouched; judging them is the
caller's job.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .exceptions import NetworkError, RequestTimeoutError

logger = logging.getLogger("memory_client.connection")

# The server may answer JSON-RPC calls as plain JSON or as an event stream
DEFAULT_HEADERS: Dict[str, str] = {"Accept": "application/json, text/event-stream"}


class ManagedConnection:
    """Lazily opened connection pool for one memory server.

    Usage:
        conn = ManagedConnection("http://localhost:3001", timeout=15.0)
        response = await conn.post("/mcp", body, headers={"Content-Type": "application/json"})
        ...
        await conn.close()

    Attributes exposed through ``stats``:
        request_count: Requests that got any HTTP response back.
        error_count: Requests that timed out or failed at the network level.
        last_error: Description of the most recent such failure.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        max_connections: int = 10,
        max_keepalive_connections: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout
        self._limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
        )
        self._headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._request_count = 0
        self._error_count = 0
        self._last_error: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_connected(self) -> bool:
        """True while a pool is open (it may still be unhealthy)."""
        return self._client is not None

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "base_url": self._base_url,
            "is_connected": self.is_connected,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
        }

    async def open(self) -> None:
        """Open the pool now instead of on the first request."""
        await self._acquire()

    async def _acquire(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                logger.debug(f"Opening connection pool for {self._base_url}")
                self._client = httpx.AsyncClient(
                    base_url=self._base_url,
                    timeout=httpx.Timeout(self._timeout_s),
                    limits=self._limits,
                    headers=self._headers,
                    transport=self._transport,
                )
            return self._client

    async def send(
        self,
        method: str,
        path: str,
        *,
        content: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """Send one request over the pool.

        Raises:
            RequestTimeoutError: The request exceeded the configured timeout.
            NetworkError: The request failed before a response arrived.
        """
        client = await self._acquire()
        url = f"{self._base_url}{path}"
        try:
            response = await client.request(method, path, content=content, headers=headers)
        except httpx.TimeoutException as e:
            await self._discard(client, f"{type(e).__name__} after {self._timeout_s}s")
            raise RequestTimeoutError(url, self._timeout_s) from e
        except httpx.RequestError as e:
            reason = f"{type(e).__name__}: {e}"
            await self._discard(client, reason)
            raise NetworkError(url, reason) from e

        self._request_count += 1
        return response

    async def post(
        self,
        path: str,
        content: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        return await self.send("POST", path, content=content, headers=headers)

    async def get(self, path: str) -> httpx.Response:
        return await self.send("GET", path)

    async def _discard(self, failed: httpx.AsyncClient, reason: str) -> None:
        """Close the pool that just failed, unless another caller already replaced it."""
        async with self._lock:
            self._error_count += 1
            self._last_error = reason
            if self._client is not failed:
                return
            logger.warning(
                f"Discarding connection pool for {self._base_url}: {reason}",
                extra={"request_count": self._request_count, "error_count": self._error_count},
            )
            try:
                await failed.aclose()
            except Exception as e:
                logger.error(f"Error closing failed pool: {type(e).__name__}: {e}")
            finally:
                self._client = None

    async def close(self) -> None:
        """Close the pool. Safe to call when nothing is open."""
        async with self._lock:
            if self._client is None:
                return
            logger.debug(f"Closing connection pool for {self._base_url}")
            try:
                await self._client.aclose()
            except Exception as e:
                logger.error(f"Error closing connection pool: {type(e).__name__}: {e}")
            finally:
                self._client = None
