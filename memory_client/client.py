#!/usr/bin/env python3
"""
Resilient client for the memory context server.

Composes the transport codec, session manager, retry policy and circuit
breaker into typed fact operations for the chat application.

Key design decisions:
- One explicit client instance per process, passed to whoever needs it
- Every call runs Circuit Breaker -> Retry Policy -> Codec -> HTTP
- The ``initialize`` handshake happens lazily, through the same stack
- Public operations never raise for server trouble: they log the error
  and return a safe fallback (False, an empty context, None)
- Logs method and tool names, never fact content

Usage:
    async with MemoryClient() as client:
        context = await client.get_facts("user-123")

    Or through the scoped helper:
        async with memory_session() as client:
            await client.create_fact(CreateFact(...))
"""

import asyncio
import itertools
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from .codec import decode_response, encode_notification, encode_request
from .config import Settings, get_settings
from .connection import ManagedConnection
from .exceptions import (
    HTTPStatusError,
    MemoryClientError,
    ParseError,
    ProtocolError,
    SessionExpiredError,
    TransportError,
)
from .models import (
    CreateFact,
    FactQuery,
    FactsSummary,
    JsonRpcErrorResponse,
    MemoryContext,
    ResourceReadResult,
    ToolCallResult,
    UpdateFact,
)
from .resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    RetryConfig,
    RetryPolicy,
    SleepFn,
)
from .session import SessionManager

logger = logging.getLogger("memory_client.client")

M = TypeVar("M", bound=BaseModel)

# Tool and resource names exposed by the memory context server
TOOL_CREATE_FACT = "create-fact"
TOOL_GET_FACTS = "get-facts"
TOOL_UPDATE_FACT = "update-fact"
TOOL_DELETE_FACT = "delete-fact"
CONTEXT_URI = "memory://context/{user_id}"
SUMMARY_URI = "memory://summary/{user_id}"

CIRCUIT_NAME = "memory-server"

# JSON-RPC code the server uses for "Server not initialized" and
# "No valid session ID provided"
SESSION_ERROR_CODE = -32000


def _is_session_loss(response: httpx.Response) -> bool:
    """True if a rejected response means the server forgot our session.

    A restarted server answers an unknown session with HTTP 400 and error
    -32000; a server that evicts sessions answers 404.
    """
    if response.status_code == 404:
        return True
    if response.status_code != 400:
        return False
    try:
        envelope = decode_response(response.text)
    except MemoryClientError:
        return False
    if not isinstance(envelope, JsonRpcErrorResponse):
        return False
    message = envelope.error.message.lower()
    return envelope.error.code == SESSION_ERROR_CODE and (
        "not initialized" in message or "session" in message
    )


class MemoryClient:
    """Resilient JSON-RPC client for the memory context server.

    Integrates:
    - Session capture/reuse with lazy ``initialize`` handshake
    - Retry with linear backoff and client-error short-circuit
    - Circuit breaker with Probe Latch mechanism
    - Managed connection pool, released on every exit path

    Concurrency:
        Safe to share between coroutines of one event loop. Breaker
        counters and the handshake are guarded by asyncio locks.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        server = self._settings.server
        resilience = self._settings.resilience

        self._retry = RetryPolicy(
            RetryConfig(
                max_attempts=resilience.retry_max_attempts,
                base_delay_ms=resilience.retry_base_delay_ms,
                max_delay_ms=resilience.retry_max_delay_ms,
            ),
            sleep=sleep,
        )
        self._circuit_breaker = CircuitBreaker(
            name=CIRCUIT_NAME,
            config=CircuitBreakerConfig(
                failure_threshold=resilience.circuit_breaker_failure_threshold,
                recovery_timeout_s=resilience.circuit_breaker_recovery_timeout_s,
            ),
            clock=clock,
        )
        self._connection = ManagedConnection(
            base_url=server.url,
            timeout=server.request_timeout_s,
            max_connections=server.max_connections,
            max_keepalive_connections=server.max_keepalive_connections,
            transport=transport,
        )
        self._session = SessionManager(header_name=server.session_header)
        self._request_ids = itertools.count(1)
        self._init_lock = asyncio.Lock()

        logger.info("MemoryClient created", extra={"base_url": server.url})

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def connection(self) -> ManagedConnection:
        return self._connection

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def __aenter__(self) -> "MemoryClient":
        await self._connection.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Perform the handshake now instead of on first use.

        Idempotent. Unlike the fact operations, this raises on failure.

        Raises:
            MemoryClientError: If the handshake fails or the circuit is open.
        """
        await self._ensure_initialized()

    async def disconnect(self) -> None:
        """Close the connection pool and forget the session.

        Circuit breaker counters are kept. Safe to call repeatedly.
        """
        await self._connection.close()
        self._session.reset()
        logger.info("Disconnected from memory server")

    def reset(self) -> None:
        """Forget the session; the next operation handshakes again."""
        self._session.reset()

    async def reset_circuit(self) -> None:
        await self._circuit_breaker.reset()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _post(self, body: bytes, label: str) -> httpx.Response:
        """POST one envelope; reject non-2xx answers.

        A rejection of the session we sent resets it and raises the
        retryable SessionExpiredError.
        """
        server = self._settings.server
        headers = self._session.attach({"Content-Type": "application/json"})
        sent_token = self._session.token

        response = await self._connection.post(server.rpc_path, body, headers=headers)
        self._session.capture(response.headers)

        if not response.is_success:
            if sent_token is not None and _is_session_loss(response):
                logger.warning(
                    f"Server no longer knows the session ({label}); resetting",
                    extra={"status_code": response.status_code},
                )
                self._session.reset()
                raise SessionExpiredError(server.rpc_url, response.status_code, response.reason_phrase)
            raise HTTPStatusError(server.rpc_url, response.status_code, response.reason_phrase)

        return response

    async def _rpc(self, method: str, params: Dict[str, Any]) -> Any:
        """One request/response exchange; returns the envelope's result."""
        request_id = next(self._request_ids)
        logger.debug(f"-> {method}", extra={"request_id": request_id})

        response = await self._post(encode_request(method, params, request_id), method)
        envelope = decode_response(response.text)

        if isinstance(envelope, JsonRpcErrorResponse):
            error = envelope.error
            raise ProtocolError(error.message, code=error.code, data=error.data)
        if envelope.id is not None and str(envelope.id) != str(request_id):
            raise ProtocolError(
                f"response id {envelope.id!r} does not match request id {request_id}"
            )
        return envelope.result

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self._post(encode_notification(method, params), method)

    async def _protected(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        """Run ``operation`` through Circuit Breaker -> Retry Policy."""
        return await self._circuit_breaker.execute(
            lambda: self._retry.execute(operation, label=label)
        )

    # =========================================================================
    # Handshake
    # =========================================================================

    async def _handshake(self) -> None:
        server = self._settings.server
        self._session.reset()

        result = await self._rpc(
            "initialize",
            {
                "protocolVersion": server.protocol_version,
                "capabilities": {},
                "clientInfo": {
                    "name": server.client_name,
                    "version": server.client_version,
                },
            },
        )
        if not self._session.token:
            raise ProtocolError("server did not assign a session on initialize")

        await self._notify("notifications/initialized")
        self._session.mark_initialized()

        server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info(
            "Memory server session initialized",
            extra={
                "server_name": server_info.get("name"),
                "server_version": server_info.get("version"),
            },
        )

    async def _ensure_initialized(self) -> None:
        if self._session.initialized:
            return
        async with self._init_lock:
            if self._session.initialized:
                return
            await self._protected(self._handshake, "initialize")

    # =========================================================================
    # Tool / Resource Calls
    # =========================================================================

    async def _call_validated(self, method: str, params: Dict[str, Any], model: type[M], label: str) -> M:
        """Handshake if needed, then make a protected call whose result is
        validated into ``model``."""
        await self._ensure_initialized()

        async def invoke() -> M:
            if not self._session.initialized:
                # An earlier attempt lost the session
                async with self._init_lock:
                    if not self._session.initialized:
                        await self._handshake()
            result = await self._rpc(method, params)
            try:
                return model.model_validate(result if result is not None else {})
            except ValidationError as e:
                raise ParseError(f"unexpected {method} result shape ({e.error_count()} errors)") from e

        return await self._protected(invoke, label)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolCallResult:
        """Invoke a server tool. Raises on failure; prefer the typed operations."""
        return await self._call_validated(
            "tools/call", {"name": name, "arguments": arguments}, ToolCallResult, name
        )

    async def _read(self, uri: str) -> ResourceReadResult:
        return await self._call_validated(
            "resources/read", {"uri": uri}, ResourceReadResult, "resources/read"
        )

    @staticmethod
    def _fallback(operation: str, error: Exception) -> None:
        logger.warning(
            f"{operation} failed, returning fallback: {type(error).__name__}: {error}",
            extra={"operation": operation, "error_type": type(error).__name__},
        )

    # =========================================================================
    # Fact Operations
    # =========================================================================

    async def create_fact(self, fact: CreateFact) -> bool:
        """Store a new fact.

        Creation is at-least-once: a retried create may duplicate a fact,
        and duplicate suppression is the server's job.

        Returns:
            True if the server stored the fact.
        """
        try:
            result = await self.call_tool(TOOL_CREATE_FACT, fact.model_dump(by_alias=True))
        except Exception as e:
            self._fallback(TOOL_CREATE_FACT, e)
            return False

        if result.is_error:
            logger.warning(f"{TOOL_CREATE_FACT} rejected by server", extra={"text": result.text})
            return False
        return True

    async def get_facts(
        self,
        user_id: str,
        subject: Optional[str] = None,
        predicate: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> MemoryContext:
        """Fetch a user's facts, optionally filtered.

        Returns an empty context when the server is unreachable, the
        circuit is open, or the answer cannot be parsed.
        """
        try:
            query = FactQuery(user_id=user_id, subject=subject, predicate=predicate, limit=limit)
            result = await self.call_tool(
                TOOL_GET_FACTS, query.model_dump(by_alias=True, exclude_none=True)
            )
            if result.is_error:
                logger.warning(f"{TOOL_GET_FACTS} rejected by server", extra={"text": result.text})
                return MemoryContext.empty(user_id)
            context = MemoryContext.model_validate_json(result.text)
        except Exception as e:
            self._fallback(TOOL_GET_FACTS, e)
            return MemoryContext.empty(user_id)

        logger.debug(
            "Facts retrieved",
            extra={
                "result_count": len(context.facts),
                "fact_ids": [f.id for f in context.facts],
            },
        )
        return context

    async def update_fact(self, fact_id: str, update: UpdateFact) -> bool:
        """Apply a partial update to a fact. Returns True on success."""
        arguments: Dict[str, Any] = {"id": fact_id, **update.model_dump(exclude_none=True)}
        try:
            result = await self.call_tool(TOOL_UPDATE_FACT, arguments)
        except Exception as e:
            self._fallback(TOOL_UPDATE_FACT, e)
            return False

        if result.is_error:
            logger.warning(
                f"{TOOL_UPDATE_FACT} rejected by server",
                extra={"fact_id": fact_id, "text": result.text},
            )
            return False
        return True

    async def delete_fact(self, fact_id: str) -> bool:
        """Delete a fact. Returns True on success."""
        try:
            result = await self.call_tool(TOOL_DELETE_FACT, {"id": fact_id})
        except Exception as e:
            self._fallback(TOOL_DELETE_FACT, e)
            return False

        if result.is_error:
            logger.warning(
                f"{TOOL_DELETE_FACT} rejected by server",
                extra={"fact_id": fact_id, "text": result.text},
            )
            return False
        return True

    # =========================================================================
    # Resources
    # =========================================================================

    async def read_resource(self, uri: str) -> Optional[Dict[str, Any]]:
        """Read a named resource and parse its first JSON content item.

        Returns:
            The parsed payload, or None if the read failed.
        """
        try:
            result = await self._read(uri)
            if not result.contents:
                return None
            payload = json.loads(result.contents[0].text)
        except Exception as e:
            self._fallback("resources/read", e)
            return None

        if not isinstance(payload, dict):
            logger.warning("Resource payload is not an object", extra={"uri_scheme": uri.split(":", 1)[0]})
            return None
        return payload

    async def _read_model(self, uri: str, model: type[M], fallback: M) -> M:
        payload = await self.read_resource(uri)
        if payload is None:
            return fallback
        if "error" in payload:
            logger.warning(
                "Resource reported an error",
                extra={"error_message": str(payload["error"])[:200]},
            )
            return fallback
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            self._fallback("resources/read", e)
            return fallback

    async def get_memory_context(self, user_id: str) -> MemoryContext:
        """All facts for a user, read from the context resource."""
        uri = CONTEXT_URI.format(user_id=quote(user_id, safe=""))
        return await self._read_model(uri, MemoryContext, MemoryContext.empty(user_id))

    async def get_facts_summary(self, user_id: str) -> FactsSummary:
        """Per-predicate fact counts for a user."""
        uri = SUMMARY_URI.format(user_id=quote(user_id, safe=""))
        return await self._read_model(uri, FactsSummary, FactsSummary.empty(user_id))

    # =========================================================================
    # Health & Diagnostics
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        """Probe the server's health endpoint (outside the circuit breaker).

        Returns:
            Health status dict including circuit breaker and session state.
        """
        status: Dict[str, Any] = {
            "status": "unhealthy",
            **self._circuit_breaker.snapshot(),
            **self._session.snapshot(),
        }
        try:
            response = await self._connection.get(self._settings.server.health_path)
            response.raise_for_status()
            body = response.json()
        except (TransportError, httpx.HTTPStatusError, ValueError) as e:
            status["error"] = f"{type(e).__name__}: {e}"
        else:
            healthy = self._circuit_breaker.state == CircuitState.CLOSED
            status["status"] = "healthy" if healthy else "degraded"
            if isinstance(body, dict):
                status["server"] = body.get("server")
                status["server_version"] = body.get("version")

        status["connection"] = self._connection.stats
        return status


# =============================================================================
# Scoped Lifecycle
# =============================================================================


@asynccontextmanager
async def memory_session(
    settings: Optional[Settings] = None,
    **client_kwargs: Any,
) -> AsyncIterator[MemoryClient]:
    """Context manager for memory client sessions.

    The connection pool is released on every exit path, including
    errors and task cancellation.

    Usage:
        async with memory_session() as client:
            context = await client.get_facts("user-123")

    Yields:
        A MemoryClient whose handshake happens on first use.
    """
    client = MemoryClient(settings, **client_kwargs)
    async with client:
        yield client
