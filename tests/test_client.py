"""Integration tests for MemoryClient.

Exercises the full stack (breaker -> retry -> codec -> HTTP) against an
in-process server behind httpx.MockTransport. No live server required.

Tests:
- Lazy handshake and session capture/reuse
- Retry on transient failure, short-circuit on client errors
- Circuit breaker opens after repeated failures and recovers via probe
- Fallback values instead of raised errors
- Resources, health check and lifecycle
"""

import asyncio
from urllib.parse import quote

import httpx
import pytest

from memory_client.client import memory_session
from memory_client.exceptions import NetworkError
from memory_client.models import CreateFact, UpdateFact
from memory_client.resilience import CircuitState

from .conftest import resource_text, rpc_response, sse_response, tool_text

FACTS_PAYLOAD = {
    "userId": "u1",
    "facts": [
        {
            "id": "f1",
            "subject": "user",
            "predicate": "likes",
            "object": "tea",
            "userId": "u1",
            "timestamp": "2025-07-21T20:53:53.000Z",
        }
    ],
    "totalCount": 1,
}


def _connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("connection refused")


# =============================================================================
# Session Tests
# =============================================================================


class TestSession:
    """Test the lazy handshake and session token handling."""

    @pytest.mark.asyncio
    async def test_first_operation_handshakes(self, make_client, server, settings):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()

        context = await client.get_facts("u1")

        assert context.total_count == 1
        assert context.facts[0].object == "tea"
        assert server.methods == ["initialize", "notifications/initialized", "tools/call"]
        init_params = server.payloads("initialize")[0]["params"]
        assert init_params["protocolVersion"] == settings.server.protocol_version
        assert init_params["clientInfo"]["name"] == settings.server.client_name
        assert server.payloads("tools/call")[0]["params"] == {
            "name": "get-facts",
            "arguments": {"userId": "u1"},
        }
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_session_header_attached_after_capture(self, make_client, server):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()

        await client.get_facts("u1")

        assert server.session_headers() == [None, "S1", "S1"]
        assert client.session.initialized is True

    @pytest.mark.asyncio
    async def test_rotated_session_is_used(self, make_client, server):
        """After S1 then S2, later requests carry S2."""
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()
        await client.get_facts("u1")

        server.session_id = "S2"
        await client.get_facts("u1")
        await client.get_facts("u1")

        assert server.session_headers() == [None, "S1", "S1", "S1", "S2"]
        assert server.methods.count("initialize") == 1

    @pytest.mark.asyncio
    async def test_request_ids_increase(self, make_client, server):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()

        await client.get_facts("u1")
        await client.get_facts("u1")

        ids = [p["id"] for p in server.payloads("initialize") + server.payloads("tools/call")]
        assert ids == [1, 2, 3]
        assert "id" not in server.payloads("notifications/initialized")[0]

    @pytest.mark.asyncio
    async def test_concurrent_operations_share_handshake(self, make_client, server):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()

        first, second = await asyncio.gather(client.get_facts("u1"), client.get_facts("u1"))

        assert first.total_count == second.total_count == 1
        assert server.methods.count("initialize") == 1

    @pytest.mark.asyncio
    async def test_missing_session_header_fails_handshake(self, make_client, server):
        server.session_id = None
        client = make_client()

        context = await client.get_facts("u1")

        assert context.facts == []
        assert server.methods == ["initialize"] * 3
        assert client.session.initialized is False

    @pytest.mark.asyncio
    async def test_unknown_session_forces_new_handshake(self, make_client, server, fake_sleep):
        """A 404 for our session is retried on a fresh handshake."""
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()
        await client.connect()
        server.script = [httpx.Response(404)]

        context = await client.get_facts("u1")

        assert context.total_count == 1
        assert server.methods == [
            "initialize",
            "notifications/initialized",
            "tools/call",
            "initialize",
            "notifications/initialized",
            "tools/call",
        ]
        assert fake_sleep.delays == [2.0]
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_restarted_server_gets_new_handshake(self, make_client, server, fake_sleep):
        """After a restart the server answers the old session with 400 / -32000."""
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()
        await client.connect()

        def restarted(request, payload):
            return rpc_response(
                None,
                error={"code": -32000, "message": "Bad Request: Server not initialized"},
                status_code=400,
            )

        server.script = [restarted]
        server.session_id = "S2"

        context = await client.get_facts("u1")

        assert context.total_count == 1
        assert server.session_headers() == [None, "S1", "S1", None, "S2", "S2"]
        assert server.methods.count("initialize") == 2
        assert fake_sleep.delays == [2.0]
        assert client.session.token == "S2"

        for _ in range(7):
            assert (await client.get_facts("u1")).total_count == 1
        assert server.methods.count("initialize") == 2
        assert client.circuit_breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_unknown_session_keeps_failing(self, make_client, server):
        """If every handshake fails too, the call falls back and the next one recovers."""
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()
        await client.connect()
        server.script = [httpx.Response(404)] * 3

        assert (await client.get_facts("u1")).facts == []
        assert client.session.token is None
        assert server.methods[2:] == ["tools/call", "initialize", "initialize"]

        context = await client.get_facts("u1")

        assert context.total_count == 1
        assert client.session.token == "S1"

    @pytest.mark.asyncio
    async def test_bad_params_with_session_is_not_session_loss(self, make_client, server):
        client = make_client()
        await client.connect()
        server.script = [
            lambda request, payload: rpc_response(
                payload["id"],
                error={"code": -32602, "message": "Invalid params"},
                status_code=400,
            )
        ]

        assert await client.delete_fact("f1") is False
        assert server.methods.count("tools/call") == 1
        assert server.methods.count("initialize") == 1
        assert client.session.token == "S1"

    @pytest.mark.asyncio
    async def test_reset_forces_new_handshake(self, make_client, server):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()
        await client.get_facts("u1")

        client.reset()
        await client.get_facts("u1")

        assert server.methods.count("initialize") == 2


# =============================================================================
# Resilience Tests
# =============================================================================


class TestClientResilience:
    """Test retry and circuit breaker behaviour end to end."""

    @pytest.mark.asyncio
    async def test_fallback_on_network_exhaustion(self, make_client, server, fake_sleep):
        """All 3 attempts fail: empty result, not an exception."""
        server.always_fail = _connect_error()
        client = make_client()

        context = await client.get_facts("u1")

        assert context.user_id == "u1"
        assert context.facts == []
        assert context.total_count == 0
        assert len(server.requests) == 3
        assert fake_sleep.delays == [2.0, 3.0]
        assert client.circuit_breaker.failure_count == 1
        assert client.circuit_breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_retry_on_transient_failure(self, make_client, server, fake_sleep):
        server.tools["update-fact"] = tool_text("Fact updated successfully")
        client = make_client()
        await client.connect()
        server.script = [httpx.Response(503), _connect_error()]

        ok = await client.update_fact("f1", UpdateFact(object="coffee"))

        assert ok is True
        assert server.methods.count("tools/call") == 3
        assert fake_sleep.delays == [2.0, 3.0]
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_timeout_is_retried_on_fresh_pool(self, make_client, server, fake_sleep):
        """A timed-out attempt drops the pool and the retry succeeds."""
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()
        await client.connect()
        server.script = [httpx.ReadTimeout("slow")]

        context = await client.get_facts("u1")

        assert context.total_count == 1
        assert server.methods.count("tools/call") == 2
        assert fake_sleep.delays == [2.0]
        stats = client.connection.stats
        assert stats["error_count"] == 1
        assert stats["last_error"].startswith("ReadTimeout")
        assert stats["is_connected"] is True
        assert client.circuit_breaker.failure_count == 0
        assert client.session.token == "S1"

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_into_fallback(self, make_client, server, fake_sleep):
        client = make_client()
        await client.connect()
        server.script = [httpx.ReadTimeout("slow")] * 3

        assert await client.delete_fact("f1") is False
        assert server.methods.count("tools/call") == 3
        assert fake_sleep.delays == [2.0, 3.0]
        assert client.connection.stats["error_count"] == 3
        assert client.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self, make_client, server, fake_sleep):
        """A simulated HTTP 400 causes exactly one attempt."""
        server.script = [httpx.Response(400, json={"error": "Bad Request"})]
        client = make_client()

        ok = await client.create_fact(
            CreateFact(subject="user", predicate="likes", object="tea", user_id="u1")
        )

        assert ok is False
        assert len(server.posts) == 1
        assert fake_sleep.delays == []
        assert client.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_invalid_params_error_is_not_retried(self, make_client, server):
        client = make_client()
        await client.connect()
        server.script = [
            lambda request, payload: rpc_response(
                payload["id"],
                error={"code": -32602, "message": "Invalid params"},
                session_id="S1",
            )
        ]

        assert await client.delete_fact("f1") is False
        assert server.methods.count("tools/call") == 1

    @pytest.mark.asyncio
    async def test_internal_error_is_retried(self, make_client, server):
        server.tools["delete-fact"] = tool_text("Fact deleted successfully")
        client = make_client()
        await client.connect()
        server.script = [
            lambda request, payload: rpc_response(
                payload["id"],
                error={"code": -32603, "message": "Internal error"},
                session_id="S1",
            )
        ]

        assert await client.delete_fact("f1") is True
        assert server.methods.count("tools/call") == 2

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens_after_failures(self, make_client, server):
        """Five failed operations open the circuit; the 6th never hits the network."""
        server.always_fail = _connect_error()
        client = make_client()

        for _ in range(5):
            await client.get_facts("u1")

        assert client.circuit_breaker.state == CircuitState.OPEN
        assert len(server.requests) == 15

        context = await client.get_facts("u1")

        assert context.facts == []
        assert len(server.requests) == 15

    @pytest.mark.asyncio
    async def test_probe_after_recovery_timeout(self, make_client, server, fake_clock):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        server.always_fail = _connect_error()
        client = make_client()
        for _ in range(5):
            await client.get_facts("u1")
        server.always_fail = None

        fake_clock.advance(29)
        assert (await client.get_facts("u1")).facts == []
        assert len(server.posts) == 15

        fake_clock.advance(2)
        context = await client.get_facts("u1")

        assert context.total_count == 1
        assert client.circuit_breaker.state == CircuitState.CLOSED
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_tool_error_result_is_not_a_breaker_failure(self, make_client, server):
        server.tools["delete-fact"] = tool_text("Fact with ID f9 not found", is_error=True)
        client = make_client()

        assert await client.delete_fact("f9") is False
        assert server.methods.count("tools/call") == 1
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_unparseable_tool_text_falls_back(self, make_client, server):
        server.tools["get-facts"] = tool_text("not json at all")
        client = make_client()

        context = await client.get_facts("u1")

        assert context.facts == []
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_invalid_query_skips_network(self, make_client, server):
        client = make_client()

        context = await client.get_facts("u1", limit=0)

        assert context.facts == []
        assert server.requests == []


# =============================================================================
# Fact Operation Tests
# =============================================================================


class TestFactOperations:
    """Test the typed operations and their wire arguments."""

    @pytest.mark.asyncio
    async def test_create_fact_arguments(self, make_client, server):
        server.tools["create-fact"] = tool_text("Fact created successfully with ID: f2")
        client = make_client()

        ok = await client.create_fact(
            CreateFact(subject="user", predicate="lives_in", object="Berlin", user_id="u1")
        )

        assert ok is True
        assert server.payloads("tools/call")[0]["params"] == {
            "name": "create-fact",
            "arguments": {
                "subject": "user",
                "predicate": "lives_in",
                "object": "Berlin",
                "userId": "u1",
            },
        }

    @pytest.mark.asyncio
    async def test_get_facts_filters(self, make_client, server):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)
        client = make_client()

        await client.get_facts("u1", subject="user", predicate="likes", limit=10)

        arguments = server.payloads("tools/call")[0]["params"]["arguments"]
        assert arguments == {"userId": "u1", "subject": "user", "predicate": "likes", "limit": 10}

    @pytest.mark.asyncio
    async def test_update_fact_sends_only_set_fields(self, make_client, server):
        server.tools["update-fact"] = tool_text("Fact updated successfully")
        client = make_client()

        assert await client.update_fact("f1", UpdateFact(object="coffee")) is True

        arguments = server.payloads("tools/call")[0]["params"]["arguments"]
        assert arguments == {"id": "f1", "object": "coffee"}

    @pytest.mark.asyncio
    async def test_delete_fact(self, make_client, server):
        server.tools["delete-fact"] = tool_text("Fact deleted successfully")
        client = make_client()

        assert await client.delete_fact("f1") is True
        assert server.payloads("tools/call")[0]["params"]["arguments"] == {"id": "f1"}

    @pytest.mark.asyncio
    async def test_event_stream_response(self, make_client, server):
        client = make_client()
        await client.connect()
        server.script = [
            lambda request, payload: sse_response(payload["id"], tool_text(FACTS_PAYLOAD), "S1")
        ]

        context = await client.get_facts("u1")

        assert context.facts[0].triple() == ("user", "likes", "tea")


# =============================================================================
# Resource Tests
# =============================================================================


class TestResources:
    """Test resources/read operations."""

    @pytest.mark.asyncio
    async def test_memory_context(self, make_client, server):
        uri = f"memory://context/{quote('user 1', safe='')}"
        server.resources[uri] = resource_text(
            uri, {**FACTS_PAYLOAD, "userId": "user 1", "timestamp": "2025-07-22T10:00:00Z"}
        )
        client = make_client()

        context = await client.get_memory_context("user 1")

        assert context.user_id == "user 1"
        assert context.total_count == 1
        assert server.payloads("resources/read")[0]["params"] == {"uri": "memory://context/user%201"}

    @pytest.mark.asyncio
    async def test_facts_summary(self, make_client, server):
        uri = "memory://summary/u1"
        server.resources[uri] = resource_text(
            uri, {"userId": "u1", "predicateCount": {"likes": 2, "lives_in": 1}, "totalFacts": 3}
        )
        client = make_client()

        summary = await client.get_facts_summary("u1")

        assert summary.total_facts == 3
        assert summary.predicate_count == {"likes": 2, "lives_in": 1}

    @pytest.mark.asyncio
    async def test_error_payload_is_empty_context(self, make_client, server):
        uri = "memory://context/u1"
        server.resources[uri] = resource_text(uri, {"error": "Failed to fetch user context"})
        client = make_client()

        context = await client.get_memory_context("u1")

        assert context.facts == []
        assert context.user_id == "u1"

    @pytest.mark.asyncio
    async def test_read_resource_without_contents(self, make_client, server):
        server.resources["memory://context/u1"] = {"contents": []}
        client = make_client()

        assert await client.read_resource("memory://context/u1") is None

    @pytest.mark.asyncio
    async def test_summary_falls_back_when_unreachable(self, make_client, server):
        server.always_fail = _connect_error()
        client = make_client()

        summary = await client.get_facts_summary("u1")

        assert summary.total_facts == 0
        assert summary.predicate_count == {}


# =============================================================================
# Health Check Tests
# =============================================================================


class TestHealthCheck:
    """Test health endpoint probing."""

    @pytest.mark.asyncio
    async def test_health_check_healthy(self, make_client, server):
        client = make_client()

        status = await client.health_check()

        assert status["status"] == "healthy"
        assert status["server"] == "memory-context-server"
        assert status["circuit_breaker"] == "closed"
        assert status["session_active"] is False
        assert server.requests[0].url.path == "/health"

    @pytest.mark.asyncio
    async def test_health_check_unreachable(self, make_client, server):
        server.always_fail = _connect_error()
        client = make_client()

        status = await client.health_check()

        assert status["status"] == "unhealthy"
        assert "ConnectError" in status["error"]

    @pytest.mark.asyncio
    async def test_health_check_server_error(self, make_client, server):
        server.script = [httpx.Response(500)]
        client = make_client()

        status = await client.health_check()

        assert status["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_health_check_bypasses_open_circuit(self, make_client, server):
        server.always_fail = _connect_error()
        client = make_client()
        for _ in range(5):
            await client.get_facts("u1")
        server.always_fail = None

        status = await client.health_check()

        assert status["status"] == "degraded"
        assert status["circuit_breaker"] == "open"
        assert status["failure_count"] == 5


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestLifecycle:
    """Test connect/disconnect and scoped sessions."""

    @pytest.mark.asyncio
    async def test_connect_idempotent(self, make_client, server):
        client = make_client()

        await client.connect()
        await client.connect()

        assert server.methods.count("initialize") == 1

    @pytest.mark.asyncio
    async def test_connect_raises_when_unreachable(self, make_client, server):
        server.always_fail = _connect_error()
        client = make_client()

        with pytest.raises(NetworkError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_disconnect_keeps_breaker_counters(self, make_client, server):
        server.always_fail = _connect_error()
        client = make_client()
        await client.get_facts("u1")

        await client.disconnect()

        assert client.session.token is None
        assert client.connection.is_connected is False
        assert client.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_reset_circuit(self, make_client, server):
        server.always_fail = _connect_error()
        client = make_client()
        for _ in range(5):
            await client.get_facts("u1")

        await client.reset_circuit()

        assert client.circuit_breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_memory_session_releases_connection(self, settings, server, fake_sleep, fake_clock):
        server.tools["get-facts"] = tool_text(FACTS_PAYLOAD)

        async with memory_session(
            settings, transport=server.transport, sleep=fake_sleep, clock=fake_clock
        ) as client:
            await client.get_facts("u1")
            assert client.connection.is_connected is True

        assert client.connection.is_connected is False
        assert client.session.initialized is False

    @pytest.mark.asyncio
    async def test_memory_session_releases_on_error(self, settings, server):
        with pytest.raises(RuntimeError):
            async with memory_session(settings, transport=server.transport) as client:
                raise RuntimeError("caller failed")

        assert client.connection.is_connected is False
