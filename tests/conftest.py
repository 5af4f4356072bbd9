"""
Memory Client Test Configuration - Shared Fixtures

Builds Settings from known test values, fake time sources so backoff and
recovery timeouts run instantly, and an in-process memory server served
through ``httpx.MockTransport``. No live server required.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from memory_client.config import (
    LoggingSettings,
    ResilienceSettings,
    ServerSettings,
    Settings,
    get_settings,
)

TEST_URL = "http://memory.test"


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def rpc_response(
    request_id: Any,
    result: Any = None,
    *,
    error: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
    status_code: int = 200,
) -> httpx.Response:
    """JSON-RPC response with an optional session header."""
    envelope: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        envelope["error"] = error
    else:
        envelope["result"] = result
    headers = {"content-type": "application/json"}
    if session_id:
        headers["mcp-session-id"] = session_id
    return httpx.Response(status_code, content=json.dumps(envelope).encode(), headers=headers)


def sse_response(request_id: Any, result: Any, session_id: Optional[str] = None) -> httpx.Response:
    """The same envelope framed as a Server-Sent Event."""
    envelope = {"jsonrpc": "2.0", "id": request_id, "result": result}
    body = f"event: message\ndata: {json.dumps(envelope)}\n\n"
    headers = {"content-type": "text/event-stream"}
    if session_id:
        headers["mcp-session-id"] = session_id
    return httpx.Response(200, content=body.encode(), headers=headers)


def tool_text(payload: Any, is_error: bool = False) -> Dict[str, Any]:
    """A ``tools/call`` result carrying ``payload`` as JSON text."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def resource_text(uri: str, payload: Any) -> Dict[str, Any]:
    return {"contents": [{"uri": uri, "mimeType": "application/json", "text": json.dumps(payload)}]}


# ---------------------------------------------------------------------------
# Fake server
# ---------------------------------------------------------------------------

Handler = Callable[[httpx.Request, Dict[str, Any]], httpx.Response]
Scripted = Union[httpx.Response, Exception, Handler]


class FakeMemoryServer:
    """In-process stand-in for the memory context server.

    Answers ``initialize`` with ``session_id``, accepts the initialized
    notification, and serves tool and resource results from the
    ``tools`` / ``resources`` dicts. Entries queued in ``script`` are
    consumed first, one per request: a Response is returned as-is, an
    Exception is raised, a callable is invoked with (request, payload).
    """

    def __init__(self, session_id: Optional[str] = "S1") -> None:
        self.session_id = session_id
        self.tools: Dict[str, Any] = {}
        self.resources: Dict[str, Any] = {}
        self.script: List[Scripted] = []
        self.always_fail: Optional[Exception] = None
        self.requests: List[httpx.Request] = []
        self.health_body: Dict[str, Any] = {
            "status": "ok",
            "server": "memory-context-server",
            "version": "1.0.0",
        }

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def posts(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def methods(self) -> List[str]:
        return [json.loads(r.content)["method"] for r in self.posts]

    def payloads(self, method: str) -> List[Dict[str, Any]]:
        bodies = [json.loads(r.content) for r in self.posts]
        return [b for b in bodies if b["method"] == method]

    def session_headers(self) -> List[Optional[str]]:
        return [r.headers.get("mcp-session-id") for r in self.posts]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.always_fail is not None:
            raise self.always_fail

        payload = json.loads(request.content) if request.method == "POST" else {}

        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            if isinstance(step, httpx.Response):
                return step
            return step(request, payload)

        if request.method == "GET":
            return httpx.Response(200, json=self.health_body)

        method = payload["method"]
        request_id = payload.get("id")

        if method == "initialize":
            return rpc_response(
                request_id,
                {
                    "protocolVersion": "2024-11-05",
                    "serverInfo": {"name": "memory-context-server", "version": "1.0.0"},
                    "capabilities": {"tools": {}, "resources": {}},
                },
                session_id=self.session_id,
            )
        if method == "notifications/initialized":
            return httpx.Response(202)
        if method == "tools/call":
            result = self.tools[payload["params"]["name"]]
            return rpc_response(request_id, result, session_id=self.session_id)
        if method == "resources/read":
            result = self.resources[payload["params"]["uri"]]
            return rpc_response(request_id, result, session_id=self.session_id)

        return rpc_response(
            request_id,
            error={"code": -32601, "message": f"Method not found: {method}"},
            session_id=self.session_id,
        )


# ---------------------------------------------------------------------------
# Time fixtures
# ---------------------------------------------------------------------------

class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Settings / client fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> Settings:
    """Settings populated with deterministic test values.

    Returns:
        Settings with the default resilience parameters (3 attempts,
        1s base delay, threshold 5, 30s recovery).
    """
    return Settings(
        server=ServerSettings(url=TEST_URL, request_timeout_s=15.0),
        resilience=ResilienceSettings(
            retry_max_attempts=3,
            retry_base_delay_ms=1000,
            retry_max_delay_ms=30000,
            circuit_breaker_failure_threshold=5,
            circuit_breaker_recovery_timeout_s=30.0,
        ),
        logging=LoggingSettings(level="DEBUG", format="json"),
    )


@pytest.fixture()
def server() -> FakeMemoryServer:
    return FakeMemoryServer()


@pytest.fixture()
def make_client(settings, server, fake_sleep, fake_clock):
    """Factory building a MemoryClient wired to the fake server and time."""
    from memory_client.client import MemoryClient

    def _make(client_settings: Optional[Settings] = None) -> MemoryClient:
        return MemoryClient(
            client_settings or settings,
            transport=server.transport,
            sleep=fake_sleep,
            clock=fake_clock,
        )

    return _make
