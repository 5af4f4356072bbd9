"""
Memory Context Client - Exception Hierarchy

Structured error types for the client's failure modes. Every exception
exposes ``http_status`` so the retry policy can tell client-request
errors (400/401/403) from transient ones.

Exception Hierarchy:
    MemoryClientError (base)
    ├── TransportError
    │   ├── NetworkError
    │   ├── RequestTimeoutError
    │   └── HTTPStatusError
    │       └── SessionExpiredError
    ├── ParseError
    ├── ProtocolError
    └── BreakerOpenError
"""

from typing import Any, Dict, Optional


# =============================================================================
# Base Exception
# =============================================================================

class MemoryClientError(Exception):
    """
    Base exception for all memory client errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def http_status(self) -> Optional[int]:
        """HTTP status equivalent of this error, if any."""
        return None

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Transport Errors
# =============================================================================

class TransportError(MemoryClientError):
    """
    Base class for failures on the HTTP leg of a call.

    Attributes:
        url: The endpoint that was being called
    """

    def __init__(self, message: str, url: str, details: Optional[Dict[str, Any]] = None):
        self.url = url
        full_details: Dict[str, Any] = {"url": url}
        if details:
            full_details.update(details)
        super().__init__(message, full_details)


class NetworkError(TransportError):
    """Connection-level failure (refused, reset, DNS, protocol)."""

    def __init__(self, url: str, reason: str):
        self.reason = reason
        super().__init__(f"Network error calling {url}: {reason}", url, {"reason": reason})


class RequestTimeoutError(TransportError):
    """
    A single attempt exceeded the per-request deadline.

    Attributes:
        timeout_seconds: The timeout value that was exceeded
    """

    def __init__(self, url: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request to {url} timed out after {timeout_seconds}s",
            url,
            {"timeout_seconds": timeout_seconds},
        )


class HTTPStatusError(TransportError):
    """
    The server answered with a non-2xx status.

    Attributes:
        status_code: The HTTP status code received
    """

    def __init__(self, url: str, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        message = f"HTTP {status_code} from {url}"
        if reason:
            message += f": {reason}"
        super().__init__(message, url, {"status_code": status_code})

    @property
    def http_status(self) -> Optional[int]:
        return self.status_code


class SessionExpiredError(HTTPStatusError):
    """
    The server no longer knows the session the request carried.

    Seen after a server restart or session eviction, as HTTP 404 or as
    HTTP 400 with JSON-RPC error -32000 ("Server not initialized").
    Reports no client-error status, so the retry policy retries it once
    the client has dropped the session and handshaken again.
    """

    @property
    def http_status(self) -> Optional[int]:
        return None


# =============================================================================
# Codec / Protocol Errors
# =============================================================================

class ParseError(MemoryClientError):
    """
    Response body could not be parsed.

    Raised for malformed JSON, non-object payloads, envelopes that fail
    validation, and undecodable event-stream data lines.
    """

    def __init__(self, reason: str, preview_length: int = 0):
        self.reason = reason
        super().__init__(
            f"Failed to parse response: {reason}",
            {"body_length": preview_length},
        )


# JSON-RPC codes that mean "the request itself was bad"
_JSONRPC_CODE_STATUS: Dict[int, int] = {
    -32700: 400,  # parse error (server could not parse our request)
    -32600: 400,  # invalid request
    -32602: 400,  # invalid params
}

_MESSAGE_STATUS = (
    ("bad request", 400),
    ("unauthenticated", 401),
    ("unauthorized", 401),
    ("forbidden", 403),
)


class ProtocolError(MemoryClientError):
    """
    Well-formed exchange that did not produce a usable result.

    Raised when the response envelope carries an ``error`` member, when
    an event stream holds no result, or when the server skipped a
    mandatory protocol step (e.g. assigning a session).

    Attributes:
        code: JSON-RPC error code, if the server supplied one
        data: Optional error data from the server
    """

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        details: Dict[str, Any] = {"code": code} if code is not None else {}
        super().__init__(message, details)

    @property
    def http_status(self) -> Optional[int]:
        if self.code is not None:
            if self.code in _JSONRPC_CODE_STATUS:
                return _JSONRPC_CODE_STATUS[self.code]
            if 400 <= self.code < 600:
                return self.code
        lowered = self.message.lower()
        for keyword, status in _MESSAGE_STATUS:
            if keyword in lowered:
                return status
        return None


# =============================================================================
# Circuit Breaker
# =============================================================================

class BreakerOpenError(MemoryClientError):
    """
    Circuit breaker is open, rejecting requests without touching the network.

    Attributes:
        circuit_name: Name of the tripped circuit
        failure_count: Consecutive failures recorded by the circuit
        retry_after: Seconds until a probe will be allowed (0 while a probe runs)
    """

    def __init__(self, circuit_name: str, failure_count: int, retry_after: float = 0.0):
        self.circuit_name = circuit_name
        self.failure_count = failure_count
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{circuit_name}' is open - service unavailable",
            {"failure_count": failure_count, "retry_after_s": round(retry_after, 3)},
        )


__all__ = [
    "MemoryClientError",
    "TransportError",
    "NetworkError",
    "RequestTimeoutError",
    "HTTPStatusError",
    "SessionExpiredError",
    "ParseError",
    "ProtocolError",
    "BreakerOpenError",
]
