"""
Memory Context Client Package

Resilient JSON-RPC client for the memory context server, which stores
subject/predicate/object facts about chat users.

Clients:
    - MemoryClient: session handling, retry, circuit breaker, connection mgmt
    - memory_session: scoped MemoryClient with guaranteed cleanup
"""

from .client import MemoryClient, memory_session
from .codec import decode_response, encode_notification, encode_request
from .connection import ManagedConnection
from .context import (
    filter_relevant_facts,
    format_memory_context,
    inject_memory_into_prompt,
    merge_memory_contexts,
    summarize_memory_context,
)
from .exceptions import (
    BreakerOpenError,
    HTTPStatusError,
    MemoryClientError,
    NetworkError,
    ParseError,
    ProtocolError,
    RequestTimeoutError,
    SessionExpiredError,
    TransportError,
)
from .models import (
    CreateFact,
    Fact,
    FactQuery,
    FactsSummary,
    MemoryContext,
    UpdateFact,
)
from .resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    RetryConfig,
    RetryPolicy,
    calculate_backoff_delay,
    is_retryable,
)
from .session import SessionManager

__all__ = [
    # Client
    "MemoryClient",
    "memory_session",
    # Codec
    "decode_response",
    "encode_notification",
    "encode_request",
    # Session / Connection
    "SessionManager",
    "ManagedConnection",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "RetryConfig",
    "RetryPolicy",
    "calculate_backoff_delay",
    "is_retryable",
    # Models
    "CreateFact",
    "Fact",
    "FactQuery",
    "FactsSummary",
    "MemoryContext",
    "UpdateFact",
    # Context utilities
    "filter_relevant_facts",
    "format_memory_context",
    "inject_memory_into_prompt",
    "merge_memory_contexts",
    "summarize_memory_context",
    # Errors
    "BreakerOpenError",
    "HTTPStatusError",
    "MemoryClientError",
    "NetworkError",
    "ParseError",
    "ProtocolError",
    "RequestTimeoutError",
    "SessionExpiredError",
    "TransportError",
]

__version__ = "2.0.0"
