"""Session token management.

The server assigns an opaque session token on ``initialize`` and may
rotate it on any later response. The token and the "initialized" flag
live and die together: without a token the client must handshake again.
"""

import logging
from typing import Dict, Mapping, MutableMapping, Optional

import httpx

logger = logging.getLogger("memory_client.session")

DEFAULT_SESSION_HEADER = "mcp-session-id"


class SessionManager:
    """Owns the session token for one client.

    Usage:
        session = SessionManager()
        headers = session.attach({"Content-Type": "application/json"})
        response = await http.post(url, headers=headers, ...)
        session.capture(response.headers)
    """

    def __init__(self, header_name: str = DEFAULT_SESSION_HEADER) -> None:
        self.header_name = header_name
        self._token: Optional[str] = None
        self._initialized = False

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def initialized(self) -> bool:
        return self._initialized and self._token is not None

    def attach(self, headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
        """Add the session header to ``headers`` if a token is held."""
        if self._token:
            headers[self.header_name] = self._token
        return headers

    def capture(self, response_headers: Mapping[str, str]) -> Optional[str]:
        """Store the session token from a response, overwriting any held token.

        Returns:
            The captured token, or None if the response carried none.
        """
        token = httpx.Headers(response_headers).get(self.header_name)
        if not token:
            return None
        if self._token is None:
            logger.info("Session established", extra={"session_prefix": token[:8]})
        elif token != self._token:
            logger.info(
                "Session token rotated by server",
                extra={"session_prefix": token[:8]},
            )
        self._token = token
        return token

    def mark_initialized(self) -> None:
        if self._token is None:
            raise RuntimeError("cannot mark a session initialized without a token")
        self._initialized = True

    def reset(self) -> None:
        """Forget the token and the initialized flag together."""
        if self._token is not None:
            logger.debug("Session reset", extra={"session_prefix": self._token[:8]})
        self._token = None
        self._initialized = False

    def snapshot(self) -> Dict[str, object]:
        return {
            "session_active": self.initialized,
            "session_prefix": self._token[:8] if self._token else None,
        }
