"""Configuration loader for the memory context client.

All configuration values are loaded from environment variables (or a
``.env`` file at the repository root). No hardcoded network addresses
beyond local development defaults.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Path to .env file (repository root)
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class ServerSettings(BaseSettings):
    """Memory context server connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="MEMORY_SERVER_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str = Field(
        default="http://localhost:3001",
        description="Base URL of the memory context server",
    )
    rpc_path: str = Field(default="/mcp", description="JSON-RPC endpoint path")
    health_path: str = Field(default="/health", description="Health endpoint path")
    session_header: str = Field(
        default="mcp-session-id",
        description="Response/request header carrying the session token",
    )
    request_timeout_s: float = Field(
        default=15.0, gt=0, description="Per-request timeout in seconds"
    )
    protocol_version: str = Field(
        default="2024-11-05", description="Protocol version sent on initialize"
    )
    client_name: str = Field(
        default="memory-context-client", description="Client identity name"
    )
    client_version: str = Field(default="2.0.0", description="Client identity version")
    max_connections: int = Field(default=10, ge=1)
    max_keepalive_connections: int = Field(default=5, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def rpc_url(self) -> str:
        """Compute JSON-RPC endpoint URL."""
        return f"{self.url.rstrip('/')}{self.rpc_path}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def health_url(self) -> str:
        """Compute health endpoint URL."""
        return f"{self.url.rstrip('/')}{self.health_path}"


class ResilienceSettings(BaseSettings):
    """Resilience configuration for retry and circuit breaker patterns."""

    # Retry logic
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        alias="RETRY_MAX_ATTEMPTS",
        description="Maximum attempts per operation (including the first)",
    )
    retry_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        alias="RETRY_BASE_DELAY_MS",
        description="Base delay unit in milliseconds (delay = base * attempt)",
    )
    retry_max_delay_ms: int = Field(
        default=30000,
        ge=0,
        alias="RETRY_MAX_DELAY_MS",
        description="Maximum delay between attempts in milliseconds",
    )

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD",
        description="Consecutive failures before the circuit opens",
    )
    circuit_breaker_recovery_timeout_s: float = Field(
        default=30.0,
        gt=0,
        alias="CIRCUIT_BREAKER_RECOVERY_TIMEOUT_S",
        description="Seconds before an open circuit lets a probe through",
    )

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def retry_base_delay_s(self) -> float:
        """Compute base delay in seconds."""
        return self.retry_base_delay_ms / 1000.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def retry_max_delay_s(self) -> float:
        """Compute max delay in seconds."""
        return self.retry_max_delay_ms / 1000.0


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "text"] = Field(
        default="json", description="Log output format"
    )
    dir: Optional[Path] = Field(
        default=None, description="Directory for log files (console only when unset)"
    )
    fact_content: bool = Field(
        default=False,
        description="Whether to log raw fact triples (SECURITY: keep False)",
    )


class Settings(BaseSettings):
    """Root settings aggregating all configuration sections.

    Usage:
        from memory_client.config import get_settings

        settings = get_settings()
        print(settings.server.rpc_url)
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerSettings = Field(
        default_factory=ServerSettings  # type: ignore[arg-type]
    )
    resilience: ResilienceSettings = Field(
        default_factory=ResilienceSettings  # type: ignore[arg-type]
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings  # type: ignore[arg-type]
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings loaded from environment variables.

    Note:
        Settings are cached for performance. Call `get_settings.cache_clear()`
        if you need to reload settings (e.g., in tests).
    """
    return Settings()
