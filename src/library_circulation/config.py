"""Configuration management for the Library Circulation server.

Circulation rules (loan period, renewal cap, borrowing limit, daily fine)
live here next to the server and database settings so that a deployment can
tune them through environment variables without touching code:

1. Server Metadata - Name and version reported to MCP clients
2. Persistence - Database location
3. Circulation Policy - Loan and fine rules
4. Concurrency - Conflict retry and lock timeouts
"""

from decimal import Decimal
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CirculationConfig(BaseSettings):
    """Circulation server configuration.

    Every field can be overridden with a ``LIBRARY_CIRCULATION_`` prefixed
    environment variable or an entry in a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        # Use LIBRARY_CIRCULATION_ prefix for all env vars
        env_prefix="LIBRARY_CIRCULATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata ===

    server_name: str = Field(
        default="library-circulation",
        description="MCP server name used in protocol handshake",
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Server version for capability negotiation",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    transport: str = Field(
        default="stdio",
        description="Primary transport mechanism",
        pattern=r"^(stdio|streamable_http)$",
    )

    http_host: str = Field(default="127.0.0.1", description="Host for Streamable HTTP transport")

    http_port: int = Field(
        default=8080,
        description="Port for Streamable HTTP transport",
        ge=1024,
        le=65535,
    )

    # === Database Configuration ===

    database_path: Path = Field(
        default=Path("data/circulation.db"),
        description="SQLite database file path",
    )

    # === Circulation Policy ===

    loan_period_days: int = Field(default=14, description="Days until a new loan is due", ge=1)

    renewal_period_days: int = Field(
        default=14, description="Days each renewal adds to the due date", ge=1
    )

    max_renewals: int = Field(default=2, description="Renewals allowed per loan", ge=0, le=2)

    max_active_loans: int = Field(
        default=5, description="Concurrent active loans allowed per user", ge=1
    )

    daily_fine: Decimal = Field(
        default=Decimal("1.00"),
        description="Fine charged per whole day a loan is overdue",
        ge=Decimal("0"),
        decimal_places=2,
    )

    # === Concurrency ===

    conflict_retry_attempts: int = Field(
        default=3,
        description="Attempts made before a write conflict is surfaced to the caller",
        ge=1,
        le=10,
    )

    conflict_retry_backoff_seconds: float = Field(
        default=0.05,
        description="Base delay between conflict retries (doubled on each attempt)",
        ge=0.0,
    )

    lock_timeout_seconds: float = Field(
        default=10.0,
        description="Longest wait for an in-process circulation lock",
        gt=0.0,
    )

    # === Development / Observability ===

    debug: bool = Field(default=False, description="Enable debug logging")

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    tracing_enabled: bool = Field(default=True, description="Wrap operations in logfire spans")

    send_to_logfire: bool = Field(
        default=False,
        description="Export spans to the Logfire backend (requires LOGFIRE_TOKEN)",
    )

    # === Validation Methods ===

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Resolve the database path and make sure its directory exists."""
        abs_path = v.absolute()
        abs_path.parent.mkdir(parents=True, exist_ok=True)

        if not abs_path.parent.is_dir():
            raise ValueError(f"Database directory {abs_path.parent} is not accessible")

        return abs_path

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        """Validate server name length."""
        if len(v) < 3:
            raise ValueError("Server name must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Server name must not exceed 50 characters")
        return v

    # === Computed Properties ===

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug or self.log_level == "DEBUG"

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        return f"sqlite:///{self.database_path}"


# === Global Configuration Instance ===


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: CirculationConfig | None = None


def get_config() -> CirculationConfig:
    """Get or create the process-wide configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = CirculationConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
