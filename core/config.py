"""
Core Module - Configuration.

============================================================
PURPOSE
============================================================
Startup configuration for the account store, read once from the
process environment (optionally seeded from a .env file).

CRITICAL CONSTRAINTS:
- Key material is required; there are no development defaults
- repr() never exposes keys or database passwords

============================================================
ENVIRONMENT
============================================================
DATABASE_URL                     required
ENCRYPTION_MASTER_KEY            required, >= 32 characters
HASH_SIGNING_KEY                 required
EVENT_BUS_SERVERS                required, comma separated
EVENT_RETENTION_HOURS            default 168
EVENT_MAX_RETRIES                default 3
BINDING_MAX_FAILURES             default 10
BINDING_FAILURE_WINDOW_SECONDS   default 3600
SUPPORTED_EXCHANGES              default binance,kraken,gate,coinbase,virtual
DB_POOL_SIZE / DB_MAX_OVERFLOW / DB_POOL_TIMEOUT / DB_POOL_RECYCLE
SQL_ECHO, LOG_LEVEL, LOG_FORMAT

============================================================
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from core.exceptions import ConfigurationError


DEFAULT_SUPPORTED_EXCHANGES: Tuple[str, ...] = (
    "binance",
    "kraken",
    "gate",
    "coinbase",
    "virtual",
)

MIN_MASTER_KEY_LENGTH = 32


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    """Connection pool configuration."""

    url: str
    """SQLAlchemy connection URL."""

    pool_size: int = 10
    """Number of connections to keep in pool."""

    max_overflow: int = 20
    """Max connections beyond pool_size."""

    pool_timeout: int = 30
    """Seconds to wait for an available connection."""

    pool_recycle: int = 1800
    """Recycle connections after N seconds."""

    echo: bool = False
    """Log SQL statements."""

    def __repr__(self) -> str:
        return f"DatabaseConfig(url={_redact_url(self.url)!r}, pool_size={self.pool_size})"


# ============================================================
# STORE SETTINGS
# ============================================================

@dataclass
class Settings:
    """
    Process-wide account store settings.

    Loaded once at startup; the keys stay in process memory only.
    """

    database: DatabaseConfig
    master_key: str = field(repr=False)
    signing_key: str = field(repr=False)
    event_bus_servers: List[str] = field(default_factory=list)

    event_retention: timedelta = timedelta(hours=168)
    """Processed events older than this are purged."""

    event_max_retries: int = 3
    """Failed events at or above this retry count are terminal."""

    binding_max_failures: int = 10
    """Consecutive failures before a binding is auto-disabled."""

    binding_failure_window: timedelta = timedelta(hours=1)
    """Failures older than this no longer count towards auto-disable."""

    supported_exchanges: Tuple[str, ...] = DEFAULT_SUPPORTED_EXCHANGES

    log_level: str = "INFO"
    log_format: str = "text"

    def __repr__(self) -> str:
        return (
            f"Settings(database={self.database!r}, master_key='***', signing_key='***', "
            f"event_bus_servers={self.event_bus_servers!r}, "
            f"event_max_retries={self.event_max_retries})"
        )


# ============================================================
# LOADING
# ============================================================

def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
) -> Settings:
    """
    Build Settings from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ after
            loading .env)
        dotenv_path: Explicit .env file to load

    Returns:
        Settings

    Raises:
        ConfigurationError: If a required value is missing or malformed
    """
    if environ is None:
        load_dotenv(dotenv_path)
        environ = os.environ

    database = DatabaseConfig(
        url=_require(environ, "DATABASE_URL"),
        pool_size=_int(environ, "DB_POOL_SIZE", 10),
        max_overflow=_int(environ, "DB_MAX_OVERFLOW", 20),
        pool_timeout=_int(environ, "DB_POOL_TIMEOUT", 30),
        pool_recycle=_int(environ, "DB_POOL_RECYCLE", 1800),
        echo=_bool(environ, "SQL_ECHO", False),
    )

    master_key = _require(environ, "ENCRYPTION_MASTER_KEY")
    if len(master_key) < MIN_MASTER_KEY_LENGTH:
        raise ConfigurationError(
            f"ENCRYPTION_MASTER_KEY must be at least {MIN_MASTER_KEY_LENGTH} characters",
            config_key="ENCRYPTION_MASTER_KEY",
        )

    servers = _list(environ, "EVENT_BUS_SERVERS")
    if not servers:
        raise ConfigurationError(
            "EVENT_BUS_SERVERS must list at least one endpoint",
            config_key="EVENT_BUS_SERVERS",
        )

    exchanges = tuple(e.lower() for e in _list(environ, "SUPPORTED_EXCHANGES"))

    return Settings(
        database=database,
        master_key=master_key,
        signing_key=_require(environ, "HASH_SIGNING_KEY"),
        event_bus_servers=servers,
        event_retention=timedelta(hours=_int(environ, "EVENT_RETENTION_HOURS", 168)),
        event_max_retries=_int(environ, "EVENT_MAX_RETRIES", 3),
        binding_max_failures=_int(environ, "BINDING_MAX_FAILURES", 10),
        binding_failure_window=timedelta(
            seconds=_int(environ, "BINDING_FAILURE_WINDOW_SECONDS", 3600)
        ),
        supported_exchanges=exchanges or DEFAULT_SUPPORTED_EXCHANGES,
        log_level=environ.get("LOG_LEVEL", "INFO"),
        log_format=environ.get("LOG_FORMAT", "text"),
    )


def _require(environ: Mapping[str, str], key: str) -> str:
    value = (environ.get(key) or "").strip()
    if not value:
        raise ConfigurationError(f"{key} is not set", config_key=key)
    return value


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer", config_key=key) from e
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative", config_key=key)
    return value


def _bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _list(environ: Mapping[str, str], key: str) -> List[str]:
    raw = environ.get(key) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def _redact_url(url: str) -> str:
    """Strip credentials from a connection URL for display."""
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[-1]}"
