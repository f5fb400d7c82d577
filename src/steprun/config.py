"""Configuration for the step run service.

Environment Variables:
    STEPRUN_DATABASE_URL: Connection string for the steps store (required
        unless a URL is passed explicitly)
    STEPRUN_STEPS_TABLE: Name of the steps table (default: "steps")
    STEPRUN_POOL_MAX_SIZE: Pooled connections kept open (default: 10)
    STEPRUN_POOL_IDLE_TIMEOUT: Seconds before a pooled connection is recycled
        (default: 3600)
    STEPRUN_HOSTNAME: Hostname recorded when a run starts (default: this host)
    STEPRUN_ON_CORRUPT_VARS: "reset" or "raise" (default: "reset")

Plain sync URLs are rewritten to their asyncio drivers:
postgres:// and postgresql:// use asyncpg, sqlite:// uses aiosqlite.
"""

from __future__ import annotations

import os
import re
import socket
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from steprun.errors import StepRunConfigError
from steprun.models import CorruptVarsPolicy

STEPRUN_DATABASE_URL_ENV = "STEPRUN_DATABASE_URL"
STEPRUN_STEPS_TABLE_ENV = "STEPRUN_STEPS_TABLE"
STEPRUN_POOL_MAX_SIZE_ENV = "STEPRUN_POOL_MAX_SIZE"
STEPRUN_POOL_IDLE_TIMEOUT_ENV = "STEPRUN_POOL_IDLE_TIMEOUT"
STEPRUN_HOSTNAME_ENV = "STEPRUN_HOSTNAME"
STEPRUN_ON_CORRUPT_VARS_ENV = "STEPRUN_ON_CORRUPT_VARS"

DEFAULT_STEPS_TABLE = "steps"
DEFAULT_POOL_MAX_SIZE = 10
DEFAULT_POOL_IDLE_TIMEOUT_SECONDS = 3600.0

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_ASYNC_DRIVER_PREFIXES = (
    ("postgres://", "postgresql+asyncpg://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def normalize_database_url(url: str) -> str:
    """Rewrite a plain database URL to use an asyncio driver.

    URLs that already name a driver (e.g. postgresql+psycopg://) are kept.

    Args:
        url: Original database URL.

    Returns:
        URL with an async driver specification.
    """
    for prefix, replacement in _ASYNC_DRIVER_PREFIXES:
        if url.startswith(prefix):
            return replacement + url[len(prefix) :]
    return url


class PoolOptions(BaseModel):
    """Connection pool sizing and timeouts.

    Attributes:
        max_size: Connections kept in the pool.
        max_overflow: Extra connections allowed under burst load.
        idle_timeout_seconds: Recycle connections older than this.
        connect_timeout_seconds: Driver connect timeout; None waits forever.
        acquire_timeout_seconds: Max wait for a pooled connection.
        pre_ping: Test connections on checkout.
        echo: Log every statement through SQLAlchemy.
    """

    max_size: int = Field(default=DEFAULT_POOL_MAX_SIZE, ge=1)
    max_overflow: int = Field(default=0, ge=0)
    idle_timeout_seconds: float = Field(default=DEFAULT_POOL_IDLE_TIMEOUT_SECONDS, gt=0)
    connect_timeout_seconds: float | None = Field(default=None, gt=0)
    acquire_timeout_seconds: float = Field(default=30.0, gt=0)
    pre_ping: bool = True
    echo: bool = False


class TableOptions(BaseModel):
    """Steps table settings."""

    name: str = DEFAULT_STEPS_TABLE

    @field_validator("name")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        if not _IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"Invalid table name: {value!r}")
        return value


class StepRunConfig(BaseModel):
    """Top-level service configuration.

    Attributes:
        database_url: Async SQLAlchemy URL of the steps store.
        pool: Connection pool options.
        table: Steps table options.
        hostname: Recorded on mark_running; defaults to this host.
        on_corrupt_vars: Policy when persisted vars fail to decode.
    """

    database_url: str | None = None
    pool: PoolOptions = Field(default_factory=PoolOptions)
    table: TableOptions = Field(default_factory=TableOptions)
    hostname: str = Field(default_factory=socket.gethostname)
    on_corrupt_vars: CorruptVarsPolicy = CorruptVarsPolicy.RESET

    @field_validator("database_url")
    @classmethod
    def _normalize_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_database_url(value)

    def require_database_url(self) -> str:
        """Return the database URL or fail closed.

        Raises:
            StepRunConfigError: If no URL is configured.
        """
        if not self.database_url:
            raise StepRunConfigError(
                f"Database URL not configured. Set {STEPRUN_DATABASE_URL_ENV} environment variable."
            )
        return self.database_url

    @classmethod
    def from_env(cls, **overrides: Any) -> StepRunConfig:
        """Build a config from STEPRUN_* environment variables.

        Args:
            **overrides: Top-level fields that take precedence over env.

        Returns:
            Validated StepRunConfig.

        Raises:
            StepRunConfigError: If a variable holds an invalid value.
        """
        data: dict[str, Any] = {"pool": {}, "table": {}}

        url = os.environ.get(STEPRUN_DATABASE_URL_ENV)
        if url:
            data["database_url"] = url

        table_name = os.environ.get(STEPRUN_STEPS_TABLE_ENV)
        if table_name:
            data["table"]["name"] = table_name.strip()

        max_size = os.environ.get(STEPRUN_POOL_MAX_SIZE_ENV)
        if max_size:
            data["pool"]["max_size"] = max_size.strip()

        idle_timeout = os.environ.get(STEPRUN_POOL_IDLE_TIMEOUT_ENV)
        if idle_timeout:
            data["pool"]["idle_timeout_seconds"] = idle_timeout.strip()

        hostname = os.environ.get(STEPRUN_HOSTNAME_ENV)
        if hostname:
            data["hostname"] = hostname.strip()

        policy = os.environ.get(STEPRUN_ON_CORRUPT_VARS_ENV)
        if policy:
            data["on_corrupt_vars"] = policy.strip().lower()

        data.update(overrides)
        return load_config(data)


def load_config(options: StepRunConfig | Mapping[str, Any] | None) -> StepRunConfig:
    """Coerce user options into a StepRunConfig.

    Accepts the nested mapping form ``{"pool": {...}, "table": {"name": ...}}``.

    Raises:
        StepRunConfigError: If validation fails.
    """
    if options is None:
        return StepRunConfig()
    if isinstance(options, StepRunConfig):
        return options
    try:
        return StepRunConfig.model_validate(dict(options))
    except ValidationError as e:
        raise StepRunConfigError(f"Invalid step run configuration: {e}") from e
