"""Async engine creation for the steps store.

Builds a pooled SQLAlchemy AsyncEngine from StepRunConfig. The pool bounds
the number of statements in flight; each gateway call checks a connection
out for a single statement.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from steprun.observability.tracing import instrument_sqlalchemy

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from steprun.config import StepRunConfig

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_ARG = {
    "asyncpg": "timeout",
    "aiosqlite": "timeout",
    "psycopg": "connect_timeout",
}


def _is_memory_sqlite(url: Any) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def create_steps_engine(config: StepRunConfig) -> AsyncEngine:
    """Create the async engine used by the SQL gateway.

    In-memory SQLite URLs share a single connection, since every new
    connection would otherwise see an empty database.

    Args:
        config: Service configuration.

    Returns:
        SQLAlchemy AsyncEngine.

    Raises:
        StepRunConfigError: If no database URL is configured.
    """
    url = make_url(config.require_database_url())
    pool = config.pool

    connect_args: dict[str, Any] = {}
    timeout_arg = _CONNECT_TIMEOUT_ARG.get(url.get_driver_name())
    if timeout_arg and pool.connect_timeout_seconds is not None:
        connect_args[timeout_arg] = pool.connect_timeout_seconds

    if _is_memory_sqlite(url):
        engine = create_async_engine(
            url,
            poolclass=StaticPool,
            connect_args=connect_args,
            echo=pool.echo,
        )
    else:
        engine = create_async_engine(
            url,
            pool_size=pool.max_size,
            max_overflow=pool.max_overflow,
            pool_recycle=int(pool.idle_timeout_seconds),
            pool_timeout=pool.acquire_timeout_seconds,
            pool_pre_ping=pool.pre_ping,
            connect_args=connect_args,
            echo=pool.echo,
        )

    instrument_sqlalchemy(engine.sync_engine)
    logger.info(
        "Created steps database engine: backend=%s, pool_size=%d",
        url.get_backend_name(),
        pool.max_size,
    )
    return engine
