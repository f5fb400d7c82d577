"""Pytest configuration and fixtures for steprun tests.

Unit tests run against InMemoryStepsGateway. Store tests run against a
SQLite file database through aiosqlite.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from steprun.config import StepRunConfig
from steprun.persistence.db import create_steps_engine
from steprun.persistence.gateway import InMemoryStepsGateway, SqlStepsGateway
from steprun.persistence.schema import create_steps_table
from steprun.service import StepRunService, make_step_run_service

TEST_HOSTNAME = "worker-test-01"


@pytest.fixture(autouse=True)
def _clear_steprun_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host STEPRUN_* variables out of tests."""
    for var in (
        "STEPRUN_DATABASE_URL",
        "STEPRUN_STEPS_TABLE",
        "STEPRUN_POOL_MAX_SIZE",
        "STEPRUN_POOL_IDLE_TIMEOUT",
        "STEPRUN_HOSTNAME",
        "STEPRUN_ON_CORRUPT_VARS",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """Plain SQLite URL for a per-test database file."""
    return f"sqlite:///{tmp_path / 'steps.sqlite3'}"


@pytest.fixture
def memory_gateway() -> InMemoryStepsGateway:
    return InMemoryStepsGateway()


@pytest.fixture
def memory_service(memory_gateway: InMemoryStepsGateway) -> StepRunService:
    """Service over an in-memory gateway."""
    return make_step_run_service({"hostname": TEST_HOSTNAME}, gateway=memory_gateway)


@pytest_asyncio.fixture
async def sqlite_engine(sqlite_url: str) -> AsyncIterator[AsyncEngine]:
    """Async engine with the steps table created."""
    engine = create_steps_engine(StepRunConfig(database_url=sqlite_url))
    await create_steps_table(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_gateway(sqlite_engine: AsyncEngine) -> SqlStepsGateway:
    return SqlStepsGateway(sqlite_engine)


@pytest_asyncio.fixture
async def sql_service(sqlite_engine: AsyncEngine, sqlite_url: str) -> AsyncIterator[StepRunService]:
    """Service over the SQLite store; the test keeps engine ownership."""
    service = make_step_run_service(
        {"database_url": sqlite_url, "hostname": TEST_HOSTNAME}, engine=sqlite_engine
    )
    yield service
    await service.close()
