"""Tests for the StepRunService factory and lifecycle."""

from __future__ import annotations

import pytest

from steprun.errors import StepRunConfigError
from steprun.persistence.gateway import InMemoryStepsGateway, SqlStepsGateway
from steprun.persistence.schema import create_steps_table
from steprun.service import StepRunService, make_step_run_service


class TestFactory:
    """make_step_run_service wiring."""

    def test_missing_database_url_fails_closed(self) -> None:
        with pytest.raises(StepRunConfigError, match="STEPRUN_DATABASE_URL"):
            make_step_run_service()

    def test_invalid_options_fail(self) -> None:
        with pytest.raises(StepRunConfigError):
            make_step_run_service({"table": {"name": "bad name"}})

    def test_reads_env_when_no_config(
        self, monkeypatch: pytest.MonkeyPatch, sqlite_url: str
    ) -> None:
        monkeypatch.setenv("STEPRUN_DATABASE_URL", sqlite_url)
        monkeypatch.setenv("STEPRUN_STEPS_TABLE", "etl_steps")

        service = make_step_run_service()

        assert isinstance(service.gateway, SqlStepsGateway)
        assert service.gateway.table_name == "etl_steps"

    def test_custom_gateway(self) -> None:
        gateway = InMemoryStepsGateway()
        service = make_step_run_service({"hostname": "h"}, gateway=gateway)
        assert service.gateway is gateway


class TestLifecycle:
    """Owned engines are disposed; borrowed ones are left alone."""

    @pytest.mark.asyncio
    async def test_owned_engine_end_to_end(self, sqlite_url: str) -> None:
        service = make_step_run_service(
            {"database_url": sqlite_url, "table": {"name": "pipeline_steps"}}
        )
        assert isinstance(service.gateway, SqlStepsGateway)
        await create_steps_table(service.gateway.engine, "pipeline_steps")

        async with service:
            run = await service.get_run("fetch-page", "abc123", None)
            await run.mark_running()
            assert "abc123" in service.registry

        assert len(service.registry) == 0
        assert service.registry.is_closing

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, memory_service: StepRunService) -> None:
        run = await memory_service.get_run("fetch-page", "abc123", None)
        await run.mark_running()

        first = await memory_service.close()
        second = await memory_service.close()

        assert len(first) == 1
        assert second == first

    @pytest.mark.asyncio
    async def test_borrowed_engine_survives_close(self, sql_service: StepRunService) -> None:
        await sql_service.close()

        assert isinstance(sql_service.gateway, SqlStepsGateway)
        assert await sql_service.gateway.select_step("fetch-page", "abc123") is None
