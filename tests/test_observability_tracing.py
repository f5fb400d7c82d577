"""Tests for OpenTelemetry tracing of gateway statements."""

from __future__ import annotations

import pytest

from steprun.observability.tracing import (
    clear_test_spans,
    configure_tracing,
    get_test_spans,
)
from steprun.persistence.gateway import SqlStepsGateway


class TestConfigureTracing:
    """Tracing is opt-in through STEPRUN_OTEL_ENABLED."""

    def test_disabled_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("STEPRUN_OTEL_ENABLED", raising=False)
        assert configure_tracing() is False

    @pytest.mark.asyncio
    async def test_gateway_statements_emit_spans(
        self, monkeypatch: pytest.MonkeyPatch, sql_gateway: SqlStepsGateway
    ) -> None:
        monkeypatch.setenv("STEPRUN_OTEL_ENABLED", "1")
        monkeypatch.setenv("STEPRUN_OTEL_TEST_CAPTURE", "1")
        assert configure_tracing() is True
        clear_test_spans()

        await sql_gateway.select_step("fetch-page", "abc123")

        spans = [s for s in get_test_spans() if s.name == "steprun.gateway.select"]
        assert len(spans) == 1
        attributes = dict(spans[0].attributes or {})
        assert attributes["steprun.table"] == "steps"
        assert attributes["steprun.step_name"] == "fetch-page"
        assert "abc123" not in attributes.values()
