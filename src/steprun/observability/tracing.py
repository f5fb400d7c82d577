"""OpenTelemetry tracing configuration for steprun.

Gateway statements run inside spans named ``steprun.gateway.<op>``. Spans
carry the table name, step name, step id and status only; SQL text with
bound values, vars and outputs are never exported.

Environment Variables:
    STEPRUN_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    STEPRUN_REQUIRE_OTEL: Set to "1" to fail if tracing cannot initialize
    STEPRUN_OTEL_SERVICE_NAME: Service name for spans (default: "steprun")
    STEPRUN_OTEL_EXPORTER: "otlp" or "console" (default: "otlp")
    STEPRUN_OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (optional)
    STEPRUN_OTEL_TEST_CAPTURE: Set to "1" to use an in-memory exporter
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

from steprun.errors import StepRunConfigError

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider

logger = logging.getLogger(__name__)

STEPRUN_OTEL_ENABLED_ENV = "STEPRUN_OTEL_ENABLED"
STEPRUN_REQUIRE_OTEL_ENV = "STEPRUN_REQUIRE_OTEL"
STEPRUN_OTEL_TEST_CAPTURE_ENV = "STEPRUN_OTEL_TEST_CAPTURE"

_tracer_provider: TracerProvider | None = None
_test_exporter: Any = None


class TracingConfigError(StepRunConfigError):
    """Raised when tracing configuration fails and STEPRUN_REQUIRE_OTEL=1."""

    pass


def _get_env_bool(key: str, default: bool = False) -> bool:
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


def _get_env_str(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def tracing_enabled() -> bool:
    return _get_env_bool(STEPRUN_OTEL_ENABLED_ENV, False)


def configure_tracing() -> bool:
    """Configure the global OpenTelemetry tracer provider.

    Idempotent - the provider is installed once per process.

    Returns:
        True if tracing is enabled and configured, False otherwise.

    Raises:
        TracingConfigError: If STEPRUN_REQUIRE_OTEL=1 and configuration fails.
    """
    global _tracer_provider, _test_exporter

    if not tracing_enabled():
        logger.debug("OpenTelemetry tracing disabled (%s not set)", STEPRUN_OTEL_ENABLED_ENV)
        return False

    if _tracer_provider is not None:
        return True

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        service_name = _get_env_str("STEPRUN_OTEL_SERVICE_NAME", "steprun")
        exporter_type = _get_env_str("STEPRUN_OTEL_EXPORTER", "otlp")
        test_capture = _get_env_bool(STEPRUN_OTEL_TEST_CAPTURE_ENV, False)

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

        if test_capture:
            from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
                InMemorySpanExporter,
            )

            _test_exporter = InMemorySpanExporter()
            provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
            exporter_type = "in-memory"
        elif exporter_type == "console":
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        else:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

            endpoint = _get_env_str("STEPRUN_OTEL_EXPORTER_OTLP_ENDPOINT")
            exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
            provider.add_span_processor(BatchSpanProcessor(exporter))

        trace.set_tracer_provider(provider)
        _tracer_provider = provider

        logger.info(
            "OpenTelemetry tracing configured: service=%s, exporter=%s",
            service_name,
            exporter_type,
        )
        return True

    except Exception as e:
        logger.error("Failed to configure OpenTelemetry tracing: %s", e)
        if _get_env_bool(STEPRUN_REQUIRE_OTEL_ENV, False):
            raise TracingConfigError(
                f"OpenTelemetry tracing required but configuration failed: {e}"
            ) from e
        return False


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument a (sync) SQLAlchemy engine with OpenTelemetry.

    For an AsyncEngine pass ``engine.sync_engine``. No-op unless tracing
    is enabled.
    """
    if not tracing_enabled():
        return

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=False)
        logger.debug("SQLAlchemy engine instrumented with OpenTelemetry")
    except Exception as e:
        logger.warning("Failed to instrument SQLAlchemy: %s", e)


def get_test_spans() -> list[ReadableSpan]:
    """Spans captured by the in-memory exporter (STEPRUN_OTEL_TEST_CAPTURE=1)."""
    if _test_exporter is None:
        return []
    return list(_test_exporter.get_finished_spans())


def clear_test_spans() -> None:
    if _test_exporter is not None:
        _test_exporter.clear()
