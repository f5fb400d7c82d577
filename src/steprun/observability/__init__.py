"""steprun observability module.

Provides OpenTelemetry tracing for gateway statements.
"""

from steprun.observability.tracing import configure_tracing, instrument_sqlalchemy

__all__ = ["configure_tracing", "instrument_sqlalchemy"]
