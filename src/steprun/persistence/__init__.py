"""steprun persistence module.

Provides the async engine, the steps table definition and the gateways
that read and write step rows.
"""

from steprun.persistence.db import create_steps_engine
from steprun.persistence.gateway import (
    InMemoryStepsGateway,
    SqlStepsGateway,
    StepsGateway,
    is_unique_violation,
)
from steprun.persistence.schema import build_steps_table, create_steps_table

__all__ = [
    "InMemoryStepsGateway",
    "SqlStepsGateway",
    "StepsGateway",
    "build_steps_table",
    "create_steps_engine",
    "create_steps_table",
    "is_unique_violation",
]
