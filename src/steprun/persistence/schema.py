"""Steps table definition.

The table name is configurable, so the Table is built per name rather than
declared once at import time.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import (
    CHAR,
    Column,
    DateTime,
    Identity,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

from steprun.config import DEFAULT_STEPS_TABLE
from steprun.models import StepStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def build_steps_table(name: str = DEFAULT_STEPS_TABLE, metadata: MetaData | None = None) -> Table:
    """Build the SQLAlchemy Table for a steps table.

    Args:
        name: Table name.
        metadata: MetaData to attach to; a fresh one is used if None.

    Returns:
        Table with a unique constraint on (name, hash).
    """
    return Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("id", Integer, Identity(), primary_key=True),
        Column("name", Text, nullable=False),
        Column("hash", Text, nullable=False),
        Column("root_hash", Text, nullable=True),
        Column("status", CHAR(1), nullable=False, server_default=StepStatus.NEW.value),
        Column("vars", Text, nullable=True),
        Column("output", Text, nullable=True),
        Column("error", Text, nullable=True),
        Column("hostname", Text, nullable=True),
        Column("started_at", DateTime(timezone=True), nullable=True),
        UniqueConstraint("name", "hash", name=f"uq_{name}_name_hash"),
    )


async def create_steps_table(engine: AsyncEngine, name: str = DEFAULT_STEPS_TABLE) -> Table:
    """Create the steps table if it does not exist.

    Intended for tests and local development; production schemas are
    managed outside this package.
    """
    table = build_steps_table(name)
    async with engine.begin() as conn:
        await conn.run_sync(table.metadata.create_all, checkfirst=True)
    logger.info("Ensured steps table %s", name)
    return table
