"""Persistence gateway for step rows.

Issues the three statements the core needs (select by key, insert, update
by id) and returns raw rows. Provides both a SQLAlchemy implementation and
an in-memory implementation with the same uniqueness semantics.

Every SQL call checks a connection out of the pool for exactly one
statement; the connection is returned on success and on failure.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace
from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from steprun.config import DEFAULT_STEPS_TABLE
from steprun.errors import DuplicateStepError, StepStoreError
from steprun.models import StepStatus
from steprun.persistence.schema import build_steps_table

if TYPE_CHECKING:
    from opentelemetry.trace import Span
    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION_SQLSTATE = "23505"
_SQLITE_UNIQUE_ERRORS = frozenset({"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"})
_NATIVE_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

STEP_COLUMNS: tuple[str, ...] = (
    "id",
    "name",
    "hash",
    "root_hash",
    "status",
    "vars",
    "output",
    "error",
    "hostname",
    "started_at",
)


@runtime_checkable
class StepsGateway(Protocol):
    """Structural interface for step row storage.

    Both SqlStepsGateway and InMemoryStepsGateway satisfy this protocol.
    """

    @property
    def table_name(self) -> str: ...

    async def select_step(self, name: str, hash: str) -> Mapping[str, Any] | None: ...

    async def insert_step(
        self, name: str, hash: str, root_hash: str | None, status: StepStatus
    ) -> int | None: ...

    async def update_step(self, step_id: int, values: Mapping[str, Any]) -> int: ...


def is_unique_violation(exc: IntegrityError) -> bool:
    """Check whether an IntegrityError is a uniqueness violation.

    Uses the driver's error code: SQLSTATE 23505 for PostgreSQL drivers,
    the extended result code name for sqlite3.

    Args:
        exc: IntegrityError raised by SQLAlchemy.

    Returns:
        True for unique or primary key violations only.
    """
    # The driver exception may sit behind an async adapter wrapper.
    orig: BaseException | None = exc.orig
    for _ in range(3):
        if orig is None:
            break
        for attr in ("sqlstate", "pgcode"):
            code = getattr(orig, attr, None)
            if code is not None:
                return bool(code == UNIQUE_VIOLATION_SQLSTATE)

        error_name = getattr(orig, "sqlite_errorname", None)
        if error_name is not None:
            return error_name in _SQLITE_UNIQUE_ERRORS

        orig = orig.__cause__

    return False


class SqlStepsGateway:
    """SQLAlchemy-backed steps gateway.

    On PostgreSQL and SQLite, inserts use ON CONFLICT (name, hash) DO NOTHING
    and report a lost race by returning None. Other dialects issue a plain
    insert and raise DuplicateStepError on a uniqueness violation.

    Args:
        engine: Pooled async engine.
        table_name: Name of the steps table.
    """

    def __init__(self, engine: AsyncEngine, table_name: str = DEFAULT_STEPS_TABLE) -> None:
        self._engine = engine
        self._table: Table = build_steps_table(table_name)
        self._tracer = trace.get_tracer("steprun.gateway")

    @property
    def table_name(self) -> str:
        return self._table.name

    @property
    def table(self) -> Table:
        return self._table

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @contextmanager
    def _span(self, op: str, **attributes: Any) -> Iterator[Span]:
        """Span for one gateway statement. Bound values are never exported."""
        attrs = {"steprun.table": self._table.name}
        attrs.update({f"steprun.{k}": v for k, v in attributes.items() if v is not None})
        with self._tracer.start_as_current_span(f"steprun.gateway.{op}", attributes=attrs) as span:
            yield span

    async def select_step(self, name: str, hash: str) -> Mapping[str, Any] | None:
        """Fetch a step row by its (name, hash) key.

        Returns:
            Row mapping, or None if no row exists.

        Raises:
            StepStoreError: If the query fails.
        """
        t = self._table
        stmt = select(t).where(t.c.name == name, t.c.hash == hash)

        with self._span("select", step_name=name):
            try:
                async with self._engine.connect() as conn:
                    result = await conn.execute(stmt)
                    row = result.mappings().first()
            except SQLAlchemyError as e:
                raise StepStoreError(f"Failed to select step {name!r}: {e}") from e

        logger.debug("Selected step %s/%s: found=%s", name, hash, row is not None)
        return dict(row) if row is not None else None

    async def insert_step(
        self, name: str, hash: str, root_hash: str | None, status: StepStatus
    ) -> int | None:
        """Insert a new step row.

        Returns:
            Generated id, or None when a native conflict clause skipped the
            insert because the row already exists.

        Raises:
            DuplicateStepError: If a plain insert hit the unique constraint.
            StepStoreError: If the insert fails for any other reason.
        """
        t = self._table
        values = {"name": name, "hash": hash, "root_hash": root_hash, "status": status.value}
        dialect = self._engine.dialect
        native_insert = _NATIVE_UPSERT_INSERTS.get(dialect.name)

        if native_insert is not None:
            stmt: Any = (
                native_insert(t)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[t.c.name, t.c.hash])
            )
        else:
            stmt = insert(t).values(**values)
        if dialect.insert_returning:
            stmt = stmt.returning(t.c.id)

        with self._span("insert", step_name=name):
            try:
                async with self._engine.begin() as conn:
                    result = await conn.execute(stmt)
                    if dialect.insert_returning:
                        step_id = result.scalar_one_or_none()
                    else:
                        step_id = result.inserted_primary_key[0]
            except IntegrityError as e:
                if is_unique_violation(e):
                    raise DuplicateStepError(name, hash) from e
                raise StepStoreError(f"Failed to insert step {name!r}: {e}") from e
            except SQLAlchemyError as e:
                raise StepStoreError(f"Failed to insert step {name!r}: {e}") from e

        logger.debug("Inserted step %s/%s: id=%s", name, hash, step_id)
        return step_id

    async def update_step(self, step_id: int, values: Mapping[str, Any]) -> int:
        """Update columns of a step row by id.

        Returns:
            Number of rows affected.

        Raises:
            StepStoreError: If the update fails.
        """
        t = self._table
        stmt = update(t).where(t.c.id == step_id).values(**values)

        with self._span("update", step_id=step_id, status=values.get("status")):
            try:
                async with self._engine.begin() as conn:
                    result = await conn.execute(stmt)
                    affected = result.rowcount
            except SQLAlchemyError as e:
                raise StepStoreError(f"Failed to update step {step_id}: {e}") from e

        logger.debug(
            "Updated step %s: status=%s, affected=%d", step_id, values.get("status"), affected
        )
        return affected


class InMemoryStepsGateway:
    """In-memory steps gateway for tests and local development.

    Enforces (name, hash) uniqueness the way a plain insert does: the
    losing insert raises DuplicateStepError. Each call yields to the event
    loop once, so concurrent callers interleave like they would on a real
    store.
    """

    def __init__(self, table_name: str = DEFAULT_STEPS_TABLE) -> None:
        self._table_name = table_name
        self._rows: dict[int, dict[str, Any]] = {}
        self._keys: dict[tuple[str, str], int] = {}
        self._ids = itertools.count(1)

    @property
    def table_name(self) -> str:
        return self._table_name

    async def select_step(self, name: str, hash: str) -> Mapping[str, Any] | None:
        await asyncio.sleep(0)
        step_id = self._keys.get((name, hash))
        if step_id is None:
            return None
        return dict(self._rows[step_id])

    async def insert_step(
        self, name: str, hash: str, root_hash: str | None, status: StepStatus
    ) -> int | None:
        await asyncio.sleep(0)
        if (name, hash) in self._keys:
            raise DuplicateStepError(name, hash)
        step_id = next(self._ids)
        row = dict.fromkeys(STEP_COLUMNS)
        row.update(id=step_id, name=name, hash=hash, root_hash=root_hash, status=status.value)
        self._rows[step_id] = row
        self._keys[(name, hash)] = step_id
        return step_id

    async def update_step(self, step_id: int, values: Mapping[str, Any]) -> int:
        await asyncio.sleep(0)
        unknown = set(values) - set(STEP_COLUMNS)
        if unknown:
            raise StepStoreError(f"Unknown step columns: {sorted(unknown)}")
        row = self._rows.get(step_id)
        if row is None:
            return 0
        row.update(values)
        return 1

    def rows(self) -> list[dict[str, Any]]:
        """Return copies of all stored rows ordered by id."""
        return [dict(self._rows[k]) for k in sorted(self._rows)]

    def delete_step(self, step_id: int) -> None:
        """Remove a row. For testing transitions on vanished rows."""
        row = self._rows.pop(step_id)
        del self._keys[(row["name"], row["hash"])]
