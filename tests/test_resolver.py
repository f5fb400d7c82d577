"""Tests for RowResolver get-or-create semantics and create races."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from steprun.errors import DuplicateStepError, StepStoreError
from steprun.models import UNSET, StepStatus
from steprun.persistence.gateway import InMemoryStepsGateway, SqlStepsGateway
from steprun.resolver import RowResolver, row_to_model


class LateWinnerGateway(InMemoryStepsGateway):
    """Another creator inserts the row between our select and insert."""

    async def insert_step(
        self, name: str, hash: str, root_hash: str | None, status: StepStatus
    ) -> int | None:
        await super().insert_step(name, hash, "other-root", status)
        return await super().insert_step(name, hash, root_hash, status)


class VanishingGateway(InMemoryStepsGateway):
    """Insert conflicts but the row is never visible afterwards."""

    async def insert_step(
        self, name: str, hash: str, root_hash: str | None, status: StepStatus
    ) -> int | None:
        raise DuplicateStepError(name, hash)


class BrokenInsertGateway(InMemoryStepsGateway):
    async def insert_step(
        self, name: str, hash: str, root_hash: str | None, status: StepStatus
    ) -> int | None:
        raise StepStoreError("connection reset")


class TestResolveInMemory:
    """Resolution rules independent of the store."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self) -> None:
        gateway = InMemoryStepsGateway()
        resolver = RowResolver(gateway)

        first = await resolver.resolve("fetch-page", "abc123", None)
        second = await resolver.resolve("fetch-page", "abc123", None)

        assert first is not None and second is not None
        assert first.id == second.id
        assert first.status is StepStatus.NEW
        assert len(gateway.rows()) == 1

    @pytest.mark.asyncio
    async def test_read_only_never_creates(self) -> None:
        gateway = InMemoryStepsGateway()
        resolver = RowResolver(gateway)

        assert await resolver.resolve("fetch-page", "abc123") is None
        assert await resolver.resolve("fetch-page", "abc123", UNSET) is None
        assert gateway.rows() == []

    @pytest.mark.asyncio
    async def test_read_only_returns_existing(self) -> None:
        gateway = InMemoryStepsGateway()
        resolver = RowResolver(gateway)
        created = await resolver.resolve("fetch-page", "abc123", "root-1")

        found = await resolver.resolve("fetch-page", "abc123")

        assert found is not None and created is not None
        assert found.id == created.id
        assert found.root_hash == "root-1"

    @pytest.mark.asyncio
    async def test_same_hash_different_name_is_distinct(self) -> None:
        resolver = RowResolver(InMemoryStepsGateway())
        a = await resolver.resolve("fetch-page", "abc123", None)
        b = await resolver.resolve("parse-page", "abc123", None)
        assert a is not None and b is not None
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_concurrent_creators_share_one_row(self) -> None:
        gateway = InMemoryStepsGateway()
        resolver = RowResolver(gateway)

        rows = await asyncio.gather(*(resolver.resolve("race", "h", None) for _ in range(8)))

        assert len({row.id for row in rows if row is not None}) == 1
        assert len(gateway.rows()) == 1

    @pytest.mark.asyncio
    async def test_lost_race_falls_back_to_reread(self) -> None:
        resolver = RowResolver(LateWinnerGateway())

        row = await resolver.resolve("fetch-page", "abc123", "mine")

        assert row is not None
        assert row.root_hash == "other-root"

    @pytest.mark.asyncio
    async def test_conflict_without_row_raises(self) -> None:
        resolver = RowResolver(VanishingGateway())
        with pytest.raises(StepStoreError, match="vanished"):
            await resolver.resolve("fetch-page", "abc123", None)

    @pytest.mark.asyncio
    async def test_other_store_errors_propagate(self) -> None:
        resolver = RowResolver(BrokenInsertGateway())
        with pytest.raises(StepStoreError, match="connection reset"):
            await resolver.resolve("fetch-page", "abc123", None)


class TestResolveSql:
    """Resolution against SQLite, exercising the native upsert path."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, sql_gateway: SqlStepsGateway) -> None:
        resolver = RowResolver(sql_gateway)
        first = await resolver.resolve("fetch-page", "abc123", None)
        second = await resolver.resolve("fetch-page", "abc123", None)
        assert first is not None and second is not None
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_read_only_never_creates(self, sql_gateway: SqlStepsGateway) -> None:
        resolver = RowResolver(sql_gateway)
        assert await resolver.resolve("fetch-page", "abc123") is None
        assert await sql_gateway.select_step("fetch-page", "abc123") is None

    @pytest.mark.asyncio
    async def test_concurrent_creators_share_one_row(self, sql_gateway: SqlStepsGateway) -> None:
        resolver = RowResolver(sql_gateway)
        rows = await asyncio.gather(*(resolver.resolve("race", "h", "root") for _ in range(5)))
        assert len({row.id for row in rows if row is not None}) == 1


class TestRowToModel:
    """Raw rows decode output and error but keep vars raw."""

    def test_decodes_payloads(self) -> None:
        raw: Mapping[str, Any] = {
            "id": 7,
            "name": "fetch-page",
            "hash": "abc123",
            "root_hash": None,
            "status": "D",
            "vars": '{"cursor": 4}',
            "output": '{"pages": 3}',
            "error": None,
            "hostname": "w1",
            "started_at": None,
        }
        row = row_to_model(raw)
        assert row.status is StepStatus.DONE
        assert row.output == {"pages": 3}
        assert row.vars == '{"cursor": 4}'

    @pytest.mark.parametrize(
        ("column", "text"),
        [("output", "{not json"), ("error", "{not json"), ("error", "[1, 2]")],
    )
    def test_corrupt_payload_raises_store_error(self, column: str, text: str) -> None:
        raw: dict[str, Any] = {"id": 7, "name": "fetch-page", "hash": "abc123", column: text}
        with pytest.raises(StepStoreError, match="Corrupt step row 7"):
            row_to_model(raw)

    @pytest.mark.asyncio
    async def test_resolve_surfaces_corrupt_row_as_store_error(self) -> None:
        gateway = InMemoryStepsGateway()
        step_id = await gateway.insert_step("fetch-page", "abc123", None, StepStatus.NEW)
        assert step_id is not None
        await gateway.update_step(step_id, {"status": "D", "output": "{truncated"})

        with pytest.raises(StepStoreError):
            await RowResolver(gateway).resolve("fetch-page", "abc123", None)
