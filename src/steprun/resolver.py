"""Row resolver: get-or-create of step rows by (name, hash).

Concurrent creators of the same key are resolved by the store's unique
constraint. The losing insert either comes back empty (native ON CONFLICT
DO NOTHING) or raises DuplicateStepError; in both cases the resolver
re-reads the row the winner created.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from steprun.errors import DuplicateStepError, StepStoreError
from steprun.models import UNSET, RootHash, StepRow, StepStatus
from steprun.persistence.gateway import StepsGateway
from steprun.serialization import decode_json

logger = logging.getLogger(__name__)


def row_to_model(row: Mapping[str, Any]) -> StepRow:
    """Convert a raw gateway row into a StepRow.

    Output and error are decoded eagerly; vars stay raw until a handle
    asks for them.

    Raises:
        StepStoreError: If output or error hold corrupt JSON, or the row
            does not fit the StepRow model.
    """
    try:
        return StepRow(
            id=row["id"],
            name=row["name"],
            hash=row["hash"],
            root_hash=row.get("root_hash"),
            status=row.get("status") or StepStatus.NEW,
            vars=row.get("vars"),
            output=decode_json(row.get("output")),
            error=decode_json(row.get("error")),
            hostname=row.get("hostname"),
            started_at=row.get("started_at"),
        )
    except (ValueError, ValidationError) as e:
        raise StepStoreError(f"Corrupt step row {row.get('id')}: {e}") from e


class RowResolver:
    """Resolves step identities to persisted rows.

    Args:
        gateway: Steps gateway used for selects and inserts.
    """

    def __init__(self, gateway: StepsGateway) -> None:
        self._gateway = gateway

    async def resolve(self, name: str, hash: str, root_hash: RootHash = UNSET) -> StepRow | None:
        """Fetch or create the row for (name, hash).

        Args:
            name: Step name.
            hash: Content hash of the step input.
            root_hash: Root run hash; None for a root step. Leave UNSET for
                a read-only lookup that never creates a row.

        Returns:
            The StepRow, or None for a read-only lookup of a missing row.

        Raises:
            StepStoreError: If the store fails, or a lost insert race is
                followed by a re-read that finds nothing.
        """
        row = await self._gateway.select_step(name, hash)
        if row is not None:
            return row_to_model(row)

        if root_hash is UNSET:
            logger.debug("Read-only lookup found no step %s/%s", name, hash)
            return None

        try:
            step_id = await self._gateway.insert_step(name, hash, root_hash, StepStatus.NEW)
        except DuplicateStepError:
            step_id = None

        if step_id is not None:
            logger.debug("Created step %s/%s: id=%s", name, hash, step_id)
            return StepRow(id=step_id, name=name, hash=hash, root_hash=root_hash)

        logger.info("Lost create race for step %s/%s, re-reading", name, hash)
        row = await self._gateway.select_step(name, hash)
        if row is None:
            raise StepStoreError(f"Step {name!r}/{hash!r} vanished after insert conflict")
        return row_to_model(row)
