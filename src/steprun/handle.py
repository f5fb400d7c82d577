"""Run handle: the live object bound to one resolved step row.

A handle caches the row as it was at resolution time and applies the
transitions made through it. Status predicates read only the cache; they do
not observe concurrent changes made by other handles or processes.

State machine:
    NEW -> RUNNING -> DONE
    NEW -> RUNNING -> FAILED -> RUNNING (retry)
"""

from __future__ import annotations

import json
import logging
from contextlib import AbstractContextManager, nullcontext
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from steprun.errors import CorruptVarsError
from steprun.models import CorruptVarsPolicy, StepRow, StepStatus
from steprun.serialization import decode_json, encode_json, serialize_error

if TYPE_CHECKING:
    from steprun.persistence.gateway import StepsGateway
    from steprun.registry import ActiveRunRegistry

logger = logging.getLogger(__name__)


class RunHandle:
    """Facade over one step row exposing status queries and transitions.

    Transitions write only when the row exists and the handle was resolved
    with a root hash. Otherwise they return False without touching the
    store or the registry.

    Args:
        name: Step name.
        hash: Content hash of the step input.
        row: Resolved row, or None if a read-only lookup found nothing.
        gateway: Gateway used for transition updates.
        registry: Registry tracking running handles; None disables tracking.
        read_only: True when resolved without a root hash.
        hostname: Recorded on mark_running.
        on_corrupt_vars: Policy applied when persisted vars fail to decode.
    """

    def __init__(
        self,
        name: str,
        hash: str,
        row: StepRow | None,
        gateway: StepsGateway,
        registry: ActiveRunRegistry | None = None,
        *,
        read_only: bool = False,
        hostname: str | None = None,
        on_corrupt_vars: CorruptVarsPolicy = CorruptVarsPolicy.RESET,
    ) -> None:
        self._name = name
        self._hash = hash
        self._row = row
        self._gateway = gateway
        self._registry = registry
        self._read_only = read_only
        self._hostname = hostname
        self._on_corrupt_vars = on_corrupt_vars
        self._vars: dict[str, Any] | None = None

    def __repr__(self) -> str:
        status = self.status.name if self.status is not None else "UNRESOLVED"
        mode = "ro" if self._read_only else "rw"
        return f"RunHandle(name={self._name!r}, hash={self._hash!r}, status={status}, {mode})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def hash(self) -> str:
        return self._hash

    @property
    def row(self) -> StepRow | None:
        return self._row

    @property
    def step_id(self) -> int | None:
        return self._row.id if self._row is not None else None

    @property
    def status(self) -> StepStatus | None:
        return self._row.status if self._row is not None else None

    @property
    def read_only(self) -> bool:
        return self._read_only

    @property
    def writable(self) -> bool:
        """True if transitions on this handle will write."""
        return self._row is not None and not self._read_only

    def is_new(self) -> bool:
        return self.status is StepStatus.NEW

    def is_done(self) -> bool:
        return self.status is StepStatus.DONE

    def is_running(self) -> bool:
        return self.status is StepStatus.RUNNING

    def is_failed(self) -> bool:
        return self.status is StepStatus.FAILED

    def get_output(self) -> Any:
        """Return the cached output of a DONE run, without re-fetching."""
        return self._row.output if self._row is not None else None

    def get_error(self) -> dict[str, Any] | None:
        """Return the cached serialized error of a FAILED run."""
        return self._row.error if self._row is not None else None

    def get_vars(self) -> dict[str, Any]:
        """Return the step's mutable variable bag.

        Decoded from the persisted JSON on first access. Mutate the returned
        dict in place; changes are written by the next transition.

        Raises:
            CorruptVarsError: If persisted vars are corrupt and the policy
                is RAISE.
        """
        if self._vars is None:
            self._vars = self._decode_vars()
        return self._vars

    def _decode_vars(self) -> dict[str, Any]:
        raw = self._row.vars if self._row is not None else None
        if raw is None:
            return {}
        try:
            value = json.loads(raw)
        except ValueError as e:
            return self._corrupt_vars(f"invalid JSON: {e}")
        if not isinstance(value, dict):
            return self._corrupt_vars(f"expected a JSON object, got {type(value).__name__}")
        return value

    def _corrupt_vars(self, detail: str) -> dict[str, Any]:
        if self._on_corrupt_vars is CorruptVarsPolicy.RAISE:
            raise CorruptVarsError(self.step_id, detail)
        logger.warning(
            "Resetting corrupt vars for step %s (%s/%s): %s",
            self.step_id,
            self._name,
            self._hash,
            detail,
        )
        return {}

    def _vars_snapshot(self) -> str | None:
        # Vars never decoded are written back unchanged.
        if self._vars is None:
            return self._row.vars if self._row is not None else None
        return encode_json(self._vars, "vars")

    async def _transition(self, status: StepStatus, values: dict[str, Any]) -> bool:
        assert self._row is not None
        snapshot = self._vars_snapshot()
        affected = await self._gateway.update_step(
            self._row.id, {"status": status.value, "vars": snapshot, **values}
        )
        if not affected:
            logger.warning(
                "Transition to %s affected no rows for step %s (%s/%s)",
                status.name,
                self._row.id,
                self._name,
                self._hash,
            )
            return False

        self._row.status = status
        self._row.vars = snapshot
        logger.debug("Step %s (%s/%s) is now %s", self._row.id, self._name, self._hash, status.name)
        return True

    async def mark_running(self) -> bool:
        """Mark the step as running and register it as in flight.

        Clears any output or error left by a previous attempt.

        Returns:
            True if a row was updated.

        Raises:
            RegistryClosedError: If registry shutdown has already started.
            StepSerializationError: If vars are not JSON-serializable.
            StepStoreError: If the update fails.
        """
        if not self.writable:
            return False

        with self._admitted():
            started_at = datetime.now(UTC)
            updated = await self._transition(
                StepStatus.RUNNING,
                {
                    "output": None,
                    "error": None,
                    "hostname": self._hostname,
                    "started_at": started_at,
                },
            )
            if updated:
                assert self._row is not None
                self._row.output = None
                self._row.error = None
                self._row.hostname = self._hostname
                self._row.started_at = started_at
                if self._registry is not None:
                    self._registry.register(self)
        return updated

    def _admitted(self) -> AbstractContextManager[None]:
        if self._registry is None:
            return nullcontext()
        return self._registry.starting(self)

    async def mark_done(self, output: Any = None) -> bool:
        """Mark the step as successfully done.

        Args:
            output: JSON-serializable result; stored as NULL when None.

        Returns:
            True if a row was updated.

        Raises:
            StepSerializationError: If output or vars are not serializable.
            StepStoreError: If the update fails.
        """
        if not self.writable:
            return False

        encoded = encode_json(output, "output")
        updated = await self._transition(StepStatus.DONE, {"output": encoded, "error": None})
        if updated:
            assert self._row is not None
            self._row.output = decode_json(encoded)
            self._row.error = None
        if self._registry is not None:
            self._registry.unregister(self)
        return updated

    async def mark_failed(self, error: BaseException | Any) -> bool:
        """Mark the step as failed, recording the full error detail.

        Args:
            error: Exception raised by the step.

        Returns:
            True if a row was updated.

        Raises:
            StepSerializationError: If vars are not serializable.
            StepStoreError: If the update fails.
        """
        if not self.writable:
            return False

        detail = serialize_error(error)
        updated = await self._transition(
            StepStatus.FAILED, {"error": encode_json(detail, "error"), "output": None}
        )
        if updated:
            assert self._row is not None
            self._row.error = detail
            self._row.output = None
        if self._registry is not None:
            self._registry.unregister(self)
        return updated
