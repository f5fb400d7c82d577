"""Step row model and status codes.

A StepRow is the persisted identity and state of one step invocation,
keyed by (name, hash). Status is stored as a single character.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, Final

from pydantic import BaseModel, ConfigDict


class StepStatus(StrEnum):
    """Lifecycle status of a step row, stored as a single character."""

    NEW = "N"
    RUNNING = "R"
    DONE = "D"
    FAILED = "F"


class CorruptVarsPolicy(StrEnum):
    """What a handle does when persisted vars fail to decode."""

    RESET = "reset"
    RAISE = "raise"


class _Unset(Enum):
    TOKEN = 0

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = _Unset.TOKEN
"""Marks an omitted root hash, which requests a read-only resolution."""

RootHash = str | None | _Unset


class StepRow(BaseModel):
    """Persisted state of one (name, hash) step.

    Attributes:
        id: Store-assigned surrogate key.
        name: Step identifier, e.g. a pipeline node name.
        hash: Content hash of the step input.
        root_hash: Hash of the root run; None for a root-level step.
        status: Current lifecycle status.
        vars: Raw JSON text of the step's variable bag, decoded lazily.
        output: Decoded output payload, set only after DONE.
        error: Decoded serialized error, set only after FAILED.
        hostname: Host that last started the run.
        started_at: UTC timestamp of the last start.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: int
    name: str
    hash: str
    root_hash: str | None = None
    status: StepStatus = StepStatus.NEW
    vars: str | None = None
    output: Any = None
    error: dict[str, Any] | None = None
    hostname: str | None = None
    started_at: datetime | None = None
