"""Exception taxonomy for steprun.

All errors derive from StepRunError so callers can catch the whole family.
Store errors always chain the underlying SQLAlchemy exception.
"""

from __future__ import annotations


class StepRunError(Exception):
    """Base class for all steprun errors."""

    pass


class StepRunConfigError(StepRunError):
    """Raised when configuration is missing or invalid.

    This is a fail-closed error - the service must not start without
    a usable database URL and table name.
    """

    pass


class StepStoreError(StepRunError):
    """Raised when a statement against the steps table fails."""

    pass


class DuplicateStepError(StepStoreError):
    """Raised when an insert violates the (name, hash) uniqueness constraint.

    The resolver recovers from this by re-reading the existing row.
    Everywhere else it propagates like any other store error.
    """

    def __init__(self, name: str, hash: str) -> None:
        super().__init__(f"Step already exists: name={name!r} hash={hash!r}")
        self.name = name
        self.hash = hash


class StepSerializationError(StepRunError):
    """Raised when vars or output cannot be encoded as JSON."""

    pass


class CorruptVarsError(StepRunError):
    """Raised when persisted vars cannot be decoded and the policy is RAISE."""

    def __init__(self, step_id: int | None, detail: str) -> None:
        super().__init__(f"Corrupt vars for step {step_id}: {detail}")
        self.step_id = step_id
        self.detail = detail


class RegistryClosedError(StepRunError):
    """Raised when a run is started after registry shutdown began."""

    pass


class ProcessTerminatedError(StepRunError):
    """Synthetic error recorded on runs still in flight at shutdown."""

    DEFAULT_MESSAGE = "step run interrupted by process shutdown"

    def __init__(self, message: str = DEFAULT_MESSAGE) -> None:
        super().__init__(message)
