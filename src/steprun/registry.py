"""Registry of step runs currently in flight.

Handles register themselves on mark_running and deregister on mark_done or
mark_failed. When the owning service shuts down, every handle still
registered is marked FAILED with a synthetic termination error, so no row is
left RUNNING after the process stops.

Runs are keyed by (name, hash): two steps fed the same input are tracked
separately. A start admitted before shutdown began is waited for, so its
handle is registered before reconciliation takes its snapshot.

Shutdown is best-effort: if the shutdown itself is interrupted, remaining
rows keep their RUNNING status.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from steprun.errors import ProcessTerminatedError, RegistryClosedError

if TYPE_CHECKING:
    from steprun.handle import RunHandle

logger = logging.getLogger(__name__)

RunKey = tuple[str, str]


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one in-flight run at shutdown.

    Attributes:
        hash: Input hash of the run.
        name: Step name.
        updated: True if the row was marked FAILED.
        error: Error raised while marking the row, if any.
    """

    hash: str
    name: str
    updated: bool
    error: BaseException | None = None


class ActiveRunRegistry:
    """Maps (name, hash) to the live handle running it.

    Owned by one StepRunService. The closing event is the signal that no
    new runs may start; shutdown() waits for starts already admitted, then
    joins one mark_failed task per registered handle.
    """

    def __init__(self) -> None:
        self._runs: dict[RunKey, RunHandle] = {}
        self._closing = asyncio.Event()
        self._starting = 0
        self._starts_idle = asyncio.Event()
        self._starts_idle.set()
        self._shutdown_task: asyncio.Task[list[ReconcileResult]] | None = None

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, key: object) -> bool:
        """Accept a (name, hash) key, or a bare hash matching any step."""
        if isinstance(key, tuple):
            return key in self._runs
        return any(hash == key for _, hash in self._runs)

    @property
    def is_closing(self) -> bool:
        return self._closing.is_set()

    def active_hashes(self) -> list[str]:
        return [hash for _, hash in self._runs]

    def get(self, name: str, hash: str) -> RunHandle | None:
        return self._runs.get((name, hash))

    @contextmanager
    def starting(self, handle: RunHandle) -> Iterator[None]:
        """Admit one mark_running call; shutdown waits until it finishes.

        Raises:
            RegistryClosedError: If shutdown has already started.
        """
        if self.is_closing:
            raise RegistryClosedError(
                f"Cannot start step {handle.name!r}/{handle.hash!r}: registry is shutting down"
            )
        self._starting += 1
        self._starts_idle.clear()
        try:
            yield
        finally:
            self._starting -= 1
            if not self._starting:
                self._starts_idle.set()

    def register(self, handle: RunHandle) -> None:
        """Track a handle that just transitioned to RUNNING."""
        key = (handle.name, handle.hash)
        previous = self._runs.get(key)
        if previous is not None and previous is not handle:
            logger.warning("Replacing in-flight handle for %s/%s", handle.name, handle.hash)
        self._runs[key] = handle
        logger.debug("Registered run %s/%s; active=%d", handle.name, handle.hash, len(self._runs))

    def unregister(self, handle: RunHandle) -> None:
        """Stop tracking a handle; a newer handle under the same key is kept."""
        key = (handle.name, handle.hash)
        if self._runs.get(key) is handle:
            del self._runs[key]
            logger.debug(
                "Unregistered run %s/%s; active=%d", handle.name, handle.hash, len(self._runs)
            )

    async def shutdown(self, error: BaseException | None = None) -> list[ReconcileResult]:
        """Mark every registered run FAILED and wait for all of them.

        Runs at most once; later calls wait for and return the first
        call's results.

        Args:
            error: Error to record; defaults to ProcessTerminatedError.

        Returns:
            One ReconcileResult per run that was in flight.
        """
        if self._shutdown_task is None:
            self._closing.set()
            self._shutdown_task = asyncio.ensure_future(
                self._reconcile(error if error is not None else ProcessTerminatedError())
            )
        return await asyncio.shield(self._shutdown_task)

    async def _reconcile(self, error: BaseException) -> list[ReconcileResult]:
        if self._starting:
            logger.debug("Waiting for %d starting runs before reconciling", self._starting)
            await self._starts_idle.wait()

        handles = list(self._runs.values())
        if not handles:
            logger.debug("No in-flight runs to reconcile")
            return []

        logger.info("Reconciling %d in-flight runs at shutdown", len(handles))
        outcomes = await asyncio.gather(
            *(handle.mark_failed(error) for handle in handles),
            return_exceptions=True,
        )

        results: list[ReconcileResult] = []
        for handle, outcome in zip(handles, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Failed to reconcile run %s/%s",
                    handle.name,
                    handle.hash,
                    exc_info=outcome,
                )
                self.unregister(handle)
                results.append(ReconcileResult(handle.hash, handle.name, False, outcome))
            else:
                results.append(ReconcileResult(handle.hash, handle.name, bool(outcome)))

        failed = sum(1 for r in results if not r.updated)
        logger.info(
            "Reconciled %d in-flight runs at shutdown (%d not updated)", len(results), failed
        )
        return results
