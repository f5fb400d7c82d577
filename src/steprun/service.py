"""Step run service: the public entry point.

Wires the engine, gateway, resolver and active run registry together and
exposes get_run(). The host process calls close() (or leaves the async
context) during its graceful shutdown to reconcile runs still in flight.

Example:
    async with make_step_run_service({"database_url": url}) as service:
        run = await service.get_run("fetch-page", input_hash, None)
        if not run.is_done():
            await run.mark_running()
            ...
            await run.mark_done({"pages": 3})
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import TracebackType
from typing import TYPE_CHECKING, Any

from steprun.config import StepRunConfig, load_config
from steprun.handle import RunHandle
from steprun.models import UNSET, RootHash
from steprun.persistence.db import create_steps_engine
from steprun.persistence.gateway import SqlStepsGateway, StepsGateway
from steprun.registry import ActiveRunRegistry, ReconcileResult
from steprun.resolver import RowResolver

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


class StepRunService:
    """Resolves step runs and owns their shutdown reconciliation.

    Args:
        config: Service configuration.
        gateway: Steps gateway.
        registry: Active run registry; a fresh one is created if None.
        engine: Engine to dispose on close, if the service owns it.
    """

    def __init__(
        self,
        config: StepRunConfig,
        gateway: StepsGateway,
        registry: ActiveRunRegistry | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._resolver = RowResolver(gateway)
        self._registry = registry if registry is not None else ActiveRunRegistry()
        self._owned_engine = engine
        self._closed = False

    @property
    def config(self) -> StepRunConfig:
        return self._config

    @property
    def gateway(self) -> StepsGateway:
        return self._gateway

    @property
    def registry(self) -> ActiveRunRegistry:
        return self._registry

    async def get_run(self, name: str, hash: str, root_hash: RootHash = UNSET) -> RunHandle:
        """Get the run handle for a step, creating its row if needed.

        Args:
            name: Full step name.
            hash: Content hash of the step input.
            root_hash: Root step hash for a sub-step; None for the root step.
                Leave unset to open the run read-only: no row is created and
                transitions are no-ops.

        Returns:
            RunHandle bound to the resolved row.

        Raises:
            StepStoreError: If the store fails.
        """
        row = await self._resolver.resolve(name, hash, root_hash)
        return RunHandle(
            name,
            hash,
            row,
            self._gateway,
            self._registry,
            read_only=root_hash is UNSET,
            hostname=self._config.hostname,
            on_corrupt_vars=self._config.on_corrupt_vars,
        )

    async def close(self, error: BaseException | None = None) -> list[ReconcileResult]:
        """Reconcile in-flight runs, then dispose the owned engine.

        Safe to call more than once.

        Args:
            error: Error to record on in-flight runs; a generic termination
                error is used if None.

        Returns:
            Reconciliation results for runs that were in flight.
        """
        results = await self._registry.shutdown(error)
        if not self._closed:
            self._closed = True
            if self._owned_engine is not None:
                await self._owned_engine.dispose()
                logger.info("Disposed steps database engine")
        return results

    async def __aenter__(self) -> StepRunService:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def make_step_run_service(
    config: StepRunConfig | Mapping[str, Any] | None = None,
    *,
    engine: AsyncEngine | None = None,
    gateway: StepsGateway | None = None,
) -> StepRunService:
    """Factory for a StepRunService.

    Args:
        config: Config object or mapping such as
            ``{"database_url": ..., "pool": {...}, "table": {"name": "steps"}}``.
            If None, configuration is read from STEPRUN_* environment variables.
        engine: Existing async engine to use. The caller keeps ownership.
        gateway: Existing gateway to use instead of a SQL one.

    Returns:
        Configured StepRunService.

    Raises:
        StepRunConfigError: If configuration is invalid, or no database URL
            is available when an engine has to be created.
    """
    cfg = StepRunConfig.from_env() if config is None else load_config(config)

    if gateway is not None:
        return StepRunService(cfg, gateway)

    owned_engine = None
    if engine is None:
        engine = owned_engine = create_steps_engine(cfg)

    return StepRunService(cfg, SqlStepsGateway(engine, cfg.table.name), engine=owned_engine)
