"""steprun - idempotent, persisted execution tracking for pipeline steps.

A step is identified by its name and a content hash of its input. steprun
records whether that pair has already run, is running or has failed, so a
pipeline can skip finished work, resume after a crash, and never leave a
step marked running once its process is gone.
"""

from steprun.config import PoolOptions, StepRunConfig, TableOptions
from steprun.errors import (
    CorruptVarsError,
    DuplicateStepError,
    ProcessTerminatedError,
    RegistryClosedError,
    StepRunConfigError,
    StepRunError,
    StepSerializationError,
    StepStoreError,
)
from steprun.handle import RunHandle
from steprun.models import UNSET, CorruptVarsPolicy, StepRow, StepStatus
from steprun.registry import ActiveRunRegistry, ReconcileResult
from steprun.resolver import RowResolver
from steprun.service import StepRunService, make_step_run_service

__version__ = "0.1.0"

__all__ = [
    "UNSET",
    "ActiveRunRegistry",
    "CorruptVarsError",
    "CorruptVarsPolicy",
    "DuplicateStepError",
    "PoolOptions",
    "ProcessTerminatedError",
    "ReconcileResult",
    "RegistryClosedError",
    "RowResolver",
    "RunHandle",
    "StepRow",
    "StepRunConfig",
    "StepRunConfigError",
    "StepRunError",
    "StepRunService",
    "StepSerializationError",
    "StepStatus",
    "StepStoreError",
    "TableOptions",
    "make_step_run_service",
]
