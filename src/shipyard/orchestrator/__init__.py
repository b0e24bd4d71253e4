"""Orchestrator module for the deployment state machine.

- DeploymentOrchestrator: runs the deploy (or rollback) plan and writes the JSON log
- StepExecutor: runs one step with its snapshot and retry policy
- steps: one class per step, threaded with an immutable RunState
- SnapshotStore: on-host snapshot record used for rollback
"""

from .models import (
    CommandRecord,
    DeployResult,
    DeployState,
    DeployStatus,
    DeploymentConfig,
    RunState,
    RuntimeKind,
    Snapshot,
    StepResult,
    StepStatus,
)
from .runtime import ApplicationRuntime, ComposeRuntime, ContainerRuntime, runtime_for
from .snapshot import SnapshotStore
from .steps import DeployEnvironment, DeployStep, build_plan, build_rollback_plan
from .step_executor import StepExecutor
from .orchestrator import DeploymentOrchestrator

__all__ = [
    "CommandRecord",
    "DeployResult",
    "DeployState",
    "DeployStatus",
    "DeploymentConfig",
    "RunState",
    "RuntimeKind",
    "Snapshot",
    "StepResult",
    "StepStatus",
    "ApplicationRuntime",
    "ComposeRuntime",
    "ContainerRuntime",
    "runtime_for",
    "SnapshotStore",
    "DeployEnvironment",
    "DeployStep",
    "build_plan",
    "build_rollback_plan",
    "StepExecutor",
    "DeploymentOrchestrator",
]
