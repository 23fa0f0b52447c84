"""Repository abstraction for workflow and execution persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..contracts import ExecutionStatus, TriggerType, Workflow
from .models import Execution, StepLog, WorkflowAnalytics


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Workflows are read-mostly; executions and step logs are append-heavy and
    owned by the coordinator that created them.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or update a workflow definition. Run counters are kept."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all stored workflows."""

    async def find_workflows_for_trigger(
        self, trigger_type: TriggerType
    ) -> list[Workflow]:
        """Return enabled, ACTIVE workflows subscribed to ``trigger_type``."""

    async def record_run(
        self, workflow_id: str, successful: bool, ran_at: datetime | None = None
    ) -> None:
        """Atomically bump run counters and ``last_run_at``."""

    async def create_execution(self, execution: Execution) -> None:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(self, workflow_id: str | None = None) -> list[Execution]:
        """Return executions, optionally for one workflow, oldest first."""

    async def touch_execution(self, execution_id: str) -> None:
        """Refresh the heartbeat of a RUNNING execution."""

    async def finalize_execution(
        self, execution_id: str, status: ExecutionStatus, error: str | None = None
    ) -> Execution:
        """Move a RUNNING execution to a terminal status.

        Raises:
            ExecutionNotFoundError: if the execution does not exist.
            InvalidTransitionError: if it is already terminal.
        """

    async def list_stale_executions(self, older_than: datetime) -> list[Execution]:
        """Return RUNNING executions whose heartbeat predates ``older_than``."""

    async def create_step_log(self, step_log: StepLog) -> None:
        """Persist a RUNNING step log."""

    async def complete_step_log(
        self, step_log_id: str, output: dict, attempts: int = 1
    ) -> None:
        """Mark a step log COMPLETED."""

    async def fail_step_log(self, step_log_id: str, error: str, attempts: int = 1) -> None:
        """Mark a step log FAILED."""

    async def list_step_logs(self, execution_id: str) -> list[StepLog]:
        """Return the step logs of an execution in step order."""

    async def get_workflow_analytics(self, workflow_id: str) -> WorkflowAnalytics | None:
        """Summarise the executions of a workflow."""
