"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict

from ..contracts import (
    ExecutionStatus,
    StepLogStatus,
    TriggerType,
    Workflow,
    utcnow,
)
from ..exceptions import ExecutionNotFoundError, InvalidTransitionError
from .models import Execution, StepLog, WorkflowAnalytics
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflows and executions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every mutation completes without
    awaiting, so it cannot interleave with another coroutine.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, Execution] = {}
        self._step_logs: Dict[str, StepLog] = {}

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        stored = workflow.model_copy(deep=True)
        existing = self._workflows.get(workflow.id)
        if existing is not None:
            stored.total_runs = existing.total_runs
            stored.successful_runs = existing.successful_runs
            stored.last_run_at = existing.last_run_at
        self._workflows[workflow.id] = stored

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    async def find_workflows_for_trigger(
        self, trigger_type: TriggerType
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if wf.is_runnable and wf.trigger.trigger_type == trigger_type
        ]

    async def record_run(
        self, workflow_id: str, successful: bool, ran_at: datetime | None = None
    ) -> None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return
        wf.total_runs += 1
        if successful:
            wf.successful_runs += 1
        wf.last_run_at = ran_at or utcnow()

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        ex = self._executions.get(execution_id)
        return ex.model_copy(deep=True) if ex else None

    async def list_executions(self, workflow_id: str | None = None) -> list[Execution]:
        return [
            ex.model_copy(deep=True)
            for ex in self._executions.values()
            if workflow_id is None or ex.workflow_id == workflow_id
        ]

    async def touch_execution(self, execution_id: str) -> None:
        ex = self._executions.get(execution_id)
        if ex and ex.status == ExecutionStatus.RUNNING:
            ex.heartbeat_at = utcnow()

    async def finalize_execution(
        self, execution_id: str, status: ExecutionStatus, error: str | None = None
    ) -> Execution:
        ex = self._executions.get(execution_id)
        if ex is None:
            raise ExecutionNotFoundError(execution_id)
        if ex.is_terminal:
            raise InvalidTransitionError(
                f"Execution {execution_id} is already {ex.status.value}"
            )
        ex.status = status
        ex.error = error
        ex.completed_at = utcnow()
        return ex.model_copy(deep=True)

    async def list_stale_executions(self, older_than: datetime) -> list[Execution]:
        return [
            ex.model_copy(deep=True)
            for ex in self._executions.values()
            if ex.status == ExecutionStatus.RUNNING and ex.heartbeat_at < older_than
        ]

    # ------------------------------------------------------------------
    # Step logs
    async def create_step_log(self, step_log: StepLog) -> None:
        self._step_logs[step_log.id] = step_log.model_copy(deep=True)

    async def complete_step_log(
        self, step_log_id: str, output: dict, attempts: int = 1
    ) -> None:
        log = self._step_logs.get(step_log_id)
        if log is None or log.status != StepLogStatus.RUNNING:
            return
        log.status = StepLogStatus.COMPLETED
        log.output = output
        log.attempts = attempts
        log.completed_at = utcnow()

    async def fail_step_log(self, step_log_id: str, error: str, attempts: int = 1) -> None:
        log = self._step_logs.get(step_log_id)
        if log is None or log.status != StepLogStatus.RUNNING:
            return
        log.status = StepLogStatus.FAILED
        log.error = error
        log.attempts = attempts
        log.completed_at = utcnow()

    async def list_step_logs(self, execution_id: str) -> list[StepLog]:
        logs = [
            log.model_copy(deep=True)
            for log in self._step_logs.values()
            if log.execution_id == execution_id
        ]
        return sorted(logs, key=lambda log: (log.step_order, log.started_at))

    async def get_workflow_analytics(self, workflow_id: str) -> WorkflowAnalytics | None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return None
        return WorkflowAnalytics.from_executions(
            wf, await self.list_executions(workflow_id)
        )
