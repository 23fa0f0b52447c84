"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from ..contracts import ExecutionStatus, StepLogStatus, Workflow, new_id, utcnow


class Execution(BaseModel):
    """One run instance of a workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    trigger_type: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    subscriber_email: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    heartbeat_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
    test_mode: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.RUNNING


class StepLog(BaseModel):
    """Record of one step's attempt within an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    step_order: int
    step_type: str
    status: StepLogStatus = StepLogStatus.RUNNING
    input: dict[str, Any] = Field(default_factory=dict)
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class WorkflowAnalytics(BaseModel):
    """Run statistics for one workflow, derived from its executions."""

    workflow_id: str
    workflow_name: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    success_rate: float = 0.0
    last_run_at: Optional[datetime] = None

    @classmethod
    def from_executions(
        cls, workflow: Workflow, executions: Iterable[Execution]
    ) -> "WorkflowAnalytics":
        runs = [e for e in executions if not e.test_mode]
        total = len(runs)
        successful = sum(1 for e in runs if e.status == ExecutionStatus.COMPLETED)
        failed = sum(1 for e in runs if e.status == ExecutionStatus.FAILED)
        return cls(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            total_runs=total,
            successful_runs=successful,
            failed_runs=failed,
            success_rate=(successful / total) * 100 if total else 0.0,
            last_run_at=max((e.started_at for e in runs), default=None),
        )
