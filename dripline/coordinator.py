"""Execution coordinator: owns workflow runs from start to terminal status."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from datetime import timedelta
from typing import Any, Coroutine, Dict, List, Mapping, Optional, Set

from pydantic import BaseModel, Field

from .constants import ABANDONED_EXECUTION_ERROR, DEFAULT_STALE_AFTER
from .contracts import (
    ConditionConfig,
    ExecutionStatus,
    Step,
    StepLogStatus,
    StepType,
    Workflow,
    utcnow,
)
from .exceptions import InvalidTransitionError, StepFailedError, WorkflowNotFoundError
from .execute import StepRunner
from .persistence import Execution, WorkflowRepository

logger = logging.getLogger(__name__)


class StepResult(BaseModel):
    """Outcome of one step in a test run."""

    step_id: str
    step_name: Optional[str] = None
    step_type: str
    status: StepLogStatus
    duration_ms: float = 0.0
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class TestRunResult(BaseModel):
    """Summary returned by ``ExecutionCoordinator.test_execution``."""

    __test__ = False

    execution_id: str
    workflow_name: str
    trigger_type: str
    status: ExecutionStatus
    success: bool
    total_steps: int
    steps_executed: int
    steps: List[StepResult] = Field(default_factory=list)


def _merge_output(
    context: Dict[str, Any], output: Mapping[str, Any], frozen: Set[str]
) -> None:
    # trigger payload fields are never overwritten by step outputs
    for key, value in output.items():
        if key not in frozen:
            context[key] = value


def _subscriber_email(payload: Mapping[str, Any]) -> Optional[str]:
    email = payload.get("email")
    return str(email) if email is not None else None


def _halts(step: Step, output: Mapping[str, Any]) -> bool:
    if step.type != StepType.CONDITION or output.get("conditionMet"):
        return False
    config = step.typed_config()
    return isinstance(config, ConditionConfig) and config.halt_on_false


class ExecutionCoordinator:
    """Creates executions and runs their steps in the background."""

    def __init__(self, repository: WorkflowRepository, step_runner: StepRunner) -> None:
        self._repository = repository
        self._step_runner = step_runner
        self._tasks: Set[asyncio.Task] = set()
        self._active: Set[str] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    async def start_execution(
        self,
        workflow_id: str,
        payload: Mapping[str, Any],
        trigger_type: Optional[str] = None,
    ) -> str:
        """Persist a RUNNING execution and run its steps asynchronously.

        Returns the execution id without waiting for any step.

        Raises:
            WorkflowNotFoundError: if ``workflow_id`` is unknown.
        """
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        trigger_data = copy.deepcopy(dict(payload or {}))
        execution = Execution(
            workflow_id=workflow.id,
            trigger_type=trigger_type or workflow.trigger.trigger_type.value,
            trigger_data=trigger_data,
            subscriber_email=_subscriber_email(trigger_data),
        )
        await self._repository.create_execution(execution)
        logger.info(
            f"Started execution={execution.id} for workflow={workflow.id} ({workflow.name})"
        )

        self._active.add(execution.id)
        self._spawn(self.run_execution(execution, workflow))
        return execution.id

    async def run_execution(self, execution: Execution, workflow: Workflow) -> None:
        """Run every step in order and finalize the execution.

        Never raises except for cancellation, which leaves the execution
        RUNNING for ``reconcile``.
        """
        context = dict(execution.trigger_data)
        frozen = set(context)
        try:
            for step in workflow.steps:
                await self._repository.touch_execution(execution.id)
                output = await self._step_runner.run_step(execution.id, step, context)
                _merge_output(context, output, frozen)
                if _halts(step, output):
                    logger.info(
                        f"Condition at step {step.order} not met; "
                        f"execution={execution.id} stops early"
                    )
                    break
        except StepFailedError as e:
            await self._finish(execution, ExecutionStatus.FAILED, str(e))
        except asyncio.CancelledError:
            logger.warning(
                f"Execution={execution.id} interrupted; left RUNNING for reconciliation"
            )
            raise
        except Exception as e:
            logger.exception(f"Execution={execution.id} aborted: {e}")
            await self._finish(execution, ExecutionStatus.FAILED, str(e))
        else:
            await self._finish(execution, ExecutionStatus.COMPLETED)
        finally:
            self._active.discard(execution.id)

    async def _finish(
        self, execution: Execution, status: ExecutionStatus, error: Optional[str] = None
    ) -> None:
        try:
            await self._repository.finalize_execution(execution.id, status, error)
        except InvalidTransitionError as e:
            logger.warning(f"Not finalizing execution={execution.id}: {e}")
            return
        except Exception:
            logger.exception(f"Could not finalize execution={execution.id}")
            return

        logger.info(f"Execution={execution.id} finished with status {status.value}")
        if execution.test_mode:
            return
        try:
            await self._repository.record_run(
                execution.workflow_id, successful=status == ExecutionStatus.COMPLETED
            )
        except Exception:
            logger.exception(
                f"Could not update run counters for workflow={execution.workflow_id}"
            )

    # ------------------------------------------------------------------
    async def test_execution(
        self, workflow_id: str, test_data: Optional[Mapping[str, Any]] = None
    ) -> TestRunResult:
        """Run a workflow inline in dry-run mode.

        No collaborator is called, delays are skipped and run counters are
        left untouched. Step logs are still written.
        """
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        data = copy.deepcopy(dict(test_data or {}))
        execution = Execution(
            workflow_id=workflow.id,
            trigger_type=workflow.trigger.trigger_type.value,
            trigger_data=data,
            subscriber_email=_subscriber_email(data) or "test@example.com",
            test_mode=True,
        )
        await self._repository.create_execution(execution)

        context = dict(data)
        frozen = set(context)
        results: List[StepResult] = []
        failed = False
        for step in workflow.steps:
            started = time.monotonic()
            try:
                output = await self._step_runner.run_step(
                    execution.id, step, context, dry_run=True
                )
            except StepFailedError as e:
                failed = True
                results.append(
                    StepResult(
                        step_id=step.id,
                        step_name=step.name,
                        step_type=step.type.value,
                        status=StepLogStatus.FAILED,
                        error=str(e),
                    )
                )
                break
            results.append(
                StepResult(
                    step_id=step.id,
                    step_name=step.name,
                    step_type=step.type.value,
                    status=StepLogStatus.COMPLETED,
                    duration_ms=(time.monotonic() - started) * 1000,
                    output=output,
                )
            )
            _merge_output(context, output, frozen)
            if _halts(step, output):
                break

        status = ExecutionStatus.FAILED if failed else ExecutionStatus.COMPLETED
        await self._finish(
            execution, status, "One or more steps failed" if failed else None
        )
        return TestRunResult(
            execution_id=execution.id,
            workflow_name=workflow.name,
            trigger_type=workflow.trigger.trigger_type.value,
            status=status,
            success=not failed,
            total_steps=len(workflow.steps),
            steps_executed=len(results),
            steps=results,
        )

    # ------------------------------------------------------------------
    async def reconcile(self, stale_after: float = DEFAULT_STALE_AFTER) -> List[str]:
        """Mark RUNNING executions without a recent heartbeat as FAILED.

        Executions still progressing in this process are skipped. Returns the
        ids of the executions that were marked.
        """
        cutoff = utcnow() - timedelta(seconds=stale_after)
        reconciled: List[str] = []
        for execution in await self._repository.list_stale_executions(cutoff):
            if execution.id in self._active:
                continue
            for log in await self._repository.list_step_logs(execution.id):
                if log.status == StepLogStatus.RUNNING:
                    await self._repository.fail_step_log(
                        log.id, ABANDONED_EXECUTION_ERROR, log.attempts
                    )
            try:
                await self._repository.finalize_execution(
                    execution.id, ExecutionStatus.FAILED, ABANDONED_EXECUTION_ERROR
                )
            except InvalidTransitionError:
                continue
            if not execution.test_mode:
                await self._repository.record_run(execution.workflow_id, successful=False)
            logger.warning(
                f"Execution={execution.id} of workflow={execution.workflow_id} "
                f"marked FAILED: no heartbeat since {execution.heartbeat_at}"
            )
            reconciled.append(execution.id)
        return reconciled

    async def drain(self) -> None:
        """Wait until every in-flight execution task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel in-flight executions, leaving them RUNNING in the repository."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
