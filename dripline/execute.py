"""Step execution for dripline workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from .actions import ActionHandlers, simulate_action
from .config import RetryConfig
from .constants import DEFAULT_HEARTBEAT_INTERVAL
from .contracts import Step, StepConfig
from .delays import compute_delay
from .exceptions import StepFailedError, TransientCollaboratorError
from .persistence import StepLog, WorkflowRepository
from .utils.retry import Sleep, schedule_retry

logger = logging.getLogger(__name__)


class StepRunner:
    """Runs a single workflow step and records its StepLog.

    ``sleep`` is awaited for step delays and retry backoff, so tests can
    substitute a fake clock.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        handlers: ActionHandlers,
        retry: Optional[RetryConfig] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._handlers = handlers
        self._retry = retry or RetryConfig()
        self._heartbeat_interval = heartbeat_interval
        self._sleep = sleep

    async def run_step(
        self,
        execution_id: str,
        step: Step,
        context: Mapping[str, Any],
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Execute ``step`` and return its output.

        Raises:
            StepFailedError: after the StepLog has been marked FAILED.
        """
        step_log = StepLog(
            execution_id=execution_id,
            step_id=step.id,
            step_order=step.order,
            step_type=step.type.value,
            input=dict(context),
        )
        await self._repository.create_step_log(step_log)

        try:
            if step.has_delay and not dry_run:
                await self._suspend(
                    execution_id, step, compute_delay(step.delay_amount, step.delay_unit)
                )
            config = step.typed_config()
            if dry_run:
                step_log.attempts = 1
                output = await simulate_action(step, config, context)
            else:
                output = await self._dispatch(step, config, context, step_log)
        except Exception as e:
            logger.error(
                f"Step {step.order} ({step.type.value}) failed for execution={execution_id}: {e}"
            )
            await self._repository.fail_step_log(step_log.id, str(e), step_log.attempts)
            raise StepFailedError(step.id, str(e), cause=e) from e

        await self._repository.complete_step_log(step_log.id, output, step_log.attempts)
        logger.debug(
            f"Step {step.order} ({step.type.value}) completed for execution={execution_id}"
        )
        return output

    async def _dispatch(
        self,
        step: Step,
        config: StepConfig,
        context: Mapping[str, Any],
        step_log: StepLog,
    ) -> Dict[str, Any]:
        while True:
            step_log.attempts += 1
            try:
                return await self._handlers.dispatch(step.type, config, context)
            except TransientCollaboratorError as e:
                if step_log.attempts >= self._retry.max_attempts:
                    raise
                delay = await schedule_retry(
                    step_log.attempts,
                    base=self._retry.backoff_base,
                    jitter=self._retry.backoff_jitter,
                    sleep=self._sleep,
                )
                logger.warning(
                    f"Transient failure on step {step.order} ({step.type.value}), "
                    f"attempt {step_log.attempts}/{self._retry.max_attempts}: {e}; "
                    f"retried after {delay:.1f}s"
                )

    async def _suspend(self, execution_id: str, step: Step, seconds: float) -> None:
        if seconds <= 0:
            return
        logger.info(
            f"Step {step.order} of execution={execution_id} waiting {seconds:.0f}s"
        )
        remaining = seconds
        while remaining > 0:
            chunk = (
                min(remaining, self._heartbeat_interval)
                if self._heartbeat_interval > 0
                else remaining
            )
            await self._sleep(chunk)
            remaining -= chunk
            await self._repository.touch_execution(execution_id)
