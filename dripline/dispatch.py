"""Trigger dispatcher: turns business events into workflow executions."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Union

from .conditions import matches_trigger_filters
from .contracts import TriggerType, Workflow
from .coordinator import ExecutionCoordinator
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class TriggerDispatcher:
    """Matches events against stored workflows and starts executions.

    Failures are logged per workflow and never reach the caller, so the
    action that raised the event is not coupled to automation availability.
    """

    def __init__(
        self, repository: WorkflowRepository, coordinator: ExecutionCoordinator
    ) -> None:
        self._repository = repository
        self._coordinator = coordinator

    async def matching_workflows(
        self, trigger_type: TriggerType, payload: Mapping[str, Any]
    ) -> List[Workflow]:
        """Return runnable workflows for ``trigger_type`` whose filters match.

        A workflow whose filter cannot be evaluated is logged and skipped.
        """
        matched: List[Workflow] = []
        for workflow in await self._repository.find_workflows_for_trigger(trigger_type):
            if not workflow.is_runnable or workflow.trigger.trigger_type != trigger_type:
                continue
            try:
                if matches_trigger_filters(workflow.trigger.filters, payload):
                    matched.append(workflow)
            except Exception as e:
                logger.error(
                    f"Skipping workflow={workflow.id}: filter evaluation failed: {e}"
                )
        return matched

    async def trigger_workflows(
        self,
        trigger_type: Union[TriggerType, str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Start one execution per matching workflow. Never raises."""
        payload = payload or {}
        try:
            trigger = TriggerType(trigger_type)
        except ValueError:
            logger.warning(f"Ignoring unknown trigger type {trigger_type!r}")
            return

        try:
            workflows = await self.matching_workflows(trigger, payload)
        except Exception:
            logger.exception(f"Error looking up workflows for {trigger.value}")
            return

        for workflow in workflows:
            try:
                await self._coordinator.start_execution(
                    workflow.id, payload, trigger_type=trigger.value
                )
            except Exception:
                logger.exception(
                    f"Error starting workflow={workflow.id} for {trigger.value}"
                )
        logger.debug(f"{trigger.value}: started {len(workflows)} workflow(s)")
