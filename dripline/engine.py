"""Automation engine wiring and the module-level trigger helper."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Mapping, Optional, Union

from .actions import ActionHandlers
from .collaborators import (
    EmailSender,
    EnrollmentStore,
    SubscriberStore,
    get_collaborators,
)
from .config import DriplineConfig, load_config
from .coordinator import ExecutionCoordinator, TestRunResult
from .contracts import TriggerType
from .dispatch import TriggerDispatcher
from .execute import StepRunner
from .persistence import WorkflowAnalytics, WorkflowRepository, get_repository
from .utils.retry import Sleep

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Owns the repository, collaborators and in-flight executions."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        email_sender: Optional[EmailSender] = None,
        subscribers: Optional[SubscriberStore] = None,
        enrollments: Optional[EnrollmentStore] = None,
        config: Optional[DriplineConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.repository = repository or get_repository(config=config)
        self.config = config or load_config()
        if email_sender is None or subscribers is None or enrollments is None:
            defaults = get_collaborators(self.config)
            email_sender = email_sender or defaults.email_sender
            subscribers = subscribers or defaults.subscribers
            enrollments = enrollments or defaults.enrollments
        self.email_sender = email_sender
        self.subscribers = subscribers
        self.enrollments = enrollments

        handlers = ActionHandlers(email_sender, subscribers, enrollments)
        self.step_runner = StepRunner(
            self.repository,
            handlers,
            retry=self.config.engine.retry,
            heartbeat_interval=self.config.engine.heartbeat_interval,
            sleep=sleep,
        )
        self.coordinator = ExecutionCoordinator(self.repository, self.step_runner)
        self.dispatcher = TriggerDispatcher(self.repository, self.coordinator)

    async def trigger_workflows(
        self,
        trigger_type: Union[TriggerType, str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Start executions for every workflow matching the event. Never raises."""
        await self.dispatcher.trigger_workflows(trigger_type, payload)

    async def start_execution(self, workflow_id: str, payload: Mapping[str, Any]) -> str:
        return await self.coordinator.start_execution(workflow_id, payload)

    async def test_execution(
        self, workflow_id: str, test_data: Optional[Mapping[str, Any]] = None
    ) -> TestRunResult:
        return await self.coordinator.test_execution(workflow_id, test_data)

    async def get_analytics(self, workflow_id: str) -> WorkflowAnalytics | None:
        return await self.repository.get_workflow_analytics(workflow_id)

    async def reconcile(self, stale_after: Optional[float] = None) -> List[str]:
        """Fail executions abandoned by a previous process."""
        return await self.coordinator.reconcile(
            self.config.engine.stale_after if stale_after is None else stale_after
        )

    async def drain(self) -> None:
        """Wait for all in-flight executions to finish."""
        await self.coordinator.drain()

    async def shutdown(self) -> None:
        """Cancel in-flight executions and release collaborator resources.

        Cancelled executions stay RUNNING so ``reconcile`` can find them.
        """
        if self.coordinator.in_flight:
            logger.info(
                f"Shutting down with {self.coordinator.in_flight} execution(s) in flight"
            )
        await self.coordinator.cancel_all()
        await self.email_sender.close()


_engine_instance: AutomationEngine | None = None


def get_engine() -> AutomationEngine:
    """Return the process-wide engine, creating it from configuration."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = AutomationEngine()
    return _engine_instance


def set_engine(engine: Optional[AutomationEngine]) -> None:
    """Install ``engine`` as the process-wide engine (``None`` resets it)."""
    global _engine_instance
    _engine_instance = engine


async def trigger_workflow(
    trigger_type: Union[TriggerType, str], data: Optional[Mapping[str, Any]] = None
) -> None:
    """Raise a business event from anywhere in the host application."""
    try:
        engine = get_engine()
    except Exception:
        logger.exception("Automation engine unavailable; event dropped")
        return
    await engine.trigger_workflows(trigger_type, data)
