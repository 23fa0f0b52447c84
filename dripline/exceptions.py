"""Error types raised by the dripline automation engine."""

from __future__ import annotations

from typing import Optional


class DriplineError(Exception):
    """Base class for all engine errors."""


class WorkflowNotFoundError(DriplineError):
    """Raised when a workflow id does not resolve to a stored workflow."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class ExecutionNotFoundError(DriplineError):
    """Raised when an execution id does not resolve to a stored execution."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} not found")
        self.execution_id = execution_id


class InvalidTransitionError(DriplineError):
    """Raised when an execution is moved out of a terminal status."""


class TriggerFilterError(DriplineError):
    """Raised when a trigger filter cannot be evaluated."""


class StepConfigurationError(DriplineError):
    """A step is missing required configuration. Never retried."""


class CollaboratorError(DriplineError):
    """An external collaborator rejected the request. Never retried."""


class TransientCollaboratorError(CollaboratorError):
    """An external collaborator is temporarily unavailable. Retried with backoff."""


class StepFailedError(DriplineError):
    """A step failed and halted its execution."""

    def __init__(
        self, step_id: str, message: str, cause: Optional[BaseException] = None
    ) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.cause = cause
