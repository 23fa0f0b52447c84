"""Action handlers: the side effect behind each step type."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping

from .collaborators import EmailSender, EnrollmentStore, SubscriberStore
from .conditions import evaluate_expression
from .constants import ENROLLMENT_SOURCE
from .contracts import (
    ConditionConfig,
    EnrollInCourseConfig,
    SendEmailConfig,
    Step,
    StepConfig,
    StepType,
    TagConfig,
)
from .exceptions import StepConfigurationError

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Mapping[str, Any]], Awaitable[Dict[str, Any]]]


def _require_email(context: Mapping[str, Any], what: str) -> str:
    email = context.get("email")
    if not email:
        raise StepConfigurationError(f"Email and {what} required")
    return str(email)


class ActionHandlers:
    """Maps step types to handlers bound to their collaborators."""

    def __init__(
        self,
        email_sender: EmailSender,
        subscribers: SubscriberStore,
        enrollments: EnrollmentStore,
    ) -> None:
        self._email_sender = email_sender
        self._subscribers = subscribers
        self._enrollments = enrollments
        self._handlers: Dict[StepType, Handler] = {
            StepType.SEND_EMAIL: self.send_email,
            StepType.ADD_TAG: self.add_tag,
            StepType.REMOVE_TAG: self.remove_tag,
            StepType.ENROLL_IN_COURSE: self.enroll_in_course,
            StepType.WAIT: self.wait,
            StepType.DELAY: self.wait,
            StepType.CONDITION: self.condition,
        }

    async def dispatch(
        self, step_type: StepType, config: StepConfig, context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        handler = self._handlers.get(step_type)
        if handler is None:
            raise StepConfigurationError(f"No handler for step type {step_type}")
        return await handler(config, context)

    # ------------------------------------------------------------------
    async def send_email(
        self, config: SendEmailConfig, context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        recipient = config.to or context.get("email")
        if not recipient:
            raise StepConfigurationError("No email recipient found")
        recipient = str(recipient)
        await self._email_sender.send_email(recipient, config.subject, config.body)
        return {"sent": True, "to": recipient, "subject": config.subject}

    async def add_tag(
        self, config: TagConfig, context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        email = _require_email(context, "tag")
        await self._subscribers.add_tag(email, config.tag)
        return {"email": email, "tagAdded": config.tag}

    async def remove_tag(
        self, config: TagConfig, context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        email = _require_email(context, "tag")
        await self._subscribers.remove_tag(email, config.tag)
        return {"email": email, "tagRemoved": config.tag}

    async def enroll_in_course(
        self, config: EnrollInCourseConfig, context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        email = _require_email(context, "courseId")
        enrollment = await self._enrollments.upsert_enrollment(
            config.course_id, email, name=context.get("name"), source=ENROLLMENT_SOURCE
        )
        return {"email": email, "courseId": config.course_id, "enrollmentId": enrollment.id}

    async def wait(self, config: Any, context: Mapping[str, Any]) -> Dict[str, Any]:
        return {"delayed": True}

    async def condition(
        self, config: ConditionConfig, context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        result = evaluate_expression(config.condition, context)
        return {"conditionMet": result, "condition": config.condition}


async def simulate_action(
    step: Step, config: StepConfig, context: Mapping[str, Any]
) -> Dict[str, Any]:
    """Describe what ``step`` would do without calling any collaborator."""
    output: Dict[str, Any] = {
        "test": True,
        "message": "Test execution - no real action taken",
        "stepType": step.type.value,
    }
    if isinstance(config, SendEmailConfig):
        output["emailDetails"] = {
            "to": config.to or context.get("email"),
            "subject": config.subject,
            "sent": False,
            "testMode": True,
        }
    elif isinstance(config, TagConfig):
        output["tags"] = {
            "action": "add" if step.type == StepType.ADD_TAG else "remove",
            "tag": config.tag,
            "applied": False,
            "testMode": True,
        }
    elif isinstance(config, EnrollInCourseConfig):
        output["enrollment"] = {
            "courseId": config.course_id,
            "email": context.get("email"),
            "enrolled": False,
            "testMode": True,
        }
    elif isinstance(config, ConditionConfig):
        result = evaluate_expression(config.condition, context)
        output["conditionMet"] = result
        output["condition"] = {
            "evaluated": True,
            "result": result,
            "expression": config.condition,
        }
    elif step.type in (StepType.WAIT, StepType.DELAY):
        output["delay"] = {
            "amount": step.delay_amount or 0,
            "unit": step.delay_unit or "MINUTES",
            "skipped": True,
            "reason": "Test mode skips delays",
        }
    return output
