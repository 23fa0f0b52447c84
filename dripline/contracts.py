"""Workflow definition contracts for the dripline automation engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import SECONDS_PER_UNIT
from .exceptions import StepConfigurationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    """Business events that can start a workflow."""

    NEW_SUBSCRIBER = "NEW_SUBSCRIBER"
    NEW_COURSE_ENROLLMENT = "NEW_COURSE_ENROLLMENT"
    LESSON_COMPLETED = "LESSON_COMPLETED"
    COURSE_COMPLETED = "COURSE_COMPLETED"
    FORM_SUBMITTED = "FORM_SUBMITTED"
    PRODUCT_PURCHASED = "PRODUCT_PURCHASED"
    PAGE_VIEWED = "PAGE_VIEWED"
    BLOCK_CLICKED = "BLOCK_CLICKED"
    TAG_ADDED = "TAG_ADDED"
    TAG_REMOVED = "TAG_REMOVED"
    SCHEDULE = "SCHEDULE"
    WEBHOOK = "WEBHOOK"
    MANUAL = "MANUAL"


class WorkflowStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class StepType(str, Enum):
    SEND_EMAIL = "SEND_EMAIL"
    ADD_TAG = "ADD_TAG"
    REMOVE_TAG = "REMOVE_TAG"
    ENROLL_IN_COURSE = "ENROLL_IN_COURSE"
    WAIT = "WAIT"
    DELAY = "DELAY"
    CONDITION = "CONDITION"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StepLogStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ----------------------------------------------------------------------
# Typed step configurations, keyed by ``StepType``


class _StepConfigBase(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SendEmailConfig(_StepConfigBase):
    subject: str
    body: str
    to: Optional[str] = None


class TagConfig(_StepConfigBase):
    tag: str = Field(min_length=1)


class EnrollInCourseConfig(_StepConfigBase):
    course_id: str = Field(alias="courseId", min_length=1)


class WaitConfig(_StepConfigBase):
    pass


class ConditionConfig(_StepConfigBase):
    condition: str = ""
    halt_on_false: bool = False

    @field_validator("condition", mode="before")
    @classmethod
    def _malformed_as_empty(cls, value: Any) -> Any:
        # a malformed expression evaluates to false at run time
        return value if isinstance(value, str) else ""


StepConfig = Union[
    SendEmailConfig, TagConfig, EnrollInCourseConfig, WaitConfig, ConditionConfig
]

STEP_CONFIG_MODELS: Dict[StepType, Type[_StepConfigBase]] = {
    StepType.SEND_EMAIL: SendEmailConfig,
    StepType.ADD_TAG: TagConfig,
    StepType.REMOVE_TAG: TagConfig,
    StepType.ENROLL_IN_COURSE: EnrollInCourseConfig,
    StepType.WAIT: WaitConfig,
    StepType.DELAY: WaitConfig,
    StepType.CONDITION: ConditionConfig,
}


def parse_step_config(step_type: StepType, config: Optional[dict]) -> StepConfig:
    """Validate a raw config mapping against the model for ``step_type``."""
    model = STEP_CONFIG_MODELS.get(step_type)
    if model is None:
        raise StepConfigurationError(f"Unsupported step type: {step_type}")
    try:
        return model.model_validate(config or {})
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) for err in e.errors()
        )
        raise StepConfigurationError(
            f"Invalid {step_type.value} configuration: missing or invalid {fields}"
        ) from e


# ----------------------------------------------------------------------
# Workflow definition


class Step(BaseModel):
    """One action within a workflow."""

    id: str = Field(default_factory=new_id)
    type: StepType
    order: int
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    delay_amount: Optional[float] = None
    delay_unit: Optional[str] = None

    @property
    def has_delay(self) -> bool:
        return bool(self.delay_amount and self.delay_unit)

    def typed_config(self) -> StepConfig:
        return parse_step_config(self.type, self.config)


class Trigger(BaseModel):
    """Event subscription attached to a workflow."""

    trigger_type: TriggerType
    filters: Optional[Dict[str, Any]] = None


class Workflow(BaseModel):
    """A user-owned automation definition."""

    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    enabled: bool = True
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    trigger: Trigger
    steps: List[Step] = Field(default_factory=list)
    total_runs: int = 0
    successful_runs: int = 0
    last_run_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("steps")
    @classmethod
    def _order_steps(cls, steps: List[Step]) -> List[Step]:
        orders = [s.order for s in steps]
        if len(orders) != len(set(orders)):
            raise ValueError("step order values must be unique within a workflow")
        return sorted(steps, key=lambda s: s.order)

    @property
    def is_runnable(self) -> bool:
        return self.enabled and self.status == WorkflowStatus.ACTIVE


def validate_workflow(workflow: Workflow) -> None:
    """Authoring-time validation of a workflow definition.

    Raises:
        StepConfigurationError: listing every problem found.
    """
    problems: List[str] = []
    orders = [s.order for s in workflow.steps]
    if orders and orders != list(range(orders[0], orders[0] + len(orders))):
        problems.append(f"step order is not contiguous: {orders}")
    for step in workflow.steps:
        try:
            step.typed_config()
        except StepConfigurationError as e:
            problems.append(f"step {step.order}: {e}")
        if step.type == StepType.CONDITION and not isinstance(
            step.config.get("condition", ""), str
        ):
            problems.append(f"step {step.order}: condition must be a string")
        if step.delay_unit and step.delay_unit not in SECONDS_PER_UNIT:
            problems.append(f"step {step.order}: unknown delay unit {step.delay_unit}")
        if step.type in (StepType.WAIT, StepType.DELAY) and not step.has_delay:
            problems.append(f"step {step.order}: wait step without a delay")
    if problems:
        raise StepConfigurationError("; ".join(problems))
