"""Dripline: trigger-driven marketing automation workflows."""

from .contracts import (
    ExecutionStatus,
    Step,
    StepLogStatus,
    StepType,
    Trigger,
    TriggerType,
    Workflow,
    WorkflowStatus,
    validate_workflow,
)
from .coordinator import ExecutionCoordinator
from .dispatch import TriggerDispatcher
from .engine import AutomationEngine, get_engine, set_engine, trigger_workflow
from .execute import StepRunner
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "AutomationEngine",
    "ExecutionCoordinator",
    "ExecutionStatus",
    "Step",
    "StepLogStatus",
    "StepRunner",
    "StepType",
    "Trigger",
    "TriggerDispatcher",
    "TriggerType",
    "Workflow",
    "WorkflowStatus",
    "get_engine",
    "get_repository",
    "set_engine",
    "trigger_workflow",
    "validate_workflow",
]
