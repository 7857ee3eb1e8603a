"""Kernel services: rule storage, workflow persistence and the state machine."""

from approval_kernel.services.rule_store import RuleCache, RuleStore
from approval_kernel.services.state_machine import (
    DEFAULT_SYSTEM_ACTOR,
    TransitionResult,
    WorkflowStateMachine,
)
from approval_kernel.services.workflow_store import WorkflowStore

__all__ = [
    "DEFAULT_SYSTEM_ACTOR",
    "RuleCache",
    "RuleStore",
    "TransitionResult",
    "WorkflowStateMachine",
    "WorkflowStore",
]
