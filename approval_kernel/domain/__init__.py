"""Pure domain layer: value objects, lifecycle rules, events and protocols."""

from approval_kernel.domain.audit import AuditAction, AuditRecord, AuditSink
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.events import (
    ApproverUnresolved,
    DomainEvent,
    EventSink,
    StepAdvanced,
    WorkflowCancelled,
    WorkflowCompleted,
    WorkflowRejected,
)
from approval_kernel.domain.workflow import (
    ADVANCING_STEP_STATUSES,
    HR_ADMIN_ROLE,
    STEP_TRANSITIONS,
    TERMINAL_STEP_STATUSES,
    TERMINAL_WORKFLOW_STATUSES,
    WORKFLOW_TRANSITIONS,
    ApproverResolver,
    ApproverStrategy,
    ConditionEvaluator,
    Decision,
    EntityRef,
    OrgDirectory,
    OverridePolicy,
    Resolution,
    ResolvedApprover,
    RuleDefinition,
    StepDefinition,
    StepExecution,
    StepStatus,
    Unresolved,
    WorkflowInstance,
    WorkflowStatus,
)

__all__ = [
    "ADVANCING_STEP_STATUSES",
    "HR_ADMIN_ROLE",
    "STEP_TRANSITIONS",
    "TERMINAL_STEP_STATUSES",
    "TERMINAL_WORKFLOW_STATUSES",
    "WORKFLOW_TRANSITIONS",
    "ApproverResolver",
    "ApproverStrategy",
    "ApproverUnresolved",
    "AuditAction",
    "AuditRecord",
    "AuditSink",
    "Clock",
    "ConditionEvaluator",
    "Decision",
    "DeterministicClock",
    "DomainEvent",
    "EntityRef",
    "EventSink",
    "OrgDirectory",
    "OverridePolicy",
    "Resolution",
    "ResolvedApprover",
    "RuleDefinition",
    "StepAdvanced",
    "StepDefinition",
    "StepExecution",
    "StepStatus",
    "SystemClock",
    "Unresolved",
    "WorkflowCancelled",
    "WorkflowCompleted",
    "WorkflowInstance",
    "WorkflowRejected",
    "WorkflowStatus",
]
