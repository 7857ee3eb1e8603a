"""ORM models for workflow rules, instances and step executions."""

from approval_kernel.models.workflow import (
    StepExecutionModel,
    WorkflowInstanceModel,
    WorkflowRuleModel,
    WorkflowStepModel,
)

__all__ = [
    "WorkflowRuleModel",
    "WorkflowStepModel",
    "WorkflowInstanceModel",
    "StepExecutionModel",
]
