"""
Pure engines for the approval workflow: approver resolution and rule
condition evaluation.  No database access; the only collaborator is the
injected org directory.
"""

from approval_engines.conditions import (
    RestrictedConditionEvaluator,
    evaluate_condition,
    validate_condition,
)
from approval_engines.resolver import (
    DepartmentHeadStrategy,
    DirectManagerStrategy,
    HrAdminStrategy,
    OrgApproverResolver,
    ResolutionStrategy,
    RoleHolderStrategy,
    SpecificEmployeeStrategy,
    SpecificRoleStrategy,
    default_strategies,
)

__all__ = [
    "DepartmentHeadStrategy",
    "DirectManagerStrategy",
    "HrAdminStrategy",
    "OrgApproverResolver",
    "ResolutionStrategy",
    "RestrictedConditionEvaluator",
    "RoleHolderStrategy",
    "SpecificEmployeeStrategy",
    "SpecificRoleStrategy",
    "default_strategies",
    "evaluate_condition",
    "validate_condition",
]
