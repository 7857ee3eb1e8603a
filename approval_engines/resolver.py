"""
approval_engines.resolver -- Approver resolution strategies.

Responsibility:
    Map (step definition, subject employee, tenant) to the employee who must
    approve the step, by evaluating the org structure at the moment the step
    is entered.  One strategy class per ``ApproverStrategy`` value; adding a
    strategy means adding a class and a registry entry.

Architecture position:
    Engines -- pure calculation layer.  The only I/O is through the
    injected ``OrgDirectory`` protocol.  May only import
    approval_kernel/domain/ types and approval_kernel.exceptions.

Invariants enforced:
    - Only active employees are ever returned.
    - The subject is never returned as their own approver.
    - Role-based strategies tie-break deterministically on the lowest
      employee id (string ordering) among eligible holders.  Callers that
      need load balancing must narrow role membership to one holder.
    - Manager-chain traversal is bounded by ``max_hierarchy_depth`` and
      rejects cycles explicitly.

Failure modes:
    - ``Unresolved`` when the lookup succeeded and nobody qualifies.
    - ``Unresolved(data_quality=True)`` when the manager chain loops or is
      deeper than allowed; such a step is never skipped.
    - ``DirectoryUnavailableError`` (and any other directory exception)
      propagates unchanged.  "Directory down" is never turned into
      "nobody exists".
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar

from approval_kernel.domain.workflow import (
    HR_ADMIN_ROLE,
    ApproverStrategy,
    OrgDirectory,
    Resolution,
    ResolvedApprover,
    StepDefinition,
    Unresolved,
)
from approval_kernel.exceptions import HierarchyCycleError
from approval_kernel.logging_config import get_logger

logger = get_logger("engines.resolver")

DEFAULT_MAX_HIERARCHY_DEPTH = 10


class ResolutionStrategy(ABC):
    """Finds the approver for one kind of step."""

    strategy: ClassVar[ApproverStrategy]

    @abstractmethod
    def resolve(
        self,
        step: StepDefinition,
        subject_employee_id: str,
        tenant_id: str,
        directory: OrgDirectory,
    ) -> Resolution:
        ...


class DirectManagerStrategy(ResolutionStrategy):
    """The subject's nearest active manager.

    Inactive managers are passed over and the chain is followed upward,
    so a vacancy does not stall every report of that manager.
    """

    strategy = ApproverStrategy.DIRECT_MANAGER

    def __init__(self, max_depth: int = DEFAULT_MAX_HIERARCHY_DEPTH):
        self.max_depth = max_depth

    def resolve(self, step, subject_employee_id, tenant_id, directory):
        chain = [subject_employee_id]
        visited = {subject_employee_id}
        current = subject_employee_id

        for _ in range(self.max_depth):
            manager = directory.manager_of(current)
            if manager is None:
                if current == subject_employee_id:
                    return Unresolved("subject has no manager")
                return Unresolved("no active manager in the reporting chain")
            if manager in visited:
                chain.append(manager)
                raise HierarchyCycleError(subject_employee_id, chain, self.max_depth)
            chain.append(manager)
            visited.add(manager)
            if directory.employee_active(manager):
                return ResolvedApprover(manager)
            current = manager

        raise HierarchyCycleError(subject_employee_id, chain, self.max_depth)


class DepartmentHeadStrategy(ResolutionStrategy):
    """The designated head of the subject's department."""

    strategy = ApproverStrategy.DEPARTMENT_HEAD

    def resolve(self, step, subject_employee_id, tenant_id, directory):
        department = directory.department_of(subject_employee_id)
        if department is None:
            return Unresolved("subject has no department")
        head = directory.department_head_of(department)
        if head is None:
            return Unresolved(f"department {department} has no head")
        if head == subject_employee_id:
            return Unresolved(f"subject is the head of department {department}")
        if not directory.employee_active(head):
            return Unresolved(f"head of department {department} is inactive")
        return ResolvedApprover(head)


class RoleHolderStrategy(ResolutionStrategy):
    """Lowest-id active holder of the step's role, other than the subject."""

    strategy = ApproverStrategy.ROLE_HOLDER

    def role_for(self, step: StepDefinition) -> str:
        return step.role_id

    def resolve(self, step, subject_employee_id, tenant_id, directory):
        role = self.role_for(step)
        holders = sorted(set(directory.role_holders(tenant_id, role)))
        for holder in holders:
            if holder == subject_employee_id:
                continue
            if directory.employee_active(holder):
                return ResolvedApprover(holder)
        if not holders:
            return Unresolved(f"role {role} has no holders")
        return Unresolved(f"role {role} has no active holder other than the subject")


class SpecificRoleStrategy(RoleHolderStrategy):
    strategy = ApproverStrategy.SPECIFIC_ROLE


class HrAdminStrategy(RoleHolderStrategy):
    strategy = ApproverStrategy.HR_ADMIN

    def role_for(self, step: StepDefinition) -> str:
        return HR_ADMIN_ROLE


class SpecificEmployeeStrategy(ResolutionStrategy):
    """A fixed employee named on the step."""

    strategy = ApproverStrategy.SPECIFIC_EMPLOYEE

    def resolve(self, step, subject_employee_id, tenant_id, directory):
        employee = step.employee_id
        if employee == subject_employee_id:
            return Unresolved("named approver is the subject")
        if not directory.employee_active(employee):
            return Unresolved(f"employee {employee} no longer exists or is inactive")
        return ResolvedApprover(employee)


def default_strategies(
    max_hierarchy_depth: int = DEFAULT_MAX_HIERARCHY_DEPTH,
) -> dict[ApproverStrategy, ResolutionStrategy]:
    strategies: list[ResolutionStrategy] = [
        DirectManagerStrategy(max_hierarchy_depth),
        DepartmentHeadStrategy(),
        RoleHolderStrategy(),
        SpecificRoleStrategy(),
        HrAdminStrategy(),
        SpecificEmployeeStrategy(),
    ]
    return {s.strategy: s for s in strategies}


class OrgApproverResolver:
    """``ApproverResolver`` dispatching to one strategy per step kind."""

    def __init__(
        self,
        directory: OrgDirectory,
        max_hierarchy_depth: int = DEFAULT_MAX_HIERARCHY_DEPTH,
        strategies: dict[ApproverStrategy, ResolutionStrategy] | None = None,
    ):
        self._directory = directory
        self._strategies = strategies or default_strategies(max_hierarchy_depth)

    def resolve(
        self,
        step: StepDefinition,
        subject_employee_id: str,
        tenant_id: str,
    ) -> Resolution:
        strategy = self._strategies[step.strategy]
        try:
            resolution = strategy.resolve(
                step, subject_employee_id, tenant_id, self._directory,
            )
        except HierarchyCycleError as exc:
            logger.warning(
                "hierarchy_cycle_detected",
                extra={
                    "tenant_id": tenant_id,
                    "subject_employee_id": subject_employee_id,
                    "chain": exc.chain,
                    "max_depth": exc.max_depth,
                },
            )
            return Unresolved(str(exc), data_quality=True)

        logger.debug(
            "approver_resolution",
            extra={
                "tenant_id": tenant_id,
                "step_order": step.step_order,
                "strategy": step.strategy.value,
                "resolved": resolution.resolved,
                "approver_id": getattr(resolution, "approver_id", None),
            },
        )
        return resolution
