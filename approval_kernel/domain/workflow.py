"""
Workflow domain types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the approval workflow engine.  Defines the
instance and step lifecycle state machines, rule and step definitions,
approver-resolution results, and the collaborator protocols the state
machine depends on (org directory, approver resolver, condition
evaluator).

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``models/``, or outer layers.

Invariants enforced
-------------------
* Instance lifecycle -- ``WORKFLOW_TRANSITIONS`` defines the only valid
  instance status transitions; ``WorkflowStore.transition_instance``
  refuses any other target.  Terminal states have no outgoing edges.
* Step lifecycle -- ``STEP_TRANSITIONS``: a step execution leaves PENDING
  exactly once and never returns; ``WorkflowStore.transition_step``
  refuses any other target.
* Rule shape -- ``RuleDefinition.validate()``: steps are contiguous,
  1-indexed, with no gaps; an active rule has at least one step.
* Strategy parameters -- ``StepDefinition.validate()``: role-based
  strategies carry ``role_id``, ``SPECIFIC_EMPLOYEE`` carries
  ``employee_id``, every other strategy carries neither.
* Rule snapshot -- ``RuleDefinition.snapshot()`` / ``fingerprint()``
  produce the frozen copy and SHA-256 hash pinned to each instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol, Sequence
from uuid import UUID

from approval_kernel.utils.hashing import hash_payload

# Role code the HR_ADMIN strategy resolves against.
HR_ADMIN_ROLE = "HR_ADMIN"


# =========================================================================
# Approver Resolution Strategies
# =========================================================================


class ApproverStrategy(str, Enum):
    """How the approver of a step is found when the step is entered."""

    DIRECT_MANAGER = "direct_manager"
    DEPARTMENT_HEAD = "department_head"
    ROLE_HOLDER = "role_holder"
    SPECIFIC_EMPLOYEE = "specific_employee"
    SPECIFIC_ROLE = "specific_role"
    HR_ADMIN = "hr_admin"


STRATEGIES_REQUIRING_ROLE: frozenset[ApproverStrategy] = frozenset({
    ApproverStrategy.ROLE_HOLDER,
    ApproverStrategy.SPECIFIC_ROLE,
})

STRATEGIES_REQUIRING_EMPLOYEE: frozenset[ApproverStrategy] = frozenset({
    ApproverStrategy.SPECIFIC_EMPLOYEE,
})


# =========================================================================
# Lifecycle State Machines
# =========================================================================


class WorkflowStatus(str, Enum):
    """Workflow instance lifecycle states."""

    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.IN_PROGRESS: frozenset({
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.APPROVED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}

TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Step execution lifecycle states.

    CANCELLED marks the pending step of an instance that was cancelled,
    so no PENDING row outlives its instance.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    AUTO_APPROVED = "auto_approved"
    CANCELLED = "cancelled"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({
        StepStatus.APPROVED,
        StepStatus.REJECTED,
        StepStatus.AUTO_APPROVED,
        StepStatus.CANCELLED,
    }),
    StepStatus.APPROVED: frozenset(),
    StepStatus.REJECTED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.AUTO_APPROVED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
}

TERMINAL_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.REJECTED,
    StepStatus.SKIPPED,
    StepStatus.AUTO_APPROVED,
    StepStatus.CANCELLED,
})

# Step outcomes that let the instance move on to the next step.
ADVANCING_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.SKIPPED,
    StepStatus.AUTO_APPROVED,
})


class Decision(str, Enum):
    """Decisions a human approver can record."""

    APPROVE = "approve"
    REJECT = "reject"


# =========================================================================
# Rule and Step Definitions
# =========================================================================


@dataclass(frozen=True)
class StepDefinition:
    """One step of a workflow rule."""

    step_order: int
    strategy: ApproverStrategy
    role_id: str | None = None
    employee_id: str | None = None
    auto_advance_after: timedelta | None = None
    can_skip: bool = False

    def validate(self) -> list[str]:
        """Return the list of parameter violations (empty when valid)."""
        errors: list[str] = []
        label = f"step {self.step_order} ({self.strategy.value})"

        if self.strategy in STRATEGIES_REQUIRING_ROLE:
            if not self.role_id:
                errors.append(f"{label} requires role_id")
        elif self.role_id is not None:
            errors.append(f"{label} must not carry role_id")

        if self.strategy in STRATEGIES_REQUIRING_EMPLOYEE:
            if not self.employee_id:
                errors.append(f"{label} requires employee_id")
        elif self.employee_id is not None:
            errors.append(f"{label} must not carry employee_id")

        if self.auto_advance_after is not None and self.auto_advance_after <= timedelta(0):
            errors.append(f"{label} auto-advance timeout must be positive")

        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_order": self.step_order,
            "strategy": self.strategy.value,
            "role_id": self.role_id,
            "employee_id": self.employee_id,
            "auto_advance_seconds": (
                int(self.auto_advance_after.total_seconds())
                if self.auto_advance_after is not None
                else None
            ),
            "can_skip": self.can_skip,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepDefinition:
        seconds = data.get("auto_advance_seconds")
        return cls(
            step_order=int(data["step_order"]),
            strategy=ApproverStrategy(data["strategy"]),
            role_id=data.get("role_id"),
            employee_id=data.get("employee_id"),
            auto_advance_after=timedelta(seconds=seconds) if seconds is not None else None,
            can_skip=bool(data.get("can_skip", False)),
        )


@dataclass(frozen=True)
class RuleDefinition:
    """A tenant's approval rule for one process type.

    ``conditions`` are expressions over ``entity`` that must all hold for
    the rule to apply; an empty tuple means the rule always applies.
    """

    tenant_id: str
    process_type: str
    name: str
    steps: tuple[StepDefinition, ...]
    conditions: tuple[str, ...] = ()
    is_active: bool = True
    version: int = 1
    rule_id: UUID | None = None

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, step_order: int) -> StepDefinition:
        """Return the step with the given 1-based order."""
        for step in self.steps:
            if step.step_order == step_order:
                return step
        raise KeyError(step_order)

    def validate(self) -> list[str]:
        """Return the list of structural violations (empty when valid)."""
        errors: list[str] = []
        if not self.process_type:
            errors.append("process_type is required")
        if not self.name:
            errors.append("name is required")
        if self.is_active and not self.steps:
            errors.append("an active rule needs at least one step")

        orders = [s.step_order for s in self.steps]
        if orders != list(range(1, len(orders) + 1)):
            errors.append(
                f"steps must be contiguous and 1-indexed, got {orders}"
            )

        for step in self.steps:
            errors.extend(step.validate())
        return errors

    def snapshot(self) -> dict[str, Any]:
        """Frozen copy of everything an instance needs to run to completion."""
        return {
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "process_type": self.process_type,
            "name": self.name,
            "version": self.version,
            "conditions": list(self.conditions),
            "steps": [s.to_dict() for s in self.steps],
        }

    def fingerprint(self) -> str:
        """SHA-256 of the snapshot, stored with every instance."""
        return hash_payload(self.snapshot())

    @classmethod
    def from_snapshot(cls, tenant_id: str, snapshot: dict[str, Any]) -> RuleDefinition:
        rule_id = snapshot.get("rule_id")
        return cls(
            tenant_id=tenant_id,
            process_type=snapshot["process_type"],
            name=snapshot["name"],
            steps=tuple(
                sorted(
                    (StepDefinition.from_dict(s) for s in snapshot["steps"]),
                    key=lambda s: s.step_order,
                )
            ),
            conditions=tuple(snapshot.get("conditions") or ()),
            version=int(snapshot.get("version", 1)),
            rule_id=UUID(rule_id) if rule_id else None,
        )


# =========================================================================
# Instance and Step Execution Records
# =========================================================================


@dataclass(frozen=True)
class EntityRef:
    """The business entity an instance approves (leave request, batch...)."""

    entity_type: str
    entity_id: str


@dataclass(frozen=True)
class StepExecution:
    """Immutable snapshot of one entered step."""

    execution_id: UUID
    instance_id: UUID
    step_order: int
    strategy: ApproverStrategy
    status: StepStatus
    approver_id: str | None
    created_at: datetime
    due_at: datetime | None = None
    decided_at: datetime | None = None
    decided_by: str | None = None
    comment: str | None = None
    via_override: bool = False
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


@dataclass(frozen=True)
class WorkflowInstance:
    """Immutable snapshot of a workflow instance and its entered steps."""

    instance_id: UUID
    tenant_id: str
    process_type: str
    entity: EntityRef
    subject_employee_id: str
    requested_by: str
    rule_id: UUID | None
    rule_version: int
    rule_hash: str
    total_steps: int
    current_step_order: int
    status: WorkflowStatus
    version: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    archived_at: datetime | None = None
    context: dict[str, Any] = field(default_factory=dict)
    steps: tuple[StepExecution, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def pending_step(self) -> StepExecution | None:
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                return step
        return None


# =========================================================================
# Approver Resolution Results
# =========================================================================


@dataclass(frozen=True)
class ResolvedApprover:
    """A step's approver was found."""

    approver_id: str

    @property
    def resolved(self) -> bool:
        return True


@dataclass(frozen=True)
class Unresolved:
    """Nobody qualifies as approver for a step.

    ``data_quality`` is set when the org data itself is broken (a manager
    cycle); such steps are never skipped, even when the step allows it.
    """

    reason: str
    data_quality: bool = False

    @property
    def resolved(self) -> bool:
        return False


Resolution = ResolvedApprover | Unresolved


# =========================================================================
# Collaborator Protocols
# =========================================================================


class OrgDirectory(Protocol):
    """Read-only view of employees, departments and roles.

    Implementations raise ``DirectoryUnavailableError`` (or a transient
    ``TimeoutError``/``ConnectionError``) when a lookup cannot be answered;
    ``None`` and ``[]`` mean the lookup succeeded and found nothing.
    """

    def manager_of(self, employee_id: str) -> str | None:
        ...

    def department_of(self, employee_id: str) -> str | None:
        ...

    def department_head_of(self, department_id: str) -> str | None:
        ...

    def role_holders(self, tenant_id: str, role_id: str) -> Sequence[str]:
        ...

    def employee_active(self, employee_id: str) -> bool:
        ...

    def employee_tenant(self, employee_id: str) -> str | None:
        ...


class ApproverResolver(Protocol):
    """Maps (step definition, subject employee) to an approver."""

    def resolve(
        self,
        step: StepDefinition,
        subject_employee_id: str,
        tenant_id: str,
    ) -> Resolution:
        ...


class ConditionEvaluator(Protocol):
    """Checks a rule's conditions against an instance context."""

    def validate(self, conditions: Sequence[str]) -> list[str]:
        """Return errors for expressions that are not allowed."""
        ...

    def failed_conditions(
        self,
        conditions: Sequence[str],
        context: dict[str, Any],
    ) -> list[str]:
        """Return the conditions that do not hold (empty when all pass)."""
        ...


class OverridePolicy(Protocol):
    """Decides whether an actor may act on steps assigned to someone else."""

    def has_override(self, tenant_id: str, actor_id: str) -> bool:
        ...
