"""
Module: approval_kernel.models.workflow
Responsibility: ORM persistence for workflow rules, their steps, workflow
    instances and step executions.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - One active rule per (tenant, process type): partial unique index on
      workflow_rules where the rule is active and not soft-deleted.
    - Steps are never re-entered: UNIQUE(instance_id, step_order) on
      step_executions.
    - One in-flight chain per entity: partial unique index on
      workflow_instances where status = 'in_progress'.
    - Valid status values: DB check constraints mirror the domain enums.
    - Instances and executions are never deleted (db/immutability.py).

Failure modes:
    - IntegrityError on a second active rule, a re-entered step, or a
      second in-progress instance for the same entity.  The services
      translate these into typed errors.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, TimestampedBase, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import (
        RuleDefinition,
        StepDefinition,
        StepExecution,
        WorkflowInstance,
    )


# =============================================================================
# Rules
# =============================================================================


class WorkflowRuleModel(TimestampedBase):
    """Tenant-configured approval rule for one process type.

    Contract:
        ``version`` increments on every edit; instances pin the version and
        a snapshot at creation.  Soft-deleted rules keep their rows so that
        historical instances can still be traced to them.
    """

    __tablename__ = "workflow_rules"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    process_type: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    conditions: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    steps: Mapped[list["WorkflowStepModel"]] = relationship(
        "WorkflowStepModel",
        back_populates="rule",
        order_by="WorkflowStepModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_workflow_rules_tenant_type", "tenant_id", "process_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowRule {self.id} {self.tenant_id}/{self.process_type} "
            f"v{self.version} active={self.is_active}>"
        )

    def to_dto(self) -> RuleDefinition:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import RuleDefinition

        return RuleDefinition(
            tenant_id=self.tenant_id,
            process_type=self.process_type,
            name=self.name,
            steps=tuple(s.to_dto() for s in sorted(self.steps, key=lambda s: s.step_order)),
            conditions=tuple(self.conditions or ()),
            is_active=self.is_active,
            version=self.version,
            rule_id=self.id,
        )

    def replace_steps(self, steps: tuple[StepDefinition, ...]) -> None:
        """Swap the whole step list (orphaned rows are deleted on flush)."""
        self.steps = [WorkflowStepModel.from_dto(s) for s in steps]
        self.total_steps = len(steps)


# Partial unique index: one live rule per tenant and process type.
Index(
    "uq_workflow_rules_active",
    WorkflowRuleModel.tenant_id,
    WorkflowRuleModel.process_type,
    unique=True,
    postgresql_where=text("is_active AND deleted_at IS NULL"),
    sqlite_where=text("is_active = 1 AND deleted_at IS NULL"),
)


class WorkflowStepModel(Base):
    """One ordered step of a rule."""

    __tablename__ = "workflow_steps"

    __table_args__ = (
        UniqueConstraint("rule_id", "step_order", name="uq_workflow_steps_order"),
        CheckConstraint("step_order >= 1", name="ck_workflow_steps_order_positive"),
        CheckConstraint(
            "strategy IN ('direct_manager', 'department_head', 'role_holder', "
            "'specific_employee', 'specific_role', 'hr_admin')",
            name="ck_workflow_steps_valid_strategy",
        ),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_rules.id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    role_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    employee_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    auto_advance_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    can_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    rule: Mapped["WorkflowRuleModel"] = relationship(
        "WorkflowRuleModel", back_populates="steps",
    )

    def to_dto(self) -> StepDefinition:
        from approval_kernel.domain.workflow import ApproverStrategy, StepDefinition

        return StepDefinition(
            step_order=self.step_order,
            strategy=ApproverStrategy(self.strategy),
            role_id=self.role_id,
            employee_id=self.employee_id,
            auto_advance_after=(
                timedelta(seconds=self.auto_advance_seconds)
                if self.auto_advance_seconds is not None
                else None
            ),
            can_skip=self.can_skip,
        )

    @classmethod
    def from_dto(cls, dto: StepDefinition) -> WorkflowStepModel:
        return cls(
            step_order=dto.step_order,
            strategy=dto.strategy.value,
            role_id=dto.role_id,
            employee_id=dto.employee_id,
            auto_advance_seconds=(
                int(dto.auto_advance_after.total_seconds())
                if dto.auto_advance_after is not None
                else None
            ),
            can_skip=dto.can_skip,
        )


# =============================================================================
# Instances
# =============================================================================


class WorkflowInstanceModel(TimestampedBase):
    """Persistent workflow instance.

    Contract:
        ``current_step_order`` is within [1, total_steps] while in progress
        and total_steps + 1 once approved.  ``version`` is the optimistic
        lock counter; every transition goes through the guarded UPDATE in
        services/workflow_store.py.
    """

    __tablename__ = "workflow_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'approved', 'rejected', 'cancelled')",
            name="ck_workflow_instances_valid_status",
        ),
        Index(
            "uq_workflow_instances_in_progress_entity",
            "tenant_id", "entity_type", "entity_id",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
        Index("ix_workflow_instances_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    process_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_employee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rule_version: Mapped[int] = mapped_column(Integer, nullable=False)
    rule_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    current_step_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    steps: Mapped[list["StepExecutionModel"]] = relationship(
        "StepExecutionModel",
        back_populates="instance",
        order_by="StepExecutionModel.step_order",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowInstance {self.id} {self.process_type} "
            f"{self.entity_type}/{self.entity_id} status={self.status} "
            f"step={self.current_step_order}/{self.total_steps}>"
        )

    def to_dto(self) -> WorkflowInstance:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import (
            EntityRef,
            WorkflowInstance,
            WorkflowStatus,
        )

        return WorkflowInstance(
            instance_id=self.id,
            tenant_id=self.tenant_id,
            process_type=self.process_type,
            entity=EntityRef(self.entity_type, self.entity_id),
            subject_employee_id=self.subject_employee_id,
            requested_by=self.requested_by,
            rule_id=self.rule_id,
            rule_version=self.rule_version,
            rule_hash=self.rule_hash,
            total_steps=self.total_steps,
            current_step_order=self.current_step_order,
            status=WorkflowStatus(self.status),
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            archived_at=self.archived_at,
            context=dict(self.context or {}),
            steps=tuple(s.to_dto() for s in sorted(self.steps, key=lambda s: s.step_order)),
        )

    def snapshot(self) -> dict[str, Any]:
        """Audit snapshot of the mutable instance fields."""
        return {
            "status": self.status,
            "current_step_order": self.current_step_order,
            "total_steps": self.total_steps,
            "version": self.version,
            "completed_at": self.completed_at,
            "archived_at": self.archived_at,
        }


class StepExecutionModel(Base):
    """One entered step of an instance.

    Contract:
        Leaves PENDING exactly once, through the guarded UPDATE in
        services/workflow_store.py.  ``due_at`` is set only when an approver
        was resolved and the step has an auto-advance timeout.
    """

    __tablename__ = "step_executions"

    __table_args__ = (
        UniqueConstraint("instance_id", "step_order", name="uq_step_executions_order"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'skipped', "
            "'auto_approved', 'cancelled')",
            name="ck_step_executions_valid_status",
        ),
        Index("ix_step_executions_due", "status", "due_at"),
        Index("ix_step_executions_approver", "approver_id", "status"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_instances.id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    approver_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    decided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    via_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    instance: Mapped["WorkflowInstanceModel"] = relationship(
        "WorkflowInstanceModel", back_populates="steps",
    )

    def __repr__(self) -> str:
        return (
            f"<StepExecution {self.instance_id}#{self.step_order} "
            f"status={self.status} approver={self.approver_id}>"
        )

    def to_dto(self) -> StepExecution:
        from approval_kernel.domain.workflow import (
            ApproverStrategy,
            StepExecution,
            StepStatus,
        )

        return StepExecution(
            execution_id=self.id,
            instance_id=self.instance_id,
            step_order=self.step_order,
            strategy=ApproverStrategy(self.strategy),
            status=StepStatus(self.status),
            approver_id=self.approver_id,
            created_at=self.created_at,
            due_at=self.due_at,
            decided_at=self.decided_at,
            decided_by=self.decided_by,
            comment=self.comment,
            via_override=self.via_override,
            version=self.version,
        )

    def snapshot(self) -> dict[str, Any]:
        """Audit snapshot of the mutable execution fields."""
        return {
            "step_order": self.step_order,
            "status": self.status,
            "approver_id": self.approver_id,
            "due_at": self.due_at,
            "decided_at": self.decided_at,
            "decided_by": self.decided_by,
            "comment": self.comment,
            "via_override": self.via_override,
            "version": self.version,
        }
