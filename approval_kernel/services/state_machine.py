"""
approval_kernel.services.state_machine -- Workflow instance state machine.

Responsibility:
    Create workflow instances from a rule, enter steps (resolving each
    step's approver when it is reached), and apply decisions, timeouts,
    cancellations and reassignments.  Collects the domain events and audit
    records each transition produces.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    Approver resolution and condition evaluation are injected through the
    ``ApproverResolver`` and ``ConditionEvaluator`` protocols; persistence
    and the compare-and-swap live in ``WorkflowStore``.

    IN_PROGRESS(step k) --approve/auto--> IN_PROGRESS(step k+1) | APPROVED
    IN_PROGRESS(step k) --reject------->  REJECTED
    IN_PROGRESS(step k) --cancel------->  CANCELLED

Invariants enforced:
    - The rule is snapshotted (steps, version, SHA-256 hash) at creation;
      every later step resolves against the snapshot, never the live rule.
    - Exactly one PENDING step execution exists while the instance is in
      progress; every earlier execution is terminal.
    - Steps 1..N are entered in order, each at most once.
    - A skippable step whose approver lookup succeeded but found nobody is
      recorded SKIPPED and the instance moves on synchronously.
    - A non-skippable unresolved step stays PENDING with no approver and no
      due time.  The instance waits for an administrator to reassign it.
    - A failed directory lookup never skips or advances anything: the
      exception propagates and the caller's transaction rolls back.

Failure modes:
    - ConditionsNotMetError: the entity does not qualify for the rule.
    - DuplicateWorkflowError: the entity already has an instance in flight.
    - StaleStepError / StepAlreadyDecidedError / StepNotDueError: lost or
      premature compare-and-swap (see WorkflowStore).
    - WorkflowNotInProgressError: the instance is already terminal.
    - WorkflowNotTerminalError: archiving an instance still in flight.
    - UnauthorizedError: actor is neither the approver nor an override holder.
    - DirectoryUnavailableError: propagated from approver resolution.

Audit relevance:
    Every step decision and terminal transition is handed to the AuditSink
    with before/after snapshots, inside the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from approval_kernel.domain.audit import AuditAction, AuditRecord, AuditSink
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.events import (
    ApproverUnresolved,
    DomainEvent,
    StepAdvanced,
    WorkflowCancelled,
    WorkflowCompleted,
    WorkflowRejected,
)
from approval_kernel.domain.workflow import (
    ADVANCING_STEP_STATUSES,
    TERMINAL_STEP_STATUSES,
    ApproverResolver,
    ConditionEvaluator,
    Decision,
    EntityRef,
    OverridePolicy,
    RuleDefinition,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from approval_kernel.exceptions import (
    ConditionsNotMetError,
    StaleStepError,
    StepAlreadyDecidedError,
    StepNotDueError,
    UnauthorizedError,
    UnresolvedApproverError,
    WorkflowNotInProgressError,
    WorkflowNotTerminalError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.workflow import StepExecutionModel, WorkflowInstanceModel
from approval_kernel.services.workflow_store import WorkflowStore

logger = get_logger("services.state_machine")

DEFAULT_SYSTEM_ACTOR = "system"

_STEP_AUDIT_ACTIONS: dict[StepStatus, AuditAction] = {
    StepStatus.APPROVED: AuditAction.STEP_APPROVED,
    StepStatus.REJECTED: AuditAction.STEP_REJECTED,
    StepStatus.AUTO_APPROVED: AuditAction.STEP_AUTO_APPROVED,
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one state machine operation.

    ``unresolved`` is set when the instance now waits on a step nobody can
    approve; the instance itself was persisted.
    """

    instance: WorkflowInstance
    events: tuple[DomainEvent, ...] = ()
    unresolved: UnresolvedApproverError | None = None


class _NullAuditSink:
    def record(self, entry: AuditRecord) -> None:
        return None


class WorkflowStateMachine:
    """Applies workflow transitions inside the caller's session.

    Flushes but never commits.  One machine per session/transaction.
    """

    def __init__(
        self,
        session: Session,
        resolver: ApproverResolver,
        conditions: ConditionEvaluator,
        clock: Clock | None = None,
        *,
        overrides: OverridePolicy | None = None,
        audit: AuditSink | None = None,
        system_actor_id: str = DEFAULT_SYSTEM_ACTOR,
    ):
        self._session = session
        self._store = WorkflowStore(session)
        self._resolver = resolver
        self._conditions = conditions
        self._clock = clock or SystemClock()
        self._overrides = overrides
        self._audit = audit or _NullAuditSink()
        self._system_actor_id = system_actor_id

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        rule: RuleDefinition,
        entity: EntityRef,
        subject_employee_id: str,
        requested_by: str,
        context: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Start an approval chain for an entity and enter its first step."""
        context = dict(context or {})
        failed = self._conditions.failed_conditions(rule.conditions, context)
        if failed:
            logger.info(
                "workflow_conditions_not_met",
                extra={
                    "tenant_id": rule.tenant_id,
                    "process_type": rule.process_type,
                    "entity_type": entity.entity_type,
                    "entity_id": entity.entity_id,
                    "failed_conditions": failed,
                },
            )
            raise ConditionsNotMetError(rule.process_type, failed)

        now = self._clock.now()
        instance = WorkflowInstanceModel(
            id=uuid4(),
            tenant_id=rule.tenant_id,
            process_type=rule.process_type,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            subject_employee_id=subject_employee_id,
            requested_by=requested_by,
            rule_id=rule.rule_id,
            rule_version=rule.version,
            rule_hash=rule.fingerprint(),
            rule_snapshot=rule.snapshot(),
            context=context,
            total_steps=rule.total_steps,
            current_step_order=1,
            status=WorkflowStatus.IN_PROGRESS.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self._store.add_instance(instance)

        with LogContext.bind(tenant_id=rule.tenant_id, instance_id=instance.id):
            self._audit.record(
                AuditRecord(
                    action=AuditAction.WORKFLOW_CREATED,
                    tenant_id=rule.tenant_id,
                    entity_type="WorkflowInstance",
                    entity_id=str(instance.id),
                    actor_id=requested_by,
                    occurred_at=now,
                    after={
                        **instance.snapshot(),
                        "entity_type": entity.entity_type,
                        "entity_id": entity.entity_id,
                        "rule_version": rule.version,
                        "rule_hash": instance.rule_hash,
                    },
                )
            )
            logger.info(
                "workflow_created",
                extra={
                    "process_type": rule.process_type,
                    "entity_type": entity.entity_type,
                    "entity_id": entity.entity_id,
                    "rule_version": rule.version,
                    "total_steps": rule.total_steps,
                },
            )

            events: list[DomainEvent] = []
            landed, unresolved = self._enter_from(instance, rule, 1, now, events)

            # The row is ours alone until commit, so plain ORM writes suffice.
            instance.current_step_order = landed
            if landed > rule.total_steps:
                instance.status = WorkflowStatus.APPROVED.value
                instance.completed_at = now
                self._on_completed(instance, now, before=None, events=events)
            self._session.flush()

        return self._result(instance, events, unresolved)

    # ------------------------------------------------------------------
    # decide / auto-advance
    # ------------------------------------------------------------------

    def decide(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        step_order: int,
        decision: Decision,
        actor_id: str,
        comment: str | None = None,
    ) -> TransitionResult:
        """Record a human APPROVE or REJECT on the pending step."""
        instance = self._store.load_instance(instance_id, tenant_id)
        execution = self._guard_pending(instance, step_order)
        via_override = self._authorize_approver(instance, execution, actor_id)

        to_status = StepStatus.APPROVED if decision == Decision.APPROVE else StepStatus.REJECTED
        with LogContext.bind(tenant_id=tenant_id, instance_id=instance.id, actor_id=actor_id):
            return self._finish_step(
                instance,
                execution,
                to_status,
                actor_id=actor_id,
                comment=comment,
                via_override=via_override,
            )

    def auto_advance(self, *, instance_id: UUID, step_order: int) -> TransitionResult:
        """Approve an overdue step on behalf of the system actor.

        Only fires when the step has an approver and its due time passed;
        the due check is part of the compare-and-swap.
        """
        instance = self._store.load_instance(instance_id)
        execution = self._guard_pending(instance, step_order)
        if execution.due_at is None:
            raise StepNotDueError(str(instance.id), step_order)

        with LogContext.bind(tenant_id=instance.tenant_id, instance_id=instance.id):
            return self._finish_step(
                instance,
                execution,
                StepStatus.AUTO_APPROVED,
                actor_id=self._system_actor_id,
                comment="auto-approved after timeout",
                via_override=False,
                require_due=True,
            )

    # ------------------------------------------------------------------
    # cancel / reassign / archive
    # ------------------------------------------------------------------

    def cancel(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        actor_id: str,
        reason: str | None = None,
    ) -> TransitionResult:
        """Cancel an in-progress instance (requester or override holder)."""
        instance = self._store.load_instance(instance_id, tenant_id)
        if instance.status != WorkflowStatus.IN_PROGRESS.value:
            raise WorkflowNotInProgressError(str(instance.id), instance.status)

        via_override = False
        if actor_id != instance.requested_by:
            via_override = self._require_override(instance, actor_id, "cancel")

        execution = self._store.pending_execution(instance.id)
        if execution is None:
            raise StaleStepError(str(instance.id), instance.current_step_order, None)

        now = self._clock.now()
        events: list[DomainEvent] = []
        with LogContext.bind(tenant_id=tenant_id, instance_id=instance.id, actor_id=actor_id):
            before_instance = instance.snapshot()
            by_step = execution.step_order

            self._store.transition_step(
                execution,
                StepStatus.CANCELLED,
                actor_id=actor_id,
                now=now,
                comment=reason,
                via_override=via_override,
            )
            self._store.transition_instance(
                instance,
                current_step_order=by_step,
                status=WorkflowStatus.CANCELLED,
                now=now,
            )
            self._audit.record(
                AuditRecord(
                    action=AuditAction.WORKFLOW_CANCELLED,
                    tenant_id=tenant_id,
                    entity_type="WorkflowInstance",
                    entity_id=str(instance.id),
                    actor_id=actor_id,
                    occurred_at=now,
                    before=before_instance,
                    after={**instance.snapshot(), "reason": reason},
                    via_override=via_override,
                )
            )
            events.append(
                WorkflowCancelled(
                    tenant_id=tenant_id,
                    instance_id=instance.id,
                    occurred_at=now,
                    by_step=by_step,
                )
            )
            logger.info(
                "workflow_cancelled",
                extra={"by_step": by_step, "via_override": via_override},
            )

        return self._result(instance, events, None)

    def reassign(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        step_order: int,
        approver_id: str,
        actor_id: str,
    ) -> TransitionResult:
        """Point the pending step at a new approver (override holders only).

        This is how a step stalled on an unresolved approver is unblocked.
        The step's auto-advance window restarts from now.
        The subject of the request can never be handed their own step.
        """
        instance = self._store.load_instance(instance_id, tenant_id)
        execution = self._guard_pending(instance, step_order)
        self._require_override(instance, actor_id, "reassign")
        if approver_id == instance.subject_employee_id:
            raise UnresolvedApproverError(
                str(instance.id),
                step_order,
                "reassign",
                f"employee {approver_id} is the subject of the request",
            )

        rule = RuleDefinition.from_snapshot(instance.tenant_id, instance.rule_snapshot)
        step = rule.step(step_order)
        now = self._clock.now()
        due_at = now + step.auto_advance_after if step.auto_advance_after else None

        with LogContext.bind(tenant_id=tenant_id, instance_id=instance.id, actor_id=actor_id):
            before = execution.snapshot()
            self._store.reassign_step(execution, approver_id, due_at)
            self._audit.record(
                AuditRecord(
                    action=AuditAction.STEP_REASSIGNED,
                    tenant_id=tenant_id,
                    entity_type="StepExecution",
                    entity_id=str(execution.id),
                    actor_id=actor_id,
                    occurred_at=now,
                    before=before,
                    after=execution.snapshot(),
                    via_override=True,
                )
            )
            logger.warning(
                "step_reassigned",
                extra={
                    "step_order": step_order,
                    "previous_approver_id": before["approver_id"],
                    "approver_id": approver_id,
                },
            )
            events: list[DomainEvent] = [
                StepAdvanced(
                    tenant_id=tenant_id,
                    instance_id=instance.id,
                    occurred_at=now,
                    step_order=step_order,
                    approver_id=approver_id,
                )
            ]

        return self._result(instance, events, None)

    def archive(self, *, tenant_id: str, instance_id: UUID, actor_id: str) -> WorkflowInstance:
        """Soft-archive a terminal instance.  Rows are never deleted."""
        instance = self._store.load_instance(instance_id, tenant_id)
        if instance.status == WorkflowStatus.IN_PROGRESS.value:
            raise WorkflowNotTerminalError(str(instance.id))
        if instance.archived_at is not None:
            return instance.to_dto()

        now = self._clock.now()
        before = instance.snapshot()
        self._store.archive(instance, now)
        self._audit.record(
            AuditRecord(
                action=AuditAction.WORKFLOW_ARCHIVED,
                tenant_id=tenant_id,
                entity_type="WorkflowInstance",
                entity_id=str(instance.id),
                actor_id=actor_id,
                occurred_at=now,
                before=before,
                after=instance.snapshot(),
            )
        )
        logger.info("workflow_archived", extra={"instance_id": str(instance.id)})
        return instance.to_dto()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, tenant_id: str, instance_id: UUID) -> WorkflowInstance:
        return self._store.load_instance(instance_id, tenant_id).to_dto()

    def pending_for_approver(self, tenant_id: str, approver_id: str) -> list[WorkflowInstance]:
        return [m.to_dto() for m in self._store.pending_for_approver(tenant_id, approver_id)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guard_pending(
        self,
        instance: WorkflowInstanceModel,
        step_order: int,
    ) -> StepExecutionModel:
        """Check the caller's view of the pending step against the rows."""
        execution = self._store.execution(instance.id, step_order)
        if execution is not None and StepStatus(execution.status) in TERMINAL_STEP_STATUSES:
            raise StepAlreadyDecidedError(str(instance.id), step_order, execution.status)
        if instance.status != WorkflowStatus.IN_PROGRESS.value:
            raise WorkflowNotInProgressError(str(instance.id), instance.status)
        if execution is None or step_order != instance.current_step_order:
            raise StaleStepError(str(instance.id), step_order, instance.current_step_order)
        return execution

    def _authorize_approver(
        self,
        instance: WorkflowInstanceModel,
        execution: StepExecutionModel,
        actor_id: str,
    ) -> bool:
        """True when the actor decides via override rather than as approver."""
        if execution.approver_id is not None and execution.approver_id == actor_id:
            return False
        return self._require_override(instance, actor_id, "decide")

    def _require_override(
        self,
        instance: WorkflowInstanceModel,
        actor_id: str,
        action: str,
    ) -> bool:
        if self._overrides is None or not self._overrides.has_override(
            instance.tenant_id, actor_id,
        ):
            logger.warning(
                "decision_unauthorized",
                extra={
                    "tenant_id": instance.tenant_id,
                    "instance_id": str(instance.id),
                    "actor_id": actor_id,
                    "action": action,
                },
            )
            raise UnauthorizedError(actor_id, str(instance.id), action)

        logger.warning(
            "decision_override_used",
            extra={
                "tenant_id": instance.tenant_id,
                "instance_id": str(instance.id),
                "actor_id": actor_id,
                "action": action,
                "step_order": instance.current_step_order,
            },
        )
        return True

    def _finish_step(
        self,
        instance: WorkflowInstanceModel,
        execution: StepExecutionModel,
        to_status: StepStatus,
        *,
        actor_id: str,
        comment: str | None,
        via_override: bool,
        require_due: bool = False,
    ) -> TransitionResult:
        now = self._clock.now()
        step_order = execution.step_order
        before_step = execution.snapshot()
        before_instance = instance.snapshot()

        # The step row is the serialization point; swap it first.
        self._store.transition_step(
            execution,
            to_status,
            actor_id=actor_id,
            now=now,
            comment=comment,
            via_override=via_override,
            require_due=require_due,
        )
        self._audit.record(
            AuditRecord(
                action=_STEP_AUDIT_ACTIONS[to_status],
                tenant_id=instance.tenant_id,
                entity_type="StepExecution",
                entity_id=str(execution.id),
                actor_id=actor_id,
                occurred_at=now,
                before=before_step,
                after=execution.snapshot(),
                via_override=via_override,
            )
        )
        logger.info(
            "step_decided",
            extra={
                "step_order": step_order,
                "status": to_status.value,
                "via_override": via_override,
            },
        )

        events: list[DomainEvent] = []
        unresolved = None

        if to_status not in ADVANCING_STEP_STATUSES:
            self._store.transition_instance(
                instance,
                current_step_order=step_order,
                status=WorkflowStatus.REJECTED,
                now=now,
            )
            self._audit.record(
                AuditRecord(
                    action=AuditAction.WORKFLOW_REJECTED,
                    tenant_id=instance.tenant_id,
                    entity_type="WorkflowInstance",
                    entity_id=str(instance.id),
                    actor_id=actor_id,
                    occurred_at=now,
                    before=before_instance,
                    after=instance.snapshot(),
                    via_override=via_override,
                )
            )
            events.append(
                WorkflowRejected(
                    tenant_id=instance.tenant_id,
                    instance_id=instance.id,
                    occurred_at=now,
                    by_step=step_order,
                )
            )
            logger.info("workflow_rejected", extra={"by_step": step_order})
            return self._result(instance, events, None)

        rule = RuleDefinition.from_snapshot(instance.tenant_id, instance.rule_snapshot)
        landed, unresolved = self._enter_from(instance, rule, step_order + 1, now, events)
        completed = landed > rule.total_steps
        self._store.transition_instance(
            instance,
            current_step_order=landed,
            status=WorkflowStatus.APPROVED if completed else WorkflowStatus.IN_PROGRESS,
            now=now,
        )
        if completed:
            self._on_completed(instance, now, before=before_instance, events=events)
        return self._result(instance, events, unresolved)

    def _enter_from(
        self,
        instance: WorkflowInstanceModel,
        rule: RuleDefinition,
        start_order: int,
        now: datetime,
        events: list[DomainEvent],
    ) -> tuple[int, UnresolvedApproverError | None]:
        """Enter steps from ``start_order`` until one needs a human.

        Returns the step order the instance lands on (total_steps + 1 when
        every remaining step was skipped) and the unresolved-approver error
        when the landing step has nobody to approve it.
        """
        order = start_order
        while order <= rule.total_steps:
            step = rule.step(order)
            resolution = self._resolver.resolve(
                step, instance.subject_employee_id, instance.tenant_id,
            )

            if resolution.resolved:
                due_at = now + step.auto_advance_after if step.auto_advance_after else None
                self._store.add_execution(
                    StepExecutionModel(
                        instance_id=instance.id,
                        step_order=order,
                        strategy=step.strategy.value,
                        approver_id=resolution.approver_id,
                        status=StepStatus.PENDING.value,
                        created_at=now,
                        due_at=due_at,
                        version=1,
                    )
                )
                events.append(
                    StepAdvanced(
                        tenant_id=instance.tenant_id,
                        instance_id=instance.id,
                        occurred_at=now,
                        step_order=order,
                        approver_id=resolution.approver_id,
                    )
                )
                logger.info(
                    "step_entered",
                    extra={
                        "step_order": order,
                        "strategy": step.strategy.value,
                        "approver_id": resolution.approver_id,
                        "due_at": due_at,
                    },
                )
                return order, None

            if step.can_skip and not resolution.data_quality:
                skipped = StepExecutionModel(
                    instance_id=instance.id,
                    step_order=order,
                    strategy=step.strategy.value,
                    approver_id=None,
                    status=StepStatus.SKIPPED.value,
                    created_at=now,
                    decided_at=now,
                    decided_by=self._system_actor_id,
                    comment=f"no approver resolved: {resolution.reason}",
                    version=1,
                )
                self._store.add_execution(skipped)
                self._audit.record(
                    AuditRecord(
                        action=AuditAction.STEP_SKIPPED,
                        tenant_id=instance.tenant_id,
                        entity_type="StepExecution",
                        entity_id=str(skipped.id),
                        actor_id=self._system_actor_id,
                        occurred_at=now,
                        after=skipped.snapshot(),
                    )
                )
                logger.info(
                    "step_skipped",
                    extra={
                        "step_order": order,
                        "strategy": step.strategy.value,
                        "reason": resolution.reason,
                    },
                )
                order += 1
                continue

            self._store.add_execution(
                StepExecutionModel(
                    instance_id=instance.id,
                    step_order=order,
                    strategy=step.strategy.value,
                    approver_id=None,
                    status=StepStatus.PENDING.value,
                    created_at=now,
                    due_at=None,
                    version=1,
                )
            )
            error = UnresolvedApproverError(
                str(instance.id), order, step.strategy.value, resolution.reason,
            )
            events.append(
                ApproverUnresolved(
                    tenant_id=instance.tenant_id,
                    instance_id=instance.id,
                    occurred_at=now,
                    step_order=order,
                    strategy=step.strategy.value,
                    reason=resolution.reason,
                )
            )
            logger.warning(
                "approver_unresolved",
                extra={
                    "step_order": order,
                    "strategy": step.strategy.value,
                    "reason": resolution.reason,
                    "data_quality": resolution.data_quality,
                },
            )
            return order, error

        return order, None

    def _on_completed(
        self,
        instance: WorkflowInstanceModel,
        now: datetime,
        *,
        before: dict[str, Any] | None,
        events: list[DomainEvent],
    ) -> None:
        self._audit.record(
            AuditRecord(
                action=AuditAction.WORKFLOW_APPROVED,
                tenant_id=instance.tenant_id,
                entity_type="WorkflowInstance",
                entity_id=str(instance.id),
                actor_id=self._system_actor_id,
                occurred_at=now,
                before=before,
                after=instance.snapshot(),
            )
        )
        events.append(
            WorkflowCompleted(
                tenant_id=instance.tenant_id,
                instance_id=instance.id,
                occurred_at=now,
            )
        )
        logger.info("workflow_completed", extra={"total_steps": instance.total_steps})

    def _result(
        self,
        instance: WorkflowInstanceModel,
        events: list[DomainEvent],
        unresolved: UnresolvedApproverError | None,
    ) -> TransitionResult:
        self._session.flush()
        self._session.refresh(instance)
        return TransitionResult(
            instance=instance.to_dto(),
            events=tuple(events),
            unresolved=unresolved,
        )
