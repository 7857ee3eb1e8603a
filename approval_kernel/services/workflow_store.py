"""
approval_kernel.services.workflow_store -- Persistence and optimistic locking
for workflow instances and step executions.

Responsibility:
    The single place where workflow rows are read and written.  Every
    transition of a step execution or an instance is a guarded UPDATE:

        UPDATE step_executions
           SET status = :new, version = version + 1, ...
         WHERE id = :id AND status = 'pending' AND version = :seen
               [AND due_at <= :now]

    and succeeds only if the row is still in the state the caller read.
    Decision, cancellation, reassignment and timeout paths all go through
    these methods, so the compare-and-swap is implemented once.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - A step execution leaves PENDING exactly once.  Of two racing
      transitions on the same step, exactly one matches the WHERE clause.
    - An instance transitions only from IN_PROGRESS and only from the
      version its caller read.
    - The step row is the serialization point: callers swap the step first
      and the instance second, inside one transaction.

Failure modes:
    - StepAlreadyDecidedError: the step was terminal when the CAS ran.
    - StaleStepError: the step is still pending but changed (reassigned).
    - StepNotDueError: a timeout CAS ran before the step's due time.
    - WorkflowNotInProgressError: the instance became terminal first.
    - DuplicateWorkflowError: the entity already has an in-flight instance.
    - WorkflowNotFoundError: unknown instance id for the tenant.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from approval_kernel.domain.workflow import (
    STEP_TRANSITIONS,
    TERMINAL_STEP_STATUSES,
    WORKFLOW_TRANSITIONS,
    StepStatus,
    WorkflowStatus,
)
from approval_kernel.exceptions import (
    DuplicateWorkflowError,
    StaleStepError,
    StepAlreadyDecidedError,
    StepNotDueError,
    WorkflowNotFoundError,
    WorkflowNotInProgressError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.workflow import StepExecutionModel, WorkflowInstanceModel

logger = get_logger("services.workflow_store")

_PENDING = StepStatus.PENDING.value
_IN_PROGRESS = WorkflowStatus.IN_PROGRESS.value


class WorkflowStore:
    """Row access and guarded transitions for one session.

    Flushes but never commits; the caller owns the transaction.
    """

    def __init__(self, session: Session):
        self._session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_instance(
        self,
        instance_id: UUID,
        tenant_id: str | None = None,
    ) -> WorkflowInstanceModel:
        """Load an instance, scoped to the tenant when one is given.

        ``tenant_id=None`` is reserved for system callers (the sweeper).

        Raises:
            WorkflowNotFoundError: No such instance for the tenant.
        """
        query = select(WorkflowInstanceModel).where(WorkflowInstanceModel.id == instance_id)
        if tenant_id is not None:
            query = query.where(WorkflowInstanceModel.tenant_id == tenant_id)
        model = self._session.scalars(query).first()
        if model is None:
            raise WorkflowNotFoundError(str(instance_id))
        return model

    def execution(self, instance_id: UUID, step_order: int) -> StepExecutionModel | None:
        return self._session.scalars(
            select(StepExecutionModel).where(
                StepExecutionModel.instance_id == instance_id,
                StepExecutionModel.step_order == step_order,
            )
        ).first()

    def pending_execution(self, instance_id: UUID) -> StepExecutionModel | None:
        return self._session.scalars(
            select(StepExecutionModel).where(
                StepExecutionModel.instance_id == instance_id,
                StepExecutionModel.status == _PENDING,
            )
        ).first()

    def find_in_progress(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
    ) -> WorkflowInstanceModel | None:
        return self._session.scalars(
            select(WorkflowInstanceModel).where(
                WorkflowInstanceModel.tenant_id == tenant_id,
                WorkflowInstanceModel.entity_type == entity_type,
                WorkflowInstanceModel.entity_id == entity_id,
                WorkflowInstanceModel.status == _IN_PROGRESS,
            )
        ).first()

    def pending_for_approver(
        self,
        tenant_id: str,
        approver_id: str,
    ) -> list[WorkflowInstanceModel]:
        """In-progress instances whose pending step waits on the approver."""
        return list(
            self._session.scalars(
                select(WorkflowInstanceModel)
                .join(
                    StepExecutionModel,
                    StepExecutionModel.instance_id == WorkflowInstanceModel.id,
                )
                .where(
                    WorkflowInstanceModel.tenant_id == tenant_id,
                    WorkflowInstanceModel.status == _IN_PROGRESS,
                    StepExecutionModel.status == _PENDING,
                    StepExecutionModel.approver_id == approver_id,
                )
                .order_by(StepExecutionModel.created_at, WorkflowInstanceModel.id)
            ).all()
        )

    def due_executions(self, now: datetime, limit: int) -> list[tuple[UUID, int]]:
        """(instance_id, step_order) of pending steps whose timeout elapsed.

        Oldest due first.  Steps without an approver never have a due time.
        """
        rows = self._session.execute(
            select(StepExecutionModel.instance_id, StepExecutionModel.step_order)
            .join(
                WorkflowInstanceModel,
                WorkflowInstanceModel.id == StepExecutionModel.instance_id,
            )
            .where(
                StepExecutionModel.status == _PENDING,
                StepExecutionModel.due_at.is_not(None),
                StepExecutionModel.due_at <= now,
                WorkflowInstanceModel.status == _IN_PROGRESS,
            )
            .order_by(StepExecutionModel.due_at, StepExecutionModel.id)
            .limit(limit)
        ).all()
        return [(row[0], row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def add_instance(self, model: WorkflowInstanceModel) -> None:
        """Insert a new instance.

        Raises:
            DuplicateWorkflowError: The entity already has one in progress.
        """
        existing = self.find_in_progress(model.tenant_id, model.entity_type, model.entity_id)
        if existing is not None:
            raise DuplicateWorkflowError(model.entity_type, model.entity_id, str(existing.id))

        self._session.add(model)
        try:
            self._session.flush()
        except IntegrityError as exc:
            # Lost the race to the partial unique index.
            raise DuplicateWorkflowError(model.entity_type, model.entity_id) from exc

    def add_execution(self, model: StepExecutionModel) -> None:
        """Insert a newly entered step.

        Raises:
            StaleStepError: The step was already entered (never re-entered).
        """
        self._session.add(model)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise StaleStepError(str(model.instance_id), model.step_order, None) from exc

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    def transition_step(
        self,
        execution: StepExecutionModel,
        to_status: StepStatus,
        *,
        actor_id: str,
        now: datetime,
        comment: str | None = None,
        via_override: bool = False,
        require_due: bool = False,
    ) -> None:
        """Move a pending step to a terminal status, if nobody beat us to it.

        ``require_due`` adds ``due_at <= now`` to the guard, for timeouts.

        Raises:
            ValueError: ``to_status`` is not reachable from PENDING.
        """
        if to_status not in STEP_TRANSITIONS[StepStatus.PENDING]:
            raise ValueError(f"Step cannot move from pending to {to_status.value}")
        seen_version = execution.version
        criteria = [
            StepExecutionModel.id == execution.id,
            StepExecutionModel.status == _PENDING,
            StepExecutionModel.version == seen_version,
        ]
        if require_due:
            criteria.append(StepExecutionModel.due_at.is_not(None))
            criteria.append(StepExecutionModel.due_at <= now)

        result = self._session.execute(
            update(StepExecutionModel)
            .where(*criteria)
            .values(
                status=to_status.value,
                decided_at=now,
                decided_by=actor_id,
                comment=comment,
                via_override=via_override,
                version=seen_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._raise_step_conflict(execution, seen_version, require_due)

        self._session.refresh(execution)
        logger.debug(
            "step_cas_applied",
            extra={
                "instance_id": str(execution.instance_id),
                "step_order": execution.step_order,
                "to_status": to_status.value,
                "version": execution.version,
            },
        )

    def reassign_step(
        self,
        execution: StepExecutionModel,
        approver_id: str,
        due_at: datetime | None,
    ) -> None:
        """Point a pending step at a new approver and restart its timeout."""
        seen_version = execution.version
        result = self._session.execute(
            update(StepExecutionModel)
            .where(
                StepExecutionModel.id == execution.id,
                StepExecutionModel.status == _PENDING,
                StepExecutionModel.version == seen_version,
            )
            .values(
                approver_id=approver_id,
                due_at=due_at,
                version=seen_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._raise_step_conflict(execution, seen_version, require_due=False)
        self._session.refresh(execution)

    def transition_instance(
        self,
        instance: WorkflowInstanceModel,
        *,
        current_step_order: int,
        status: WorkflowStatus,
        now: datetime,
    ) -> None:
        """Advance or finish an in-progress instance at the version we read.

        Raises:
            ValueError: ``status`` is not reachable from IN_PROGRESS.
        """
        if (
            status != WorkflowStatus.IN_PROGRESS
            and status not in WORKFLOW_TRANSITIONS[WorkflowStatus.IN_PROGRESS]
        ):
            raise ValueError(f"Instance cannot move from in_progress to {status.value}")
        seen_version = instance.version
        values = {
            "current_step_order": current_step_order,
            "status": status.value,
            "version": seen_version + 1,
            "updated_at": now,
        }
        if status != WorkflowStatus.IN_PROGRESS:
            values["completed_at"] = now

        result = self._session.execute(
            update(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.id == instance.id,
                WorkflowInstanceModel.status == _IN_PROGRESS,
                WorkflowInstanceModel.version == seen_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self._session.execute(
                select(WorkflowInstanceModel.status, WorkflowInstanceModel.current_step_order)
                .where(WorkflowInstanceModel.id == instance.id)
            ).one()
            logger.info(
                "instance_cas_lost",
                extra={
                    "instance_id": str(instance.id),
                    "seen_version": seen_version,
                    "current_status": current.status,
                },
            )
            if current.status != _IN_PROGRESS:
                raise WorkflowNotInProgressError(str(instance.id), current.status)
            raise StaleStepError(
                str(instance.id), instance.current_step_order, current.current_step_order,
            )

        self._session.refresh(instance)

    def archive(self, instance: WorkflowInstanceModel, now: datetime) -> None:
        instance.archived_at = now
        instance.updated_at = now
        self._session.flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _raise_step_conflict(
        self,
        execution: StepExecutionModel,
        seen_version: int,
        require_due: bool,
    ) -> None:
        """Classify a lost CAS by re-reading the row."""
        current = self._session.execute(
            select(StepExecutionModel.status, StepExecutionModel.version)
            .where(StepExecutionModel.id == execution.id)
        ).one()
        logger.info(
            "step_cas_lost",
            extra={
                "instance_id": str(execution.instance_id),
                "step_order": execution.step_order,
                "seen_version": seen_version,
                "current_status": current.status,
                "current_version": current.version,
            },
        )
        if StepStatus(current.status) in TERMINAL_STEP_STATUSES:
            raise StepAlreadyDecidedError(
                str(execution.instance_id), execution.step_order, current.status,
            )
        if current.version != seen_version or not require_due:
            raise StaleStepError(
                str(execution.instance_id), execution.step_order, execution.step_order,
            )
        raise StepNotDueError(str(execution.instance_id), execution.step_order)
