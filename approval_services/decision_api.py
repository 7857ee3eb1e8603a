"""
approval_services.decision_api -- The Decision API.

Responsibility:
    Thin orchestration surface over the workflow state machine: submit,
    approve, reject, cancel, reassign, status and pending-queue reads.
    Each call runs in its own transaction; domain events are dispatched
    to the event sink only after that transaction commits.

Architecture position:
    Services -- the composition root that wires the pure engines
    (approver resolution, condition evaluation) into the kernel state
    machine.  The kernel never imports from here.

Invariants enforced:
    - Mutating calls authorize the actor against the pending step (the
      resolved approver or an override holder) inside the same
      transaction as the compare-and-swap.
    - Events for a call are published only after its commit.  A failing
      sink is logged and never undoes the committed decision.
    - "No active rule" and "conditions not met" mean no approval is
      required: ``submit`` reports it instead of raising.

Failure modes:
    Kernel exceptions propagate unchanged.  Concurrency losers
    (``StaleStepError``, ``StepAlreadyDecidedError``) are expected to
    re-fetch via ``get_status``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from approval_config.settings import EngineSettings
from approval_engines.conditions import RestrictedConditionEvaluator
from approval_engines.resolver import OrgApproverResolver
from approval_kernel.db.engine import get_session_factory, session_scope
from approval_kernel.domain.audit import AuditSink
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.events import DomainEvent, EventSink
from approval_kernel.domain.workflow import (
    ApproverResolver,
    ConditionEvaluator,
    Decision,
    EntityRef,
    OrgDirectory,
    OverridePolicy,
    WorkflowInstance,
)
from approval_kernel.exceptions import (
    ConditionsNotMetError,
    RuleNotFoundError,
    UnresolvedApproverError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.rule_store import RuleCache, RuleStore
from approval_kernel.services.state_machine import TransitionResult, WorkflowStateMachine
from approval_services.authority import DirectoryOverridePolicy
from approval_services.directory import RetryingDirectory
from approval_services.sinks import LoggingAuditSink, LoggingEventSink

logger = get_logger("services.decision_api")

T = TypeVar("T")


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of ``submit``.

    ``approval_required`` is False when no active rule exists for the
    process type or the entity does not meet the rule's conditions; the
    caller then treats the entity as approved.
    """

    approval_required: bool
    instance: WorkflowInstance | None = None
    unresolved: UnresolvedApproverError | None = None
    reason: str | None = None
    events: tuple[DomainEvent, ...] = ()


class DecisionService:
    """Entry point used by business-process modules and the HTTP layer."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        directory: OrgDirectory,
        resolver: ApproverResolver | None = None,
        conditions: ConditionEvaluator | None = None,
        events: EventSink | None = None,
        audit: AuditSink | None = None,
        overrides: OverridePolicy | None = None,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        rule_cache: RuleCache | None = None,
    ):
        settings = settings or EngineSettings()
        self._session_factory = session_factory or get_session_factory()
        self._directory = directory
        self._resolver = resolver or OrgApproverResolver(
            directory, settings.resolution.max_hierarchy_depth,
        )
        self._conditions = conditions or RestrictedConditionEvaluator()
        self._events = events or LoggingEventSink()
        self._audit = audit or LoggingAuditSink()
        self._overrides = overrides or DirectoryOverridePolicy(
            directory, settings.authorization.override_roles,
        )
        self._clock = clock or SystemClock()
        self._settings = settings
        self._rule_cache = rule_cache if rule_cache is not None else RuleCache()

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    @property
    def rule_cache(self) -> RuleCache:
        return self._rule_cache

    @property
    def clock(self) -> Clock:
        return self._clock

    def machine(self, session: Session) -> WorkflowStateMachine:
        """A state machine bound to ``session``, wired like every API call."""
        return WorkflowStateMachine(
            session,
            self._resolver,
            self._conditions,
            self._clock,
            overrides=self._overrides,
            audit=self._audit,
            system_actor_id=self._settings.system_actor_id,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def submit(
        self,
        *,
        tenant_id: str,
        process_type: str,
        entity_type: str,
        entity_id: str,
        subject_employee_id: str,
        requested_by: str,
        context: dict[str, Any] | None = None,
    ) -> SubmitResult:
        """Start the approval chain for an entity, if its process needs one."""
        with LogContext.bind(
            correlation_id=uuid4(), tenant_id=tenant_id, actor_id=requested_by,
        ):
            try:
                with session_scope(self._session_factory) as session:
                    rule = RuleStore(
                        session, self._clock, self._conditions, self._rule_cache,
                    ).get_active(tenant_id, process_type)
                    result = self.machine(session).create(
                        rule=rule,
                        entity=EntityRef(entity_type, entity_id),
                        subject_employee_id=subject_employee_id,
                        requested_by=requested_by,
                        context=context,
                    )
            except (RuleNotFoundError, ConditionsNotMetError) as exc:
                logger.info(
                    "approval_not_required",
                    extra={
                        "process_type": process_type,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "reason": exc.code,
                    },
                )
                return SubmitResult(approval_required=False, reason=exc.code)

            self._dispatch(result.events)
            return SubmitResult(
                approval_required=True,
                instance=result.instance,
                unresolved=result.unresolved,
                events=result.events,
            )

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
        return self._transition(
            tenant_id,
            actor_id,
            lambda machine: machine.decide(
                tenant_id=tenant_id,
                instance_id=instance_id,
                step_order=step_order,
                decision=decision,
                actor_id=actor_id,
                comment=comment,
            ),
        )

    def approve(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        step_order: int,
        actor_id: str,
        comment: str | None = None,
    ) -> TransitionResult:
        return self.decide(
            tenant_id=tenant_id,
            instance_id=instance_id,
            step_order=step_order,
            decision=Decision.APPROVE,
            actor_id=actor_id,
            comment=comment,
        )

    def reject(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        step_order: int,
        actor_id: str,
        comment: str | None = None,
    ) -> TransitionResult:
        return self.decide(
            tenant_id=tenant_id,
            instance_id=instance_id,
            step_order=step_order,
            decision=Decision.REJECT,
            actor_id=actor_id,
            comment=comment,
        )

    def cancel(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        actor_id: str,
        reason: str | None = None,
    ) -> TransitionResult:
        return self._transition(
            tenant_id,
            actor_id,
            lambda machine: machine.cancel(
                tenant_id=tenant_id,
                instance_id=instance_id,
                actor_id=actor_id,
                reason=reason,
            ),
        )

    def reassign(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        step_order: int,
        approver_id: str,
        actor_id: str,
    ) -> TransitionResult:
        """Hand the pending step to another active employee of the tenant.

        Raises:
            UnresolvedApproverError: The new approver is not active, belongs
                to another tenant, or is the subject of the request.
        """
        if self._directory.employee_tenant(approver_id) != tenant_id:
            raise UnresolvedApproverError(
                str(instance_id),
                step_order,
                "reassign",
                f"employee {approver_id} is not in tenant {tenant_id}",
            )
        if not self._directory.employee_active(approver_id):
            raise UnresolvedApproverError(
                str(instance_id),
                step_order,
                "reassign",
                f"employee {approver_id} is not active",
            )
        return self._transition(
            tenant_id,
            actor_id,
            lambda machine: machine.reassign(
                tenant_id=tenant_id,
                instance_id=instance_id,
                step_order=step_order,
                approver_id=approver_id,
                actor_id=actor_id,
            ),
        )

    def archive(self, *, tenant_id: str, instance_id: UUID, actor_id: str) -> WorkflowInstance:
        with LogContext.bind(tenant_id=tenant_id, actor_id=actor_id):
            with session_scope(self._session_factory) as session:
                return self.machine(session).archive(
                    tenant_id=tenant_id, instance_id=instance_id, actor_id=actor_id,
                )

    def auto_advance(self, *, instance_id: UUID, step_order: int) -> TransitionResult:
        """Timeout-driven approval; used by the sweeper."""
        return self._transition(
            None,
            self._settings.system_actor_id,
            lambda machine: machine.auto_advance(
                instance_id=instance_id, step_order=step_order,
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, tenant_id: str, instance_id: UUID) -> WorkflowInstance:
        with session_scope(self._session_factory) as session:
            return self.machine(session).get(tenant_id, instance_id)

    def pending_for_approver(self, tenant_id: str, approver_id: str) -> list[WorkflowInstance]:
        with session_scope(self._session_factory) as session:
            return self.machine(session).pending_for_approver(tenant_id, approver_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        tenant_id: str | None,
        actor_id: str,
        operation: Callable[[WorkflowStateMachine], TransitionResult],
    ) -> TransitionResult:
        with LogContext.bind(correlation_id=uuid4(), tenant_id=tenant_id, actor_id=actor_id):
            with session_scope(self._session_factory) as session:
                result = operation(self.machine(session))
            self._dispatch(result.events)
            return result

    def _dispatch(self, events: tuple[DomainEvent, ...]) -> None:
        for event in events:
            try:
                self._events.publish(event)
            except Exception:
                logger.exception(
                    "event_dispatch_failed",
                    extra={
                        "event_type": event.event_type,
                        "instance_id": str(event.instance_id),
                    },
                )


def build_decision_service(
    settings: EngineSettings,
    directory: OrgDirectory,
    *,
    session_factory: sessionmaker[Session] | None = None,
    events: EventSink | None = None,
    audit: AuditSink | None = None,
    clock: Clock | None = None,
    rule_cache: RuleCache | None = None,
) -> DecisionService:
    """Wire a ``DecisionService`` from settings.

    The directory is wrapped in ``RetryingDirectory`` with the configured
    attempt budget, backoff and per-call timeout.
    """
    retrying = RetryingDirectory(
        directory,
        max_attempts=settings.directory.max_attempts,
        backoff_seconds=settings.directory.backoff_seconds,
        timeout_seconds=settings.directory.timeout_seconds,
    )
    return DecisionService(
        session_factory,
        directory=retrying,
        events=events,
        audit=audit,
        clock=clock,
        settings=settings,
        rule_cache=rule_cache,
    )
