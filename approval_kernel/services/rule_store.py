"""
approval_kernel.services.rule_store -- Tenant-scoped workflow rule storage.

Responsibility:
    Load the active rule for (tenant, process type), and create, edit and
    soft-delete rules with full validation.  Provides ``RuleCache``, the
    process-wide read-through cache in front of ``get_active``.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    Condition validation is delegated to an injected ``ConditionEvaluator``.

Invariants enforced:
    - Steps contiguous and 1-indexed; at least one step when active.
    - Strategy parameters present exactly where the strategy needs them.
    - Conditions parse under the restricted expression grammar.
    - At most one active, non-deleted rule per (tenant, process type).
    - ``version`` increments on every edit.

Failure modes:
    - RuleNotFoundError when no active rule exists, or a rule id is unknown
      to the tenant.
    - InvalidRuleError on any validation failure or a second active rule.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.workflow import ConditionEvaluator, RuleDefinition
from approval_kernel.exceptions import InvalidRuleError, RuleNotFoundError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.workflow import WorkflowRuleModel

logger = get_logger("services.rule_store")


class RuleCache:
    """Thread-safe cache of active rules keyed by (tenant, process type).

    Rules are read on every submission and edited rarely.  Writers
    invalidate the affected key after their transaction commits.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], RuleDefinition] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, process_type: str) -> RuleDefinition | None:
        with self._lock:
            return self._entries.get((tenant_id, process_type))

    def put(self, rule: RuleDefinition) -> None:
        with self._lock:
            self._entries[(rule.tenant_id, rule.process_type)] = rule

    def invalidate(self, tenant_id: str, process_type: str | None = None) -> None:
        """Drop one process type, or every entry of the tenant."""
        with self._lock:
            if process_type is not None:
                self._entries.pop((tenant_id, process_type), None)
                return
            for key in [k for k in self._entries if k[0] == tenant_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RuleStore:
    """Tenant-scoped CRUD for workflow rules.

    Flushes but never commits; the caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        conditions: ConditionEvaluator | None = None,
        cache: RuleCache | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._conditions = conditions
        self._cache = cache

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_active(self, tenant_id: str, process_type: str) -> RuleDefinition:
        """The live rule for a process type.

        Raises:
            RuleNotFoundError: No active, non-deleted rule exists.
        """
        if self._cache is not None:
            cached = self._cache.get(tenant_id, process_type)
            if cached is not None:
                return cached

        model = self._session.scalars(
            select(WorkflowRuleModel).where(
                WorkflowRuleModel.tenant_id == tenant_id,
                WorkflowRuleModel.process_type == process_type,
                WorkflowRuleModel.is_active.is_(True),
                WorkflowRuleModel.deleted_at.is_(None),
            )
        ).first()
        if model is None:
            raise RuleNotFoundError(tenant_id, process_type)

        rule = model.to_dto()
        if self._cache is not None:
            self._cache.put(rule)
        return rule

    def get(self, tenant_id: str, rule_id: UUID) -> RuleDefinition:
        return self._load(tenant_id, rule_id).to_dto()

    def list_rules(
        self,
        tenant_id: str,
        process_type: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[RuleDefinition], int]:
        """One page of the tenant's non-deleted rules and the total count."""
        conditions = [
            WorkflowRuleModel.tenant_id == tenant_id,
            WorkflowRuleModel.deleted_at.is_(None),
        ]
        if process_type is not None:
            conditions.append(WorkflowRuleModel.process_type == process_type)

        total = self._session.scalar(
            select(func.count()).select_from(WorkflowRuleModel).where(*conditions)
        )
        models = self._session.scalars(
            select(WorkflowRuleModel)
            .where(*conditions)
            .order_by(WorkflowRuleModel.process_type, WorkflowRuleModel.created_at)
            .offset(offset)
            .limit(limit)
        ).all()
        return [m.to_dto() for m in models], int(total or 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, rule: RuleDefinition) -> RuleDefinition:
        self._validate(rule)
        if rule.is_active:
            self._ensure_no_other_active(rule.tenant_id, rule.process_type, exclude=None)

        now = self._clock.now()
        model = WorkflowRuleModel(
            id=rule.rule_id or uuid4(),
            tenant_id=rule.tenant_id,
            process_type=rule.process_type,
            name=rule.name,
            is_active=rule.is_active,
            version=1,
            conditions=list(rule.conditions),
            total_steps=rule.total_steps,
            created_at=now,
            updated_at=now,
        )
        model.replace_steps(rule.steps)
        self._session.add(model)
        self._flush(rule)

        logger.info(
            "workflow_rule_created",
            extra={
                "tenant_id": rule.tenant_id,
                "rule_id": str(model.id),
                "process_type": rule.process_type,
                "total_steps": rule.total_steps,
            },
        )
        return model.to_dto()

    def update(self, tenant_id: str, rule_id: UUID, rule: RuleDefinition) -> RuleDefinition:
        """Replace name, activity, conditions and the whole step list."""
        model = self._load(tenant_id, rule_id)
        rule = replace(rule, tenant_id=tenant_id, process_type=model.process_type)
        self._validate(rule)
        if rule.is_active:
            self._ensure_no_other_active(tenant_id, model.process_type, exclude=model.id)

        # Old steps must be gone before their (rule_id, step_order) slots are reused.
        model.steps.clear()
        self._session.flush()

        model.name = rule.name
        model.is_active = rule.is_active
        model.conditions = list(rule.conditions)
        model.version = model.version + 1
        model.updated_at = self._clock.now()
        model.replace_steps(rule.steps)
        self._flush(rule)

        logger.info(
            "workflow_rule_updated",
            extra={
                "tenant_id": tenant_id,
                "rule_id": str(model.id),
                "process_type": model.process_type,
                "version": model.version,
            },
        )
        return model.to_dto()

    def delete(self, tenant_id: str, rule_id: UUID) -> RuleDefinition:
        """Soft delete: the row stays for instances that reference it."""
        model = self._load(tenant_id, rule_id)
        before = model.to_dto()
        now = self._clock.now()
        model.is_active = False
        model.deleted_at = now
        model.updated_at = now
        self._session.flush()

        logger.info(
            "workflow_rule_deleted",
            extra={
                "tenant_id": tenant_id,
                "rule_id": str(model.id),
                "process_type": model.process_type,
            },
        )
        return before

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, tenant_id: str, rule_id: UUID) -> WorkflowRuleModel:
        model = self._session.scalars(
            select(WorkflowRuleModel).where(
                WorkflowRuleModel.id == rule_id,
                WorkflowRuleModel.tenant_id == tenant_id,
                WorkflowRuleModel.deleted_at.is_(None),
            )
        ).first()
        if model is None:
            raise RuleNotFoundError(tenant_id, rule_id=str(rule_id))
        return model

    def _validate(self, rule: RuleDefinition) -> None:
        errors = rule.validate()
        if self._conditions is not None:
            errors.extend(self._conditions.validate(rule.conditions))
        if errors:
            logger.warning(
                "workflow_rule_invalid",
                extra={
                    "tenant_id": rule.tenant_id,
                    "process_type": rule.process_type,
                    "errors": errors,
                },
            )
            raise InvalidRuleError(rule.process_type, errors)

    def _ensure_no_other_active(
        self,
        tenant_id: str,
        process_type: str,
        exclude: UUID | None,
    ) -> None:
        query = select(WorkflowRuleModel.id).where(
            WorkflowRuleModel.tenant_id == tenant_id,
            WorkflowRuleModel.process_type == process_type,
            WorkflowRuleModel.is_active.is_(True),
            WorkflowRuleModel.deleted_at.is_(None),
        )
        if exclude is not None:
            query = query.where(WorkflowRuleModel.id != exclude)
        existing = self._session.scalars(query).first()
        if existing is not None:
            raise InvalidRuleError(
                process_type,
                [f"an active rule already exists for {process_type} ({existing})"],
            )

    def _flush(self, rule: RuleDefinition) -> None:
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise InvalidRuleError(
                rule.process_type,
                [f"conflicts with an existing rule: {exc.orig}"],
            ) from exc
