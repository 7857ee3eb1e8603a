"""
approval_services.rule_admin -- Tenant rule administration.

Create, edit, list and soft-delete workflow rules.  Every write is audited
inside its transaction and invalidates the shared rule cache after the
commit, so the next submission for the process type reads the new rule.
In-flight instances keep the snapshot they were created with.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from approval_engines.conditions import RestrictedConditionEvaluator
from approval_kernel.db.engine import get_session_factory, session_scope
from approval_kernel.domain.audit import AuditAction, AuditRecord, AuditSink
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.workflow import ConditionEvaluator, RuleDefinition
from approval_kernel.logging_config import LogContext
from approval_kernel.services.rule_store import RuleCache, RuleStore
from approval_services.sinks import LoggingAuditSink


def _rule_state(rule: RuleDefinition) -> dict:
    return {**rule.snapshot(), "is_active": rule.is_active, "fingerprint": rule.fingerprint()}


class RuleAdminService:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        rule_cache: RuleCache | None = None,
        conditions: ConditionEvaluator | None = None,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory or get_session_factory()
        self._rule_cache = rule_cache if rule_cache is not None else RuleCache()
        self._conditions = conditions or RestrictedConditionEvaluator()
        self._audit = audit or LoggingAuditSink()
        self._clock = clock or SystemClock()

    def _store(self, session: Session) -> RuleStore:
        # Writers bypass the cache; they invalidate it after commit.
        return RuleStore(session, self._clock, self._conditions)

    def create(self, rule: RuleDefinition, *, actor_id: str) -> RuleDefinition:
        with LogContext.bind(tenant_id=rule.tenant_id, actor_id=actor_id):
            with session_scope(self._session_factory) as session:
                created = self._store(session).create(rule)
                self._record(AuditAction.RULE_CREATED, created, actor_id, None, created)
            self._rule_cache.invalidate(created.tenant_id, created.process_type)
            return created

    def update(
        self,
        tenant_id: str,
        rule_id: UUID,
        rule: RuleDefinition,
        *,
        actor_id: str,
    ) -> RuleDefinition:
        with LogContext.bind(tenant_id=tenant_id, actor_id=actor_id):
            with session_scope(self._session_factory) as session:
                store = self._store(session)
                before = store.get(tenant_id, rule_id)
                updated = store.update(tenant_id, rule_id, replace(rule, tenant_id=tenant_id))
                self._record(AuditAction.RULE_UPDATED, updated, actor_id, before, updated)
            self._rule_cache.invalidate(tenant_id, updated.process_type)
            return updated

    def delete(self, tenant_id: str, rule_id: UUID, *, actor_id: str) -> RuleDefinition:
        with LogContext.bind(tenant_id=tenant_id, actor_id=actor_id):
            with session_scope(self._session_factory) as session:
                before = self._store(session).delete(tenant_id, rule_id)
                self._record(AuditAction.RULE_DELETED, before, actor_id, before, None)
            self._rule_cache.invalidate(tenant_id, before.process_type)
            return before

    def get(self, tenant_id: str, rule_id: UUID) -> RuleDefinition:
        with session_scope(self._session_factory) as session:
            return self._store(session).get(tenant_id, rule_id)

    def list_rules(
        self,
        tenant_id: str,
        process_type: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[RuleDefinition], int]:
        with session_scope(self._session_factory) as session:
            return self._store(session).list_rules(tenant_id, process_type, offset, limit)

    def _record(
        self,
        action: AuditAction,
        rule: RuleDefinition,
        actor_id: str,
        before: RuleDefinition | None,
        after: RuleDefinition | None,
    ) -> None:
        self._audit.record(
            AuditRecord(
                action=action,
                tenant_id=rule.tenant_id,
                entity_type="WorkflowRule",
                entity_id=str(rule.rule_id),
                actor_id=actor_id,
                occurred_at=self._clock.now(),
                before=_rule_state(before) if before else None,
                after=_rule_state(after) if after else None,
            )
        )
