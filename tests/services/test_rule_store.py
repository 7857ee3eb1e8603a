"""
Tests for approval_kernel.services.rule_store and approval_services.rule_admin.

Validates rule validation at save time, one active rule per process type,
versioning on edit, soft delete, tenant scoping and cache invalidation.
"""

from uuid import uuid4

import pytest

from approval_engines.conditions import RestrictedConditionEvaluator
from approval_kernel.domain.audit import AuditAction
from approval_kernel.domain.workflow import ApproverStrategy, RuleDefinition
from approval_kernel.exceptions import InvalidRuleError, RuleNotFoundError
from approval_kernel.services.rule_store import RuleCache, RuleStore
from tests.conftest import HR_ADMIN_1, OTHER_TENANT, TENANT, step


def _rule(process_type="LEAVE_APPROVAL", *steps, **kwargs) -> RuleDefinition:
    return RuleDefinition(
        tenant_id=kwargs.pop("tenant_id", TENANT),
        process_type=process_type,
        name=kwargs.pop("name", f"{process_type} rule"),
        steps=tuple(steps) or (step(1, ApproverStrategy.DIRECT_MANAGER),),
        **kwargs,
    )


class TestRuleCache:
    def test_put_get_invalidate(self):
        cache = RuleCache()
        rule = _rule()
        cache.put(rule)
        assert cache.get(TENANT, "LEAVE_APPROVAL") is rule
        cache.invalidate(TENANT, "LEAVE_APPROVAL")
        assert cache.get(TENANT, "LEAVE_APPROVAL") is None

    def test_invalidate_whole_tenant(self):
        cache = RuleCache()
        cache.put(_rule("A"))
        cache.put(_rule("B"))
        cache.put(_rule("A", tenant_id=OTHER_TENANT))
        cache.invalidate(TENANT)
        assert len(cache) == 1
        assert cache.get(OTHER_TENANT, "A") is not None


class TestRuleStore:
    def test_create_and_get_active(self, session, clock):
        store = RuleStore(session, clock, RestrictedConditionEvaluator())
        created = store.create(
            _rule(
                "LEAVE_APPROVAL",
                step(1, ApproverStrategy.DIRECT_MANAGER, hours=24),
                step(2, ApproverStrategy.HR_ADMIN, can_skip=True),
                conditions=("entity.days > 2",),
            )
        )
        session.commit()

        active = store.get_active(TENANT, "LEAVE_APPROVAL")
        assert active.rule_id == created.rule_id
        assert active.version == 1
        assert active.total_steps == 2
        assert active.steps[0].auto_advance_after.total_seconds() == 86400
        assert active.conditions == ("entity.days > 2",)

    def test_missing_rule(self, session, clock):
        with pytest.raises(RuleNotFoundError) as exc_info:
            RuleStore(session, clock).get_active(TENANT, "NOTHING")
        assert exc_info.value.process_type == "NOTHING"

    def test_invalid_steps_rejected(self, session, clock):
        store = RuleStore(session, clock)
        with pytest.raises(InvalidRuleError) as exc_info:
            store.create(_rule("X", step(1, ApproverStrategy.ROLE_HOLDER)))
        assert any("requires role_id" in e for e in exc_info.value.errors)

    def test_invalid_condition_rejected(self, session, clock):
        store = RuleStore(session, clock, RestrictedConditionEvaluator())
        with pytest.raises(InvalidRuleError):
            store.create(_rule("X", conditions=("__import__('os')",)))

    def test_second_active_rule_rejected(self, session, clock):
        store = RuleStore(session, clock)
        store.create(_rule("LEAVE_APPROVAL"))
        with pytest.raises(InvalidRuleError):
            store.create(_rule("LEAVE_APPROVAL", name="duplicate"))

    def test_inactive_rule_does_not_conflict(self, session, clock):
        store = RuleStore(session, clock)
        store.create(_rule("LEAVE_APPROVAL"))
        store.create(_rule("LEAVE_APPROVAL", name="draft", is_active=False))
        rules, total = store.list_rules(TENANT, "LEAVE_APPROVAL")
        assert total == 2

    def test_same_process_type_in_other_tenant(self, session, clock):
        store = RuleStore(session, clock)
        store.create(_rule("LEAVE_APPROVAL"))
        store.create(_rule("LEAVE_APPROVAL", tenant_id=OTHER_TENANT))
        assert store.get_active(OTHER_TENANT, "LEAVE_APPROVAL").tenant_id == OTHER_TENANT

    def test_update_bumps_version_and_replaces_steps(self, session, clock):
        store = RuleStore(session, clock)
        created = store.create(_rule("LEAVE_APPROVAL"))
        session.commit()

        updated = store.update(
            TENANT,
            created.rule_id,
            _rule(
                "LEAVE_APPROVAL",
                step(1, ApproverStrategy.DEPARTMENT_HEAD),
                step(2, ApproverStrategy.ROLE_HOLDER, role_id="HR_ADMIN"),
                step(3, ApproverStrategy.SPECIFIC_EMPLOYEE, employee_id="e-300"),
            ),
        )
        session.commit()

        assert updated.version == 2
        assert [s.strategy for s in updated.steps] == [
            ApproverStrategy.DEPARTMENT_HEAD,
            ApproverStrategy.ROLE_HOLDER,
            ApproverStrategy.SPECIFIC_EMPLOYEE,
        ]
        assert store.get(TENANT, created.rule_id).total_steps == 3

    def test_update_is_tenant_scoped(self, session, clock):
        store = RuleStore(session, clock)
        created = store.create(_rule("LEAVE_APPROVAL"))
        with pytest.raises(RuleNotFoundError):
            store.update(OTHER_TENANT, created.rule_id, _rule("LEAVE_APPROVAL"))

    def test_soft_delete(self, session, clock):
        store = RuleStore(session, clock)
        created = store.create(_rule("LEAVE_APPROVAL"))
        store.delete(TENANT, created.rule_id)
        session.commit()

        with pytest.raises(RuleNotFoundError):
            store.get_active(TENANT, "LEAVE_APPROVAL")
        with pytest.raises(RuleNotFoundError):
            store.get(TENANT, created.rule_id)
        # A replacement may now be created.
        store.create(_rule("LEAVE_APPROVAL", name="replacement"))

    def test_unknown_rule_id(self, session, clock):
        with pytest.raises(RuleNotFoundError) as exc_info:
            RuleStore(session, clock).get(TENANT, uuid4())
        assert exc_info.value.rule_id is not None

    def test_list_pagination(self, session, clock):
        store = RuleStore(session, clock)
        for process_type in ("A", "B", "C"):
            store.create(_rule(process_type))
        page, total = store.list_rules(TENANT, offset=1, limit=1)
        assert total == 3
        assert [r.process_type for r in page] == ["B"]


class TestRuleAdminService:
    def test_create_is_audited(self, rule_admin, audit):
        created = rule_admin.create(_rule("LEAVE_APPROVAL"), actor_id=HR_ADMIN_1)
        (record,) = audit.records
        assert record.action == AuditAction.RULE_CREATED
        assert record.entity_id == str(created.rule_id)
        assert record.after["fingerprint"] == created.fingerprint()
        assert record.before is None

    def test_update_invalidates_cache(self, rule_admin, decisions):
        created = rule_admin.create(_rule("LEAVE_APPROVAL"), actor_id=HR_ADMIN_1)
        decisions.rule_cache.put(created)

        rule_admin.update(
            TENANT,
            created.rule_id,
            _rule("LEAVE_APPROVAL", step(1, ApproverStrategy.HR_ADMIN)),
            actor_id=HR_ADMIN_1,
        )
        assert decisions.rule_cache.get(TENANT, "LEAVE_APPROVAL") is None

    def test_delete_is_audited(self, rule_admin, audit):
        created = rule_admin.create(_rule("LEAVE_APPROVAL"), actor_id=HR_ADMIN_1)
        rule_admin.delete(TENANT, created.rule_id, actor_id=HR_ADMIN_1)
        assert [r.action for r in audit.records] == [
            AuditAction.RULE_CREATED,
            AuditAction.RULE_DELETED,
        ]
        assert audit.records[-1].after is None

    def test_failed_create_writes_nothing(self, rule_admin, audit):
        with pytest.raises(InvalidRuleError):
            rule_admin.create(_rule("X", step(1, ApproverStrategy.ROLE_HOLDER)), actor_id=HR_ADMIN_1)
        assert audit.records == []
        assert rule_admin.list_rules(TENANT) == ([], 0)
