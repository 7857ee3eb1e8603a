"""
Tests for approval_kernel.domain.workflow -- pure value objects.

Validates step parameter rules, rule structure validation, snapshot and
fingerprint behaviour, and the lifecycle transition tables.
"""

from datetime import datetime, timedelta

import pytest

from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.events import StepAdvanced, WorkflowRejected
from approval_kernel.domain.workflow import (
    ADVANCING_STEP_STATUSES,
    STEP_TRANSITIONS,
    TERMINAL_STEP_STATUSES,
    TERMINAL_WORKFLOW_STATUSES,
    WORKFLOW_TRANSITIONS,
    ApproverStrategy,
    ResolvedApprover,
    RuleDefinition,
    StepDefinition,
    StepStatus,
    Unresolved,
    WorkflowStatus,
)
from tests.conftest import step


def _rule(*steps, **kwargs) -> RuleDefinition:
    return RuleDefinition(
        tenant_id="acme",
        process_type=kwargs.pop("process_type", "LEAVE_APPROVAL"),
        name=kwargs.pop("name", "Leave"),
        steps=tuple(steps),
        **kwargs,
    )


class TestStepDefinitionValidation:
    def test_direct_manager_needs_no_parameters(self):
        assert step(1, ApproverStrategy.DIRECT_MANAGER).validate() == []

    def test_role_holder_requires_role(self):
        errors = step(1, ApproverStrategy.ROLE_HOLDER).validate()
        assert any("requires role_id" in e for e in errors)

    def test_specific_role_requires_role(self):
        errors = step(1, ApproverStrategy.SPECIFIC_ROLE).validate()
        assert any("requires role_id" in e for e in errors)

    def test_role_holder_forbids_employee(self):
        errors = step(
            1, ApproverStrategy.ROLE_HOLDER, role_id="HR_ADMIN", employee_id="e-1",
        ).validate()
        assert any("must not carry employee_id" in e for e in errors)

    def test_specific_employee_requires_employee(self):
        errors = step(1, ApproverStrategy.SPECIFIC_EMPLOYEE).validate()
        assert any("requires employee_id" in e for e in errors)

    def test_specific_employee_forbids_role(self):
        errors = step(
            1, ApproverStrategy.SPECIFIC_EMPLOYEE, employee_id="e-1", role_id="X",
        ).validate()
        assert any("must not carry role_id" in e for e in errors)

    @pytest.mark.parametrize(
        "strategy",
        [ApproverStrategy.DIRECT_MANAGER, ApproverStrategy.DEPARTMENT_HEAD, ApproverStrategy.HR_ADMIN],
    )
    def test_parameterless_strategies_forbid_both(self, strategy):
        errors = step(1, strategy, role_id="R", employee_id="E").validate()
        assert len(errors) == 2

    def test_non_positive_timeout_rejected(self):
        errors = step(
            1, ApproverStrategy.DIRECT_MANAGER, auto_advance_after=timedelta(0),
        ).validate()
        assert any("must be positive" in e for e in errors)

    def test_to_dict_stores_timeout_in_seconds(self):
        data = step(2, ApproverStrategy.DIRECT_MANAGER, hours=24, can_skip=True).to_dict()
        assert data["auto_advance_seconds"] == 86400
        assert data["strategy"] == "direct_manager"
        assert data["can_skip"] is True

    def test_from_dict_restores_definition(self):
        original = step(1, ApproverStrategy.ROLE_HOLDER, role_id="HR_ADMIN", hours=2)
        assert StepDefinition.from_dict(original.to_dict()) == original


class TestRuleDefinitionValidation:
    def test_valid_rule(self):
        rule = _rule(
            step(1, ApproverStrategy.DIRECT_MANAGER),
            step(2, ApproverStrategy.HR_ADMIN),
        )
        assert rule.validate() == []
        assert rule.total_steps == 2

    def test_active_rule_needs_a_step(self):
        assert "an active rule needs at least one step" in _rule().validate()

    def test_inactive_rule_may_be_empty(self):
        assert _rule(is_active=False).validate() == []

    def test_gap_in_step_orders_rejected(self):
        rule = _rule(
            step(1, ApproverStrategy.DIRECT_MANAGER),
            step(3, ApproverStrategy.HR_ADMIN),
        )
        assert any("contiguous" in e for e in rule.validate())

    def test_zero_indexed_steps_rejected(self):
        rule = _rule(step(0, ApproverStrategy.DIRECT_MANAGER))
        assert any("contiguous" in e for e in rule.validate())

    def test_step_errors_are_collected(self):
        rule = _rule(step(1, ApproverStrategy.ROLE_HOLDER))
        assert any("requires role_id" in e for e in rule.validate())

    def test_missing_name_rejected(self):
        rule = _rule(step(1, ApproverStrategy.DIRECT_MANAGER), name="")
        assert "name is required" in rule.validate()

    def test_step_lookup(self):
        rule = _rule(
            step(1, ApproverStrategy.DIRECT_MANAGER),
            step(2, ApproverStrategy.HR_ADMIN),
        )
        assert rule.step(2).strategy == ApproverStrategy.HR_ADMIN
        with pytest.raises(KeyError):
            rule.step(3)


class TestSnapshotAndFingerprint:
    def test_snapshot_restores_steps_and_version(self):
        rule = _rule(
            step(1, ApproverStrategy.DIRECT_MANAGER, hours=24),
            step(2, ApproverStrategy.ROLE_HOLDER, role_id="HR_ADMIN", can_skip=True),
            conditions=("entity.days > 2",),
            version=4,
        )
        restored = RuleDefinition.from_snapshot("acme", rule.snapshot())
        assert restored.steps == rule.steps
        assert restored.conditions == rule.conditions
        assert restored.version == 4

    def test_fingerprint_is_stable(self):
        a = _rule(step(1, ApproverStrategy.DIRECT_MANAGER))
        b = _rule(step(1, ApproverStrategy.DIRECT_MANAGER))
        assert a.fingerprint() == b.fingerprint()
        assert len(a.fingerprint()) == 64

    def test_fingerprint_changes_with_steps(self):
        a = _rule(step(1, ApproverStrategy.DIRECT_MANAGER))
        b = _rule(step(1, ApproverStrategy.DIRECT_MANAGER, can_skip=True))
        assert a.fingerprint() != b.fingerprint()


class TestLifecycleTables:
    def test_terminal_workflow_statuses_have_no_exits(self):
        for status in TERMINAL_WORKFLOW_STATUSES:
            assert WORKFLOW_TRANSITIONS[status] == frozenset()
        assert WorkflowStatus.IN_PROGRESS not in TERMINAL_WORKFLOW_STATUSES

    def test_pending_is_the_only_open_step_status(self):
        open_statuses = [s for s in StepStatus if STEP_TRANSITIONS[s]]
        assert open_statuses == [StepStatus.PENDING]
        assert set(StepStatus) - TERMINAL_STEP_STATUSES == {StepStatus.PENDING}

    def test_skipped_is_never_a_transition_target(self):
        # Skipped steps are created terminal; a pending step is never skipped.
        assert StepStatus.SKIPPED not in STEP_TRANSITIONS[StepStatus.PENDING]

    def test_advancing_statuses(self):
        assert StepStatus.REJECTED not in ADVANCING_STEP_STATUSES
        assert StepStatus.CANCELLED not in ADVANCING_STEP_STATUSES
        assert StepStatus.AUTO_APPROVED in ADVANCING_STEP_STATUSES


class TestResolutionResults:
    def test_resolved(self):
        assert ResolvedApprover("e-1").resolved is True

    def test_unresolved(self):
        result = Unresolved("nobody")
        assert result.resolved is False
        assert result.data_quality is False


class TestEventsAndClock:
    def test_event_payload_carries_type(self):
        from uuid import uuid4

        event = StepAdvanced(
            tenant_id="acme",
            instance_id=uuid4(),
            occurred_at=datetime(2026, 1, 1),
            step_order=2,
            approver_id="e-200",
        )
        payload = event.to_payload()
        assert payload["event_type"] == "StepAdvanced"
        assert payload["approver_id"] == "e-200"

    def test_rejected_event_type(self):
        from uuid import uuid4

        event = WorkflowRejected("acme", uuid4(), datetime(2026, 1, 1), by_step=1)
        assert event.event_type == "WorkflowRejected"

    def test_deterministic_clock_advances(self):
        clock = DeterministicClock(datetime(2026, 1, 1, 9, 0))
        assert clock.now() == clock.now()
        assert clock.advance(hours=2) == datetime(2026, 1, 1, 11, 0)

    def test_deterministic_clock_never_goes_back(self):
        clock = DeterministicClock(datetime(2026, 1, 1))
        with pytest.raises(ValueError):
            clock.advance(-1)
