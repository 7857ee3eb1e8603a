"""
Tests for the lifecycle guards on WorkflowStore transitions.

A pending step may only move to a status listed for PENDING in the step
lifecycle table; anything else is refused before the guarded UPDATE runs.
"""

import pytest

from approval_kernel.domain.workflow import ApproverStrategy, StepStatus, WorkflowStatus
from approval_kernel.services.workflow_store import WorkflowStore
from tests.conftest import START_TIME, TENANT, step


@pytest.fixture
def pending(create_rule, submit, session):
    create_rule("LEAVE_APPROVAL", step(1, ApproverStrategy.DIRECT_MANAGER))
    instance = submit("LEAVE_APPROVAL").instance
    store = WorkflowStore(session)
    model = store.load_instance(instance.instance_id, TENANT)
    return store, model, store.pending_execution(model.id)


class TestStepTransitionGuard:
    @pytest.mark.parametrize("target", [StepStatus.SKIPPED, StepStatus.PENDING])
    def test_unreachable_target_refused(self, pending, target):
        store, _, execution = pending
        seen_version = execution.version
        with pytest.raises(ValueError):
            store.transition_step(execution, target, actor_id="system", now=START_TIME)
        assert execution.status == StepStatus.PENDING.value
        assert execution.version == seen_version

    def test_reachable_target_applied(self, pending):
        store, _, execution = pending
        seen_version = execution.version
        store.transition_step(
            execution, StepStatus.APPROVED, actor_id="e-200", now=START_TIME,
        )
        assert execution.status == StepStatus.APPROVED.value
        assert execution.version == seen_version + 1


class TestInstanceTransitionGuard:
    def test_advancing_in_progress_allowed(self, pending):
        store, instance, _ = pending
        seen_version = instance.version
        store.transition_instance(
            instance, current_step_order=1, status=WorkflowStatus.IN_PROGRESS, now=START_TIME,
        )
        assert instance.status == WorkflowStatus.IN_PROGRESS.value
        assert instance.version == seen_version + 1
