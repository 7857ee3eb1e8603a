"""
Race tests for step decisions.

Several threads act on the same pending step at the same moment (released
together by a Barrier), each through its own session and connection.
Exactly one transition may win; every loser gets a concurrency error and
the instance is never double-advanced.

Runs against the per-test SQLite file database; the PostgreSQL variant of
the suite is selected with ``-m postgres`` and DATABASE_URL.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from approval_kernel.domain.workflow import ApproverStrategy, StepStatus, WorkflowStatus
from approval_kernel.exceptions import (
    ConcurrencyError,
    StepAlreadyDecidedError,
    WorkflowNotInProgressError,
)
from tests.conftest import EMPLOYEE, HR_ADMIN_1, HR_ADMIN_2, MANAGER, SUPER_ADMIN, TENANT, step


def run_together(*calls):
    """Run callables in parallel threads released at the same instant.

    Returns one entry per call: its result, or the exception it raised.
    """
    barrier = threading.Barrier(len(calls))

    def _run(call):
        barrier.wait(timeout=10)
        try:
            return call()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(_run, calls))


def _split(outcomes):
    winners = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    return winners, losers


@pytest.fixture
def timed_leave(create_rule):
    return create_rule(
        "LEAVE_APPROVAL",
        step(1, ApproverStrategy.DIRECT_MANAGER, hours=24),
        step(2, ApproverStrategy.HR_ADMIN),
    )


class TestDecideVersusDecide:
    def test_two_approvals_exactly_one_wins(self, timed_leave, submit, decisions):
        instance = submit("LEAVE_APPROVAL").instance

        def approve_as(actor):
            return lambda: decisions.approve(
                tenant_id=TENANT, instance_id=instance.instance_id, step_order=1, actor_id=actor,
            )

        winners, losers = _split(run_together(approve_as(MANAGER), approve_as(SUPER_ADMIN)))

        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StepAlreadyDecidedError)

        current = decisions.get_status(TENANT, instance.instance_id)
        assert current.current_step_order == 2
        assert [s.step_order for s in current.steps] == [1, 2]
        assert current.steps[1].status == StepStatus.PENDING

    def test_many_deciders_exactly_one_wins(self, timed_leave, submit, decisions):
        instance = submit("LEAVE_APPROVAL").instance
        actors = [MANAGER, SUPER_ADMIN, HR_ADMIN_1, HR_ADMIN_2] * 2

        outcomes = run_together(
            *[
                (lambda actor=actor: decisions.approve(
                    tenant_id=TENANT,
                    instance_id=instance.instance_id,
                    step_order=1,
                    actor_id=actor,
                ))
                for actor in actors
            ]
        )
        winners, losers = _split(outcomes)

        assert len(winners) == 1
        assert all(isinstance(e, ConcurrencyError) for e in losers)
        current = decisions.get_status(TENANT, instance.instance_id)
        assert len(current.steps) == 2
        assert current.steps[0].version == 2

    def test_approve_versus_reject(self, timed_leave, submit, decisions):
        instance = submit("LEAVE_APPROVAL").instance

        outcomes = run_together(
            lambda: decisions.approve(
                tenant_id=TENANT, instance_id=instance.instance_id, step_order=1, actor_id=MANAGER,
            ),
            lambda: decisions.reject(
                tenant_id=TENANT, instance_id=instance.instance_id, step_order=1, actor_id=SUPER_ADMIN,
            ),
        )
        winners, losers = _split(outcomes)
        assert len(winners) == 1
        assert isinstance(losers[0], StepAlreadyDecidedError)

        current = decisions.get_status(TENANT, instance.instance_id)
        if current.status == WorkflowStatus.REJECTED:
            assert len(current.steps) == 1
        else:
            assert current.current_step_order == 2
            assert current.steps[0].status == StepStatus.APPROVED


class TestDecideVersusTimeout:
    @pytest.mark.parametrize("round_", range(5))
    def test_human_and_sweeper_never_double_advance(
        self, timed_leave, submit, decisions, clock, round_,
    ):
        instance = submit("LEAVE_APPROVAL").instance
        clock.advance(0, hours=24)

        outcomes = run_together(
            lambda: decisions.approve(
                tenant_id=TENANT, instance_id=instance.instance_id, step_order=1, actor_id=MANAGER,
            ),
            lambda: decisions.auto_advance(instance_id=instance.instance_id, step_order=1),
        )
        winners, losers = _split(outcomes)

        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StepAlreadyDecidedError)

        current = decisions.get_status(TENANT, instance.instance_id)
        assert current.current_step_order == 2
        assert current.version == 2
        assert [s.step_order for s in current.steps] == [1, 2]
        assert current.steps[0].status in (StepStatus.APPROVED, StepStatus.AUTO_APPROVED)
        assert current.steps[1].status == StepStatus.PENDING


class TestCancelVersusApprove:
    def test_cancel_and_final_approval(self, create_rule, submit, decisions):
        create_rule("LEAVE_APPROVAL", step(1, ApproverStrategy.DIRECT_MANAGER))
        instance = submit("LEAVE_APPROVAL").instance

        outcomes = run_together(
            lambda: decisions.approve(
                tenant_id=TENANT, instance_id=instance.instance_id, step_order=1, actor_id=MANAGER,
            ),
            lambda: decisions.cancel(
                tenant_id=TENANT, instance_id=instance.instance_id, actor_id=EMPLOYEE,
            ),
        )
        winners, losers = _split(outcomes)
        assert len(winners) == 1
        assert isinstance(losers[0], (StepAlreadyDecidedError, WorkflowNotInProgressError))

        current = decisions.get_status(TENANT, instance.instance_id)
        (only,) = current.steps
        if current.status == WorkflowStatus.APPROVED:
            assert only.status == StepStatus.APPROVED
        else:
            assert current.status == WorkflowStatus.CANCELLED
            assert only.status == StepStatus.CANCELLED
