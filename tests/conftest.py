"""
Pytest fixtures for the approval engine test suite.

Provides:
- A fresh SQLite file database per test (real ORM models, real CAS)
- A deterministic, naive clock (SQLite strips tzinfo)
- A static org directory for tenant "acme" plus a second tenant
- In-memory event and audit sinks, the Decision API and rule admin
- Captured structured logs

Environment Variables:
- DATABASE_URL is ignored here; every test gets its own database file so
  race tests can open several connections at once.
"""

import json
import logging
from datetime import datetime, timedelta
from io import StringIO

import pytest

from approval_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.workflow import ApproverStrategy, RuleDefinition, StepDefinition
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_services.decision_api import DecisionService
from approval_services.directory import StaticOrgDirectory
from approval_services.rule_admin import RuleAdminService
from approval_services.sinks import InMemoryAuditSink, InMemoryEventSink

TENANT = "acme"
OTHER_TENANT = "globex"

# Org chart for TENANT:
#   e-300 (EXEC, FINANCE_APPROVER)        top of chain
#     e-200 (ENG, MANAGER)                head of ENG
#       e-100 (ENG)                       typical requester
#       e-101 (ENG)
#   e-900, e-901 (HR, HR_ADMIN)
#   e-999 (SUPER_ADMIN)
#   e-500 (no manager, no department)
EMPLOYEE = "e-100"
PEER = "e-101"
MANAGER = "e-200"
EXECUTIVE = "e-300"
HR_ADMIN_1 = "e-900"
HR_ADMIN_2 = "e-901"
SUPER_ADMIN = "e-999"
ORPHAN = "e-500"

START_TIME = datetime(2026, 3, 2, 9, 0, 0)


def step(order: int, strategy: ApproverStrategy, **kwargs) -> StepDefinition:
    """Build a StepDefinition; ``hours`` sets the auto-advance timeout."""
    hours = kwargs.pop("hours", None)
    if hours is not None:
        kwargs["auto_advance_after"] = timedelta(hours=hours)
    return StepDefinition(step_order=order, strategy=strategy, **kwargs)


def build_directory() -> StaticOrgDirectory:
    directory = StaticOrgDirectory()
    directory.add_employee(EXECUTIVE, TENANT, department_id="EXEC", roles=["FINANCE_APPROVER"])
    directory.add_employee(MANAGER, TENANT, manager_id=EXECUTIVE, department_id="ENG", roles=["MANAGER"])
    directory.add_employee(EMPLOYEE, TENANT, manager_id=MANAGER, department_id="ENG")
    directory.add_employee(PEER, TENANT, manager_id=MANAGER, department_id="ENG")
    directory.add_employee(HR_ADMIN_1, TENANT, department_id="HR", roles=["HR_ADMIN"])
    directory.add_employee(HR_ADMIN_2, TENANT, department_id="HR", roles=["HR_ADMIN"])
    directory.add_employee(SUPER_ADMIN, TENANT, roles=["SUPER_ADMIN"])
    directory.add_employee(ORPHAN, TENANT)
    directory.add_employee("g-1", OTHER_TENANT, roles=["HR_ADMIN"])
    return directory


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, decisions):
            decisions.approve(...)
            logs = captured_logs()
            assert any(r["message"] == "step_decided" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite file database with all tables and listeners."""
    init_engine_from_url(f"sqlite:///{tmp_path / 'approval.db'}")
    create_tables()
    yield
    reset_engine()


@pytest.fixture
def session_factory(db):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# Engine wiring
# =============================================================================


@pytest.fixture
def clock():
    # Naive datetimes for SQLite compatibility (SQLite strips tzinfo)
    return DeterministicClock(fixed_time=START_TIME)


@pytest.fixture
def directory():
    return build_directory()


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def decisions(session_factory, directory, events, audit, clock):
    return DecisionService(
        session_factory,
        directory=directory,
        events=events,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def rule_admin(session_factory, decisions, audit, clock):
    return RuleAdminService(
        session_factory,
        rule_cache=decisions.rule_cache,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def create_rule(rule_admin):
    """Save an active rule for TENANT and return it."""

    def _create(
        process_type: str,
        *steps: StepDefinition,
        conditions: tuple[str, ...] = (),
        tenant_id: str = TENANT,
    ) -> RuleDefinition:
        return rule_admin.create(
            RuleDefinition(
                tenant_id=tenant_id,
                process_type=process_type,
                name=f"{process_type} rule",
                steps=tuple(steps),
                conditions=conditions,
            ),
            actor_id=HR_ADMIN_1,
        )

    return _create


@pytest.fixture
def submit(decisions):
    """Submit an entity for TENANT with sensible defaults."""
    counter = iter(range(1, 1_000_000))

    def _submit(process_type: str, subject: str = EMPLOYEE, **kwargs):
        return decisions.submit(
            tenant_id=kwargs.pop("tenant_id", TENANT),
            process_type=process_type,
            entity_type=kwargs.pop("entity_type", "leave_request"),
            entity_id=kwargs.pop("entity_id", f"req-{next(counter)}"),
            subject_employee_id=subject,
            requested_by=kwargs.pop("requested_by", subject),
            context=kwargs.pop("context", None),
        )

    return _submit
