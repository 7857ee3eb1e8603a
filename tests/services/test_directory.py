"""
Tests for the org directory adapters and the override policy.
"""

import threading

import pytest

from approval_kernel.exceptions import DirectoryUnavailableError
from approval_services.authority import DirectoryOverridePolicy
from approval_services.directory import RetryingDirectory, StaticOrgDirectory
from tests.conftest import (
    EMPLOYEE,
    HR_ADMIN_1,
    MANAGER,
    OTHER_TENANT,
    SUPER_ADMIN,
    TENANT,
    build_directory,
)


class _FlakyDirectory:
    """Fails ``failures`` times, then answers from a static directory."""

    def __init__(self, failures: int, error: Exception | None = None):
        self._inner = build_directory()
        self._remaining = failures
        self._error = error or ConnectionError("reset by peer")
        self.calls = 0

    def manager_of(self, employee_id):
        self.calls += 1
        if self._remaining > 0:
            self._remaining -= 1
            raise self._error
        return self._inner.manager_of(employee_id)


class _HangingDirectory:
    def __init__(self):
        self.release = threading.Event()

    def manager_of(self, employee_id):
        self.release.wait(5)
        return MANAGER


class TestStaticOrgDirectory:
    def test_lookups(self, directory):
        assert directory.manager_of(EMPLOYEE) == MANAGER
        assert directory.manager_of("nobody") is None
        assert directory.department_of(EMPLOYEE) == "ENG"
        assert directory.employee_active(EMPLOYEE)
        assert not directory.employee_active("nobody")
        assert directory.employee_tenant(EMPLOYEE) == TENANT
        assert directory.employee_tenant("g-1") == OTHER_TENANT
        assert directory.employee_tenant("nobody") is None

    def test_department_head_falls_back_to_manager_role(self, directory):
        assert directory.department_head_of("ENG") == MANAGER
        assert directory.department_head_of("HR") is None

    def test_explicit_department_head_wins(self, directory):
        directory.set_department_head("ENG", "e-300")
        assert directory.department_head_of("ENG") == "e-300"
        directory.set_department_head("ENG", None)
        assert directory.department_head_of("ENG") == MANAGER

    def test_role_holders_scoped_to_tenant(self, directory):
        assert directory.role_holders(TENANT, "HR_ADMIN") == ["e-900", "e-901"]
        assert directory.role_holders(OTHER_TENANT, "HR_ADMIN") == ["g-1"]
        assert directory.role_holders(TENANT, "NOBODY") == []

    def test_from_mapping(self):
        directory = StaticOrgDirectory.from_mapping(
            {
                "tenant_id": "acme",
                "department_heads": {"OPS": "o-1"},
                "employees": [
                    {"id": "o-1", "department_id": "OPS", "roles": ["HR_ADMIN"]},
                    {"id": "o-2", "manager_id": "o-1", "department_id": "OPS"},
                    {"id": "o-3", "tenant_id": "globex", "active": False},
                ],
            }
        )
        assert directory.manager_of("o-2") == "o-1"
        assert directory.department_head_of("OPS") == "o-1"
        assert directory.role_holders("acme", "HR_ADMIN") == ["o-1"]
        assert not directory.employee_active("o-3")

    def test_from_mapping_requires_tenant(self):
        with pytest.raises(ValueError):
            StaticOrgDirectory.from_mapping({"employees": [{"id": "x"}]})


class TestRetryingDirectory:
    def test_transient_failures_retried_with_backoff(self):
        flaky = _FlakyDirectory(failures=2)
        delays = []
        directory = RetryingDirectory(flaky, max_attempts=3, backoff_seconds=0.5, sleep=delays.append)

        assert directory.manager_of(EMPLOYEE) == MANAGER
        assert flaky.calls == 3
        assert delays == [0.5, 1.0]

    def test_exhausted_budget_raises(self, captured_logs):
        flaky = _FlakyDirectory(failures=10)
        directory = RetryingDirectory(flaky, max_attempts=2, sleep=lambda _: None)

        with pytest.raises(DirectoryUnavailableError) as exc_info:
            directory.manager_of(EMPLOYEE)
        assert exc_info.value.operation == "manager_of"
        assert exc_info.value.attempts == 2
        assert flaky.calls == 2
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("directory_lookup_retry") == 1
        assert "directory_unavailable" in messages

    def test_non_transient_errors_propagate_immediately(self):
        flaky = _FlakyDirectory(failures=1, error=KeyError("bad id"))
        directory = RetryingDirectory(flaky, max_attempts=3, sleep=lambda _: None)
        with pytest.raises(KeyError):
            directory.manager_of(EMPLOYEE)
        assert flaky.calls == 1

    def test_per_attempt_timeout(self):
        hanging = _HangingDirectory()
        directory = RetryingDirectory(
            hanging, max_attempts=2, timeout_seconds=0.05, sleep=lambda _: None,
        )
        try:
            with pytest.raises(DirectoryUnavailableError):
                directory.manager_of(EMPLOYEE)
        finally:
            hanging.release.set()
            directory.close()

    def test_invalid_attempt_budget(self):
        with pytest.raises(ValueError):
            RetryingDirectory(build_directory(), max_attempts=0)


class TestDirectoryOverridePolicy:
    def test_override_roles(self, directory):
        policy = DirectoryOverridePolicy(directory, ("HR_ADMIN", "SUPER_ADMIN"))
        assert policy.has_override(TENANT, HR_ADMIN_1)
        assert policy.has_override(TENANT, SUPER_ADMIN)
        assert not policy.has_override(TENANT, MANAGER)

    def test_override_is_tenant_scoped(self, directory):
        policy = DirectoryOverridePolicy(directory, ("HR_ADMIN",))
        assert not policy.has_override(TENANT, "g-1")
        assert policy.has_override(OTHER_TENANT, "g-1")

    def test_inactive_holder_has_no_override(self, directory):
        directory.deactivate(HR_ADMIN_1)
        policy = DirectoryOverridePolicy(directory, ("HR_ADMIN",))
        assert not policy.has_override(TENANT, HR_ADMIN_1)
