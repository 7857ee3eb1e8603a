"""
approval_services.directory -- Org directory adapters.

Responsibility:
    ``StaticOrgDirectory`` is an in-memory directory of employees,
    departments and roles, used for tests, local runs and seeding.
    ``RetryingDirectory`` wraps any directory with a bounded per-call
    timeout and a small retry budget.  That boundary is where transient
    failures get retried, so the rest of the engine only ever sees an
    answer or a ``DirectoryUnavailableError``.

Architecture position:
    Services -- adapter for the ``OrgDirectory`` protocol declared in
    approval_kernel.domain.workflow.

Invariants enforced:
    - ``None``/``[]`` always mean "looked up, found nothing"; failures are
      always raised.  The resolver relies on this to tell "nobody to
      approve" apart from "could not ask".
    - Retries back off exponentially and are bounded by ``max_attempts``.

Failure modes:
    - ``DirectoryUnavailableError`` once every attempt failed or timed out.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Sequence

from approval_kernel.domain.workflow import OrgDirectory
from approval_kernel.exceptions import DirectoryUnavailableError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.directory")

# Role code that marks a department's head when no explicit head is set.
DEPARTMENT_MANAGER_ROLE = "MANAGER"

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    DirectoryUnavailableError,
    TimeoutError,
    FutureTimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class Employee:
    employee_id: str
    tenant_id: str
    manager_id: str | None = None
    department_id: str | None = None
    active: bool = True
    roles: frozenset[str] = field(default_factory=frozenset)


class StaticOrgDirectory:
    """In-memory ``OrgDirectory``.

    A department's head is the explicitly assigned head when there is one;
    otherwise the lowest-id active employee of the department holding the
    ``MANAGER`` role.
    """

    def __init__(
        self,
        employees: Iterable[Employee] = (),
        department_heads: dict[str, str] | None = None,
    ):
        self._lock = threading.Lock()
        self._employees: dict[str, Employee] = {e.employee_id: e for e in employees}
        self._department_heads: dict[str, str] = dict(department_heads or {})

    @classmethod
    def from_mapping(cls, data: dict[str, Any], tenant_id: str | None = None) -> StaticOrgDirectory:
        """Build a directory from a parsed YAML/JSON document.

        Expected shape::

            tenant_id: acme            # default for every employee
            department_heads: {ENG: e-100}
            employees:
              - id: e-100
                manager_id: null
                department_id: ENG
                roles: [MANAGER]
                active: true
        """
        default_tenant = tenant_id or data.get("tenant_id")
        employees = []
        for raw in data.get("employees") or []:
            tenant = raw.get("tenant_id", default_tenant)
            if not tenant:
                raise ValueError(f"employee {raw.get('id')!r} has no tenant_id")
            employees.append(
                Employee(
                    employee_id=str(raw["id"]),
                    tenant_id=str(tenant),
                    manager_id=raw.get("manager_id"),
                    department_id=raw.get("department_id"),
                    active=bool(raw.get("active", True)),
                    roles=frozenset(raw.get("roles") or ()),
                )
            )
        return cls(employees, dict(data.get("department_heads") or {}))

    # -- mutation (test and seeding helpers) ---------------------------

    def add_employee(
        self,
        employee_id: str,
        tenant_id: str,
        *,
        manager_id: str | None = None,
        department_id: str | None = None,
        active: bool = True,
        roles: Iterable[str] = (),
    ) -> Employee:
        employee = Employee(
            employee_id=employee_id,
            tenant_id=tenant_id,
            manager_id=manager_id,
            department_id=department_id,
            active=active,
            roles=frozenset(roles),
        )
        with self._lock:
            self._employees[employee_id] = employee
        return employee

    def update_employee(self, employee_id: str, **changes: Any) -> Employee:
        with self._lock:
            employee = replace(self._employees[employee_id], **changes)
            self._employees[employee_id] = employee
        return employee

    def deactivate(self, employee_id: str) -> None:
        self.update_employee(employee_id, active=False)

    def set_department_head(self, department_id: str, employee_id: str | None) -> None:
        with self._lock:
            if employee_id is None:
                self._department_heads.pop(department_id, None)
            else:
                self._department_heads[department_id] = employee_id

    # -- OrgDirectory --------------------------------------------------

    def manager_of(self, employee_id: str) -> str | None:
        employee = self._employees.get(employee_id)
        return employee.manager_id if employee else None

    def department_of(self, employee_id: str) -> str | None:
        employee = self._employees.get(employee_id)
        return employee.department_id if employee else None

    def department_head_of(self, department_id: str) -> str | None:
        head = self._department_heads.get(department_id)
        if head is not None:
            return head
        managers = sorted(
            e.employee_id
            for e in list(self._employees.values())
            if e.department_id == department_id
            and e.active
            and DEPARTMENT_MANAGER_ROLE in e.roles
        )
        return managers[0] if managers else None

    def role_holders(self, tenant_id: str, role_id: str) -> list[str]:
        return sorted(
            e.employee_id
            for e in list(self._employees.values())
            if e.tenant_id == tenant_id and role_id in e.roles
        )

    def employee_active(self, employee_id: str) -> bool:
        employee = self._employees.get(employee_id)
        return bool(employee and employee.active)

    def employee_tenant(self, employee_id: str) -> str | None:
        employee = self._employees.get(employee_id)
        return employee.tenant_id if employee else None


class RetryingDirectory:
    """``OrgDirectory`` decorator adding timeouts, retries and backoff.

    Args:
        inner: The directory doing the real lookups.
        max_attempts: Attempts per lookup, including the first.
        backoff_seconds: Delay before the first retry; doubles each retry.
        timeout_seconds: Per-attempt timeout, or None to wait indefinitely.
        sleep: Injectable sleep for tests.
    """

    def __init__(
        self,
        inner: OrgDirectory,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._inner = inner
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    def manager_of(self, employee_id: str) -> str | None:
        return self._call("manager_of", self._inner.manager_of, employee_id)

    def department_of(self, employee_id: str) -> str | None:
        return self._call("department_of", self._inner.department_of, employee_id)

    def department_head_of(self, department_id: str) -> str | None:
        return self._call("department_head_of", self._inner.department_head_of, department_id)

    def role_holders(self, tenant_id: str, role_id: str) -> Sequence[str]:
        return self._call("role_holders", self._inner.role_holders, tenant_id, role_id)

    def employee_active(self, employee_id: str) -> bool:
        return self._call("employee_active", self._inner.employee_active, employee_id)

    def employee_tenant(self, employee_id: str) -> str | None:
        return self._call("employee_tenant", self._inner.employee_tenant, employee_id)

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        last_error: BaseException | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._attempt(fn, *args)
            except TRANSIENT_ERRORS as exc:
                last_error = exc
                if attempt == self._max_attempts:
                    break
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "directory_lookup_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "delay_seconds": delay,
                        "error": repr(exc),
                    },
                )
                self._sleep(delay)

        logger.error(
            "directory_unavailable",
            extra={
                "operation": operation,
                "attempts": self._max_attempts,
                "error": repr(last_error),
            },
        )
        raise DirectoryUnavailableError(
            operation, self._max_attempts, repr(last_error),
        ) from last_error

    def _attempt(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._timeout_seconds is None:
            return fn(*args)
        future = self._pool().submit(fn, *args)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=8, thread_name_prefix="directory-lookup",
                )
            return self._executor
