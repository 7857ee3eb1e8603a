"""
approval_services.authority -- Administrative override policy.

An actor holds an override when they are an active holder of one of the
configured override roles (HR_ADMIN and SUPER_ADMIN by default) in the
tenant.  Override holders may decide steps assigned to someone else,
cancel other people's requests and reassign stalled steps.  The state
machine logs every use of an override.
"""

from __future__ import annotations

from typing import Iterable

from approval_kernel.domain.workflow import OrgDirectory


class DirectoryOverridePolicy:
    """``OverridePolicy`` backed by role membership in the org directory."""

    def __init__(self, directory: OrgDirectory, override_roles: Iterable[str]):
        self._directory = directory
        self._override_roles = tuple(override_roles)

    @property
    def override_roles(self) -> tuple[str, ...]:
        return self._override_roles

    def has_override(self, tenant_id: str, actor_id: str) -> bool:
        for role in self._override_roles:
            if actor_id in self._directory.role_holders(tenant_id, role):
                return self._directory.employee_active(actor_id)
        return False
