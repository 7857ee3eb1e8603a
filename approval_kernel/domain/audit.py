"""
Audit records for workflow transitions.

HR approvals (leave, compensation, disciplinary actions) are compliance
relevant: every step decision and every terminal instance transition is
described by an ``AuditRecord`` carrying before/after snapshots.  Storage
of the audit log is owned by an external collaborator behind the
``AuditSink`` protocol.  The sink is called inside the transaction, so a
sink failure aborts the transition rather than losing its audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class AuditAction(str, Enum):
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_APPROVED = "workflow_approved"
    WORKFLOW_REJECTED = "workflow_rejected"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_ARCHIVED = "workflow_archived"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_AUTO_APPROVED = "step_auto_approved"
    STEP_SKIPPED = "step_skipped"
    STEP_REASSIGNED = "step_reassigned"
    RULE_CREATED = "rule_created"
    RULE_UPDATED = "rule_updated"
    RULE_DELETED = "rule_deleted"


@dataclass(frozen=True)
class AuditRecord:
    """One audited change with full before/after snapshots."""

    action: AuditAction
    tenant_id: str
    entity_type: str
    entity_id: str
    actor_id: str
    occurred_at: datetime
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    via_override: bool = False


class AuditSink(Protocol):
    def record(self, entry: AuditRecord) -> None:
        ...
