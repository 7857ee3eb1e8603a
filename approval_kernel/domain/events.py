"""
Workflow domain events.

The engine's only coupling to notification delivery: after a transition
commits, the Decision API hands these events to an ``EventSink`` so the
hosting application can notify the next approver, the requester, or an
administrator.  Delivery is one-directional; sinks never call back into
the engine.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID


@dataclass(frozen=True)
class DomainEvent:
    """Base for all workflow events."""

    tenant_id: str
    instance_id: UUID
    occurred_at: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event_type"] = self.event_type
        return payload


@dataclass(frozen=True)
class StepAdvanced(DomainEvent):
    """A step with a resolved approver is now waiting on that approver."""

    step_order: int
    approver_id: str


@dataclass(frozen=True)
class WorkflowCompleted(DomainEvent):
    """Every step passed; the entity is approved."""


@dataclass(frozen=True)
class WorkflowRejected(DomainEvent):
    by_step: int


@dataclass(frozen=True)
class WorkflowCancelled(DomainEvent):
    by_step: int


@dataclass(frozen=True)
class ApproverUnresolved(DomainEvent):
    """A non-skippable step has nobody to approve it.

    The instance is stalled until an administrator reassigns the step.
    """

    step_order: int
    strategy: str
    reason: str


class EventSink(Protocol):
    """Receives events after the transition that produced them committed."""

    def publish(self, event: DomainEvent) -> None:
        ...
