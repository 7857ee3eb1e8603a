"""
approval_services.sinks -- Event and audit sink implementations.

The engine emits domain events after commit and audit records inside the
transaction.  The hosting application plugs in its own notification and
audit-log collaborators; these implementations cover logging, tests and
fan-out.
"""

from __future__ import annotations

import threading
from dataclasses import asdict
from typing import Iterable

from approval_kernel.domain.audit import AuditRecord, AuditSink
from approval_kernel.domain.events import DomainEvent, EventSink
from approval_kernel.logging_config import get_logger

logger = get_logger("services.sinks")


class LoggingEventSink:
    """Writes every event to the structured log."""

    def publish(self, event: DomainEvent) -> None:
        logger.info("domain_event", extra={"event": event.to_payload()})


class InMemoryEventSink:
    """Collects events; thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[DomainEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: type[DomainEvent]) -> list[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class CompositeEventSink:
    """Fans each event out to several sinks.

    A failing sink is logged and does not stop delivery to the others.
    """

    def __init__(self, sinks: Iterable[EventSink]):
        self._sinks = list(sinks)

    def publish(self, event: DomainEvent) -> None:
        for sink in self._sinks:
            try:
                sink.publish(event)
            except Exception:
                logger.exception(
                    "event_sink_failed",
                    extra={"event_type": event.event_type, "sink": type(sink).__name__},
                )


class LoggingAuditSink:
    """Writes audit records to the structured log."""

    def record(self, entry: AuditRecord) -> None:
        logger.info("audit_record", extra={"audit": asdict(entry)})


class InMemoryAuditSink:
    """Collects audit records; thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []

    def record(self, entry: AuditRecord) -> None:
        with self._lock:
            self._records.append(entry)

    @property
    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


__all__ = [
    "AuditSink",
    "CompositeEventSink",
    "EventSink",
    "InMemoryAuditSink",
    "InMemoryEventSink",
    "LoggingAuditSink",
    "LoggingEventSink",
]
