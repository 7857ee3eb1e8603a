"""
WorkflowSweeper -- In-process polling sweeper for step timeouts.

Contract:
    Finds PENDING step executions whose ``due_at`` has passed and
    auto-approves each one through the same compare-and-swap the Decision
    API uses for human decisions.

Architecture: approval_batch.  Uses approval_kernel.services.workflow_store
    for the scan and an injected state machine factory for each advance.

Invariants enforced:
    - All timestamps come from the injected Clock.
    - Each due step is advanced in its own transaction; one failure never
      stops the scan.
    - A step decided by a human between scan and advance is a lost race,
      not an error: the CAS refuses it and nothing is double-advanced.
    - Graceful shutdown: ``stop()`` lets in-flight items finish.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from approval_kernel.db.engine import session_scope
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.events import EventSink
from approval_kernel.exceptions import (
    ConcurrencyError,
    DirectoryUnavailableError,
    StepNotDueError,
    WorkflowNotInProgressError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.state_machine import TransitionResult, WorkflowStateMachine
from approval_kernel.services.workflow_store import WorkflowStore

logger = get_logger("batch.sweeper")

# Outcomes where someone else got to the step first.
LOST_RACE_ERRORS = (ConcurrencyError, WorkflowNotInProgressError, StepNotDueError)

_ADVANCED = "advanced"
_LOST_RACE = "lost_race"
_FAILED = "failed"
_SKIPPED = "skipped"


@dataclass(frozen=True)
class SweepReport:
    scanned: int = 0
    advanced: int = 0
    lost_races: int = 0
    failed: int = 0


class WorkflowSweeper:
    """Auto-advances overdue steps.

    Contract:
        - ``tick()`` scans one batch and advances every due step in it.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Several
          replicas may sweep at once; the CAS lets exactly one of them
          advance a given step.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        machine_factory: Callable[[Session], WorkflowStateMachine],
        clock: Clock | None = None,
        *,
        batch_size: int = 100,
        max_workers: int = 4,
        interval_seconds: float = 120.0,
        events: EventSink | None = None,
    ):
        self._session_factory = session_factory
        self._machine_factory = machine_factory
        self._clock = clock or SystemClock()
        self._batch_size = batch_size
        self._max_workers = max_workers
        self._interval = interval_seconds
        self._events = events
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> SweepReport:
        """Scan for due steps and advance them (public for testing)."""
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            due = WorkflowStore(session).due_executions(now, self._batch_size)

        if not due:
            logger.debug("sweep_nothing_due")
            return SweepReport()

        if self._max_workers <= 1 or len(due) == 1:
            outcomes = [self._advance_one(instance_id, order) for instance_id, order in due]
        else:
            with ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(due)),
                thread_name_prefix="workflow-sweeper",
            ) as pool:
                outcomes = list(
                    pool.map(lambda item: self._advance_one(*item), due)
                )

        report = SweepReport(
            scanned=len(due),
            advanced=outcomes.count(_ADVANCED),
            lost_races=outcomes.count(_LOST_RACE),
            failed=outcomes.count(_FAILED),
        )
        logger.info(
            "sweep_completed",
            extra={
                "scanned": report.scanned,
                "advanced": report.advanced,
                "lost_races": report.lost_races,
                "failed": report.failed,
            },
        )
        return report

    def start(self) -> None:
        """Start sweeping in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="workflow-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("sweeper_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("sweeper_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("sweep_tick_failed")
            self._stop_event.wait(timeout=self._interval)

    def _advance_one(self, instance_id: UUID, step_order: int) -> str:
        if self._stop_event.is_set():
            return _SKIPPED

        with LogContext.bind(instance_id=instance_id):
            try:
                with session_scope(self._session_factory) as session:
                    result = self._machine_factory(session).auto_advance(
                        instance_id=instance_id, step_order=step_order,
                    )
            except LOST_RACE_ERRORS as exc:
                logger.info(
                    "sweep_lost_race",
                    extra={"step_order": step_order, "error_code": exc.code},
                )
                return _LOST_RACE
            except DirectoryUnavailableError as exc:
                logger.warning(
                    "sweep_directory_unavailable",
                    extra={"step_order": step_order, "operation": exc.operation},
                )
                return _FAILED
            except Exception:
                logger.exception("sweep_item_failed", extra={"step_order": step_order})
                return _FAILED

            self._dispatch(result)
            return _ADVANCED

    def _dispatch(self, result: TransitionResult) -> None:
        if self._events is None:
            return
        for event in result.events:
            try:
                self._events.publish(event)
            except Exception:
                logger.exception("event_dispatch_failed", extra={"event_type": event.event_type})
