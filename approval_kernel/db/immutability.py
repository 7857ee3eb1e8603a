"""
ORM-Level Immutability Enforcement for the workflow audit trail.

===============================================================================
WHY THIS EXISTS
===============================================================================

Workflow instances and their step executions are the compliance record of
who approved what, and when.  They are never deleted (terminal instances
are soft-archived instead), and a step that has been decided is never
rewritten.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check the rules:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

The compare-and-swap transitions in services/workflow_store.py are Core
UPDATE statements guarded by ``status = 'pending'``; they only ever touch
rows that are still open, so they do not go through these listeners.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | When Immutable                  | Allowed changes
--------------------|---------------------------------|-------------------------------
WorkflowInstance    | Once status is terminal         | archived_at, updated_at
WorkflowInstance    | Always for DELETE               | none
StepExecution       | Once status is terminal         | none
StepExecution       | Always for DELETE               | none

===============================================================================
USAGE
===============================================================================

Called by ``create_tables()`` and at application startup:

    from approval_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_TERMINAL_INSTANCE_STATUSES = frozenset({"approved", "rejected", "cancelled"})
_TERMINAL_STEP_STATUSES = frozenset(
    {"approved", "rejected", "skipped", "auto_approved", "cancelled"}
)
_MUTABLE_AFTER_TERMINAL = frozenset({"archived_at", "updated_at"})


def _previous_value(target, attr_name: str):
    """Value of an attribute as loaded from the database, before this flush."""
    history = inspect(target).attrs[attr_name].history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(target, attr_name)


def _changed_attributes(target) -> set[str]:
    state = inspect(target)
    return {attr.key for attr in state.attrs if attr.history.has_changes()}


def _block(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_instance_immutability(mapper, connection, target):
    """Terminal instances accept only archival metadata changes."""
    if _previous_value(target, "status") not in _TERMINAL_INSTANCE_STATUSES:
        return

    forbidden = _changed_attributes(target) - _MUTABLE_AFTER_TERMINAL - {"steps"}
    if forbidden:
        _block(
            "WorkflowInstance",
            target.id,
            "UPDATE",
            f"terminal workflow instances are immutable (changed: {sorted(forbidden)})",
        )


def _check_instance_delete(mapper, connection, target):
    _block(
        "WorkflowInstance",
        target.id,
        "DELETE",
        "workflow instances are retained as audit trail; archive instead",
    )


def _check_step_execution_immutability(mapper, connection, target):
    """A decided step is never rewritten."""
    if _previous_value(target, "status") in _TERMINAL_STEP_STATUSES:
        _block(
            "StepExecution",
            target.id,
            "UPDATE",
            "decided step executions are immutable",
        )


def _check_step_execution_delete(mapper, connection, target):
    _block(
        "StepExecution",
        target.id,
        "DELETE",
        "step executions are retained as audit trail",
    )


_LISTENERS = (
    ("WorkflowInstanceModel", "before_update", _check_instance_immutability),
    ("WorkflowInstanceModel", "before_delete", _check_instance_delete),
    ("StepExecutionModel", "before_update", _check_step_execution_immutability),
    ("StepExecutionModel", "before_delete", _check_step_execution_delete),
)


def _models():
    from approval_kernel.models import workflow

    return workflow


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after the models are imported and before any database
    operations begin.
    """
    models = _models()
    for model_name, event_name, listener in _LISTENERS:
        target = getattr(models, model_name)
        if not event.contains(target, event_name, listener):
            event.listen(target, event_name, listener)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    models = _models()
    for model_name, event_name, listener in _LISTENERS:
        target = getattr(models, model_name)
        if event.contains(target, event_name, listener):
            event.remove(target, event_name, listener)
