"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval routing touches compliance-relevant HR processes (leave,
compensation, disciplinary actions, offboarding).  Callers must be able to
tell "no approval is needed" apart from "the directory is down" apart from
"someone else already decided this step" without parsing message strings.

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (instance_id, step_order, ...)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalEngineError (base)
    |
    +-- RuleError
    |   +-- RuleNotFoundError
    |   +-- InvalidRuleError
    |   +-- ConditionsNotMetError
    |
    +-- ResolutionError
    |   +-- UnresolvedApproverError
    |   +-- DirectoryUnavailableError
    |   +-- HierarchyCycleError
    |
    +-- WorkflowError
    |   +-- WorkflowNotFoundError
    |   +-- WorkflowNotInProgressError
    |   +-- DuplicateWorkflowError
    |   +-- WorkflowNotTerminalError
    |   +-- StepNotDueError
    |
    +-- ConcurrencyError
    |   +-- StaleStepError
    |   +-- StepAlreadyDecidedError
    |
    +-- AuthorizationError
    |   +-- UnauthorizedError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Rule            | RULE_NOT_FOUND              | No active rule for the process type
                | INVALID_RULE                | Rule definition violates its invariants
                | CONDITIONS_NOT_MET          | Rule exists, entity does not qualify
----------------|-----------------------------|-----------------------------------------
Resolution      | UNRESOLVED_APPROVER         | Strategy found nobody, step not skippable
                | DIRECTORY_UNAVAILABLE       | Directory lookups failed after retries
                | HIERARCHY_CYCLE             | Manager chain loops or is too deep
----------------|-----------------------------|-----------------------------------------
Workflow        | WORKFLOW_NOT_FOUND          | Instance ID doesn't exist for the tenant
                | WORKFLOW_NOT_IN_PROGRESS    | Mutation attempted on a terminal instance
                | DUPLICATE_WORKFLOW          | Entity already has an in-flight instance
                | WORKFLOW_NOT_TERMINAL       | Archiving an instance still in progress
                | STEP_NOT_DUE                | Auto-advance before the timeout elapsed
----------------|-----------------------------|-----------------------------------------
Concurrency     | STALE_STEP                  | Caller acted on an outdated step view
                | STEP_ALREADY_DECIDED        | Lost the CAS race on a pending step
----------------|-----------------------------|-----------------------------------------
Authorization   | UNAUTHORIZED                | Actor is neither approver nor override
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Deleting workflow audit rows

===============================================================================
HANDLING PATTERNS
===============================================================================

1. "NO APPROVAL NEEDED" IS NOT A FAILURE:

    try:
        result = decisions.submit(...)
    except (RuleNotFoundError, ConditionsNotMetError):
        entity.mark_approved()

2. CONCURRENCY LOSERS RE-FETCH, THEY DO NOT SURFACE AN ERROR:

    except (StaleStepError, StepAlreadyDecidedError):
        return decisions.get_status(tenant_id, instance_id)

3. DIRECTORY FAILURES NEVER ADVANCE A STEP:

    except DirectoryUnavailableError:
        retry_later()   # the step is still PENDING
"""


class ApprovalEngineError(Exception):
    """
    Base exception for all approval engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_ENGINE_ERROR"


# Rule-related exceptions


class RuleError(ApprovalEngineError):
    """Base exception for workflow rule errors."""

    code: str = "RULE_ERROR"


class RuleNotFoundError(RuleError):
    """No active rule exists for the tenant and process type.

    Callers treat this as "no approval required".
    """

    code: str = "RULE_NOT_FOUND"

    def __init__(
        self,
        tenant_id: str,
        process_type: str | None = None,
        rule_id: str | None = None,
    ):
        self.tenant_id = tenant_id
        self.process_type = process_type
        self.rule_id = rule_id
        if rule_id is not None:
            message = f"Workflow rule not found: {rule_id} (tenant {tenant_id})"
        else:
            message = (
                f"No active workflow rule for process type {process_type} "
                f"(tenant {tenant_id})"
            )
        super().__init__(message)


class InvalidRuleError(RuleError):
    """A rule definition violates its structural invariants."""

    code: str = "INVALID_RULE"

    def __init__(self, process_type: str, errors: list[str]):
        self.process_type = process_type
        self.errors = errors
        super().__init__(
            f"Invalid workflow rule for {process_type}: " + "; ".join(errors)
        )


class ConditionsNotMetError(RuleError):
    """The rule exists but the entity does not satisfy its conditions."""

    code: str = "CONDITIONS_NOT_MET"

    def __init__(self, process_type: str, failed_conditions: list[str]):
        self.process_type = process_type
        self.failed_conditions = failed_conditions
        super().__init__(
            f"Entity does not meet conditions of {process_type} rule: "
            + ", ".join(failed_conditions)
        )


# Resolution-related exceptions


class ResolutionError(ApprovalEngineError):
    """Base exception for approver resolution errors."""

    code: str = "RESOLUTION_ERROR"


class UnresolvedApproverError(ResolutionError):
    """
    No approver could be resolved for a non-skippable step.

    The instance stays PENDING on this step until an administrator
    reassigns it.  This error is returned with the transition result
    rather than raised, because the instance itself was persisted.
    """

    code: str = "UNRESOLVED_APPROVER"

    def __init__(
        self,
        instance_id: str,
        step_order: int,
        strategy: str,
        reason: str,
    ):
        self.instance_id = instance_id
        self.step_order = step_order
        self.strategy = strategy
        self.reason = reason
        super().__init__(
            f"No approver resolved for step {step_order} of workflow "
            f"{instance_id} ({strategy}): {reason}"
        )


class DirectoryUnavailableError(ResolutionError):
    """The org directory failed after exhausting the retry budget."""

    code: str = "DIRECTORY_UNAVAILABLE"

    def __init__(self, operation: str, attempts: int, reason: str = ""):
        self.operation = operation
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Org directory unavailable for {operation} after "
            f"{attempts} attempt(s){': ' + reason if reason else ''}"
        )


class HierarchyCycleError(ResolutionError):
    """The manager chain revisits an employee or exceeds the depth cap."""

    code: str = "HIERARCHY_CYCLE"

    def __init__(self, employee_id: str, chain: list[str], max_depth: int):
        self.employee_id = employee_id
        self.chain = chain
        self.max_depth = max_depth
        super().__init__(
            f"Manager chain for {employee_id} loops or exceeds depth "
            f"{max_depth}: {' -> '.join(chain)}"
        )


# Workflow-instance exceptions


class WorkflowError(ApprovalEngineError):
    """Base exception for workflow instance errors."""

    code: str = "WORKFLOW_ERROR"


class WorkflowNotFoundError(WorkflowError):
    """Workflow instance with given ID was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


class WorkflowNotInProgressError(WorkflowError):
    """Mutation attempted on a terminal workflow instance."""

    code: str = "WORKFLOW_NOT_IN_PROGRESS"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"Workflow instance {instance_id} is {status}, not in progress"
        )


class DuplicateWorkflowError(WorkflowError):
    """The entity already has an in-flight workflow instance."""

    code: str = "DUPLICATE_WORKFLOW"

    def __init__(self, entity_type: str, entity_id: str, existing_id: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.existing_id = existing_id
        super().__init__(
            f"{entity_type} {entity_id} already has an in-progress workflow"
            + (f" ({existing_id})" if existing_id else "")
        )


class WorkflowNotTerminalError(WorkflowError):
    """Archival attempted on an instance that is still in progress."""

    code: str = "WORKFLOW_NOT_TERMINAL"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(
            f"Workflow instance {instance_id} is still in progress and cannot be archived"
        )


class StepNotDueError(WorkflowError):
    """Auto-advance attempted before the step's timeout elapsed."""

    code: str = "STEP_NOT_DUE"

    def __init__(self, instance_id: str, step_order: int):
        self.instance_id = instance_id
        self.step_order = step_order
        super().__init__(
            f"Step {step_order} of workflow {instance_id} is not due for auto-advance"
        )


# Concurrency-related exceptions


class ConcurrencyError(ApprovalEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class StaleStepError(ConcurrencyError):
    """The caller's step order no longer matches the pending step."""

    code: str = "STALE_STEP"

    def __init__(self, instance_id: str, step_order: int, current_step_order: int | None):
        self.instance_id = instance_id
        self.step_order = step_order
        self.current_step_order = current_step_order
        super().__init__(
            f"Step {step_order} of workflow {instance_id} is stale "
            f"(current step: {current_step_order})"
        )


class StepAlreadyDecidedError(ConcurrencyError):
    """The step left PENDING before this caller's compare-and-swap."""

    code: str = "STEP_ALREADY_DECIDED"

    def __init__(self, instance_id: str, step_order: int, status: str):
        self.instance_id = instance_id
        self.step_order = step_order
        self.status = status
        super().__init__(
            f"Step {step_order} of workflow {instance_id} was already "
            f"decided ({status})"
        )


# Authorization exceptions


class AuthorizationError(ApprovalEngineError):
    """Base exception for authorization errors."""

    code: str = "AUTHORIZATION_ERROR"


class UnauthorizedError(AuthorizationError):
    """Actor is not the resolved approver and holds no override."""

    code: str = "UNAUTHORIZED"

    def __init__(self, actor_id: str, instance_id: str, action: str):
        self.actor_id = actor_id
        self.instance_id = instance_id
        self.action = action
        super().__init__(
            f"Actor {actor_id} may not {action} workflow {instance_id}"
        )


# Immutability exceptions


class ImmutabilityError(ApprovalEngineError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to delete a workflow audit-trail record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
