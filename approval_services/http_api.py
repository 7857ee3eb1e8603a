"""
approval_services.http_api -- HTTP surface of the Decision API.

Routes:
    POST   /workflows/{process_type}/instances       submit an entity
    POST   /workflows/instances/{id}/decide          approve or reject
    POST   /workflows/instances/{id}/cancel          cancel
    POST   /workflows/instances/{id}/reassign        reassign the pending step
    GET    /workflows/instances/{id}                 status
    GET    /workflows/approvals/pending              the caller's queue
    GET    /workflows/rules                          list rules
    POST   /workflows/rules                          create a rule
    GET    /workflows/rules/{id}                     rule detail
    PUT    /workflows/rules/{id}                     replace a rule
    DELETE /workflows/rules/{id}                     soft-delete a rule

Authentication is external: the caller's tenant and identity arrive in the
``X-Tenant-ID`` and ``X-Actor-ID`` headers.  Engine errors map to HTTP
status codes by their ``code``; concurrency conflicts return 409 together
with the re-fetched instance so the client can refresh its view.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from approval_kernel.domain.workflow import (
    ApproverStrategy,
    Decision,
    RuleDefinition,
    StepDefinition,
    StepExecution,
    WorkflowInstance,
)
from approval_kernel.exceptions import ApprovalEngineError, WorkflowNotFoundError
from approval_kernel.logging_config import get_logger
from approval_kernel.services.state_machine import TransitionResult
from approval_services.decision_api import DecisionService
from approval_services.rule_admin import RuleAdminService

logger = get_logger("services.http_api")

router = APIRouter(prefix="/workflows", tags=["Workflows"])

ERROR_STATUS: dict[str, int] = {
    "RULE_NOT_FOUND": 404,
    "WORKFLOW_NOT_FOUND": 404,
    "UNAUTHORIZED": 403,
    "STALE_STEP": 409,
    "STEP_ALREADY_DECIDED": 409,
    "WORKFLOW_NOT_IN_PROGRESS": 409,
    "WORKFLOW_NOT_TERMINAL": 409,
    "DUPLICATE_WORKFLOW": 409,
    "STEP_NOT_DUE": 409,
    "IMMUTABILITY_VIOLATION": 409,
    "INVALID_RULE": 422,
    "CONDITIONS_NOT_MET": 422,
    "UNRESOLVED_APPROVER": 422,
    "DIRECTORY_UNAVAILABLE": 503,
}

# Conflicts after which the client should refresh its view of the instance.
REFETCH_CODES = frozenset({"STALE_STEP", "STEP_ALREADY_DECIDED", "WORKFLOW_NOT_IN_PROGRESS"})


# ==================== Schemas ====================


class StepIn(BaseModel):
    step_order: int = Field(..., ge=1, description="1-based position in the chain")
    strategy: ApproverStrategy = Field(..., description="Approver resolution strategy")
    role_id: Optional[str] = Field(None, description="Role for role-based strategies")
    employee_id: Optional[str] = Field(None, description="Employee for specific_employee")
    auto_advance_seconds: Optional[int] = Field(
        None, gt=0, description="Auto-approve after this many seconds without a decision",
    )
    can_skip: bool = Field(False, description="Skip the step when nobody can approve it")

    def to_definition(self) -> StepDefinition:
        return StepDefinition(
            step_order=self.step_order,
            strategy=self.strategy,
            role_id=self.role_id,
            employee_id=self.employee_id,
            auto_advance_after=(
                timedelta(seconds=self.auto_advance_seconds)
                if self.auto_advance_seconds is not None
                else None
            ),
            can_skip=self.can_skip,
        )


class RuleIn(BaseModel):
    process_type: str = Field(..., min_length=1, description="Business process type")
    name: str = Field(..., min_length=1)
    is_active: bool = True
    conditions: list[str] = Field(default_factory=list, description="Expressions over entity")
    steps: list[StepIn] = Field(default_factory=list)

    def to_definition(self, tenant_id: str) -> RuleDefinition:
        return RuleDefinition(
            tenant_id=tenant_id,
            process_type=self.process_type,
            name=self.name,
            steps=tuple(s.to_definition() for s in self.steps),
            conditions=tuple(self.conditions),
            is_active=self.is_active,
        )


class RuleOut(BaseModel):
    rule_id: Optional[UUID]
    tenant_id: str
    process_type: str
    name: str
    is_active: bool
    version: int
    conditions: list[str]
    steps: list[dict[str, Any]]

    @classmethod
    def from_definition(cls, rule: RuleDefinition) -> RuleOut:
        return cls(
            rule_id=rule.rule_id,
            tenant_id=rule.tenant_id,
            process_type=rule.process_type,
            name=rule.name,
            is_active=rule.is_active,
            version=rule.version,
            conditions=list(rule.conditions),
            steps=[s.to_dict() for s in rule.steps],
        )


class RuleListOut(BaseModel):
    items: list[RuleOut]
    total: int


class StepExecutionOut(BaseModel):
    step_order: int
    strategy: str
    status: str
    approver_id: Optional[str]
    created_at: datetime
    due_at: Optional[datetime]
    decided_at: Optional[datetime]
    decided_by: Optional[str]
    comment: Optional[str]
    via_override: bool

    @classmethod
    def from_dto(cls, step: StepExecution) -> StepExecutionOut:
        return cls(
            step_order=step.step_order,
            strategy=step.strategy.value,
            status=step.status.value,
            approver_id=step.approver_id,
            created_at=step.created_at,
            due_at=step.due_at,
            decided_at=step.decided_at,
            decided_by=step.decided_by,
            comment=step.comment,
            via_override=step.via_override,
        )


class InstanceOut(BaseModel):
    instance_id: UUID
    process_type: str
    entity_type: str
    entity_id: str
    subject_employee_id: str
    requested_by: str
    status: str
    current_step_order: int
    total_steps: int
    rule_version: int
    rule_hash: str
    created_at: datetime
    completed_at: Optional[datetime]
    archived_at: Optional[datetime]
    steps: list[StepExecutionOut]

    @classmethod
    def from_dto(cls, instance: WorkflowInstance) -> InstanceOut:
        return cls(
            instance_id=instance.instance_id,
            process_type=instance.process_type,
            entity_type=instance.entity.entity_type,
            entity_id=instance.entity.entity_id,
            subject_employee_id=instance.subject_employee_id,
            requested_by=instance.requested_by,
            status=instance.status.value,
            current_step_order=instance.current_step_order,
            total_steps=instance.total_steps,
            rule_version=instance.rule_version,
            rule_hash=instance.rule_hash,
            created_at=instance.created_at,
            completed_at=instance.completed_at,
            archived_at=instance.archived_at,
            steps=[StepExecutionOut.from_dto(s) for s in instance.steps],
        )


class UnresolvedOut(BaseModel):
    step_order: int
    strategy: str
    reason: str


class TransitionOut(BaseModel):
    instance: InstanceOut
    events: list[str] = Field(default_factory=list, description="Emitted event types")
    unresolved: Optional[UnresolvedOut] = None

    @classmethod
    def from_result(cls, result: TransitionResult) -> TransitionOut:
        return cls(
            instance=InstanceOut.from_dto(result.instance),
            events=[e.event_type for e in result.events],
            unresolved=_unresolved_out(result.unresolved),
        )


class SubmitIn(BaseModel):
    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    subject_employee_id: str = Field(..., min_length=1, description="Employee the request is about")
    context: dict[str, Any] = Field(default_factory=dict, description="Fields rule conditions read")


class SubmitOut(BaseModel):
    approval_required: bool
    reason: Optional[str] = None
    instance: Optional[InstanceOut] = None
    unresolved: Optional[UnresolvedOut] = None


class DecideIn(BaseModel):
    step_order: int = Field(..., ge=1, description="Step the caller believes is pending")
    decision: Decision
    comment: Optional[str] = Field(None, max_length=2000)


class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class ReassignIn(BaseModel):
    step_order: int = Field(..., ge=1)
    approver_id: str = Field(..., min_length=1)


def _unresolved_out(error) -> Optional[UnresolvedOut]:
    if error is None:
        return None
    return UnresolvedOut(step_order=error.step_order, strategy=error.strategy, reason=error.reason)


# ==================== Dependencies ====================


def get_decisions(request: Request) -> DecisionService:
    return request.app.state.decisions


def get_rule_admin(request: Request) -> RuleAdminService:
    return request.app.state.rule_admin


def tenant_header(x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1)) -> str:
    return x_tenant_id


def actor_header(x_actor_id: str = Header(..., alias="X-Actor-ID", min_length=1)) -> str:
    return x_actor_id


# ==================== Instances ====================


@router.post("/{process_type}/instances", response_model=SubmitOut, status_code=201)
def submit_instance(
    process_type: str,
    data: SubmitIn,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    decisions: DecisionService = Depends(get_decisions),
):
    """Start the approval chain for an entity.

    Returns ``approval_required: false`` when the process has no active
    rule or the entity does not meet its conditions.
    """
    result = decisions.submit(
        tenant_id=tenant_id,
        process_type=process_type,
        entity_type=data.entity_type,
        entity_id=data.entity_id,
        subject_employee_id=data.subject_employee_id,
        requested_by=actor_id,
        context=data.context,
    )
    return SubmitOut(
        approval_required=result.approval_required,
        reason=result.reason,
        instance=InstanceOut.from_dto(result.instance) if result.instance else None,
        unresolved=_unresolved_out(result.unresolved),
    )


@router.post("/instances/{instance_id}/decide", response_model=TransitionOut)
def decide_instance(
    instance_id: UUID,
    data: DecideIn,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    decisions: DecisionService = Depends(get_decisions),
):
    """Approve or reject the pending step."""
    result = decisions.decide(
        tenant_id=tenant_id,
        instance_id=instance_id,
        step_order=data.step_order,
        decision=data.decision,
        actor_id=actor_id,
        comment=data.comment,
    )
    return TransitionOut.from_result(result)


@router.post("/instances/{instance_id}/cancel", response_model=TransitionOut)
def cancel_instance(
    instance_id: UUID,
    data: CancelIn,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    decisions: DecisionService = Depends(get_decisions),
):
    result = decisions.cancel(
        tenant_id=tenant_id, instance_id=instance_id, actor_id=actor_id, reason=data.reason,
    )
    return TransitionOut.from_result(result)


@router.post("/instances/{instance_id}/reassign", response_model=TransitionOut)
def reassign_instance(
    instance_id: UUID,
    data: ReassignIn,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    decisions: DecisionService = Depends(get_decisions),
):
    """Hand the pending step to another approver (administrators only)."""
    result = decisions.reassign(
        tenant_id=tenant_id,
        instance_id=instance_id,
        step_order=data.step_order,
        approver_id=data.approver_id,
        actor_id=actor_id,
    )
    return TransitionOut.from_result(result)


@router.get("/instances/{instance_id}", response_model=InstanceOut)
def get_instance(
    instance_id: UUID,
    tenant_id: str = Depends(tenant_header),
    decisions: DecisionService = Depends(get_decisions),
):
    return InstanceOut.from_dto(decisions.get_status(tenant_id, instance_id))


@router.get("/approvals/pending", response_model=list[InstanceOut])
def pending_approvals(
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    decisions: DecisionService = Depends(get_decisions),
):
    """Instances waiting on the caller's decision."""
    return [InstanceOut.from_dto(i) for i in decisions.pending_for_approver(tenant_id, actor_id)]


# ==================== Rules ====================


@router.get("/rules", response_model=RuleListOut)
def list_rules(
    process_type: Optional[str] = Query(None, description="Filter by process type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(tenant_header),
    rule_admin: RuleAdminService = Depends(get_rule_admin),
):
    rules, total = rule_admin.list_rules(
        tenant_id, process_type, offset=(page - 1) * page_size, limit=page_size,
    )
    return RuleListOut(items=[RuleOut.from_definition(r) for r in rules], total=total)


@router.post("/rules", response_model=RuleOut, status_code=201)
def create_rule(
    data: RuleIn,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    rule_admin: RuleAdminService = Depends(get_rule_admin),
):
    created = rule_admin.create(data.to_definition(tenant_id), actor_id=actor_id)
    return RuleOut.from_definition(created)


@router.get("/rules/{rule_id}", response_model=RuleOut)
def get_rule(
    rule_id: UUID,
    tenant_id: str = Depends(tenant_header),
    rule_admin: RuleAdminService = Depends(get_rule_admin),
):
    return RuleOut.from_definition(rule_admin.get(tenant_id, rule_id))


@router.put("/rules/{rule_id}", response_model=RuleOut)
def update_rule(
    rule_id: UUID,
    data: RuleIn,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    rule_admin: RuleAdminService = Depends(get_rule_admin),
):
    """Replace a rule; in-flight instances keep their snapshot."""
    updated = rule_admin.update(
        tenant_id, rule_id, data.to_definition(tenant_id), actor_id=actor_id,
    )
    return RuleOut.from_definition(updated)


@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: UUID,
    tenant_id: str = Depends(tenant_header),
    actor_id: str = Depends(actor_header),
    rule_admin: RuleAdminService = Depends(get_rule_admin),
):
    rule_admin.delete(tenant_id, rule_id, actor_id=actor_id)


# ==================== Application ====================


def engine_error_handler(request: Request, exc: ApprovalEngineError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.code, 400)
    body: dict[str, Any] = {"error": {"code": exc.code, "message": str(exc)}}

    instance_id = getattr(exc, "instance_id", None)
    tenant_id = request.headers.get("X-Tenant-ID")
    if exc.code in REFETCH_CODES and instance_id and tenant_id:
        try:
            current = request.app.state.decisions.get_status(tenant_id, UUID(instance_id))
        except WorkflowNotFoundError:
            current = None
        if current is not None:
            body["current"] = InstanceOut.from_dto(current).model_dump(mode="json")

    log = logger.warning if status_code >= 500 else logger.info
    log(
        "http_engine_error",
        extra={
            "path": request.url.path,
            "status_code": status_code,
            "error_code": exc.code,
        },
    )
    return JSONResponse(status_code=status_code, content=body)


def create_app(decisions: DecisionService, rule_admin: RuleAdminService) -> FastAPI:
    """Mount the workflow router on a standalone application."""
    app = FastAPI(title="HR Approval Engine")
    app.state.decisions = decisions
    app.state.rule_admin = rule_admin
    app.add_exception_handler(ApprovalEngineError, engine_error_handler)
    app.include_router(router)
    return app
