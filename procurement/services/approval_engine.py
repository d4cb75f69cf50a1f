"""
Approval Process State Machine.

One ApprovalProcess per (RFP, workflow) activation, owning one
ApprovalRequest per stage.

    initiate  → process in_progress, request[0] pending, the rest waiting
    decide    → approve: request[k] approved, request[k+1] pending
                         (or process completed + RFP approved when k is last)
                reject:  request[k] rejected, process rejected + RFP rejected;
                         later requests stay waiting

Concurrency:
    ``decide`` flips the request with a conditional UPDATE
    (``WHERE id = ? AND status = 'pending'``) and requires exactly one
    affected row, so two concurrent decisions on the same request cannot
    both succeed.  Activation of the next request uses the same pattern on
    ``status = 'waiting'``.  The partial unique index on
    approval_processes(rfp_id) WHERE status = 'in_progress' backs the
    at-most-one-active-process check in ``initiate``.

Side effects (audit rows, events) run only after the commit and never
fail the transition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from procurement.core.context import RequestContext
from procurement.core.exceptions import ConflictError, NotFoundError, ValidationError
from procurement.models import db
from procurement.models.rfp import RFP
from procurement.models.workflow import (
    DECISION_OUTCOMES,
    PROCESS_STATUSES,
    REQUEST_STATUSES,
    ApprovalProcess,
    ApprovalRequest,
    ApprovalWorkflow,
)
from procurement.services.audit_service import record_audit_event
from procurement.services.events import emit
from procurement.services.rfp_status import set_rfp_status
from procurement.services.workflow_registry import evaluate_stage_conditions
from procurement.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Scoped lookups ───────────────────────────────────────────────────────────

def _process_query(ctx: RequestContext):
    return (
        ApprovalProcess.query
        .join(RFP, ApprovalProcess.rfp_id == RFP.id)
        .filter(RFP.tenant_id == ctx.tenant_id)
    )


def _request_query(ctx: RequestContext):
    return (
        ApprovalRequest.query
        .join(ApprovalProcess, ApprovalRequest.process_id == ApprovalProcess.id)
        .join(RFP, ApprovalProcess.rfp_id == RFP.id)
        .filter(RFP.tenant_id == ctx.tenant_id)
    )


def _get_rfp(rfp_id: int, ctx: RequestContext) -> RFP:
    rfp = RFP.query.filter_by(id=rfp_id, tenant_id=ctx.tenant_id).first()
    if rfp is None:
        raise NotFoundError(resource="RFP", resource_id=rfp_id, tenant_id=ctx.tenant_id)
    return rfp


def get_process(process_id: int, ctx: RequestContext) -> ApprovalProcess:
    process = _process_query(ctx).filter(ApprovalProcess.id == process_id).first()
    if process is None:
        raise NotFoundError(resource="ApprovalProcess", resource_id=process_id, tenant_id=ctx.tenant_id)
    return process


def get_process_for_rfp(rfp_id: int, ctx: RequestContext) -> ApprovalProcess:
    """Latest process for the RFP, whatever its status."""
    _get_rfp(rfp_id, ctx)
    process = (
        _process_query(ctx)
        .filter(ApprovalProcess.rfp_id == rfp_id)
        .order_by(ApprovalProcess.id.desc())
        .first()
    )
    if process is None:
        raise NotFoundError(resource="ApprovalProcess", tenant_id=ctx.tenant_id)
    return process


def get_request(request_id: int, ctx: RequestContext) -> ApprovalRequest:
    req = _request_query(ctx).filter(ApprovalRequest.id == request_id).first()
    if req is None:
        raise NotFoundError(resource="ApprovalRequest", resource_id=request_id, tenant_id=ctx.tenant_id)
    return req


def list_processes(ctx: RequestContext, rfp_id: int | None = None,
                   status: str | None = None) -> list[ApprovalProcess]:
    q = _process_query(ctx)
    if rfp_id is not None:
        q = q.filter(ApprovalProcess.rfp_id == rfp_id)
    if status:
        if status not in PROCESS_STATUSES:
            raise ValidationError(
                f"Invalid process status '{status}'",
                details={"allowed": sorted(PROCESS_STATUSES), "provided": status},
            )
        q = q.filter(ApprovalProcess.status == status)
    return q.order_by(ApprovalProcess.id.desc()).all()


def list_requests(
    ctx: RequestContext,
    process_id: int | None = None,
    status: str | None = None,
    approver_role: str | None = None,
    approver_id: int | None = None,
    overdue: bool = False,
    now: datetime | None = None,
) -> list[ApprovalRequest]:
    q = _request_query(ctx)
    if process_id is not None:
        q = q.filter(ApprovalRequest.process_id == process_id)
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationError(
                f"Invalid request status '{status}'",
                details={"allowed": sorted(REQUEST_STATUSES), "provided": status},
            )
        q = q.filter(ApprovalRequest.status == status)
    if approver_role:
        q = q.filter(ApprovalRequest.approver_role == approver_role)
    if approver_id is not None:
        q = q.filter(ApprovalRequest.approver_id == approver_id)
    if overdue:
        q = q.filter(
            ApprovalRequest.status == "pending",
            ApprovalRequest.due_at < (now or utcnow()),
        )
    return q.order_by(ApprovalRequest.process_id, ApprovalRequest.id).all()


# ── Initiate ─────────────────────────────────────────────────────────────────

def initiate(rfp_id: int, workflow_id: int, ctx: RequestContext,
             metadata: dict | None = None) -> ApprovalProcess:
    """
    Start an approval process for an RFP.

    Raises:
        NotFoundError: RFP or workflow missing, outside the tenant, or workflow inactive.
        ConflictError: the RFP already has an in-progress process.
        ValidationError: metadata is not an object.
    """
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", details={"provided": type(metadata).__name__})

    rfp = _get_rfp(rfp_id, ctx)
    workflow = ApprovalWorkflow.query.filter_by(
        id=workflow_id, tenant_id=ctx.tenant_id, is_active=True,
    ).first()
    if workflow is None:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id, tenant_id=ctx.tenant_id)

    stages = workflow.ordered_stages()
    if not stages:
        raise ValidationError("Workflow has no stages", details={"workflow_id": workflow_id})

    active = ApprovalProcess.query.filter_by(rfp_id=rfp.id, status="in_progress").first()
    if active is not None:
        raise ConflictError(
            "An approval process is already in progress for this RFP",
            resource="ApprovalProcess",
            details={"rfp_id": rfp.id, "process_id": active.id},
        )

    now = utcnow()
    process = ApprovalProcess(
        rfp_id=rfp.id,
        workflow_id=workflow.id,
        requested_by=ctx.user_id,
        status="in_progress",
        current_stage=0,
        metadata_json=metadata or {},
        created_at=now,
    )
    db.session.add(process)
    for index, stage in enumerate(stages):
        is_first = index == 0
        process.requests.append(ApprovalRequest(
            stage_id=stage["id"],
            stage_name=stage["name"],
            approver_role=stage["approverRole"],
            sla_hours=stage["slaHours"],
            status="pending" if is_first else "waiting",
            due_at=now + timedelta(hours=stage["slaHours"]) if is_first else None,
            created_at=now,
        ))

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Concurrent initiate rejected for RFP %s", rfp_id,
                       extra={"tenant_id": ctx.tenant_id, "rfp_id": rfp_id})
        raise ConflictError(
            "An approval process is already in progress for this RFP",
            resource="ApprovalProcess",
            details={"rfp_id": rfp_id},
        )

    first = process.requests[0]
    triggered = evaluate_stage_conditions(stages[0], metadata)
    logger.info("Approval process %s initiated for RFP %s with %d stage(s)",
                process.id, rfp.id, len(stages),
                extra={"tenant_id": ctx.tenant_id, "rfp_id": rfp.id, "process_id": process.id})

    record_audit_event("approval.initiate", "approval_process", process.id, ctx,
                       {"rfp_id": rfp.id, "workflow_id": workflow.id, "stage_count": len(stages)})
    base = {"tenant_id": ctx.tenant_id, "rfp_id": process.rfp_id, "process_id": process.id}
    emit("approval.process_initiated", **base,
         workflow_id=process.workflow_id, requested_by=process.requested_by)
    _emit_stage_activated(base, first, triggered)
    return process


# ── Decide ───────────────────────────────────────────────────────────────────

def _activate(process: ApprovalProcess, req: ApprovalRequest, now: datetime) -> list[dict]:
    """
    waiting → pending for *req*.

    approverRole and slaHours come from the live definition; the stored
    values are kept when the stage no longer exists there.  Returns the
    stage conditions that fire for the process metadata.
    """
    workflow = db.session.get(ApprovalWorkflow, process.workflow_id)
    stage = workflow.stage_by_id(req.stage_id) if workflow else None
    approver_role = (stage or {}).get("approverRole") or req.approver_role
    sla_hours = (stage or {}).get("slaHours") or req.sla_hours

    result = db.session.execute(
        update(ApprovalRequest)
        .where(ApprovalRequest.id == req.id, ApprovalRequest.status == "waiting")
        .values(
            status="pending",
            approver_role=approver_role,
            sla_hours=sla_hours,
            due_at=now + timedelta(hours=sla_hours),
        )
    )
    if result.rowcount != 1:
        raise ConflictError(
            "Next approval stage is not waiting",
            resource="ApprovalRequest",
            details={"request_id": req.id},
        )
    return evaluate_stage_conditions(stage, process.metadata_json)


def decide(request_id: int, ctx: RequestContext, outcome: str,
           comments: str | None = None) -> ApprovalRequest:
    """
    Approve or reject the pending request *request_id*.

    A failed call leaves every row as it was.

    Raises:
        ValidationError: outcome is not approve/reject.
        NotFoundError: request missing or outside the tenant.
        ConflictError: request is not pending.
    """
    if outcome not in DECISION_OUTCOMES:
        raise ValidationError(
            "decision must be 'approve' or 'reject'",
            details={"allowed": sorted(DECISION_OUTCOMES), "provided": outcome},
        )

    req = get_request(request_id, ctx)
    process = req.process
    now = utcnow()
    new_status = "approved" if outcome == "approve" else "rejected"
    activated = None
    triggered: list[dict] = []

    try:
        result = db.session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == req.id, ApprovalRequest.status == "pending")
            .values(
                status=new_status,
                approver_id=ctx.user_id,
                decided_at=now,
                comments=comments,
            )
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise ConflictError(
                "Approval request is not pending",
                resource="ApprovalRequest",
                details={"request_id": request_id, "status": req.status},
            )

        if outcome == "approve":
            next_req = (
                ApprovalRequest.query
                .filter(ApprovalRequest.process_id == process.id, ApprovalRequest.id > req.id)
                .order_by(ApprovalRequest.id)
                .first()
            )
            if next_req is not None:
                triggered = _activate(process, next_req, now)
                process.current_stage = process.current_stage + 1
                activated = next_req
            else:
                process.status = "completed"
                process.completed_at = now
                set_rfp_status(process.rfp_id, "approved")
        else:
            process.status = "rejected"
            process.completed_at = now
            set_rfp_status(process.rfp_id, "rejected")

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    base = {"tenant_id": ctx.tenant_id, "rfp_id": process.rfp_id, "process_id": process.id}
    logger.info("Approval request %s %s (stage %s)", req.id, new_status, req.stage_name,
                extra={**base, "request_ref": req.id, "user_id": ctx.user_id})

    record_audit_event(f"approval.{outcome}", "approval_request", req.id, ctx,
                       {"process_id": process.id, "stage_name": req.stage_name, "comments": comments})
    emit("approval.request_decided", **base,
         request_id=req.id, stage_name=req.stage_name, decision=outcome,
         approver_id=ctx.user_id, comments=comments)

    if activated is not None:
        _emit_stage_activated(base, activated, triggered)
    elif process.status == "completed":
        record_audit_event("approval.complete", "approval_process", process.id, ctx,
                           {"rfp_id": process.rfp_id})
        emit("approval.process_completed", **base, requested_by=process.requested_by)
    else:
        emit("approval.process_rejected", **base, requested_by=process.requested_by,
             request_id=req.id, stage_name=req.stage_name, comments=comments)

    return req


def _emit_stage_activated(base: dict, req: ApprovalRequest, triggered: list[dict]) -> None:
    emit(
        "approval.stage_activated",
        **base,
        request_id=req.id,
        stage_id=req.stage_id,
        stage_name=req.stage_name,
        approver_role=req.approver_role,
        due_at=req.due_at.isoformat() if req.due_at else None,
        triggered_conditions=triggered,
    )
