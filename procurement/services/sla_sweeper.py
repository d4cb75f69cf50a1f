"""
SLA Sweeper.

Read-only detection of pending approval requests past their ``due_at``.
Overdue requests stay pending and actionable; the sweep only announces
them (``approval.sla_breached``) so a subscriber can escalate or notify.
Safe to run concurrently from several workers: it never writes approval
rows.  A missed sweep only delays detection because ``due_at`` is durable.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func

from procurement.models import db
from procurement.models.rfp import RFP
from procurement.models.workflow import ApprovalProcess, ApprovalRequest
from procurement.services.events import emit
from procurement.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


def find_overdue(tenant_id: int | None = None, now: datetime | None = None) -> list[ApprovalRequest]:
    """Pending requests with ``due_at < now``, optionally scoped to one tenant."""
    now = now or utcnow()
    q = ApprovalRequest.query.filter(
        ApprovalRequest.status == "pending",
        ApprovalRequest.due_at.isnot(None),
        ApprovalRequest.due_at < now,
    )
    if tenant_id is not None:
        q = (
            q.join(ApprovalProcess, ApprovalRequest.process_id == ApprovalProcess.id)
            .join(RFP, ApprovalProcess.rfp_id == RFP.id)
            .filter(RFP.tenant_id == tenant_id)
        )
    return q.order_by(ApprovalRequest.due_at).all()


def sla_status(request: ApprovalRequest, now: datetime | None = None) -> dict:
    """
    Compliance of one request.

    Pending requests are measured against *now*; decided requests against
    their ``decided_at``.  Waiting requests have no deadline yet.
    """
    now = now or utcnow()
    due_at = as_utc(request.due_at)
    if due_at is None:
        return {"is_compliant": True, "hours_overdue": 0.0, "sla_hours": request.sla_hours, "due_at": None}

    reference = as_utc(request.decided_at) if request.status in ("approved", "rejected") else now
    if reference is None:
        reference = now
    overdue_seconds = (reference - due_at).total_seconds()
    return {
        "is_compliant": overdue_seconds <= 0,
        "hours_overdue": round(max(overdue_seconds, 0) / 3600, 2),
        "sla_hours": request.sla_hours,
        "due_at": due_at.isoformat(),
    }


def get_approval_stats(tenant_id: int, now: datetime | None = None) -> dict:
    """Process totals by status, overdue request count, average completion time in hours."""
    rows = (
        db.session.query(ApprovalProcess.status, func.count(ApprovalProcess.id))
        .join(RFP, ApprovalProcess.rfp_id == RFP.id)
        .filter(RFP.tenant_id == tenant_id)
        .group_by(ApprovalProcess.status)
        .all()
    )
    by_status = {status: count for status, count in rows}

    completed = (
        ApprovalProcess.query
        .join(RFP, ApprovalProcess.rfp_id == RFP.id)
        .filter(
            RFP.tenant_id == tenant_id,
            ApprovalProcess.status == "completed",
            ApprovalProcess.completed_at.isnot(None),
        )
        .all()
    )
    if completed:
        total_seconds = sum(
            (as_utc(p.completed_at) - as_utc(p.created_at)).total_seconds() for p in completed
        )
        avg_hours = round(total_seconds / len(completed) / 3600, 2)
    else:
        avg_hours = 0.0

    return {
        "total_processes": sum(by_status.values()),
        "active_processes": by_status.get("in_progress", 0),
        "completed_processes": by_status.get("completed", 0),
        "rejected_processes": by_status.get("rejected", 0),
        "overdue_requests": len(find_overdue(tenant_id, now=now)),
        "avg_processing_hours": avg_hours,
    }


def run_sla_sweep(tenant_id: int | None = None, now: datetime | None = None) -> dict:
    """Emit ``approval.sla_breached`` for every overdue request; returns counts."""
    now = now or utcnow()
    overdue = find_overdue(tenant_id, now=now)
    tenants = set()
    delivered = 0
    for req in overdue:
        process = req.process
        rfp = db.session.get(RFP, process.rfp_id)
        tenants.add(rfp.tenant_id)
        status = sla_status(req, now)
        delivered += emit(
            "approval.sla_breached",
            tenant_id=rfp.tenant_id,
            rfp_id=rfp.id,
            process_id=process.id,
            request_id=req.id,
            stage_name=req.stage_name,
            approver_role=req.approver_role,
            due_at=status["due_at"],
            hours_overdue=status["hours_overdue"],
        )
        logger.warning("SLA breached: request %s (%s) %.1fh overdue",
                       req.id, req.stage_name, status["hours_overdue"],
                       extra={"tenant_id": rfp.tenant_id, "rfp_id": rfp.id,
                              "process_id": process.id, "request_ref": req.id,
                              "event_type": "approval.sla_breached"})

    result = {
        "overdue_requests": len(overdue),
        "tenants_affected": len(tenants),
        "handlers_run": delivered,
    }
    logger.info("SLA sweep: %s", result)
    return result
