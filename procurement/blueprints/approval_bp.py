"""
Approval processes and requests.

Routes:
  GET    /processes                      – list (?rfp_id, ?status)
  POST   /processes                      – initiate { rfp_id, workflow_id, metadata? }
  GET    /processes/<pid>                – detail with requests
  GET    /rfps/<rid>/approval-process    – latest process for an RFP
  GET    /requests                       – list (?process_id, ?status, ?approver_role, ?approver_id, ?overdue)
  POST   /requests/<qid>/decide          – { decision: approve|reject, comments? }
  GET    /approvals/overdue              – pending requests past due, with SLA status
  GET    /approvals/stats                – process totals and SLA figures
  POST   /approvals/sla-sweep            – run the SLA sweep for the caller's tenant
"""

import logging

from flask import Blueprint, jsonify, request

from procurement.core.context import current_context
from procurement.services import approval_engine
from procurement.services.sla_sweeper import find_overdue, get_approval_stats, run_sla_sweep, sla_status
from procurement.utils.errors import E, api_error, register_error_handlers
from procurement.utils.helpers import json_body, parse_bool_arg

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


def _int_field(data: dict, key: str):
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


# ═════════════════════════════════════════════════════════════════════════════
# PROCESSES
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/processes", methods=["GET"])
def list_processes():
    ctx = current_context(require_user=False)
    processes = approval_engine.list_processes(
        ctx,
        rfp_id=request.args.get("rfp_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify([p.to_dict(include_requests=False) for p in processes])


@approval_bp.route("/processes", methods=["POST"])
def initiate_process():
    ctx = current_context()
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")

    rfp_id = _int_field(data, "rfp_id")
    workflow_id = _int_field(data, "workflow_id")
    if rfp_id is None or workflow_id is None:
        return api_error(E.VALIDATION_REQUIRED, "rfp_id and workflow_id are required integers")

    process = approval_engine.initiate(rfp_id, workflow_id, ctx, metadata=data.get("metadata"))
    return jsonify(process.to_dict()), 201


@approval_bp.route("/processes/<int:pid>", methods=["GET"])
def get_process(pid):
    ctx = current_context(require_user=False)
    return jsonify(approval_engine.get_process(pid, ctx).to_dict())


@approval_bp.route("/rfps/<int:rid>/approval-process", methods=["GET"])
def get_rfp_process(rid):
    ctx = current_context(require_user=False)
    return jsonify(approval_engine.get_process_for_rfp(rid, ctx).to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/requests", methods=["GET"])
def list_requests():
    ctx = current_context(require_user=False)
    requests_ = approval_engine.list_requests(
        ctx,
        process_id=request.args.get("process_id", type=int),
        status=request.args.get("status"),
        approver_role=request.args.get("approver_role"),
        approver_id=request.args.get("approver_id", type=int),
        overdue=parse_bool_arg("overdue"),
    )
    return jsonify([r.to_dict() for r in requests_])


@approval_bp.route("/requests/<int:qid>/decide", methods=["POST"])
def decide_request(qid):
    """Body: { decision: "approve"|"reject", comments? }"""
    ctx = current_context()
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")

    decision = data.get("decision")
    if decision not in ("approve", "reject"):
        return api_error(E.VALIDATION_INVALID, "decision must be 'approve' or 'reject'")

    req = approval_engine.decide(qid, ctx, decision, comments=data.get("comments"))
    process = approval_engine.get_process(req.process_id, ctx)
    return jsonify({"request": req.to_dict(), "process": process.to_dict()})


# ═════════════════════════════════════════════════════════════════════════════
# SLA
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/overdue", methods=["GET"])
def overdue_requests():
    ctx = current_context(require_user=False)
    items = []
    for req in find_overdue(ctx.tenant_id):
        d = req.to_dict()
        d["sla"] = sla_status(req)
        items.append(d)
    return jsonify(items)


@approval_bp.route("/approvals/stats", methods=["GET"])
def approval_stats():
    ctx = current_context(require_user=False)
    return jsonify(get_approval_stats(ctx.tenant_id))


@approval_bp.route("/approvals/sla-sweep", methods=["POST"])
def trigger_sla_sweep():
    ctx = current_context()
    logger.info("Manual SLA sweep requested", extra={"tenant_id": ctx.tenant_id, "user_id": ctx.user_id})
    return jsonify(run_sla_sweep(tenant_id=ctx.tenant_id))
