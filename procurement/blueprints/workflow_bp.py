"""
Approval workflow definitions.

Routes:
  GET    /workflows              – list (``?include_inactive=true`` for all)
  POST   /workflows              – create
  GET    /workflows/<wid>        – detail
  PUT    /workflows/<wid>        – partial update
  DELETE /workflows/<wid>        – deactivate (409 while a process is in progress)
"""

import logging

from flask import Blueprint, jsonify

from procurement.core.context import current_context
from procurement.services import workflow_registry
from procurement.utils.errors import E, api_error, register_error_handlers
from procurement.utils.helpers import json_body, parse_bool_arg

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    ctx = current_context(require_user=False)
    active_only = not parse_bool_arg("include_inactive")
    workflows = workflow_registry.list_workflows(ctx, active_only=active_only)
    return jsonify([w.to_dict() for w in workflows])


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Body: { name, description?, stages: [{name, approverRole, slaHours, order?, ...}] }"""
    ctx = current_context()
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")

    wf = workflow_registry.create_workflow(
        ctx,
        name=data.get("name"),
        description=data.get("description"),
        stages=data.get("stages"),
    )
    return jsonify(wf.to_dict()), 201


@workflow_bp.route("/workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    ctx = current_context(require_user=False)
    return jsonify(workflow_registry.get_workflow(wid, ctx).to_dict())


@workflow_bp.route("/workflows/<int:wid>", methods=["PUT"])
def update_workflow(wid):
    ctx = current_context()
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    wf = workflow_registry.update_workflow(wid, ctx, data)
    return jsonify(wf.to_dict())


@workflow_bp.route("/workflows/<int:wid>", methods=["DELETE"])
def deactivate_workflow(wid):
    ctx = current_context()
    wf = workflow_registry.deactivate_workflow(wid, ctx)
    return jsonify({"deactivated": True, "workflow": wf.to_dict()})
