"""
Workflow Definition Registry.

Tenant-scoped CRUD for ApprovalWorkflow definitions, stage validation,
stage navigation and condition evaluation.

Rules enforced on create/update:
    - name non-empty
    - at least one stage
    - stage ``order`` values unique
    - each stage has a non-empty name and approverRole
    - each stage's slaHours is a positive integer
    - conditions (when present) use a known operator and name a field and action

Stages are persisted in the camelCase shape shared with existing data:
    {id, name, description, required, order, approverRole, slaHours,
     autoApprove?, conditions?}
snake_case keys (approver_role, sla_hours, ...) are accepted on input.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from procurement.core.context import RequestContext
from procurement.core.exceptions import ConflictError, NotFoundError, ValidationError
from procurement.models import db
from procurement.models.workflow import (
    CONDITION_OPERATORS,
    ApprovalProcess,
    ApprovalWorkflow,
)
from procurement.services.audit_service import record_audit_event

logger = logging.getLogger(__name__)

# Ten years; keeps now + timedelta(hours=slaHours) inside the datetime range.
MAX_SLA_HOURS = 8760 * 10


# ── Default definitions ──────────────────────────────────────────────────────

DEFAULT_WORKFLOWS = [
    {
        "name": "Standard RFP Workflow",
        "description": "Default workflow for RFP approval process",
        "stages": [
            {
                "id": "draft-review",
                "name": "Draft Review",
                "description": "Initial review of RFP draft by procurement team",
                "order": 1,
                "required": True,
                "approverRole": "procurement_manager",
                "slaHours": 24,
                "conditions": [
                    {"field": "budget", "operator": "gt", "value": 10000,
                     "action": "require_finance_review"},
                ],
            },
            {
                "id": "legal-review",
                "name": "Legal Review",
                "description": "Legal team review of terms and conditions",
                "order": 2,
                "required": True,
                "approverRole": "legal_counsel",
                "slaHours": 48,
                "conditions": [
                    {"field": "confidentiality", "operator": "eq", "value": "high",
                     "action": "require_extended_review"},
                ],
            },
            {
                "id": "budget-approval",
                "name": "Budget Approval",
                "description": "Finance team approval for budget allocation",
                "order": 3,
                "required": True,
                "approverRole": "finance_manager",
                "slaHours": 72,
                "conditions": [
                    {"field": "budget", "operator": "gt", "value": 50000,
                     "action": "require_cfo_approval"},
                ],
            },
            {
                "id": "publish-approval",
                "name": "Publish Approval",
                "description": "Final approval to publish RFP",
                "order": 4,
                "required": True,
                "approverRole": "procurement_director",
                "slaHours": 24,
            },
            {
                "id": "evaluation-approval",
                "name": "Evaluation Complete",
                "description": "Approval of evaluation results and scoring",
                "order": 5,
                "required": True,
                "approverRole": "evaluation_committee",
                "slaHours": 48,
            },
            {
                "id": "award-approval",
                "name": "Award Approval",
                "description": "Final approval for vendor award",
                "order": 6,
                "required": True,
                "approverRole": "executive_sponsor",
                "slaHours": 24,
                "conditions": [
                    {"field": "total_value", "operator": "gt", "value": 100000,
                     "action": "require_board_approval"},
                ],
            },
            {
                "id": "contract-review",
                "name": "Contract Review",
                "description": "Final contract review and signing",
                "order": 7,
                "required": True,
                "approverRole": "legal_counsel",
                "slaHours": 72,
            },
        ],
    },
    {
        "name": "Emergency RFP Workflow",
        "description": "Expedited workflow for emergency procurements",
        "stages": [
            {
                "id": "emergency-review",
                "name": "Emergency Review",
                "description": "Expedited review for emergency situations",
                "order": 1,
                "required": True,
                "approverRole": "emergency_committee",
                "slaHours": 4,
            },
            {
                "id": "emergency-approval",
                "name": "Emergency Approval",
                "description": "Rapid approval process",
                "order": 2,
                "required": True,
                "approverRole": "executive_sponsor",
                "slaHours": 2,
            },
        ],
    },
]


# ── Stage normalisation & validation ─────────────────────────────────────────

def _pick(raw: dict, *keys, default=None):
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def _as_positive_int(value):
    """Return *value* as int when it is a whole positive number, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    return None


def normalize_stage(raw: dict, index: int) -> dict:
    """Map an input stage onto the persisted shape; generates an id when absent."""
    stage = {
        "id": str(_pick(raw, "id", default="") or uuid.uuid4()),
        "name": str(_pick(raw, "name", default="") or "").strip(),
        "description": _pick(raw, "description", default="") or "",
        "required": bool(_pick(raw, "required", "isRequired", default=True)),
        "order": _pick(raw, "order", default=index + 1),
        "approverRole": str(_pick(raw, "approverRole", "approver_role", default="") or "").strip(),
        "slaHours": _pick(raw, "slaHours", "sla_hours"),
    }
    sla = _as_positive_int(stage["slaHours"])
    if sla is not None:
        stage["slaHours"] = sla
    auto_approve = _pick(raw, "autoApprove", "auto_approve")
    if auto_approve is not None:
        stage["autoApprove"] = bool(auto_approve)
    conditions = _pick(raw, "conditions")
    if conditions is not None:
        stage["conditions"] = conditions
    return stage


def _condition_errors(stage_no: int, conditions) -> list[str]:
    if not isinstance(conditions, list):
        return [f"Stage {stage_no}: Conditions must be a list"]
    errors = []
    for j, cond in enumerate(conditions, 1):
        prefix = f"Stage {stage_no}: Condition {j}"
        if not isinstance(cond, dict):
            errors.append(f"{prefix}: must be an object")
            continue
        if not str(cond.get("field") or "").strip():
            errors.append(f"{prefix}: Field is required")
        if cond.get("operator") not in CONDITION_OPERATORS:
            errors.append(f"{prefix}: Operator must be one of {', '.join(sorted(CONDITION_OPERATORS))}")
        elif cond["operator"] == "in" and not isinstance(cond.get("value"), list):
            errors.append(f"{prefix}: Value must be a list for operator 'in'")
        if "value" not in cond:
            errors.append(f"{prefix}: Value is required")
        if not str(cond.get("action") or "").strip():
            errors.append(f"{prefix}: Action is required")
    return errors


def validate_workflow(name: str | None, stages) -> list[str]:
    """Return the list of validation errors (empty when valid)."""
    errors: list[str] = []

    if not name or not str(name).strip():
        errors.append("Workflow name is required")

    if not isinstance(stages, list) or len(stages) == 0:
        errors.append("At least one stage is required")
        return errors

    orders = [s.get("order") for s in stages]
    if len(orders) != len(set(map(repr, orders))):
        errors.append("Stage orders must be unique")

    for i, stage in enumerate(stages, 1):
        if not isinstance(stage.get("order"), int) or isinstance(stage.get("order"), bool):
            errors.append(f"Stage {i}: Order must be an integer")
        if not stage.get("name"):
            errors.append(f"Stage {i}: Name is required")
        if not stage.get("approverRole"):
            errors.append(f"Stage {i}: Approver role is required")
        sla = _as_positive_int(stage.get("slaHours"))
        if sla is None:
            errors.append(f"Stage {i}: SLA hours must be greater than 0")
        elif sla > MAX_SLA_HOURS:
            errors.append(f"Stage {i}: SLA hours must not exceed {MAX_SLA_HOURS}")
        if "conditions" in stage:
            errors.extend(_condition_errors(i, stage["conditions"]))

    return errors


def _prepare_stages(name, raw_stages) -> list[dict]:
    if not isinstance(raw_stages, list):
        stages = raw_stages
    else:
        stages = [normalize_stage(s if isinstance(s, dict) else {}, i) for i, s in enumerate(raw_stages)]
    errors = validate_workflow(name, stages)
    if errors:
        raise ValidationError("Workflow validation failed", details={"errors": errors})
    return sorted(stages, key=lambda s: s["order"])


# ── Stage navigation ─────────────────────────────────────────────────────────

def next_stage(workflow: ApprovalWorkflow, stage_id: str) -> dict | None:
    """The stage with the smallest order greater than *stage_id*'s order."""
    current = workflow.stage_by_id(stage_id)
    if current is None:
        return None
    later = [s for s in workflow.ordered_stages() if s["order"] > current["order"]]
    return later[0] if later else None


def previous_stage(workflow: ApprovalWorkflow, stage_id: str) -> dict | None:
    current = workflow.stage_by_id(stage_id)
    if current is None:
        return None
    earlier = [s for s in workflow.ordered_stages() if s["order"] < current["order"]]
    return earlier[-1] if earlier else None


# ── Conditions ───────────────────────────────────────────────────────────────

_COMPARATORS = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "in": lambda a, b: a in b,
}


def evaluate_condition(condition: dict, metadata: dict | None) -> bool:
    """True when *condition* holds for *metadata*. Missing fields never match."""
    metadata = metadata or {}
    field = condition.get("field")
    if field not in metadata:
        return False
    compare = _COMPARATORS.get(condition.get("operator"))
    if compare is None:
        return False
    try:
        return bool(compare(metadata[field], condition.get("value")))
    except TypeError:
        return False


def evaluate_stage_conditions(stage: dict | None, metadata: dict | None) -> list[dict]:
    """Return the stage conditions that fire for *metadata*, in declaration order."""
    if not stage:
        return []
    return [c for c in stage.get("conditions") or [] if evaluate_condition(c, metadata)]


# ── CRUD ─────────────────────────────────────────────────────────────────────

def get_workflow(workflow_id: int, ctx: RequestContext) -> ApprovalWorkflow:
    wf = ApprovalWorkflow.query.filter_by(id=workflow_id, tenant_id=ctx.tenant_id).first()
    if wf is None:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id, tenant_id=ctx.tenant_id)
    return wf


def list_workflows(ctx: RequestContext, active_only: bool = True) -> list[ApprovalWorkflow]:
    q = ApprovalWorkflow.query.filter_by(tenant_id=ctx.tenant_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(ApprovalWorkflow.created_at.desc(), ApprovalWorkflow.id.desc()).all()


def create_workflow(ctx: RequestContext, name: str, description: str | None, stages) -> ApprovalWorkflow:
    """Validate and persist a new definition."""
    normalised = _prepare_stages(name, stages)
    wf = ApprovalWorkflow(
        tenant_id=ctx.tenant_id,
        name=str(name).strip(),
        description=description or "",
        stages=normalised,
        is_active=True,
        created_by=ctx.user_id,
    )
    db.session.add(wf)
    db.session.commit()

    logger.info("Workflow created: %s (%d stages)", wf.name, len(normalised),
                extra={"tenant_id": ctx.tenant_id})
    record_audit_event("workflow.create", "approval_workflow", wf.id, ctx,
                       {"name": wf.name, "stage_count": len(normalised)})
    return wf


def update_workflow(workflow_id: int, ctx: RequestContext, patch: dict) -> ApprovalWorkflow:
    """
    Apply a partial update (name, description, stages, is_active).

    Stage edits reach in-flight processes only for stages not yet
    activated: approverRole and slaHours are read at activation, while
    stage names were snapshotted at initiation.
    """
    wf = get_workflow(workflow_id, ctx)

    if patch.get("is_active") is False and wf.is_active:
        _ensure_not_in_flight(wf)

    name = patch["name"] if "name" in patch else wf.name
    stages = patch["stages"] if "stages" in patch else wf.stages
    normalised = _prepare_stages(name, stages)

    wf.name = str(name).strip()
    if "description" in patch:
        wf.description = patch["description"] or ""
    wf.stages = normalised
    if "is_active" in patch:
        wf.is_active = bool(patch["is_active"])
    wf.updated_at = datetime.now(timezone.utc)
    db.session.commit()

    logger.info("Workflow %s updated", wf.id, extra={"tenant_id": ctx.tenant_id})
    record_audit_event("workflow.update", "approval_workflow", wf.id, ctx,
                       {"fields": sorted(k for k in patch if k in ("name", "description", "stages", "is_active"))})
    return wf


def _ensure_not_in_flight(wf: ApprovalWorkflow) -> None:
    active = wf.processes.filter(ApprovalProcess.status == "in_progress").count()
    if active:
        raise ConflictError(
            "Workflow is referenced by an in-progress approval process",
            resource="ApprovalWorkflow",
            details={"workflow_id": wf.id, "active_processes": active},
        )


def deactivate_workflow(workflow_id: int, ctx: RequestContext) -> ApprovalWorkflow:
    wf = get_workflow(workflow_id, ctx)
    _ensure_not_in_flight(wf)
    wf.is_active = False
    wf.updated_at = datetime.now(timezone.utc)
    db.session.commit()

    logger.info("Workflow %s deactivated", wf.id, extra={"tenant_id": ctx.tenant_id})
    record_audit_event("workflow.deactivate", "approval_workflow", wf.id, ctx)
    return wf


def seed_default_workflows(tenant_id: int) -> int:
    """Install the built-in definitions for *tenant_id*; skips names that already exist."""
    created = 0
    for definition in DEFAULT_WORKFLOWS:
        exists = ApprovalWorkflow.query.filter_by(tenant_id=tenant_id, name=definition["name"]).first()
        if exists:
            continue
        db.session.add(ApprovalWorkflow(
            tenant_id=tenant_id,
            name=definition["name"],
            description=definition["description"],
            stages=[dict(s) for s in definition["stages"]],
            is_active=True,
        ))
        created += 1
    db.session.commit()
    logger.info("Seeded %d default workflow(s)", created, extra={"tenant_id": tenant_id})
    return created
