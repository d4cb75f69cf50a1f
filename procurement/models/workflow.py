"""
Procurement Platform
Approval Workflow domain model.

Models:
    - ApprovalWorkflow: tenant-scoped, ordered list of approval stages (JSON)
    - ApprovalProcess:  one running activation of a workflow against one RFP
    - ApprovalRequest:  the per-stage unit of work inside a process

Stage JSON shape (persisted verbatim in approval_workflows.stages):
    {id, name, description, required, order, approverRole, slaHours,
     autoApprove?, conditions?}

Request status lifecycle:
    waiting ──(predecessor approved)──▶ pending ──▶ approved | rejected

A rejected process leaves its remaining ``waiting`` rows untouched; they are
the record of stages that were never reached.
"""

from datetime import datetime, timezone

from procurement.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROCESS_STATUSES = {"in_progress", "completed", "rejected"}
REQUEST_STATUSES = {"waiting", "pending", "approved", "rejected"}
DECISION_OUTCOMES = {"approve", "reject"}

CONDITION_OPERATORS = {"eq", "ne", "gt", "gte", "lt", "lte", "in"}


def _iso(value):
    return value.isoformat() if value else None


class ApprovalWorkflow(db.Model):
    """
    Named sequence of approval stages for one tenant.

    A definition referenced by an in-progress process must not be
    deactivated; edits to it only reach stages not yet activated.
    """

    __tablename__ = "approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, default="")
    stages = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    processes = db.relationship("ApprovalProcess", back_populates="workflow", lazy="dynamic")

    def ordered_stages(self) -> list[dict]:
        """Stages sorted by their ``order`` value."""
        return sorted(self.stages or [], key=lambda s: s.get("order", 0))

    def stage_by_id(self, stage_id: str) -> dict | None:
        for stage in self.stages or []:
            if stage.get("id") == stage_id:
                return stage
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "stages": self.ordered_stages(),
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ApprovalWorkflow {self.id}: {self.name}>"


class ApprovalProcess(db.Model):
    """
    One activation of an ApprovalWorkflow against an RFP.

    ``current_stage`` is a zero-based index into the process's requests.
    At most one in_progress process may exist per RFP; the partial unique
    index below backs the application-level check.
    """

    __tablename__ = "approval_processes"

    id = db.Column(db.Integer, primary_key=True)
    rfp_id = db.Column(
        db.Integer, db.ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    requested_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    status = db.Column(db.String(20), nullable=False, default="in_progress",
                       comment="in_progress | completed | rejected")
    current_stage = db.Column(db.Integer, nullable=False, default=0)
    metadata_json = db.Column("metadata", db.JSON, default=dict,
                              comment="Opaque bag consulted by stage conditions")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index(
            "uq_approval_process_active_rfp",
            "rfp_id",
            unique=True,
            sqlite_where=db.text("status = 'in_progress'"),
            postgresql_where=db.text("status = 'in_progress'"),
        ),
    )

    rfp = db.relationship("RFP")
    workflow = db.relationship("ApprovalWorkflow", back_populates="processes")
    requests = db.relationship(
        "ApprovalRequest",
        back_populates="process",
        order_by="ApprovalRequest.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_requests=True):
        d = {
            "id": self.id,
            "rfp_id": self.rfp_id,
            "workflow_id": self.workflow_id,
            "requested_by": self.requested_by,
            "status": self.status,
            "current_stage": self.current_stage,
            "metadata": self.metadata_json or {},
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_requests:
            d["requests"] = [r.to_dict() for r in self.requests]
        return d

    def __repr__(self):
        return f"<ApprovalProcess {self.id} rfp={self.rfp_id} [{self.status}] stage={self.current_stage}>"


class ApprovalRequest(db.Model):
    """
    Per-stage approval work item.

    ``stage_name`` is a snapshot taken when the process is initiated.
    ``approver_role`` and ``sla_hours`` are refreshed from the live
    definition when the request is activated, and ``due_at`` is only set
    at activation (waiting rows carry no deadline).
    """

    __tablename__ = "approval_requests"

    id = db.Column(db.Integer, primary_key=True)
    process_id = db.Column(
        db.Integer, db.ForeignKey("approval_processes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_id = db.Column(db.String(64), nullable=False)
    stage_name = db.Column(db.String(200), nullable=False)
    approver_role = db.Column(db.String(100), nullable=False)
    sla_hours = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="waiting",
                       comment="waiting | pending | approved | rejected")
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_approval_requests_status_due", "status", "due_at"),
    )

    process = db.relationship("ApprovalProcess", back_populates="requests")

    def to_dict(self):
        return {
            "id": self.id,
            "process_id": self.process_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "approver_role": self.approver_role,
            "sla_hours": self.sla_hours,
            "status": self.status,
            "approver_id": self.approver_id,
            "due_at": _iso(self.due_at),
            "decided_at": _iso(self.decided_at),
            "comments": self.comments,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalRequest {self.id} {self.stage_name} [{self.status}]>"
