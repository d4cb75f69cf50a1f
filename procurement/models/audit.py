"""
Procurement Platform
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import datetime, timezone

from procurement.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_TARGET_TYPES = {
    "approval_workflow", "approval_process", "approval_request",
    "score", "consensus_score", "rfp",
}

AUDIT_ACTIONS = {
    # Workflow definitions
    "workflow.create",
    "workflow.update",
    "workflow.deactivate",
    # Approval runtime
    "approval.initiate",
    "approval.approve",
    "approval.reject",
    "approval.complete",
    # Scoring
    "score.create",
    "score.update",
    "score.delete",
    "consensus.recalculate",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``metadata_json`` carries whatever the caller
    considered relevant: decision comments, old/new score values, etc.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_target", "target_type", "target_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Polymorphic target reference
    target_type = db.Column(
        db.String(40), nullable=False,
        comment="approval_process | approval_request | score | …",
    )
    target_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity as string",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="approval.approve | score.update | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system entries (scheduler, CLI)",
    )

    metadata_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def event_metadata(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "metadata": self.event_metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.target_type}/{self.target_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    target_type: str,
    target_id,
    action: str,
    tenant_id: int | None = None,
    actor_user_id: int | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.
    """
    log = AuditLog(
        tenant_id=tenant_id,
        target_type=target_type,
        target_id=str(target_id),
        action=action,
        actor_user_id=actor_user_id,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
