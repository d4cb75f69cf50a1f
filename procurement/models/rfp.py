"""
Procurement Platform
RFP domain model: the parts the approval engine and scoring depend on.

Models:
    - RFP: request for proposal, owns status transitions on final approval
    - Submission: one vendor's response to an RFP
    - RubricCriterion: scoring line item with numeric scale bounds
"""

from datetime import datetime, timezone

from procurement.models import db


# ── Constants ────────────────────────────────────────────────────────────────

RFP_STATUSES = {
    "draft", "published", "under_review",
    "approved", "rejected", "awarded", "closed",
}


class RFP(db.Model):
    """Request for Proposal, scoped to a tenant."""

    __tablename__ = "rfps"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="draft")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    submissions = db.relationship("Submission", back_populates="rfp", lazy="dynamic",
                                  cascade="all, delete-orphan")
    criteria = db.relationship("RubricCriterion", back_populates="rfp", lazy="dynamic",
                               cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<RFP {self.id}: {self.title[:40]} [{self.status}]>"


class Submission(db.Model):
    """A vendor's proposal against an RFP."""

    __tablename__ = "submissions"

    id = db.Column(db.Integer, primary_key=True)
    rfp_id = db.Column(
        db.Integer, db.ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    vendor_name = db.Column(db.String(200), nullable=False)
    submitted_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    rfp = db.relationship("RFP", back_populates="submissions")

    def to_dict(self):
        return {
            "id": self.id,
            "rfp_id": self.rfp_id,
            "vendor_name": self.vendor_name,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }


class RubricCriterion(db.Model):
    """
    Rubric line item. Scores posted against it must lie within
    [scale_min, scale_max], both ends inclusive.
    """

    __tablename__ = "rubric_criteria"

    id = db.Column(db.Integer, primary_key=True)
    rfp_id = db.Column(
        db.Integer, db.ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    label = db.Column(db.String(200), nullable=False)
    weight = db.Column(db.Float, default=1.0)
    scale_min = db.Column(db.Float, nullable=False, default=0)
    scale_max = db.Column(db.Float, nullable=False, default=5)
    guidance = db.Column(db.Text, default="")

    rfp = db.relationship("RFP", back_populates="criteria")

    def to_dict(self):
        return {
            "id": self.id,
            "rfp_id": self.rfp_id,
            "label": self.label,
            "weight": self.weight,
            "scale_min": self.scale_min,
            "scale_max": self.scale_max,
            "guidance": self.guidance,
        }
