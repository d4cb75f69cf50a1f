"""
Procurement Platform
Evaluation scoring model.

Models:
    - Score: one evaluator's score for one (submission, criterion) pair
    - ConsensusScore: derived mean across evaluators, never authored directly

The unique constraints are the correctness backstop for concurrent
upserts; the service-level find-then-write is best-effort.
"""

from datetime import datetime, timezone

from procurement.models import db


class Score(db.Model):
    __tablename__ = "scores"
    __table_args__ = (
        db.UniqueConstraint(
            "submission_id", "criterion_id", "evaluator_id",
            name="uq_score_submission_criterion_evaluator",
        ),
        db.Index("ix_scores_pair", "submission_id", "criterion_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False,
    )
    criterion_id = db.Column(
        db.Integer, db.ForeignKey("rubric_criteria.id", ondelete="CASCADE"), nullable=False,
    )
    evaluator_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    score_value = db.Column(db.Float, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    submission = db.relationship("Submission")
    criterion = db.relationship("RubricCriterion")

    def to_dict(self):
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "criterion_id": self.criterion_id,
            "evaluator_id": self.evaluator_id,
            "score_value": self.score_value,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return (f"<Score {self.id} s={self.submission_id} c={self.criterion_id} "
                f"e={self.evaluator_id} v={self.score_value}>")


class ConsensusScore(db.Model):
    __tablename__ = "consensus_scores"
    __table_args__ = (
        db.UniqueConstraint("submission_id", "criterion_id", name="uq_consensus_submission_criterion"),
    )

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    criterion_id = db.Column(
        db.Integer, db.ForeignKey("rubric_criteria.id", ondelete="CASCADE"), nullable=False,
    )
    score_value = db.Column(db.Float, nullable=False)
    notes = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    criterion = db.relationship("RubricCriterion")

    def to_dict(self):
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "criterion_id": self.criterion_id,
            "criterion_label": self.criterion.label if self.criterion else None,
            "score_value": self.score_value,
            "notes": self.notes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ConsensusScore s={self.submission_id} c={self.criterion_id} v={self.score_value}>"
