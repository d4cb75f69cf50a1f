"""
Criterion Score Store.

One score per (submission, criterion, evaluator); a second post by the
same evaluator overwrites.  Every write commits first and then triggers
consensus reconciliation for the pair.

Validation (tenant scope, evaluator, scale bounds) happens before any
write, so a rejected call leaves the previous score and consensus intact.
The unique constraint on scores is the guarantee against concurrent
duplicate inserts; the find-then-write here is best-effort.
"""

from __future__ import annotations

import logging
import math

from sqlalchemy.exc import IntegrityError

from procurement.core.context import RequestContext
from procurement.core.exceptions import NotFoundError, ValidationError
from procurement.models import db
from procurement.models.auth import User
from procurement.models.rfp import RFP, RubricCriterion, Submission
from procurement.models.scoring import ConsensusScore, Score
from procurement.services.audit_service import record_audit_event
from procurement.services.consensus import reconcile

logger = logging.getLogger(__name__)


# ── Lookups ──────────────────────────────────────────────────────────────────

def _get_submission(submission_id: int, ctx: RequestContext) -> Submission:
    submission = (
        Submission.query
        .join(RFP, Submission.rfp_id == RFP.id)
        .filter(Submission.id == submission_id, RFP.tenant_id == ctx.tenant_id)
        .first()
    )
    if submission is None:
        raise NotFoundError(resource="Submission", resource_id=submission_id, tenant_id=ctx.tenant_id)
    return submission


def _get_criterion(criterion_id: int, submission: Submission, ctx: RequestContext) -> RubricCriterion:
    criterion = (
        RubricCriterion.query
        .join(RFP, RubricCriterion.rfp_id == RFP.id)
        .filter(
            RubricCriterion.id == criterion_id,
            RubricCriterion.rfp_id == submission.rfp_id,
            RFP.tenant_id == ctx.tenant_id,
        )
        .first()
    )
    if criterion is None:
        raise NotFoundError(resource="RubricCriterion", resource_id=criterion_id, tenant_id=ctx.tenant_id)
    return criterion


def _get_evaluator(ctx: RequestContext) -> User:
    evaluator = None
    if ctx.user_id is not None:
        evaluator = User.query.filter_by(id=ctx.user_id, tenant_id=ctx.tenant_id, is_active=True).first()
    if evaluator is None:
        raise NotFoundError(resource="Evaluator", resource_id=ctx.user_id, tenant_id=ctx.tenant_id)
    return evaluator


def _score_query(ctx: RequestContext):
    return (
        Score.query
        .join(Submission, Score.submission_id == Submission.id)
        .join(RFP, Submission.rfp_id == RFP.id)
        .filter(RFP.tenant_id == ctx.tenant_id)
    )


def _own_score(score_id: int, ctx: RequestContext) -> Score:
    """A score only its evaluator may change; anyone else sees NotFound."""
    score = _score_query(ctx).filter(Score.id == score_id, Score.evaluator_id == ctx.user_id).first()
    if score is None:
        raise NotFoundError(resource="Score", resource_id=score_id, tenant_id=ctx.tenant_id)
    return score


def _check_value(score_value, criterion: RubricCriterion) -> float:
    bounds = {"min": criterion.scale_min, "max": criterion.scale_max, "provided": score_value}
    if isinstance(score_value, bool) or not isinstance(score_value, (int, float)):
        raise ValidationError("score_value must be a number", details=bounds)
    # NaN compares False against both bounds
    if isinstance(score_value, float) and not math.isfinite(score_value):
        raise ValidationError("score_value must be a finite number", details=bounds)
    if score_value < criterion.scale_min or score_value > criterion.scale_max:
        raise ValidationError("Score out of range", details=bounds)
    return float(score_value)


# ── Writes ───────────────────────────────────────────────────────────────────

def upsert_score(ctx: RequestContext, submission_id: int, criterion_id: int,
                 score_value, notes: str | None = None) -> tuple[Score, bool]:
    """
    Insert or overwrite the caller's score for (submission, criterion).

    Returns (score, created).
    """
    submission = _get_submission(submission_id, ctx)
    criterion = _get_criterion(criterion_id, submission, ctx)
    evaluator = _get_evaluator(ctx)
    value = _check_value(score_value, criterion)

    key = {"submission_id": submission.id, "criterion_id": criterion.id, "evaluator_id": evaluator.id}
    score = Score.query.filter_by(**key).first()
    previous = score.score_value if score else None
    created = score is None

    if score is None:
        score = Score(**key, score_value=value, notes=notes)
        db.session.add(score)
        try:
            db.session.commit()
        except IntegrityError:
            # A lost insert race for this triple overwrites the winner;
            # any other constraint failure propagates.
            db.session.rollback()
            score = Score.query.filter_by(**key).first()
            if score is None:
                raise
            previous = score.score_value
            created = False
            score.score_value = value
            score.notes = notes
            db.session.commit()
    else:
        score.score_value = value
        score.notes = notes
        db.session.commit()

    logger.info("Score %s %s: submission=%s criterion=%s value=%s",
                score.id, "created" if created else "updated",
                submission.id, criterion.id, value,
                extra={"tenant_id": ctx.tenant_id, "submission_id": submission.id,
                       "criterion_id": criterion.id, "user_id": evaluator.id})

    reconcile(submission.id, criterion.id)
    record_audit_event(
        "score.create" if created else "score.update", "score", score.id, ctx,
        {"submission_id": submission.id, "criterion_id": criterion.id,
         "old_value": previous, "new_value": value},
    )
    return score, created


def update_score(score_id: int, ctx: RequestContext, score_value,
                 notes: str | None = None) -> Score:
    """Overwrite an existing score; only its evaluator may do so."""
    score = _own_score(score_id, ctx)
    criterion = db.session.get(RubricCriterion, score.criterion_id)
    value = _check_value(score_value, criterion)

    previous = score.score_value
    score.score_value = value
    if notes is not None:
        score.notes = notes
    db.session.commit()

    reconcile(score.submission_id, score.criterion_id)
    record_audit_event("score.update", "score", score.id, ctx,
                       {"submission_id": score.submission_id, "criterion_id": score.criterion_id,
                        "old_value": previous, "new_value": value})
    return score


def delete_score(score_id: int, ctx: RequestContext) -> None:
    """Delete the caller's own score and reconcile the pair."""
    score = _own_score(score_id, ctx)
    submission_id, criterion_id, value = score.submission_id, score.criterion_id, score.score_value
    db.session.delete(score)
    db.session.commit()

    logger.info("Score %s deleted", score_id,
                extra={"tenant_id": ctx.tenant_id, "submission_id": submission_id,
                       "criterion_id": criterion_id, "user_id": ctx.user_id})
    reconcile(submission_id, criterion_id)
    record_audit_event("score.delete", "score", score_id, ctx,
                       {"submission_id": submission_id, "criterion_id": criterion_id, "old_value": value})


def recalculate_submission(submission_id: int, ctx: RequestContext) -> list[dict]:
    """Reconcile every criterion of the submission's RFP."""
    submission = _get_submission(submission_id, ctx)
    criteria = (
        RubricCriterion.query
        .filter_by(rfp_id=submission.rfp_id)
        .order_by(RubricCriterion.id)
        .all()
    )
    results = []
    for criterion in criteria:
        consensus = reconcile(submission.id, criterion.id)
        results.append({
            "criterion_id": criterion.id,
            "criterion_label": criterion.label,
            "consensus_score": consensus.score_value if consensus else None,
            "consensus_notes": consensus.notes if consensus else None,
        })

    record_audit_event("consensus.recalculate", "consensus_score", submission.id, ctx,
                       {"criteria": len(criteria)})
    return results


# ── Reads ────────────────────────────────────────────────────────────────────

def get_score(score_id: int, ctx: RequestContext) -> Score:
    score = _score_query(ctx).filter(Score.id == score_id).first()
    if score is None:
        raise NotFoundError(resource="Score", resource_id=score_id, tenant_id=ctx.tenant_id)
    return score


def list_scores(ctx: RequestContext, submission_id: int | None = None,
                criterion_id: int | None = None, evaluator_id: int | None = None) -> list[Score]:
    q = _score_query(ctx)
    if submission_id is not None:
        q = q.filter(Score.submission_id == submission_id)
    if criterion_id is not None:
        q = q.filter(Score.criterion_id == criterion_id)
    if evaluator_id is not None:
        q = q.filter(Score.evaluator_id == evaluator_id)
    return q.order_by(Score.id.desc()).all()


def list_consensus(ctx: RequestContext, submission_id: int | None = None,
                   criterion_id: int | None = None) -> list[ConsensusScore]:
    q = (
        ConsensusScore.query
        .join(Submission, ConsensusScore.submission_id == Submission.id)
        .join(RFP, Submission.rfp_id == RFP.id)
        .filter(RFP.tenant_id == ctx.tenant_id)
    )
    if submission_id is not None:
        q = q.filter(ConsensusScore.submission_id == submission_id)
    if criterion_id is not None:
        q = q.filter(ConsensusScore.criterion_id == criterion_id)
    return q.order_by(ConsensusScore.id.desc()).all()
