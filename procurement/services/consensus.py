"""
Consensus Reconciler.

Derives one ConsensusScore per (submission, criterion) from the full set
of evaluator scores.  Always recomputes from source rows, never from a
delta, so concurrent reconciliations converge on the same value and a
repeated call with unchanged inputs is a no-op.

Notes template (consumers match on "Further review recommended"):
    Consensus score based on {n} evaluators. Average: {avg:.2f}
    [. Note: Scores vary from {min} to {max}. Further review recommended.]
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from procurement.models import db
from procurement.models.scoring import ConsensusScore, Score

logger = logging.getLogger(__name__)

CONSENSUS_DIVERGENCE_THRESHOLD = 1.0
MIN_EVALUATORS = 2


def _format_bound(value: float) -> str:
    """3.0 → "3", 3.5 → "3.5"."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def build_consensus_notes(values: list[float], threshold: float = CONSENSUS_DIVERGENCE_THRESHOLD) -> str:
    n = len(values)
    average = sum(values) / n
    notes = f"Consensus score based on {n} evaluators. Average: {average:.2f}"
    low, high = min(values), max(values)
    if high - low > threshold:
        notes += (f". Note: Scores vary from {_format_bound(low)} to {_format_bound(high)}. "
                  f"Further review recommended.")
    return notes


def reconcile(submission_id: int, criterion_id: int,
              threshold: float = CONSENSUS_DIVERGENCE_THRESHOLD) -> ConsensusScore | None:
    """
    Recompute the consensus for one (submission, criterion) pair and commit.

    With fewer than two scores nothing is written: no consensus row is
    created, and one left from an earlier state (e.g. before a score
    deletion) keeps its last value.
    Returns the consensus row, or None when fewer than two scores exist.
    """
    values = [
        v for (v,) in db.session.query(Score.score_value)
        .filter_by(submission_id=submission_id, criterion_id=criterion_id)
        .order_by(Score.id)
        .all()
    ]
    if len(values) < MIN_EVALUATORS:
        logger.debug("Consensus skipped for submission %s criterion %s (%d score(s))",
                     submission_id, criterion_id, len(values),
                     extra={"submission_id": submission_id, "criterion_id": criterion_id})
        return None

    existing = ConsensusScore.query.filter_by(
        submission_id=submission_id, criterion_id=criterion_id,
    ).first()

    average = sum(values) / len(values)
    notes = build_consensus_notes(values, threshold)

    if existing is not None:
        if existing.score_value != average or existing.notes != notes:
            existing.score_value = average
            existing.notes = notes
            db.session.commit()
        return existing

    consensus = ConsensusScore(
        submission_id=submission_id,
        criterion_id=criterion_id,
        score_value=average,
        notes=notes,
    )
    db.session.add(consensus)
    try:
        db.session.commit()
    except IntegrityError:
        # Another worker inserted the row first; overwrite it with our recompute.
        # Any other constraint failure propagates.
        db.session.rollback()
        consensus = ConsensusScore.query.filter_by(
            submission_id=submission_id, criterion_id=criterion_id,
        ).first()
        if consensus is None:
            raise
        consensus.score_value = average
        consensus.notes = notes
        db.session.commit()

    logger.debug("Consensus for submission %s criterion %s = %.2f",
                 submission_id, criterion_id, average,
                 extra={"submission_id": submission_id, "criterion_id": criterion_id})
    return consensus
