"""
Criterion score store and consensus reconciler tests.

Tests cover:
  - upsert insert/overwrite, range boundaries, evaluator & tenant checks
  - update / delete restricted to the originating evaluator
  - consensus average, divergence note, fewer-than-two behaviour
  - reconcile idempotence and per-submission recalculation
"""

import pytest
from sqlalchemy.exc import IntegrityError

from procurement.core.context import RequestContext
from procurement.core.exceptions import NotFoundError, ValidationError
from procurement.models import db
from procurement.models.audit import AuditLog
from procurement.models.rfp import RFP, RubricCriterion, Submission
from procurement.models.scoring import ConsensusScore, Score
from procurement.services import consensus as consensus_module
from procurement.services import scoring_service
from procurement.services.consensus import build_consensus_notes, reconcile


def _ctx_for(user):
    return RequestContext(tenant_id=user.tenant_id, user_id=user.id, roles=("evaluator",))


def _consensus(submission, criterion):
    return ConsensusScore.query.filter_by(submission_id=submission.id, criterion_id=criterion.id).first()


# ═════════════════════════════════════════════════════════════════════════
# SCORE STORE
# ═════════════════════════════════════════════════════════════════════════

class TestUpsertScore:
    def test_insert_then_overwrite(self, submission, criterion, evaluators):
        ctx = _ctx_for(evaluators[0])
        score, created = scoring_service.upsert_score(ctx, submission.id, criterion.id, 3, notes="ok")
        assert created is True
        assert score.score_value == 3.0

        again, created = scoring_service.upsert_score(ctx, submission.id, criterion.id, 4)
        assert created is False
        assert again.id == score.id
        assert Score.query.count() == 1
        assert scoring_service.get_score(score.id, ctx).score_value == 4.0

    @pytest.mark.parametrize("value", [1, 5, 1.0, 5.0, 2.5])
    def test_boundaries_accepted(self, submission, criterion, evaluators, value):
        score, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, value)
        assert score.score_value == float(value)

    @pytest.mark.parametrize("value", [0.999, 5.001, -1, 6])
    def test_out_of_range_rejected_with_bounds(self, submission, criterion, evaluators, value):
        with pytest.raises(ValidationError) as exc:
            scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, value)
        assert exc.value.message == "Score out of range"
        assert exc.value.details == {"min": 1, "max": 5, "provided": value}
        assert Score.query.count() == 0

    def test_non_number_rejected(self, submission, criterion, evaluators):
        with pytest.raises(ValidationError):
            scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, "4")

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_rejected_with_bounds(self, submission, criterion, evaluators, value):
        with pytest.raises(ValidationError) as exc:
            scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, value)
        assert exc.value.details["min"] == 1
        assert exc.value.details["max"] == 5
        assert exc.value.details["provided"] is value
        assert Score.query.count() == 0

    def test_update_rejects_nan(self, submission, criterion, evaluators):
        score, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        with pytest.raises(ValidationError):
            scoring_service.update_score(score.id, _ctx_for(evaluators[0]), float("nan"))
        db.session.expire_all()
        assert db.session.get(Score, score.id).score_value == 3.0

    def test_constraint_failure_on_insert_propagates(self, monkeypatch, submission, criterion, evaluators):
        monkeypatch.setattr(scoring_service, "_check_value", lambda value, criterion: None)
        with pytest.raises(IntegrityError):
            scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        assert Score.query.count() == 0

    def test_failed_overwrite_keeps_previous_score_and_consensus(self, submission, criterion, evaluators):
        for user, value in zip(evaluators[:2], (2, 4)):
            scoring_service.upsert_score(_ctx_for(user), submission.id, criterion.id, value)
        before = _consensus(submission, criterion).score_value

        with pytest.raises(ValidationError):
            scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 9)

        db.session.expire_all()
        values = sorted(s.score_value for s in Score.query.all())
        assert values == [2.0, 4.0]
        assert _consensus(submission, criterion).score_value == before == 3.0

    def test_criterion_from_another_rfp_rejected(self, tenant, submission, evaluators):
        other_rfp = RFP(tenant_id=tenant.id, title="Other RFP")
        db.session.add(other_rfp)
        db.session.commit()
        other_criterion = RubricCriterion(rfp_id=other_rfp.id, label="Price", scale_min=0, scale_max=10)
        db.session.add(other_criterion)
        db.session.commit()

        with pytest.raises(NotFoundError):
            scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, other_criterion.id, 3)

    def test_submission_of_other_tenant_is_not_found(self, submission, criterion, other_tenant):
        from procurement.models.auth import User
        outsider = User(tenant_id=other_tenant.id, email="spy@globex.test")
        db.session.add(outsider)
        db.session.commit()
        with pytest.raises(NotFoundError):
            scoring_service.upsert_score(_ctx_for(outsider), submission.id, criterion.id, 3)

    def test_inactive_evaluator_rejected(self, tenant, submission, criterion):
        from procurement.models.auth import User
        gone = User(tenant_id=tenant.id, email="gone@acme.test", is_active=False)
        db.session.add(gone)
        db.session.commit()
        with pytest.raises(NotFoundError) as exc:
            scoring_service.upsert_score(_ctx_for(gone), submission.id, criterion.id, 3)
        assert exc.value.resource == "Evaluator"

    def test_audit_records_old_and_new_value(self, submission, criterion, evaluators):
        ctx = _ctx_for(evaluators[0])
        scoring_service.upsert_score(ctx, submission.id, criterion.id, 2)
        scoring_service.upsert_score(ctx, submission.id, criterion.id, 5)
        log = AuditLog.query.filter_by(action="score.update").one()
        assert log.event_metadata["old_value"] == 2.0
        assert log.event_metadata["new_value"] == 5.0


class TestUpdateDeleteScore:
    def test_only_owner_may_update(self, submission, criterion, evaluators):
        score, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        with pytest.raises(NotFoundError):
            scoring_service.update_score(score.id, _ctx_for(evaluators[1]), 5)
        updated = scoring_service.update_score(score.id, _ctx_for(evaluators[0]), 5, notes="revised")
        assert updated.score_value == 5.0
        assert updated.notes == "revised"

    def test_update_revalidates_range(self, submission, criterion, evaluators):
        score, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        with pytest.raises(ValidationError):
            scoring_service.update_score(score.id, _ctx_for(evaluators[0]), 0)

    def test_only_owner_may_delete(self, submission, criterion, evaluators):
        score, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        with pytest.raises(NotFoundError):
            scoring_service.delete_score(score.id, _ctx_for(evaluators[1]))
        scoring_service.delete_score(score.id, _ctx_for(evaluators[0]))
        assert Score.query.count() == 0

    def test_delete_below_two_scores_leaves_consensus_untouched(self, submission, criterion, evaluators):
        first, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        scoring_service.upsert_score(_ctx_for(evaluators[1]), submission.id, criterion.id, 5)
        before = _consensus(submission, criterion)
        snapshot = (before.id, before.score_value, before.notes)

        scoring_service.delete_score(first.id, _ctx_for(evaluators[0]))
        db.session.expire_all()
        after = _consensus(submission, criterion)
        assert (after.id, after.score_value, after.notes) == snapshot

    def test_delete_then_rescore_recomputes(self, submission, criterion, evaluators):
        first, _ = scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        scoring_service.upsert_score(_ctx_for(evaluators[1]), submission.id, criterion.id, 5)
        scoring_service.delete_score(first.id, _ctx_for(evaluators[0]))
        scoring_service.upsert_score(_ctx_for(evaluators[2]), submission.id, criterion.id, 4)
        assert _consensus(submission, criterion).score_value == 4.5


# ═════════════════════════════════════════════════════════════════════════
# CONSENSUS
# ═════════════════════════════════════════════════════════════════════════

class TestConsensus:
    def test_single_score_creates_no_consensus(self, submission, criterion, evaluators):
        scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 4)
        assert ConsensusScore.query.count() == 0

    def test_divergent_scores_flagged(self, submission, criterion, evaluators):
        scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 3)
        scoring_service.upsert_score(_ctx_for(evaluators[1]), submission.id, criterion.id, 5)

        consensus = _consensus(submission, criterion)
        assert consensus.score_value == 4.0
        assert consensus.notes == (
            "Consensus score based on 2 evaluators. Average: 4.00. "
            "Note: Scores vary from 3 to 5. Further review recommended."
        )

        scoring_service.upsert_score(_ctx_for(evaluators[2]), submission.id, criterion.id, 4)
        consensus = _consensus(submission, criterion)
        assert consensus.score_value == 4.0
        assert "based on 3 evaluators" in consensus.notes
        assert "Scores vary from 3 to 5" in consensus.notes
        assert "Further review recommended" in consensus.notes
        assert ConsensusScore.query.count() == 1

    def test_close_scores_not_flagged(self, submission, criterion, evaluators):
        scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, criterion.id, 4)
        scoring_service.upsert_score(_ctx_for(evaluators[1]), submission.id, criterion.id, 5)
        consensus = _consensus(submission, criterion)
        assert consensus.score_value == 4.5
        assert consensus.notes == "Consensus score based on 2 evaluators. Average: 4.50"

    def test_spread_exactly_threshold_not_flagged(self):
        assert "Further review" not in build_consensus_notes([3.0, 4.0])

    def test_fractional_bounds_formatted(self):
        notes = build_consensus_notes([1.5, 4.0])
        assert "Scores vary from 1.5 to 4." in notes

    def test_threshold_override(self):
        assert "Further review" in build_consensus_notes([3.0, 3.6], threshold=0.5)

    def test_reconcile_is_idempotent(self, submission, criterion, evaluators):
        for user, value in zip(evaluators, (2, 3, 5)):
            scoring_service.upsert_score(_ctx_for(user), submission.id, criterion.id, value)

        first = reconcile(submission.id, criterion.id)
        snapshot = (first.id, first.score_value, first.notes)
        second = reconcile(submission.id, criterion.id)
        assert (second.id, second.score_value, second.notes) == snapshot
        assert ConsensusScore.query.count() == 1

    def test_recalculate_submission(self, rfp, submission, criterion, evaluators, ctx):
        price = RubricCriterion(rfp_id=rfp.id, label="Price", scale_min=0, scale_max=10)
        db.session.add(price)
        db.session.commit()
        for user, value in zip(evaluators[:2], (2, 4)):
            scoring_service.upsert_score(_ctx_for(user), submission.id, criterion.id, value)
        scoring_service.upsert_score(_ctx_for(evaluators[0]), submission.id, price.id, 7)

        results = scoring_service.recalculate_submission(submission.id, ctx)
        by_label = {r["criterion_label"]: r for r in results}
        assert by_label["Technical fit"]["consensus_score"] == 3.0
        assert by_label["Price"]["consensus_score"] is None
        assert AuditLog.query.filter_by(action="consensus.recalculate").count() == 1

    def test_list_consensus_is_tenant_scoped(self, submission, criterion, evaluators, other_tenant):
        for user, value in zip(evaluators[:2], (2, 4)):
            scoring_service.upsert_score(_ctx_for(user), submission.id, criterion.id, value)
        own = RequestContext(tenant_id=submission.rfp.tenant_id)
        foreign = RequestContext(tenant_id=other_tenant.id)
        assert len(scoring_service.list_consensus(own, submission_id=submission.id)) == 1
        assert scoring_service.list_consensus(foreign) == []

    def test_reconcile_constraint_failure_propagates(self, monkeypatch, submission, criterion, evaluators):
        for user, value in zip(evaluators[:2], (2, 4)):
            scoring_service.upsert_score(_ctx_for(user), submission.id, criterion.id, value)
        db.session.delete(_consensus(submission, criterion))
        db.session.commit()

        monkeypatch.setattr(consensus_module, "build_consensus_notes", lambda values, threshold: None)
        with pytest.raises(IntegrityError):
            reconcile(submission.id, criterion.id)
        assert ConsensusScore.query.count() == 0

    def test_consensus_per_submission(self, rfp, submission, criterion, evaluators):
        second = Submission(rfp_id=rfp.id, vendor_name="Vendor Two")
        db.session.add(second)
        db.session.commit()
        for user, value in zip(evaluators[:2], (1, 2)):
            scoring_service.upsert_score(_ctx_for(user), submission.id, criterion.id, value)
        scoring_service.upsert_score(_ctx_for(evaluators[0]), second.id, criterion.id, 5)

        assert _consensus(submission, criterion).score_value == 1.5
        assert _consensus(second, criterion) is None
