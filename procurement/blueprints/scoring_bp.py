"""
Evaluation scores and consensus.

Routes:
  GET    /scores                     – list (?submission_id, ?criterion_id, ?evaluator_id)
  POST   /scores                     – upsert caller's score { submission_id, criterion_id, score_value, notes? }
  GET    /scores/<sid>               – detail
  PUT    /scores/<sid>               – update own score { score_value, notes? }
  DELETE /scores/<sid>               – delete own score
  GET    /consensus                  – list (?submission_id, ?criterion_id)
  POST   /consensus/recalculate      – { submission_id }
"""

import logging
import math

from flask import Blueprint, jsonify, request

from procurement.core.context import current_context
from procurement.services import scoring_service
from procurement.utils.errors import E, api_error, register_error_handlers
from procurement.utils.helpers import json_body

logger = logging.getLogger(__name__)

scoring_bp = Blueprint("scoring", __name__, url_prefix="/api/v1")
register_error_handlers(scoring_bp)


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not isinstance(value, float) or math.isfinite(value)


@scoring_bp.route("/scores", methods=["GET"])
def list_scores():
    ctx = current_context(require_user=False)
    scores = scoring_service.list_scores(
        ctx,
        submission_id=request.args.get("submission_id", type=int),
        criterion_id=request.args.get("criterion_id", type=int),
        evaluator_id=request.args.get("evaluator_id", type=int),
    )
    return jsonify([s.to_dict() for s in scores])


@scoring_bp.route("/scores", methods=["POST"])
def upsert_score():
    ctx = current_context()
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")

    submission_id = data.get("submission_id")
    criterion_id = data.get("criterion_id")
    score_value = data.get("score_value")
    if not isinstance(submission_id, int) or not isinstance(criterion_id, int):
        return api_error(E.VALIDATION_REQUIRED, "submission_id and criterion_id are required integers")
    if not _is_number(score_value):
        return api_error(E.VALIDATION_REQUIRED, "score_value must be a number")

    score, created = scoring_service.upsert_score(
        ctx, submission_id, criterion_id, score_value, notes=data.get("notes"),
    )
    return jsonify(score.to_dict()), 201 if created else 200


@scoring_bp.route("/scores/<int:sid>", methods=["GET"])
def get_score(sid):
    ctx = current_context(require_user=False)
    return jsonify(scoring_service.get_score(sid, ctx).to_dict())


@scoring_bp.route("/scores/<int:sid>", methods=["PUT"])
def update_score(sid):
    ctx = current_context()
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    if not _is_number(data.get("score_value")):
        return api_error(E.VALIDATION_REQUIRED, "score_value must be a number")

    score = scoring_service.update_score(sid, ctx, data["score_value"], notes=data.get("notes"))
    return jsonify(score.to_dict())


@scoring_bp.route("/scores/<int:sid>", methods=["DELETE"])
def delete_score(sid):
    ctx = current_context()
    scoring_service.delete_score(sid, ctx)
    return jsonify({"deleted": True})


@scoring_bp.route("/consensus", methods=["GET"])
def list_consensus():
    ctx = current_context(require_user=False)
    rows = scoring_service.list_consensus(
        ctx,
        submission_id=request.args.get("submission_id", type=int),
        criterion_id=request.args.get("criterion_id", type=int),
    )
    return jsonify([c.to_dict() for c in rows])


@scoring_bp.route("/consensus/recalculate", methods=["POST"])
def recalculate_consensus():
    ctx = current_context()
    data = json_body()
    submission_id = (data or {}).get("submission_id")
    if not isinstance(submission_id, int) or isinstance(submission_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "submission_id is required")

    results = scoring_service.recalculate_submission(submission_id, ctx)
    return jsonify({"message": "Consensus scores recalculated successfully", "results": results})
