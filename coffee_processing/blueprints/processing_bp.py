"""
Processing Blueprint

REST API for processing methods, batches, the progress log and evaluations.

Endpoint groups:
  Methods / catalog     GET/POST /api/v1/processing/methods
                        GET      /api/v1/processing/methods/<id>/stages
  Batches               GET/POST /api/v1/processing/batches
                        GET      /api/v1/processing/batches/<id>
  Progress log          GET      /api/v1/processing/batches/<id>/progresses
                        POST     /api/v1/processing/batches/<id>/advance
  Evaluations           GET/POST /api/v1/processing/batches/<id>/evaluations
                        GET      /api/v1/processing/batches/<id>/evaluations/summary
  Derived views         GET      /api/v1/processing/batches/<id>/state
                        GET      /api/v1/processing/batches/<id>/reconcile

Service layer owns all business logic and commits. Stale-step, ordering
and invalid-state errors answer 409 with ``refresh_required`` so the client
reloads the batch instead of resubmitting blindly.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from coffee_processing.blueprints import paginate
from coffee_processing.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    OrderingViolationError,
    StaleStepError,
    ValidationError,
)
from coffee_processing.services import (
    advancement_service,
    batch_service,
    batch_state,
    evaluation_service,
    progress_log,
    stage_catalog,
)
from coffee_processing.services.retry_reconciliation import reconcile
from coffee_processing.utils.errors import E, api_error

logger = logging.getLogger(__name__)

processing_bp = Blueprint("processing", __name__, url_prefix="/api/v1/processing")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ── Error handlers ────────────────────────────────────────────────────────────


@processing_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@processing_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@processing_bp.errorhandler(StaleStepError)
def _handle_stale(error: StaleStepError):
    details = {"refresh_required": True}
    if error.current is not None:
        details["current"] = {"step_index": error.current[0], "sequence_no": error.current[1]}
    return api_error(E.CONFLICT_STALE_STEP, str(error), details=details)


@processing_bp.errorhandler(OrderingViolationError)
def _handle_ordering(error: OrderingViolationError):
    return api_error(
        E.CONFLICT_ORDERING, str(error),
        details={"refresh_required": True, "latest_step_index": error.latest},
    )


@processing_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    return api_error(
        E.CONFLICT_STATE, str(error),
        details={"refresh_required": True, "status": error.status},
    )


# ═════════════════════════════════════════════════════════════════════════
# Methods / stage catalog
# ═════════════════════════════════════════════════════════════════════════


@processing_bp.route("/methods", methods=["GET"])
def list_methods():
    """List processing methods with their stage counts."""
    return jsonify([m.to_dict() for m in stage_catalog.list_methods()]), 200


@processing_bp.route("/methods", methods=["POST"])
def create_method():
    """Define a processing method and its ordered stages.

    Body: {method_code, name, description?, stages: [name | {name, stage_code?, description?, is_required?}]}
    Returns: method with stages (201).
    """
    data = _json_body()
    method = stage_catalog.define_method(
        data.get("method_code"),
        data.get("name"),
        description=data.get("description") or "",
        stages=data.get("stages"),
    )
    return jsonify(method.to_dict(include_stages=True)), 201


@processing_bp.route("/methods/<int:method_id>/stages", methods=["GET"])
def list_method_stages(method_id):
    stages = stage_catalog.stages_for(method_id)
    return jsonify([s.to_dict() for s in stages]), 200


# ═════════════════════════════════════════════════════════════════════════
# Batches
# ═════════════════════════════════════════════════════════════════════════


@processing_bp.route("/batches", methods=["GET"])
def list_batches():
    """List batches. Query params: status, method_id, farmer_id, limit, offset."""
    batches = batch_service.list_batches(
        status=request.args.get("status"),
        method_id=request.args.get("method_id", type=int),
        farmer_id=request.args.get("farmer_id"),
    )
    page, total = paginate(batches)
    return jsonify({"items": [b.to_dict() for b in page], "total": total}), 200


@processing_bp.route("/batches", methods=["POST"])
def create_batch():
    """Register a batch.

    Body: {method_id, input_quantity, input_unit?, batch_code?, farmer_id?}
    """
    batch = batch_service.create_batch(_json_body())
    return jsonify(batch.to_dict()), 201


@processing_bp.route("/batches/<int:batch_id>", methods=["GET"])
def get_batch(batch_id):
    """Batch detail with stages, snapshot, derived status and retry status."""
    return jsonify(batch_service.batch_detail(batch_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Progress log
# ═════════════════════════════════════════════════════════════════════════


@processing_bp.route("/batches/<int:batch_id>/progresses", methods=["GET"])
def list_batch_progresses(batch_id):
    """Progress log in insertion order. Optional ?stage_id= narrows to one stage by date."""
    batch_service.get_batch(batch_id)
    stage_id = request.args.get("stage_id", type=int)
    if stage_id is not None:
        items = list(progress_log.entries_for_stage(batch_id, stage_id))
    else:
        items = progress_log.entries(batch_id)
    return jsonify({
        "items": [e.to_dict() for e in items],
        "snapshot": progress_log.snapshot(batch_id).to_dict(),
    }), 200


@processing_bp.route("/batches/<int:batch_id>/advance", methods=["POST"])
def advance_batch(batch_id):
    """Record the next stage (or the corrective resubmission of a failed one).

    Body: {expected_step_index, expected_sequence, progress_date, output_quantity,
           output_unit?, photo_url?, video_url?, recorded_by?, parameters?}
    """
    entry = advancement_service.advance_to_next(batch_id, _json_body())
    return jsonify({
        "progress": entry.to_dict(),
        "status": batch_service.get_batch(batch_id).status,
        "snapshot": progress_log.snapshot(batch_id).to_dict(),
    }), 201


# ═════════════════════════════════════════════════════════════════════════
# Evaluations
# ═════════════════════════════════════════════════════════════════════════


@processing_bp.route("/batches/<int:batch_id>/evaluations", methods=["GET"])
def list_batch_evaluations(batch_id):
    evaluations = evaluation_service.list_evaluations(batch_id)
    return jsonify([ev.to_dict() for ev in evaluations]), 200


@processing_bp.route("/batches/<int:batch_id>/evaluations", methods=["POST"])
def record_batch_evaluation(batch_id):
    """Record an evaluation.

    Body: {result, evaluated_at?, evaluated_by?, comments?, detailed_feedback?,
           recommendations?, failure_detail? | problematic_step?}
    """
    evaluation = evaluation_service.record_evaluation(batch_id, _json_body())
    return jsonify({
        "evaluation": evaluation.to_dict(),
        "status": batch_service.get_batch(batch_id).status,
    }), 201


@processing_bp.route("/batches/<int:batch_id>/evaluations/summary", methods=["GET"])
def batch_evaluation_summary(batch_id):
    return jsonify(evaluation_service.evaluation_summary(batch_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Derived views
# ═════════════════════════════════════════════════════════════════════════


@processing_bp.route("/batches/<int:batch_id>/state", methods=["GET"])
def batch_current_state(batch_id):
    status = batch_state.current_state(batch_id)
    return jsonify({"batch_id": batch_id, "status": status.value}), 200


@processing_bp.route("/batches/<int:batch_id>/reconcile", methods=["GET"])
def batch_reconcile(batch_id):
    return jsonify({"batch_id": batch_id, **reconcile(batch_id).to_dict()}), 200
