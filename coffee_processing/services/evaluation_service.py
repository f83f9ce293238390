"""
Evaluation: service layer

Business logic for:
    - Code generation:      EV-001, EV-002 (batch-scoped)
    - Recording verdicts:   Pass / Fail only from AwaitingEvaluation,
                            nothing at all on a Completed batch
    - Failure detail intake: structured object, expert form label
                            ("Step 2: Hulling") or legacy comment blob
    - Summary:              counts per result, latest evaluation, open failure
    - Backfill:             one-time move of legacy comment blobs into the
                            structured failure columns
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from coffee_processing.core.exceptions import (
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from coffee_processing.models import db
from coffee_processing.models.audit import write_audit
from coffee_processing.models.evaluation import (
    EVALUATION_RESULTS,
    VERDICT_RESULTS,
    EvaluationResult,
    ProcessingEvaluation,
)
from coffee_processing.models.processing import BatchStatus, ProcessingBatch
from coffee_processing.services import batch_state, failure_codec
from coffee_processing.services.failure_codec import FailureDetail
from coffee_processing.services.retry_reconciliation import invalidate_batch, reconcile
from coffee_processing.services.stage_catalog import stage_at, stages_for
from coffee_processing.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)


# ── Code Generation ──────────────────────────────────────────────────────────


def generate_evaluation_code(batch_id: int) -> str:
    """Generate next evaluation code for a batch: EV-001, EV-002, ..."""
    count = (
        db.session.query(func.count(ProcessingEvaluation.id))
        .filter(ProcessingEvaluation.batch_id == batch_id)
        .scalar()
    ) or 0
    return f"EV-{count + 1:03d}"


# ── Reads ────────────────────────────────────────────────────────────────────


def _get_batch(batch_id: int) -> ProcessingBatch:
    batch = db.session.get(ProcessingBatch, batch_id)
    if not batch:
        raise NotFoundError(resource="ProcessingBatch", resource_id=batch_id)
    return batch


def list_evaluations(batch_id: int) -> list[ProcessingEvaluation]:
    """All evaluations of a batch, oldest first."""
    _get_batch(batch_id)
    return list(
        db.session.execute(
            select(ProcessingEvaluation)
            .where(ProcessingEvaluation.batch_id == batch_id)
            .order_by(ProcessingEvaluation.id)
        ).scalars()
    )


def evaluation_summary(batch_id: int) -> dict:
    """Counts per result, the latest evaluation, and the open failure if any."""
    evaluations = list_evaluations(batch_id)
    counts = {r.value: 0 for r in EvaluationResult}
    for ev in evaluations:
        counts[ev.result] = counts.get(ev.result, 0) + 1

    status = batch_state.current_state(batch_id)
    retry = reconcile(batch_id)
    open_failure = None
    if status == BatchStatus.FAILED and retry.failure is not None:
        open_failure = {
            "evaluation_id": retry.evaluation.id if retry.evaluation else None,
            **retry.failure.to_dict(),
        }

    return {
        "batch_id": batch_id,
        "status": status.value,
        "total": len(evaluations),
        "counts": counts,
        "latest": evaluations[-1].to_dict() if evaluations else None,
        "open_failure": open_failure,
        "retry": retry.to_dict(),
    }


# ── Failure detail intake ────────────────────────────────────────────────────


def _detail_from_data(data: dict) -> FailureDetail | None:
    raw = data.get("failure_detail")
    if isinstance(raw, dict):
        errors = {}
        try:
            order_index = int(raw.get("order_index"))
        except (TypeError, ValueError):
            order_index = None
            errors["failure_detail.order_index"] = "must be an integer"
        stage_id = raw.get("stage_id")
        if stage_id not in (None, ""):
            try:
                stage_id = int(stage_id)
            except (TypeError, ValueError):
                errors["failure_detail.stage_id"] = "must be an integer"
        else:
            stage_id = None
        if errors:
            raise InvalidInputError("Invalid failure detail", details=errors)
        return FailureDetail(
            order_index=order_index,
            stage_name=(raw.get("stage_name") or "").strip(),
            details=(raw.get("details") or "").strip(),
            recommendations=(raw.get("recommendations") or "").strip(),
            stage_id=stage_id,
        )
    if raw is not None:
        raise InvalidInputError(
            "failure_detail must be an object",
            details={"failure_detail": "invalid type"},
        )

    if data.get("problematic_step"):
        detail = failure_codec.from_form(
            data["problematic_step"],
            data.get("detailed_feedback") or "",
            data.get("recommendations") or "",
        )
        if detail is None:
            raise InvalidInputError(
                "problematic_step must look like 'Step <n>: <stage name>'",
                details={"problematic_step": "unrecognised format"},
            )
        return detail

    return failure_codec.decode(data.get("comments"))


def _resolve_against_catalog(detail: FailureDetail, stages) -> FailureDetail:
    stage = stage_at(stages, detail.order_index) if detail.order_index else None
    if stage is None:
        raise InvalidInputError(
            f"Failed stage order {detail.order_index} is not part of this batch's method",
            details={"failure_detail.order_index": "unknown stage"},
        )
    if detail.stage_id is not None and detail.stage_id != stage.id:
        raise InvalidInputError(
            f"Stage {detail.stage_id} is not stage {detail.order_index} of this batch's method",
            details={"failure_detail.stage_id": "mismatch"},
        )
    resolved = FailureDetail(
        order_index=detail.order_index,
        stage_name=detail.stage_name or stage.name,
        details=detail.details,
        recommendations=detail.recommendations,
        stage_id=stage.id,
    )
    problems = failure_codec.validate(resolved)
    if problems:
        raise InvalidInputError(
            "Invalid failure detail",
            details={"failure_detail": problems},
        )
    return resolved


# ── Record ───────────────────────────────────────────────────────────────────


def record_evaluation(batch_id: int, data: dict) -> ProcessingEvaluation:
    """
    Record an expert evaluation and refresh the batch status.

    Required: ``result``. A ``Fail`` needs a failure detail, given as
    ``failure_detail`` {order_index, stage_name?, details, recommendations?,
    stage_id?}, as ``problematic_step`` + ``detailed_feedback``, or encoded
    in ``comments``.

    Raises:
        NotFoundError: Unknown batch.
        InvalidInputError: Unknown result, bad timestamp, missing or
            unresolvable failure detail.
        InvalidStateError: Batch Completed, or a Pass/Fail while the batch
            is not AwaitingEvaluation.
    """
    batch = _get_batch(batch_id)

    result = (data.get("result") or "").strip()
    if result not in EVALUATION_RESULTS:
        raise InvalidInputError(
            f"result must be one of {sorted(EVALUATION_RESULTS)}",
            details={"result": "invalid"},
        )

    status = batch_state.current_state(batch_id)
    if status == BatchStatus.COMPLETED:
        raise InvalidStateError(batch_id, status.value, "evaluate", "batch is completed")
    if result in VERDICT_RESULTS and status != BatchStatus.AWAITING_EVALUATION:
        raise InvalidStateError(
            batch_id, status.value, "evaluate",
            "a Pass/Fail verdict needs every stage recorded first",
        )

    try:
        evaluated_at = parse_datetime_input(data.get("evaluated_at"), "evaluated_at")
    except ValueError as exc:
        raise InvalidInputError(str(exc), details={"evaluated_at": "invalid"}) from exc

    detail = None
    if result == EvaluationResult.FAIL.value:
        detail = _detail_from_data(data)
        if detail is None:
            raise InvalidInputError(
                "A Fail evaluation must name the failed stage",
                details={"failure_detail": "required"},
            )
        detail = _resolve_against_catalog(detail, stages_for(batch.method_id))

    evaluation = ProcessingEvaluation(
        evaluation_code=generate_evaluation_code(batch_id),
        batch_id=batch_id,
        result=result,
        evaluated_at=evaluated_at or datetime.now(timezone.utc),
        evaluated_by=data.get("evaluated_by") or "",
        comments=data.get("comments") or "",
        detailed_feedback=data.get("detailed_feedback") or "",
        recommendations=data.get("recommendations") or "",
    )
    if detail is not None:
        evaluation.set_failure_detail(detail)
    db.session.add(evaluation)
    db.session.flush()

    write_audit(
        entity_type="processing_evaluation",
        entity_id=evaluation.id,
        action="evaluation.record",
        actor=evaluation.evaluated_by or None,
        batch_id=batch_id,
        diff={
            "result": result,
            "failed_order_index": detail.order_index if detail else None,
        },
    )
    invalidate_batch(batch_id)
    batch_state.refresh_status(batch, actor=evaluation.evaluated_by or None)
    db.session.commit()

    logger.info(
        "Evaluation %s recorded for batch %s: %s", evaluation.evaluation_code, batch_id, result,
        extra={"batch_id": batch_id, "evaluation_id": evaluation.id},
    )
    return evaluation


def mark_resolved(evaluation: ProcessingEvaluation, progress_id: int) -> bool:
    """Set the resolving progress entry once. Returns False if already set. Flushes only."""
    if evaluation.resolved_by_progress_id is not None:
        return False
    evaluation.resolved_by_progress_id = progress_id
    write_audit(
        entity_type="processing_evaluation",
        entity_id=evaluation.id,
        action="evaluation.resolve",
        batch_id=evaluation.batch_id,
        diff={"resolved_by_progress_id": progress_id},
    )
    return True


# ── Backfill ─────────────────────────────────────────────────────────────────


def backfill_failure_details() -> dict:
    """
    Copy failure detail out of legacy ``comments`` blobs into the structured
    columns. Rows that already have structured detail are left alone, so
    running it twice is a no-op.

    ``failed_stage_id`` is filled only when the catalog stage at that order
    carries the same name as the blob; otherwise it stays empty and
    reconciliation keeps using positional matching for that row.
    """
    candidates = list(
        db.session.execute(
            select(ProcessingEvaluation)
            .where(
                ProcessingEvaluation.result == EvaluationResult.FAIL.value,
                ProcessingEvaluation.failed_order_index.is_(None),
            )
            .order_by(ProcessingEvaluation.id)
        ).scalars()
    )

    stats = {"scanned": len(candidates), "backfilled": 0, "with_stage_id": 0, "skipped": 0}
    catalogs: dict[int, list] = {}
    for ev in candidates:
        detail = failure_codec.decode(ev.comments)
        if detail is None:
            stats["skipped"] += 1
            continue

        batch = ev.batch
        if detail.stage_id is None and batch is not None:
            if batch.method_id not in catalogs:
                try:
                    catalogs[batch.method_id] = stages_for(batch.method_id)
                except NotFoundError:
                    catalogs[batch.method_id] = []
            stage = stage_at(catalogs[batch.method_id], detail.order_index)
            if stage is not None and stage.name.casefold() == detail.stage_name.strip().casefold():
                detail = FailureDetail(
                    order_index=detail.order_index,
                    stage_name=detail.stage_name,
                    details=detail.details,
                    recommendations=detail.recommendations,
                    stage_id=stage.id,
                )

        ev.set_failure_detail(detail)
        stats["backfilled"] += 1
        if detail.stage_id is not None:
            stats["with_stage_id"] += 1
        write_audit(
            entity_type="processing_evaluation",
            entity_id=ev.id,
            action="evaluation.backfill",
            batch_id=ev.batch_id,
            diff=detail.to_dict(),
        )
        invalidate_batch(ev.batch_id)

    db.session.commit()
    logger.info(
        "Failure detail backfill: %(backfilled)s of %(scanned)s rows (%(with_stage_id)s with stage id)",
        stats,
    )
    return stats
