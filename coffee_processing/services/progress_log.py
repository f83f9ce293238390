"""
Progress Log: service layer

Append-only log of stage occurrences per batch. ``append`` is the only
writer of ProcessingProgress rows; there is no update or delete path.

Ordering rule:
    step_index >= latest_step_index - resubmission_window
    (window is 0 for normal advancement; a corrective resubmission widens it
    just enough to land on the failed stage's original step)

Concurrency:
    every entry takes the next per-batch ``sequence_no``; the unique
    (batch_id, sequence_no) constraint lets exactly one of two racing
    appends win. The loser is rolled back and surfaces as StaleStepError.

Usage:
    from coffee_processing.services import progress_log

    snap = progress_log.snapshot(batch_id)           # StepSnapshot(step_index=2, sequence_no=2)
    entry = progress_log.append(batch_id, stage.id, 3, {"progress_date": ..., "output_quantity": 90})
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from coffee_processing.core.exceptions import (
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    OrderingViolationError,
    StaleStepError,
)
from coffee_processing.models import db
from coffee_processing.models.audit import write_audit
from coffee_processing.models.processing import (
    OUTPUT_UNITS,
    BatchStatus,
    ProcessingBatch,
    ProcessingProgress,
    ProcessingStage,
    ProgressParameter,
)
from coffee_processing.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepSnapshot:
    """The (step, sequence) pair a client read; echoed back when advancing."""
    step_index: int
    sequence_no: int

    def as_tuple(self) -> tuple[int, int]:
        return (self.step_index, self.sequence_no)

    def to_dict(self) -> dict:
        return {"step_index": self.step_index, "sequence_no": self.sequence_no}


EMPTY_SNAPSHOT = StepSnapshot(step_index=0, sequence_no=0)


# ── Reads ────────────────────────────────────────────────────────────────────


def latest_step_index(batch_id: int) -> int:
    """Maximum step_index recorded for the batch, 0 when the log is empty."""
    value = db.session.execute(
        select(func.max(ProcessingProgress.step_index))
        .where(ProcessingProgress.batch_id == batch_id)
    ).scalar()
    return value or 0


def tip(batch_id: int) -> ProcessingProgress | None:
    """Most recently appended entry, or None."""
    return db.session.execute(
        select(ProcessingProgress)
        .where(ProcessingProgress.batch_id == batch_id)
        .order_by(ProcessingProgress.sequence_no.desc())
        .limit(1)
    ).scalar_one_or_none()


def snapshot(batch_id: int) -> StepSnapshot:
    entry = tip(batch_id)
    if entry is None:
        return EMPTY_SNAPSHOT
    return StepSnapshot(step_index=entry.step_index, sequence_no=entry.sequence_no)


def entries(batch_id: int) -> list[ProcessingProgress]:
    """Full log for the batch in insertion order."""
    return list(
        db.session.execute(
            select(ProcessingProgress)
            .where(ProcessingProgress.batch_id == batch_id)
            .order_by(ProcessingProgress.sequence_no)
        ).scalars()
    )


def entries_for_stage(batch_id: int, stage_id: int):
    """Yield the batch's entries for one stage, oldest first.

    Each call runs a fresh query; ties on progress_date keep insertion order.
    """
    result = db.session.execute(
        select(ProcessingProgress)
        .where(
            ProcessingProgress.batch_id == batch_id,
            ProcessingProgress.stage_id == stage_id,
        )
        .order_by(ProcessingProgress.progress_date, ProcessingProgress.sequence_no)
    ).scalars()
    yield from result


# ── Payload validation ───────────────────────────────────────────────────────


def _validate_payload(payload: dict) -> dict:
    errors = {}

    try:
        progress_date = parse_datetime_input(payload.get("progress_date"), "progress_date")
    except ValueError as exc:
        progress_date = None
        errors["progress_date"] = str(exc)
    else:
        if progress_date is None:
            errors["progress_date"] = "required"

    raw_qty = payload.get("output_quantity")
    output_quantity = None
    if raw_qty is None or raw_qty == "":
        errors["output_quantity"] = "required"
    else:
        try:
            output_quantity = float(raw_qty)
        except (TypeError, ValueError):
            errors["output_quantity"] = "must be a number"
        else:
            if output_quantity <= 0:
                errors["output_quantity"] = "must be greater than 0"

    output_unit = (payload.get("output_unit") or "kg").strip()
    if output_unit not in OUTPUT_UNITS:
        errors["output_unit"] = f"must be one of {sorted(OUTPUT_UNITS)}"

    parameters = payload.get("parameters") or []
    if not isinstance(parameters, list):
        errors["parameters"] = "must be a list"
        parameters = []
    for i, param in enumerate(parameters):
        if not isinstance(param, dict) or not (param.get("parameter_name") or "").strip():
            errors[f"parameters[{i}].parameter_name"] = "required"

    if errors:
        raise InvalidInputError("Invalid progress payload", details=errors)

    return {
        "progress_date": progress_date,
        "output_quantity": output_quantity,
        "output_unit": output_unit,
        "recorded_by": payload.get("recorded_by") or "",
        "photo_url": payload.get("photo_url") or None,
        "video_url": payload.get("video_url") or None,
        "parameters": parameters,
    }


# ── Append ───────────────────────────────────────────────────────────────────


def _next_sequence(batch_id: int) -> int:
    value = db.session.execute(
        select(func.max(ProcessingProgress.sequence_no))
        .where(ProcessingProgress.batch_id == batch_id)
    ).scalar()
    return (value or 0) + 1


def _invalidate_memo(batch_id: int) -> None:
    from coffee_processing.services.retry_reconciliation import invalidate_batch

    invalidate_batch(batch_id)


def append(
    batch_id: int,
    stage_id: int,
    step_index: int,
    payload: dict,
    *,
    resubmission_window: int = 0,
    resubmits_evaluation_id: int | None = None,
) -> ProcessingProgress:
    """
    Insert one immutable progress entry. Flushes; the caller commits.

    Raises:
        NotFoundError: Unknown batch or stage.
        InvalidStateError: The batch is Completed.
        InvalidInputError: Bad payload, stage outside the batch's method,
            or step_index not matching the stage's order index.
        OrderingViolationError: step_index below latest - resubmission_window.
        StaleStepError: Another append for this batch landed first.
    """
    batch = db.session.get(ProcessingBatch, batch_id)
    if not batch:
        raise NotFoundError(resource="ProcessingBatch", resource_id=batch_id)
    if batch.status == BatchStatus.COMPLETED.value:
        raise InvalidStateError(batch_id, batch.status, "append progress", "batch is completed")

    stage = db.session.get(ProcessingStage, stage_id)
    if not stage:
        raise NotFoundError(resource="ProcessingStage", resource_id=stage_id)
    if stage.method_id != batch.method_id:
        raise InvalidInputError(
            f"Stage {stage_id} does not belong to the batch's processing method",
            details={"stage_id": "foreign stage"},
        )
    if step_index != stage.order_index:
        raise InvalidInputError(
            f"step_index {step_index} does not match stage order {stage.order_index}",
            details={"step_index": "mismatch"},
        )

    fields = _validate_payload(payload or {})

    latest = latest_step_index(batch_id)
    window = max(resubmission_window or 0, 0)
    if step_index < latest - window:
        raise OrderingViolationError(batch_id, step_index, latest, window)

    before = snapshot(batch_id)
    params = fields.pop("parameters")
    entry = ProcessingProgress(
        batch_id=batch_id,
        stage_id=stage_id,
        step_index=step_index,
        sequence_no=_next_sequence(batch_id),
        is_resubmission=resubmits_evaluation_id is not None,
        resubmits_evaluation_id=resubmits_evaluation_id,
        **fields,
    )
    for param in params:
        entry.parameters.append(
            ProgressParameter(
                parameter_name=param["parameter_name"].strip(),
                parameter_value=str(param.get("parameter_value") or ""),
                unit=param.get("unit") or "",
                recorded_at=parse_datetime_input(param.get("recorded_at"), "recorded_at")
                or fields["progress_date"],
            )
        )

    db.session.add(entry)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        current = snapshot(batch_id)
        logger.warning(
            "Concurrent append lost for batch %s: %s", batch_id, exc.orig,
            extra={"batch_id": batch_id},
        )
        raise StaleStepError(batch_id, expected=before.as_tuple(), current=current.as_tuple()) from exc

    write_audit(
        entity_type="processing_progress",
        entity_id=entry.id,
        action="progress.resubmit" if entry.is_resubmission else "progress.append",
        actor=entry.recorded_by or None,
        batch_id=batch_id,
        diff={
            "stage_id": stage_id,
            "step_index": step_index,
            "sequence_no": entry.sequence_no,
            "resubmits_evaluation_id": resubmits_evaluation_id,
        },
    )
    _invalidate_memo(batch_id)

    logger.info(
        "Progress appended: batch %s step %s (seq %s)",
        batch_id, step_index, entry.sequence_no,
        extra={"batch_id": batch_id, "progress_id": entry.id},
    )
    return entry
