"""
Processing Batch: service layer

Batch registry: create, list, fetch, and the detail view the UI polls
(batch + stage catalog + log snapshot + derived status + retry status).
"""

import logging

from sqlalchemy import func, select

from coffee_processing.core.exceptions import InvalidInputError, NotFoundError, ValidationError
from coffee_processing.models import db
from coffee_processing.models.audit import write_audit
from coffee_processing.models.processing import (
    BATCH_STATUSES,
    OUTPUT_UNITS,
    BatchStatus,
    ProcessingBatch,
    ProcessingMethod,
)
from coffee_processing.services import batch_state, progress_log
from coffee_processing.services.retry_reconciliation import reconcile
from coffee_processing.services.stage_catalog import final_order_index, stages_for

logger = logging.getLogger(__name__)


def generate_batch_code() -> str:
    """Generate next batch code: PB-0001, PB-0002, ... (globally unique)."""
    count = db.session.query(func.count(ProcessingBatch.id)).scalar() or 0
    return f"PB-{count + 1:04d}"


def get_batch(batch_id: int) -> ProcessingBatch:
    batch = db.session.get(ProcessingBatch, batch_id)
    if not batch:
        raise NotFoundError(resource="ProcessingBatch", resource_id=batch_id)
    return batch


def list_batches(*, status=None, method_id=None, farmer_id=None) -> list[ProcessingBatch]:
    stmt = select(ProcessingBatch).order_by(ProcessingBatch.id)
    if status:
        if status not in BATCH_STATUSES:
            raise InvalidInputError(
                f"status must be one of {sorted(BATCH_STATUSES)}", details={"status": "invalid"},
            )
        stmt = stmt.where(ProcessingBatch.status == status)
    if method_id is not None:
        stmt = stmt.where(ProcessingBatch.method_id == method_id)
    if farmer_id:
        stmt = stmt.where(ProcessingBatch.farmer_id == farmer_id)
    return list(db.session.execute(stmt).scalars())


def create_batch(data: dict) -> ProcessingBatch:
    """
    Register a new batch on a processing method. Starts NotStarted.

    Raises:
        InvalidInputError: Missing/unknown method, bad quantity or unit.
        ValidationError: batch_code already taken.
    """
    errors = {}
    method = None
    try:
        method_id = int(data.get("method_id"))
    except (TypeError, ValueError):
        errors["method_id"] = "required"
    else:
        method = db.session.get(ProcessingMethod, method_id)
        if method is None:
            errors["method_id"] = "unknown processing method"

    try:
        input_quantity = float(data.get("input_quantity"))
    except (TypeError, ValueError):
        input_quantity = None
        errors["input_quantity"] = "required"
    else:
        if input_quantity <= 0:
            errors["input_quantity"] = "must be greater than 0"

    input_unit = (data.get("input_unit") or "kg").strip()
    if input_unit not in OUTPUT_UNITS:
        errors["input_unit"] = f"must be one of {sorted(OUTPUT_UNITS)}"

    if errors:
        raise InvalidInputError("Invalid processing batch", details=errors)

    # a method without stages cannot progress; surface it at creation
    stages_for(method.id)

    batch_code = (data.get("batch_code") or "").strip() or generate_batch_code()
    taken = db.session.execute(
        select(ProcessingBatch.id).where(ProcessingBatch.batch_code == batch_code)
    ).scalar_one_or_none()
    if taken is not None:
        raise ValidationError(
            f"Batch code '{batch_code}' already exists", details={"batch_code": "duplicate"},
        )

    batch = ProcessingBatch(
        batch_code=batch_code,
        method_id=method.id,
        farmer_id=str(data.get("farmer_id") or ""),
        input_quantity=input_quantity,
        input_unit=input_unit,
        status=BatchStatus.NOT_STARTED.value,
    )
    db.session.add(batch)
    db.session.flush()
    write_audit(
        entity_type="processing_batch",
        entity_id=batch.id,
        action="batch.create",
        actor=batch.farmer_id or None,
        batch_id=batch.id,
        diff={"batch_code": batch_code, "method_id": method.id},
    )
    db.session.commit()
    logger.info("Batch %s created", batch_code, extra={"batch_id": batch.id, "method_id": method.id})
    return batch


def batch_detail(batch_id: int) -> dict:
    """Batch with everything a client needs to render it and to advance it."""
    batch = get_batch(batch_id)
    stages = stages_for(batch.method_id)
    snap = progress_log.snapshot(batch_id)
    tip = progress_log.tip(batch_id)
    status = batch_state.current_state(batch_id)
    final = final_order_index(stages)

    retry = reconcile(batch_id)

    # stage the next advance will record
    next_order = None
    if status in (BatchStatus.NOT_STARTED, BatchStatus.IN_PROGRESS):
        next_order = snap.step_index + 1
    elif status == BatchStatus.FAILED and retry.failure is not None:
        next_order = retry.failure.order_index
    next_stage = next((s.to_dict() for s in stages if s.order_index == next_order), None)

    result = batch.to_dict()
    result.update({
        "status": status.value,
        "stages": [s.to_dict() for s in stages],
        "final_step_index": final,
        "snapshot": snap.to_dict(),
        "latest_step_index": progress_log.latest_step_index(batch_id),
        "latest_output_quantity": tip.output_quantity if tip else None,
        "next_stage": next_stage,
        "retry": retry.to_dict(),
    })
    return result
