"""
Batch State Machine

A batch's status is never set by hand: it is derived from the stage
catalog, the progress log and the evaluation history, and the stored
``ProcessingBatch.status`` column is only a projection of that derivation.

Derivation (first rule that applies wins):
    1. any Pass evaluation                              → Completed
    2. empty progress log                               → NotStarted
    3. latest Fail with failure detail still open
       (not retried; an undated Fail stays open until
       its first linked resubmission)                   → Failed
    4. tip entry on the catalog's final stage           → AwaitingEvaluation
    5. otherwise                                        → InProgress

Rule 4 reads the tip, not the maximum step, so resubmitting a non-final
stage drops the batch back to InProgress until the later stages are
re-run.
"""

import logging

from sqlalchemy import select

from coffee_processing.core.exceptions import NotFoundError
from coffee_processing.models import db
from coffee_processing.models.audit import write_audit
from coffee_processing.models.evaluation import EvaluationResult, ProcessingEvaluation
from coffee_processing.models.processing import (
    BatchStatus,
    ProcessingBatch,
    validate_batch_transition,
)
from coffee_processing.services import progress_log
from coffee_processing.services.retry_reconciliation import reconcile_history
from coffee_processing.services.stage_catalog import final_order_index, stages_for

logger = logging.getLogger(__name__)


def _closed_without_timestamp(evaluation, entries) -> bool:
    """An undated Fail cannot be reconciled by date; its first linked resubmission closes it."""
    if evaluation.evaluated_at is not None:
        return False
    if evaluation.resolved_by_progress_id is not None:
        return True
    return any(e.resubmits_evaluation_id == evaluation.id for e in entries)


def derive_status(stages, entries, evaluations) -> BatchStatus:
    """Pure status derivation over already-fetched records."""
    evaluations = list(evaluations)
    if any(ev.result == EvaluationResult.PASS.value for ev in evaluations):
        return BatchStatus.COMPLETED

    entries = list(entries)
    if not entries:
        return BatchStatus.NOT_STARTED

    retry = reconcile_history(evaluations, entries, stages)
    if (
        retry.evaluation is not None
        and not retry.retried
        and not _closed_without_timestamp(retry.evaluation, entries)
    ):
        return BatchStatus.FAILED

    tip = max(entries, key=lambda e: e.sequence_no)
    if tip.step_index >= final_order_index(stages):
        return BatchStatus.AWAITING_EVALUATION
    return BatchStatus.IN_PROGRESS


def _evaluations(batch_id):
    return list(
        db.session.execute(
            select(ProcessingEvaluation)
            .where(ProcessingEvaluation.batch_id == batch_id)
            .order_by(ProcessingEvaluation.id)
        ).scalars()
    )


def _derive_for(batch) -> BatchStatus:
    return derive_status(
        stages_for(batch.method_id),
        progress_log.entries(batch.id),
        _evaluations(batch.id),
    )


def current_state(batch_id: int) -> BatchStatus:
    """Derive the batch's status from its current log and evaluations.

    Raises:
        NotFoundError: Unknown batch.
    """
    batch = db.session.get(ProcessingBatch, batch_id)
    if not batch:
        raise NotFoundError(resource="ProcessingBatch", resource_id=batch_id)
    return _derive_for(batch)


def refresh_status(batch, *, actor=None) -> BatchStatus:
    """
    Re-derive and store the batch's status projection. Flushes; caller commits.

    An edge outside BATCH_TRANSITIONS is still stored (the derivation is
    authoritative) but logged, since it means the log or evaluations were
    changed outside the services.
    """
    new_status = _derive_for(batch)
    old_status = batch.status
    if new_status.value == old_status:
        return new_status

    if not validate_batch_transition(old_status, new_status.value):
        logger.warning(
            "Unexpected batch status edge %s → %s for batch %s",
            old_status, new_status.value, batch.id,
            extra={"batch_id": batch.id},
        )

    batch.status = new_status.value
    write_audit(
        entity_type="processing_batch",
        entity_id=batch.id,
        action="batch.status_change",
        actor=actor,
        batch_id=batch.id,
        diff={"status": {"old": old_status, "new": new_status.value}},
    )
    logger.info(
        "Batch %s status %s → %s", batch.id, old_status, new_status.value,
        extra={"batch_id": batch.id},
    )
    return new_status
