"""
Advancement: service layer

AdvanceToNext: record the next stage of a batch, or, while the batch is
Failed, the corrective resubmission of the stage the latest Fail
evaluation implicated.

Every precondition is checked before anything is written:
    batch exists                       NotFoundError
    batch not Completed                InvalidStateError
    batch not AwaitingEvaluation       InvalidStateError
    request snapshot == current tip    StaleStepError
    payload valid                      InvalidInputError

Two requests built from the same snapshot cannot both land: they
serialise on a per-process batch lock, and across processes the
(batch_id, sequence_no) unique constraint rejects the second append.
Nothing here retries; the caller refreshes and resubmits.

Usage:
    from coffee_processing.services.advancement_service import AdvanceRequest, advance_to_next

    snap = progress_log.snapshot(batch_id)
    entry = advance_to_next(batch_id, AdvanceRequest(
        expected_step_index=snap.step_index,
        expected_sequence=snap.sequence_no,
        progress_date="2024-01-12T08:00:00Z",
        output_quantity=95.5,
    ))
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select

from coffee_processing.core.exceptions import (
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    StaleStepError,
)
from coffee_processing.models import db
from coffee_processing.models.evaluation import ProcessingEvaluation
from coffee_processing.models.processing import BatchStatus, ProcessingBatch, ProcessingProgress
from coffee_processing.services import batch_state, progress_log
from coffee_processing.services.evaluation_service import mark_resolved
from coffee_processing.services.retry_reconciliation import reconcile_history
from coffee_processing.services.stage_catalog import stage_at, stages_for
from coffee_processing.utils.helpers import as_utc, parse_int_input

logger = logging.getLogger(__name__)


@dataclass
class AdvanceRequest:
    """What the client saw (the snapshot) and what it wants to record."""
    expected_step_index: int
    expected_sequence: int
    progress_date: Any
    output_quantity: Any
    output_unit: str = "kg"
    photo_url: str | None = None
    video_url: str | None = None
    recorded_by: str = ""
    parameters: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> AdvanceRequest:
        errors = {}
        snapshot = {}
        for key in ("expected_step_index", "expected_sequence"):
            if data.get(key) in (None, ""):
                errors[key] = "required"
                continue
            try:
                snapshot[key] = parse_int_input(data[key], key)
            except ValueError as exc:
                errors[key] = str(exc)
        if errors:
            raise InvalidInputError("Advance request needs the batch snapshot it was based on", details=errors)
        return cls(
            expected_step_index=snapshot["expected_step_index"],
            expected_sequence=snapshot["expected_sequence"],
            progress_date=data.get("progress_date"),
            output_quantity=data.get("output_quantity"),
            output_unit=data.get("output_unit") or "kg",
            photo_url=data.get("photo_url"),
            video_url=data.get("video_url"),
            recorded_by=data.get("recorded_by") or "",
            parameters=data.get("parameters") or [],
        )

    @property
    def expected(self) -> tuple[int, int]:
        return (self.expected_step_index, self.expected_sequence)

    def payload(self) -> dict:
        return {
            "progress_date": self.progress_date,
            "output_quantity": self.output_quantity,
            "output_unit": self.output_unit,
            "photo_url": self.photo_url,
            "video_url": self.video_url,
            "recorded_by": self.recorded_by,
            "parameters": self.parameters,
        }


# ── Per-batch lock registry ──────────────────────────────────────────────────

# entries drop out once no advance holds the lock
_batch_locks: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def _lock_for(batch_id: int) -> threading.Lock:
    with _registry_lock:
        lock = _batch_locks.get(batch_id)
        if lock is None:
            lock = _batch_locks[batch_id] = threading.Lock()
        return lock


# ── Target resolution ────────────────────────────────────────────────────────


def _resubmission_target(batch_id, stages):
    """(stage, evaluation) for the corrective resubmission of a Failed batch."""
    evaluations = list(
        db.session.execute(
            select(ProcessingEvaluation)
            .where(ProcessingEvaluation.batch_id == batch_id)
            .order_by(ProcessingEvaluation.id)
        ).scalars()
    )
    retry = reconcile_history(evaluations, progress_log.entries(batch_id), stages)
    if retry.evaluation is None or retry.failure is None:
        raise InvalidStateError(batch_id, BatchStatus.FAILED.value, "advance", "no open failure found")

    stage = None
    if retry.stage_id is not None:
        stage = next((s for s in stages if s.id == retry.stage_id), None)
    if stage is None:
        stage = stage_at(stages, retry.failure.order_index)
    if stage is None:
        raise InvalidStateError(
            batch_id, BatchStatus.FAILED.value, "advance",
            f"failed stage {retry.failure.order_index} is not in the method's catalog",
        )
    return stage, retry.evaluation


# ── AdvanceToNext ────────────────────────────────────────────────────────────


def advance_to_next(batch_id: int, request) -> ProcessingProgress:
    """
    Append the batch's next progress entry and refresh its status.

    ``request`` is an AdvanceRequest or a dict accepted by
    AdvanceRequest.from_dict. Commits on success; on any failure nothing
    is written.
    """
    if not isinstance(request, AdvanceRequest):
        request = AdvanceRequest.from_dict(request or {})

    with _lock_for(batch_id):
        batch = db.session.get(ProcessingBatch, batch_id)
        if not batch:
            raise NotFoundError(resource="ProcessingBatch", resource_id=batch_id)

        status = batch_state.current_state(batch_id)
        if status == BatchStatus.COMPLETED:
            raise InvalidStateError(batch_id, status.value, "advance", "batch is completed")
        if status == BatchStatus.AWAITING_EVALUATION:
            raise InvalidStateError(
                batch_id, status.value, "advance", "every stage is recorded; awaiting evaluation",
            )

        current = progress_log.snapshot(batch_id)
        if current.as_tuple() != request.expected:
            logger.info(
                "Stale advance for batch %s: expected %s, current %s",
                batch_id, request.expected, current.as_tuple(),
                extra={"batch_id": batch_id},
            )
            raise StaleStepError(batch_id, expected=request.expected, current=current.as_tuple())

        stages = stages_for(batch.method_id)
        latest = progress_log.latest_step_index(batch_id)

        try:
            if status == BatchStatus.FAILED:
                stage, evaluation = _resubmission_target(batch_id, stages)
                entry = progress_log.append(
                    batch_id, stage.id, stage.order_index, request.payload(),
                    resubmission_window=max(latest - stage.order_index, 0),
                    resubmits_evaluation_id=evaluation.id,
                )
                # an entry dated on or before the verdict does not close it;
                # an undated verdict is closed by its first resubmission
                evaluated_at = as_utc(evaluation.evaluated_at)
                if evaluated_at is None or as_utc(entry.progress_date) > evaluated_at:
                    mark_resolved(evaluation, entry.id)
            else:
                next_step = current.step_index + 1
                stage = stage_at(stages, next_step)
                if stage is None:
                    raise InvalidStateError(
                        batch_id, status.value, "advance", f"method has no stage {next_step}",
                    )
                # re-running later stages after a resubmission sits below the old maximum
                entry = progress_log.append(
                    batch_id, stage.id, next_step, request.payload(),
                    resubmission_window=max(latest - next_step, 0),
                )

            batch_state.refresh_status(batch, actor=request.recorded_by or None)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Batch %s advanced to step %s (%s)", batch_id, entry.step_index, stage.name,
        extra={"batch_id": batch_id, "progress_id": entry.id},
    )
    return entry
