"""
Retry Reconciliation Engine

Answers "has the farmer already resubmitted the stage the latest Fail
evaluation implicated?" by replaying the batch's evaluation history against
its progress log. Nothing is stored: the answer is recomputed from the
timeline on every call, so a resubmission made after a client last looked
is always visible.

Algorithm (reconcile_history):
    1. Latest Fail evaluation carrying a usable failure detail.
       None → not applicable. Missing evaluated_at → not applicable.
    2. Resolve the implicated stage:
         stage_id on the detail             → match="stage_id"
         order_index as the position of the stage name's first appearance
         in the batch's own log             → match="position"
         catalog stage with that order      → match="catalog"
    3. Entries for that stage with progress_date strictly after evaluated_at.
    4. Non-empty → retried, latest by progress_date then sequence_no.

``match="position"`` results are lower confidence: two stages sharing a
name, or methods ordering stages differently, can misattribute a retry.

reconcile(batch_id) memoises per batch on (tip sequence_no, latest
evaluation id). The key is re-read on every call and the memo is dropped
by progress_log.append and evaluation_service.record_evaluation.

Usage:
    from coffee_processing.services.retry_reconciliation import reconcile

    status = reconcile(batch_id)
    if status.retried:
        print(status.latest_entry.progress_date)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from flask import current_app, has_app_context
from sqlalchemy import func, select

from coffee_processing.core.exceptions import NotFoundError
from coffee_processing.models import db
from coffee_processing.models.evaluation import EvaluationResult, ProcessingEvaluation
from coffee_processing.models.processing import ProcessingBatch, ProcessingProgress
from coffee_processing.services import progress_log
from coffee_processing.services.failure_codec import FailureDetail
from coffee_processing.services.stage_catalog import stage_at, stages_for
from coffee_processing.utils.helpers import as_utc

logger = logging.getLogger(__name__)

MATCH_STAGE_ID = "stage_id"
MATCH_POSITION = "position"
MATCH_CATALOG = "catalog"


@dataclass(frozen=True)
class RetryStatus:
    """Outcome of reconciling one batch's latest Fail evaluation."""
    applicable: bool
    retried: bool = False
    latest_entry: ProcessingProgress | None = None
    evaluation: ProcessingEvaluation | None = None
    failure: FailureDetail | None = None
    match: str | None = None
    stage_id: int | None = None
    stage_name: str | None = None

    @property
    def low_confidence(self) -> bool:
        return self.match == MATCH_POSITION

    def to_dict(self) -> dict:
        return {
            "applicable": self.applicable,
            "retried": self.retried,
            "latest_entry": self.latest_entry.to_dict() if self.latest_entry else None,
            "evaluation_id": self.evaluation.id if self.evaluation else None,
            "failure": self.failure.to_dict() if self.failure else None,
            "match": self.match,
            "low_confidence": self.low_confidence,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
        }


NOT_APPLICABLE = RetryStatus(applicable=False)


# ── Pure reconciliation ──────────────────────────────────────────────────────


def latest_failure(evaluations) -> tuple[ProcessingEvaluation | None, FailureDetail | None]:
    """Most recent Fail evaluation with a usable failure detail (by insertion order)."""
    for ev in sorted(evaluations, key=lambda e: e.id or 0, reverse=True):
        if ev.result != EvaluationResult.FAIL.value:
            continue
        detail = ev.failure_detail
        if detail is not None:
            return ev, detail
    return None, None


def _first_appearance(entries) -> list[str]:
    names: list[str] = []
    for entry in sorted(entries, key=lambda e: e.sequence_no):
        name = entry.stage_name
        if name and name not in names:
            names.append(name)
    return names


def resolve_stage(failure: FailureDetail, entries, stages=None):
    """Return ``(predicate, match, stage_id, stage_name)`` for the implicated stage.

    ``predicate`` selects entries of that stage; all four are None when
    the stage cannot be resolved.
    """
    if failure.stage_id is not None:
        name = None
        if stages:
            stage = next((s for s in stages if s.id == failure.stage_id), None)
            name = stage.name if stage else None
        return (lambda e: e.stage_id == failure.stage_id), MATCH_STAGE_ID, failure.stage_id, name

    names = _first_appearance(entries)
    if 1 <= failure.order_index <= len(names):
        name = names[failure.order_index - 1]
        stage_id = next((e.stage_id for e in entries if e.stage_name == name), None)
        return (lambda e: e.stage_name == name), MATCH_POSITION, stage_id, name

    stage = stage_at(stages or [], failure.order_index)
    if stage is not None:
        return (lambda e: e.stage_id == stage.id), MATCH_CATALOG, stage.id, stage.name

    return None, None, None, None


def reconcile_history(evaluations, entries, stages=None) -> RetryStatus:
    """Reconcile already-fetched evaluations and progress entries. No I/O."""
    evaluation, failure = latest_failure(evaluations)
    if evaluation is None:
        return NOT_APPLICABLE

    evaluated_at = as_utc(evaluation.evaluated_at)
    if evaluated_at is None:
        return RetryStatus(applicable=False, evaluation=evaluation, failure=failure)

    entries = list(entries)
    predicate, match, stage_id, stage_name = resolve_stage(failure, entries, stages)
    if predicate is None:
        logger.warning(
            "Failed stage %s of evaluation %s cannot be resolved",
            failure.order_index, evaluation.id,
            extra={"batch_id": evaluation.batch_id, "evaluation_id": evaluation.id},
        )
        return RetryStatus(applicable=True, evaluation=evaluation, failure=failure)

    retries = [
        e for e in entries
        if predicate(e) and as_utc(e.progress_date) > evaluated_at
    ]
    latest = max(retries, key=lambda e: (as_utc(e.progress_date), e.sequence_no), default=None)
    return RetryStatus(
        applicable=True,
        retried=latest is not None,
        latest_entry=latest,
        evaluation=evaluation,
        failure=failure,
        match=match,
        stage_id=stage_id,
        stage_name=stage_name,
    )


# ── Memo ─────────────────────────────────────────────────────────────────────

# batch_id → (key, applicable, retried, latest_entry_id, evaluation_id, failure, match, stage_id, stage_name)
_memo: dict[int, tuple] = {}
_memo_lock = threading.Lock()


def invalidate_batch(batch_id: int) -> None:
    with _memo_lock:
        _memo.pop(batch_id, None)


def invalidate_all() -> None:
    with _memo_lock:
        _memo.clear()


def _memo_enabled() -> bool:
    if not has_app_context():
        return True
    return current_app.config.get("RECONCILE_CACHE_ENABLED", True)


def _memo_key(batch_id: int) -> tuple[int, int]:
    tip_seq = db.session.execute(
        select(func.max(ProcessingProgress.sequence_no))
        .where(ProcessingProgress.batch_id == batch_id)
    ).scalar() or 0
    last_eval = db.session.execute(
        select(func.max(ProcessingEvaluation.id))
        .where(ProcessingEvaluation.batch_id == batch_id)
    ).scalar() or 0
    return (tip_seq, last_eval)


def _store(batch_id: int, key: tuple, status: RetryStatus) -> None:
    with _memo_lock:
        _memo[batch_id] = (
            key,
            status.applicable,
            status.retried,
            status.latest_entry.id if status.latest_entry else None,
            status.evaluation.id if status.evaluation else None,
            status.failure,
            status.match,
            status.stage_id,
            status.stage_name,
        )


def _load(batch_id: int, key: tuple) -> RetryStatus | None:
    with _memo_lock:
        cached = _memo.get(batch_id)
    if cached is None or cached[0] != key:
        return None
    _, applicable, retried, entry_id, eval_id, failure, match, stage_id, stage_name = cached
    return RetryStatus(
        applicable=applicable,
        retried=retried,
        latest_entry=db.session.get(ProcessingProgress, entry_id) if entry_id else None,
        evaluation=db.session.get(ProcessingEvaluation, eval_id) if eval_id else None,
        failure=failure,
        match=match,
        stage_id=stage_id,
        stage_name=stage_name,
    )


# ── Query ────────────────────────────────────────────────────────────────────


def reconcile(batch_id: int) -> RetryStatus:
    """Retry status for the batch's latest Fail evaluation.

    Raises:
        NotFoundError: Unknown batch.
    """
    batch = db.session.get(ProcessingBatch, batch_id)
    if not batch:
        raise NotFoundError(resource="ProcessingBatch", resource_id=batch_id)

    use_memo = _memo_enabled()
    key = _memo_key(batch_id)
    if use_memo:
        cached = _load(batch_id, key)
        if cached is not None:
            return cached

    evaluations = list(
        db.session.execute(
            select(ProcessingEvaluation)
            .where(ProcessingEvaluation.batch_id == batch_id)
            .order_by(ProcessingEvaluation.id)
        ).scalars()
    )
    status = reconcile_history(evaluations, progress_log.entries(batch_id), stages_for(batch.method_id))

    if use_memo:
        _store(batch_id, key, status)
    return status
