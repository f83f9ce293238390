"""
Coffee Processing Core
Evaluation domain model.

Models:
    - ProcessingEvaluation: an expert verdict on a processing batch.

Evaluations are immutable once recorded. A re-evaluation is a new row.
Two columns may be filled after creation, each exactly once:
    - ``resolved_by_progress_id``: first corrective progress entry observed
      after a Fail evaluation
    - the structured failure columns, when backfilled from a legacy
      ``comments`` blob (services/evaluation_service.backfill_failure_details)
"""

from datetime import datetime, timezone
from enum import Enum

from coffee_processing.models import db
from coffee_processing.services.failure_codec import FailureDetail, decode, encode


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────


class EvaluationResult(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"
    NEEDS_IMPROVEMENT = "NeedsImprovement"
    TEMPORARY = "Temporary"
    PENDING = "Pending"


EVALUATION_RESULTS = {r.value for r in EvaluationResult}

# Only these move the batch lifecycle; the rest are advisory notes.
VERDICT_RESULTS = {EvaluationResult.PASS.value, EvaluationResult.FAIL.value}


class ProcessingEvaluation(db.Model):
    """
    Expert evaluation of a batch. Code format: EV-001 per batch.

    A Fail evaluation may implicate one stage; that detail lives in the
    ``failed_*`` columns. Rows recorded before those columns existed carry
    it only inside ``comments`` and are read through the codec.
    """

    __tablename__ = "processing_evaluations"

    id = db.Column(db.Integer, primary_key=True)
    evaluation_code = db.Column(db.String(30), nullable=False, default="")
    batch_id = db.Column(
        db.Integer, db.ForeignKey("processing_batches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    result = db.Column(
        db.String(30), nullable=False,
        comment="Pass | Fail | NeedsImprovement | Temporary | Pending",
    )
    evaluated_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Null only on historical rows imported without a timestamp",
    )
    evaluated_by = db.Column(db.String(64), default="")

    comments = db.Column(db.Text, default="")
    detailed_feedback = db.Column(db.Text, default="")
    recommendations = db.Column(db.Text, default="")

    # Structured failure detail
    failed_order_index = db.Column(db.Integer, nullable=True)
    failed_stage_id = db.Column(
        db.Integer, db.ForeignKey("processing_stages.id", ondelete="SET NULL"),
        nullable=True,
    )
    failed_stage_name = db.Column(db.String(200), nullable=True)
    failure_details = db.Column(db.Text, nullable=True)
    failure_recommendations = db.Column(db.Text, nullable=True)

    resolved_by_progress_id = db.Column(
        db.Integer, nullable=True,
        comment="processing_progresses.id of the first corrective entry",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "result IN ('Pass','Fail','NeedsImprovement','Temporary','Pending')",
            name="ck_processing_evaluation_result",
        ),
        db.Index("ix_evaluation_batch_result", "batch_id", "result"),
    )

    # ── Failure detail ───────────────────────────────────────────────────

    @property
    def has_structured_failure(self):
        return self.failed_order_index is not None

    @property
    def failure_detail(self):
        """FailureDetail from the structured columns, else decoded from comments, else None."""
        if self.has_structured_failure:
            return FailureDetail(
                order_index=self.failed_order_index,
                stage_name=self.failed_stage_name or "",
                details=self.failure_details or "",
                recommendations=self.failure_recommendations or "",
                stage_id=self.failed_stage_id,
            )
        return decode(self.comments)

    def set_failure_detail(self, detail):
        self.failed_order_index = detail.order_index
        self.failed_stage_id = detail.stage_id
        self.failed_stage_name = detail.stage_name
        self.failure_details = detail.details
        self.failure_recommendations = detail.recommendations

    def to_dict(self):
        detail = self.failure_detail
        return {
            "id": self.id,
            "evaluation_code": self.evaluation_code,
            "batch_id": self.batch_id,
            "result": self.result,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
            "evaluated_by": self.evaluated_by,
            "comments": self.comments,
            "detailed_feedback": self.detailed_feedback,
            "recommendations": self.recommendations,
            "failure_detail": detail.to_dict() if detail else None,
            "failure_comment": encode(detail) if detail else None,
            "resolved_by_progress_id": self.resolved_by_progress_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ProcessingEvaluation {self.id}: batch={self.batch_id} {self.result}>"
