"""
Coffee Processing Core
Processing domain models: methods, stages, batches and the progress log.

Models:
    - ProcessingMethod:    a named processing recipe (e.g. washed, natural, honey)
    - ProcessingStage:     one ordered step of a method (drying, hulling, grading, ...)
    - ProcessingBatch:     a unit of coffee moving through a method's stages
    - ProcessingProgress:  immutable progress-log entry (one stage occurrence)
    - ProgressParameter:   free-form measurement attached to a progress entry

Architecture:
    ProcessingMethod ──1:N──▶ ProcessingStage   (order_index 1..N, contiguous)
    ProcessingMethod ──1:N──▶ ProcessingBatch
    ProcessingBatch  ──1:N──▶ ProcessingProgress ──1:N──▶ ProgressParameter
    ProcessingBatch  ──1:N──▶ ProcessingEvaluation  (see models/evaluation.py)

Lifecycle states:
    ProcessingBatch:  NotStarted → InProgress → AwaitingEvaluation → Completed
                      AwaitingEvaluation → Failed → InProgress | AwaitingEvaluation
    Status is a stored projection of the progress log and evaluations; only
    services/batch_state.refresh_status writes it.
"""

from datetime import datetime, timezone
from enum import Enum

from coffee_processing.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────


class BatchStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    AWAITING_EVALUATION = "AwaitingEvaluation"
    COMPLETED = "Completed"
    FAILED = "Failed"


BATCH_STATUSES = {s.value for s in BatchStatus}

OUTPUT_UNITS = {"kg", "ta", "tan", "bag"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

BATCH_TRANSITIONS = {
    # a single-stage method reaches its final stage with the first entry
    "NotStarted":         ["InProgress", "AwaitingEvaluation"],
    "InProgress":         ["AwaitingEvaluation"],
    "AwaitingEvaluation": ["Completed", "Failed"],
    # resubmitting the final stage lands straight back in AwaitingEvaluation
    "Failed":             ["InProgress", "AwaitingEvaluation"],
    "Completed":          [],
}


def validate_batch_transition(old_status, new_status):
    """Return True if ProcessingBatch status transition is valid."""
    return new_status in BATCH_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProcessingMethod
# ═════════════════════════════════════════════════════════════════════════════


class ProcessingMethod(db.Model):
    """
    A processing recipe. Parameterises the stage catalog for its batches.
    Code format: free-form but unique (e.g. WET, NAT, HONEY).
    """

    __tablename__ = "processing_methods"

    id = db.Column(db.Integer, primary_key=True)
    method_code = db.Column(db.String(30), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    stages = db.relationship(
        "ProcessingStage", backref="method", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProcessingStage.order_index",
    )

    def to_dict(self, include_stages=False):
        result = {
            "id": self.id,
            "method_code": self.method_code,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
            "stage_count": self.stages.count(),
        }
        if include_stages:
            result["stages"] = [s.to_dict() for s in self.stages]
        return result

    def __repr__(self):
        return f"<ProcessingMethod {self.id}: {self.method_code}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProcessingStage
# ═════════════════════════════════════════════════════════════════════════════


class ProcessingStage(db.Model):
    """
    One ordered step of a processing method. Immutable once created:
    a changed recipe is a new method, not an edit of this row.
    """

    __tablename__ = "processing_stages"

    id = db.Column(db.Integer, primary_key=True)
    method_id = db.Column(
        db.Integer, db.ForeignKey("processing_methods.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_code = db.Column(db.String(50), default="")
    name = db.Column(db.String(200), nullable=False)
    order_index = db.Column(
        db.Integer, nullable=False,
        comment="1-based position within the method's stage sequence",
    )
    description = db.Column(db.Text, default="")
    is_required = db.Column(db.Boolean, default=True)

    __table_args__ = (
        db.UniqueConstraint("method_id", "order_index", name="uq_stage_method_order"),
        db.CheckConstraint("order_index >= 1", name="ck_stage_order_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "method_id": self.method_id,
            "stage_code": self.stage_code,
            "name": self.name,
            "order_index": self.order_index,
            "description": self.description,
            "is_required": self.is_required,
        }

    def __repr__(self):
        return f"<ProcessingStage {self.id}: {self.order_index}. {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. ProcessingBatch
# ═════════════════════════════════════════════════════════════════════════════


class ProcessingBatch(db.Model):
    """
    A unit of coffee tracked through one processing method.

    ``status`` is derived from the progress log and evaluations
    (services/batch_state.py) and stored only as a read projection.
    """

    __tablename__ = "processing_batches"

    id = db.Column(db.Integer, primary_key=True)
    batch_code = db.Column(
        db.String(50), unique=True, nullable=False,
        comment="Human-readable code, auto-generated as PB-0001 when omitted",
    )
    method_id = db.Column(
        db.Integer, db.ForeignKey("processing_methods.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    farmer_id = db.Column(db.String(64), default="", index=True)
    input_quantity = db.Column(db.Float, default=0)
    input_unit = db.Column(db.String(10), default="kg")
    status = db.Column(
        db.String(30), default=BatchStatus.NOT_STARTED.value, nullable=False,
        comment="NotStarted | InProgress | AwaitingEvaluation | Completed | Failed",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('NotStarted','InProgress','AwaitingEvaluation','Completed','Failed')",
            name="ck_processing_batch_status",
        ),
    )

    method = db.relationship("ProcessingMethod")
    progresses = db.relationship(
        "ProcessingProgress", backref="batch", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProcessingProgress.sequence_no",
    )
    evaluations = db.relationship(
        "ProcessingEvaluation", backref="batch", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProcessingEvaluation.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "batch_code": self.batch_code,
            "method_id": self.method_id,
            "method_name": self.method.name if self.method else None,
            "farmer_id": self.farmer_id,
            "input_quantity": self.input_quantity,
            "input_unit": self.input_unit,
            "status": self.status,
            "progress_count": self.progresses.count(),
            "evaluation_count": self.evaluations.count(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ProcessingBatch {self.id}: {self.batch_code} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ProcessingProgress (progress-log entry)
# ═════════════════════════════════════════════════════════════════════════════


class ProcessingProgress(db.Model):
    """
    Append-only record that a stage occurred for a batch.

    Never updated or deleted: a correction is a new row with
    ``is_resubmission=True`` at the failed stage's original step.
    ``sequence_no`` is the per-batch insertion order; the unique
    (batch_id, sequence_no) pair makes two concurrent appends from the
    same snapshot collide instead of both landing.
    """

    __tablename__ = "processing_progresses"

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer, db.ForeignKey("processing_batches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("processing_stages.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    step_index = db.Column(db.Integer, nullable=False)
    sequence_no = db.Column(db.Integer, nullable=False)

    progress_date = db.Column(db.DateTime(timezone=True), nullable=False)
    output_quantity = db.Column(db.Float, nullable=False)
    output_unit = db.Column(db.String(10), default="kg")
    recorded_by = db.Column(db.String(64), default="")

    # Media references (upload handled elsewhere)
    photo_url = db.Column(db.String(500), nullable=True)
    video_url = db.Column(db.String(500), nullable=True)

    # Corrective resubmission after a failed evaluation
    is_resubmission = db.Column(db.Boolean, default=False, nullable=False)
    resubmits_evaluation_id = db.Column(
        db.Integer, db.ForeignKey("processing_evaluations.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("batch_id", "sequence_no", name="uq_progress_batch_sequence"),
        db.CheckConstraint("output_quantity > 0", name="ck_progress_output_positive"),
        db.Index("ix_progress_batch_stage", "batch_id", "stage_id"),
    )

    stage = db.relationship("ProcessingStage")
    parameters = db.relationship(
        "ProgressParameter", backref="progress", lazy="select",
        cascade="all, delete-orphan", order_by="ProgressParameter.id",
    )

    @property
    def stage_name(self):
        return self.stage.name if self.stage else None

    def to_dict(self):
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "step_index": self.step_index,
            "sequence_no": self.sequence_no,
            "progress_date": _iso(self.progress_date),
            "output_quantity": self.output_quantity,
            "output_unit": self.output_unit,
            "recorded_by": self.recorded_by,
            "photo_url": self.photo_url,
            "video_url": self.video_url,
            "is_resubmission": self.is_resubmission,
            "resubmits_evaluation_id": self.resubmits_evaluation_id,
            "parameters": [p.to_dict() for p in self.parameters],
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ProcessingProgress {self.id}: batch={self.batch_id} step={self.step_index}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. ProgressParameter
# ═════════════════════════════════════════════════════════════════════════════


class ProgressParameter(db.Model):
    """Measured value recorded alongside a progress entry (moisture, temperature, ...)."""

    __tablename__ = "progress_parameters"

    id = db.Column(db.Integer, primary_key=True)
    progress_id = db.Column(
        db.Integer, db.ForeignKey("processing_progresses.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    parameter_name = db.Column(db.String(100), nullable=False)
    parameter_value = db.Column(db.String(100), default="")
    unit = db.Column(db.String(20), default="")
    recorded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "parameter_name": self.parameter_name,
            "parameter_value": self.parameter_value,
            "unit": self.unit,
            "recorded_at": _iso(self.recorded_at),
        }
