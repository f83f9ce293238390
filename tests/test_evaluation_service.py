"""
Evaluation service tests.

Covers:
    - evaluation codes EV-001, EV-002 per batch
    - Pass/Fail only from AwaitingEvaluation; nothing on Completed
    - advisory results (NeedsImprovement, Temporary, Pending) at any open status
    - failure detail intake: structured object, form label, legacy comment blob
    - failure detail validation against the batch's stage catalog
    - summary counts, latest, open failure
    - backfill of legacy comment blobs into structured columns
"""

import pytest

from coffee_processing.core.exceptions import InvalidInputError, InvalidStateError, NotFoundError
from coffee_processing.models import db
from coffee_processing.models.audit import AuditLog
from coffee_processing.models.evaluation import ProcessingEvaluation
from coffee_processing.services import batch_state, evaluation_service, progress_log, stage_catalog
from coffee_processing.services.batch_service import create_batch
from coffee_processing.services.failure_codec import FailureDetail, encode


def _run_all_stages(batch, stages, days=(2, 4, 6)):
    for stage, day in zip(stages, days):
        progress_log.append(batch.id, stage.id, stage.order_index, {
            "progress_date": f"2024-01-{day:02d}T08:00:00Z",
            "output_quantity": 90,
        })
    batch_state.refresh_status(batch)
    db.session.commit()


def _fail(batch, **fields):
    data = {"result": "Fail", "evaluated_at": "2024-01-10T08:00:00Z"}
    data.update(fields)
    return evaluation_service.record_evaluation(batch.id, data)


def _legacy_row(batch, comments, result="Fail"):
    ev = ProcessingEvaluation(
        evaluation_code="EV-OLD",
        batch_id=batch.id,
        result=result,
        evaluated_at=None,
        comments=comments,
    )
    db.session.add(ev)
    db.session.commit()
    return ev


# ═════════════════════════════════════════════════════════════════════════════
# Recording preconditions
# ═════════════════════════════════════════════════════════════════════════════


class TestPreconditions:
    def test_unknown_batch(self):
        with pytest.raises(NotFoundError):
            evaluation_service.record_evaluation(999, {"result": "Pass"})

    def test_unknown_result(self, batch):
        with pytest.raises(InvalidInputError) as exc:
            evaluation_service.record_evaluation(batch.id, {"result": "Great"})
        assert "result" in exc.value.details

    @pytest.mark.parametrize("result", ["Pass", "Fail"])
    def test_verdict_needs_every_stage(self, batch, stages, result):
        progress_log.append(batch.id, stages[0].id, 1, {
            "progress_date": "2024-01-02", "output_quantity": 90,
        })
        db.session.commit()
        with pytest.raises(InvalidStateError) as exc:
            evaluation_service.record_evaluation(batch.id, {"result": result})
        assert exc.value.status == "InProgress"

    def test_verdict_on_not_started(self, batch):
        with pytest.raises(InvalidStateError):
            evaluation_service.record_evaluation(batch.id, {"result": "Pass"})

    @pytest.mark.parametrize("result", ["NeedsImprovement", "Temporary", "Pending"])
    def test_advisory_allowed_mid_run(self, batch, result):
        ev = evaluation_service.record_evaluation(batch.id, {"result": result, "comments": "note"})
        assert ev.result == result
        assert batch.status == "NotStarted"

    def test_nothing_on_completed(self, batch, stages):
        _run_all_stages(batch, stages)
        evaluation_service.record_evaluation(batch.id, {"result": "Pass"})
        with pytest.raises(InvalidStateError):
            evaluation_service.record_evaluation(batch.id, {"result": "Temporary"})

    def test_bad_timestamp(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError):
            evaluation_service.record_evaluation(batch.id, {"result": "Pass", "evaluated_at": "soon"})

    def test_codes_are_batch_scoped(self, method, batch):
        other = create_batch({"method_id": method.id, "input_quantity": 20})
        a1 = evaluation_service.record_evaluation(batch.id, {"result": "Pending"})
        a2 = evaluation_service.record_evaluation(batch.id, {"result": "Pending"})
        b1 = evaluation_service.record_evaluation(other.id, {"result": "Pending"})
        assert (a1.evaluation_code, a2.evaluation_code, b1.evaluation_code) == ("EV-001", "EV-002", "EV-001")

    def test_evaluated_at_defaults_to_now(self, batch, stages):
        _run_all_stages(batch, stages)
        ev = evaluation_service.record_evaluation(batch.id, {"result": "Pass"})
        assert ev.evaluated_at is not None

    def test_record_is_audited(self, batch, stages):
        _run_all_stages(batch, stages)
        ev = _fail(batch, failure_detail={"order_index": 2, "details": "moisture too high"})
        audit = AuditLog.query.filter_by(action="evaluation.record", entity_id=str(ev.id)).one()
        assert audit.diff == {"result": "Fail", "failed_order_index": 2}


# ═════════════════════════════════════════════════════════════════════════════
# Failure detail intake
# ═════════════════════════════════════════════════════════════════════════════


class TestFailureIntake:
    def test_structured_detail_resolves_stage(self, batch, stages):
        _run_all_stages(batch, stages)
        ev = _fail(batch, failure_detail={"order_index": 2, "details": "moisture too high"})
        assert ev.failed_order_index == 2
        assert ev.failed_stage_id == stages[1].id
        assert ev.failed_stage_name == "Hulling"
        assert batch.status == "Failed"

    def test_form_label(self, batch, stages):
        _run_all_stages(batch, stages)
        ev = _fail(batch, problematic_step="Bước 3: Grading", detailed_feedback="defects")
        assert ev.failed_order_index == 3
        assert ev.failure_details == "defects"
        assert ev.failed_stage_id == stages[2].id

    def test_unrecognised_form_label(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError) as exc:
            _fail(batch, problematic_step="Grading")
        assert "problematic_step" in exc.value.details

    def test_legacy_blob_in_comments(self, batch, stages):
        _run_all_stages(batch, stages)
        blob = encode(FailureDetail(2, "Hulling", "moisture too high", "dry 2 more days"))
        ev = _fail(batch, comments=blob)
        assert ev.has_structured_failure
        assert ev.failure_recommendations == "dry 2 more days"
        assert ev.comments == blob

    def test_fail_needs_detail(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError) as exc:
            _fail(batch, comments="not good")
        assert "failure_detail" in exc.value.details
        assert db.session.query(ProcessingEvaluation).count() == 0

    def test_order_outside_catalog(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError):
            _fail(batch, failure_detail={"order_index": 7, "details": "x"})

    def test_stage_id_must_match_order(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError) as exc:
            _fail(batch, failure_detail={"order_index": 2, "stage_id": stages[0].id, "details": "x"})
        assert "failure_detail.stage_id" in exc.value.details

    def test_empty_details_rejected(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError):
            _fail(batch, failure_detail={"order_index": 2, "details": "  "})

    def test_non_integer_order(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError) as exc:
            _fail(batch, failure_detail={"order_index": "second", "details": "x"})
        assert "failure_detail.order_index" in exc.value.details

    def test_failure_detail_not_an_object(self, batch, stages):
        _run_all_stages(batch, stages)
        with pytest.raises(InvalidInputError):
            _fail(batch, failure_detail="Hulling")

    def test_to_dict_exposes_both_forms(self, batch, stages):
        _run_all_stages(batch, stages)
        ev = _fail(batch, failure_detail={"order_index": 2, "details": "wet"})
        data = ev.to_dict()
        assert data["failure_detail"]["stage_name"] == "Hulling"
        assert data["failure_comment"].startswith("FAILED_STAGE_ID:2|FAILED_STAGE_NAME:Hulling")
        assert data["failure_comment"].endswith(f"|STAGE_REF:{stages[1].id}")


# ═════════════════════════════════════════════════════════════════════════════
# Summary
# ═════════════════════════════════════════════════════════════════════════════


class TestSummary:
    def test_empty(self, batch):
        summary = evaluation_service.evaluation_summary(batch.id)
        assert summary["total"] == 0
        assert summary["latest"] is None
        assert summary["open_failure"] is None
        assert summary["status"] == "NotStarted"

    def test_counts_and_open_failure(self, batch, stages):
        evaluation_service.record_evaluation(batch.id, {"result": "Temporary"})
        _run_all_stages(batch, stages)
        ev = _fail(batch, failure_detail={"order_index": 2, "details": "moisture too high"})

        summary = evaluation_service.evaluation_summary(batch.id)
        assert summary["total"] == 2
        assert summary["counts"]["Temporary"] == 1
        assert summary["counts"]["Fail"] == 1
        assert summary["counts"]["Pass"] == 0
        assert summary["latest"]["id"] == ev.id
        assert summary["open_failure"]["evaluation_id"] == ev.id
        assert summary["open_failure"]["order_index"] == 2
        assert summary["retry"]["retried"] is False

    def test_list_evaluations_oldest_first(self, batch):
        first = evaluation_service.record_evaluation(batch.id, {"result": "Pending"})
        second = evaluation_service.record_evaluation(batch.id, {"result": "Temporary"})
        assert [e.id for e in evaluation_service.list_evaluations(batch.id)] == [first.id, second.id]


# ═════════════════════════════════════════════════════════════════════════════
# Backfill
# ═════════════════════════════════════════════════════════════════════════════


class TestBackfill:
    def test_backfills_matching_name_with_stage_id(self, batch, stages):
        ev = _legacy_row(batch, "FAILED_STAGE_ID:2|FAILED_STAGE_NAME:hulling|DETAILS:wet|RECOMMENDATIONS:")
        stats = evaluation_service.backfill_failure_details()
        assert stats == {"scanned": 1, "backfilled": 1, "with_stage_id": 1, "skipped": 0}

        db.session.refresh(ev)
        assert ev.failed_order_index == 2
        assert ev.failed_stage_id == stages[1].id
        assert ev.failure_details == "wet"

    def test_name_mismatch_keeps_stage_id_empty(self, batch):
        ev = _legacy_row(batch, "FAILED_STAGE_ID:2|FAILED_STAGE_NAME:Fermentation|DETAILS:sour")
        stats = evaluation_service.backfill_failure_details()
        assert stats["with_stage_id"] == 0

        db.session.refresh(ev)
        assert ev.failed_order_index == 2
        assert ev.failed_stage_id is None
        assert ev.failed_stage_name == "Fermentation"

    def test_unreadable_rows_are_skipped(self, batch):
        _legacy_row(batch, "no structured detail here")
        _legacy_row(batch, "FAILED_STAGE_ID:1|DETAILS:x", result="Temporary")
        stats = evaluation_service.backfill_failure_details()
        assert stats == {"scanned": 1, "backfilled": 0, "with_stage_id": 0, "skipped": 1}

    def test_second_run_is_a_no_op(self, batch):
        _legacy_row(batch, "FAILED_STAGE_ID:1|FAILED_STAGE_NAME:Drying|DETAILS:wet")
        evaluation_service.backfill_failure_details()
        stats = evaluation_service.backfill_failure_details()
        assert stats["scanned"] == 0
        assert AuditLog.query.filter_by(action="evaluation.backfill").count() == 1

    def test_stage_ref_in_blob_is_kept(self, batch, stages):
        blob = encode(FailureDetail(3, "Grading", "defects", "", stage_id=stages[2].id))
        ev = _legacy_row(batch, blob)
        evaluation_service.backfill_failure_details()
        db.session.refresh(ev)
        assert ev.failed_stage_id == stages[2].id

    def test_cli_command(self, app, batch):
        _legacy_row(batch, "FAILED_STAGE_ID:1|FAILED_STAGE_NAME:Drying|DETAILS:wet")
        result = app.test_cli_runner().invoke(args=["backfill-failure-details"])
        assert result.exit_code == 0
        assert "Backfilled 1 of 1" in result.output


class TestCatalogIsolation:
    def test_catalog_of_other_method_not_used(self, batch):
        other = stage_catalog.define_method("HON", "Honey", stages=["Pulping", "Hulling"])
        ev = _legacy_row(batch, "FAILED_STAGE_ID:2|FAILED_STAGE_NAME:Hulling|DETAILS:x")
        evaluation_service.backfill_failure_details()
        db.session.refresh(ev)
        assert ev.failed_stage_id != stage_catalog.stages_for(other.id)[1].id
        assert ev.failed_stage_id == stage_catalog.stages_for(batch.method_id)[1].id
