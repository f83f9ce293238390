"""
Failure-detail codec tests.

Covers:
    - encode → decode preserves every field, including ``|`` and ``\\`` in values
    - historical unescaped blobs still decode
    - STAGE_REF suffix carries the stage primary key
    - decode returns None (never raises) for absent / foreign / malformed text
    - lenient leading-integer parsing of the order index
    - validate() problem list
    - from_form() parsing of the expert form label
"""

import pytest

from coffee_processing.services import failure_codec
from coffee_processing.services.failure_codec import FailureDetail, decode, encode


class TestEncodeDecode:
    def test_round_trip_plain(self):
        detail = FailureDetail(2, "Hulling", "moisture too high", "dry 2 more days")
        blob = encode(detail)
        assert blob == (
            "FAILED_STAGE_ID:2|FAILED_STAGE_NAME:Hulling"
            "|DETAILS:moisture too high|RECOMMENDATIONS:dry 2 more days"
        )
        assert decode(blob) == detail

    def test_round_trip_with_separator_and_backslash(self):
        detail = FailureDetail(1, "Dry|ing", "12% \\ 14% | uneven", "re-dry")
        decoded = decode(encode(detail))
        assert decoded == detail

    def test_stage_ref_round_trip(self):
        detail = FailureDetail(3, "Grading", "defects", "", stage_id=17)
        blob = encode(detail)
        assert blob.endswith("|STAGE_REF:17")
        assert decode(blob).stage_id == 17

    def test_empty_recommendations_kept(self):
        detail = decode("FAILED_STAGE_ID:1|FAILED_STAGE_NAME:Drying|DETAILS:wet|RECOMMENDATIONS:")
        assert detail.recommendations == ""


class TestLegacyBlobs:
    def test_historical_blob_decodes(self):
        blob = (
            "FAILED_STAGE_ID:2|FAILED_STAGE_NAME:Lên men"
            "|DETAILS:Độ ẩm quá cao|RECOMMENDATIONS:Phơi thêm 2 ngày"
        )
        detail = decode(blob)
        assert detail.order_index == 2
        assert detail.stage_name == "Lên men"
        assert detail.details == "Độ ẩm quá cao"
        assert detail.stage_id is None

    def test_missing_fields_default_to_empty(self):
        detail = decode("FAILED_STAGE_ID:4")
        assert detail == FailureDetail(4, "", "", "")

    def test_unknown_escape_kept_verbatim(self):
        detail = decode("FAILED_STAGE_ID:1|FAILED_STAGE_NAME:a\\nb|DETAILS:x")
        assert detail.stage_name == "a\\nb"

    @pytest.mark.parametrize("raw, expected", [("2 ", 2), ("02", 2), ("2a", 2), (" 7", 7)])
    def test_lenient_order_index(self, raw, expected):
        assert decode(f"FAILED_STAGE_ID:{raw}|FAILED_STAGE_NAME:X|DETAILS:y").order_index == expected


class TestDecodeRejects:
    @pytest.mark.parametrize("text", [
        None,
        "",
        "looks fine to me",
        "FAILED_STAGE_ID:abc|FAILED_STAGE_NAME:Drying|DETAILS:x",
        "FAILED_STAGE_ID:0|FAILED_STAGE_NAME:Drying|DETAILS:x",
        "FAILED_STAGE_ID:-3|FAILED_STAGE_NAME:Drying|DETAILS:x",
        "FAILED_STAGE_ID:|FAILED_STAGE_NAME:Drying",
        "FAILED_STAGE_ID:2|STAGE_REF:nope",
    ])
    def test_returns_none(self, text):
        assert decode(text) is None

    def test_is_failure_comment(self):
        assert failure_codec.is_failure_comment("FAILED_STAGE_ID:1")
        assert not failure_codec.is_failure_comment("all good")
        assert not failure_codec.is_failure_comment(None)


class TestValidate:
    def test_usable_detail_has_no_problems(self):
        assert failure_codec.validate(FailureDetail(1, "Drying", "wet")) == []

    def test_reports_every_problem(self):
        problems = failure_codec.validate(FailureDetail(0, " ", ""))
        assert len(problems) == 3


class TestFromForm:
    def test_vietnamese_label(self):
        detail = failure_codec.from_form("Bước 2: Lên men", "quá chua", "giảm thời gian")
        assert detail.order_index == 2
        assert detail.stage_name == "Lên men"
        assert detail.details == "quá chua"
        assert detail.recommendations == "giảm thời gian"

    def test_english_label_uses_defaults(self):
        detail = failure_codec.from_form("step 3 : Grading")
        assert detail.order_index == 3
        assert detail.stage_name == "Grading"
        assert detail.details == failure_codec.DEFAULT_FORM_DETAILS
        assert detail.recommendations == failure_codec.DEFAULT_FORM_RECOMMENDATIONS

    def test_label_without_number(self):
        assert failure_codec.from_form("Grading") is None
        assert failure_codec.from_form("") is None
