"""
Failure-detail codec

Structured failure detail for Fail evaluations, and the legacy text form that
older evaluation records carry inside their free-text ``comments`` field:

    FAILED_STAGE_ID:<orderIndex>|FAILED_STAGE_NAME:<name>|DETAILS:<text>|RECOMMENDATIONS:<text>

``FAILED_STAGE_ID`` holds the stage's 1-based order index, not its primary
key. Newer blobs may append ``|STAGE_REF:<stageId>``. ``|`` and ``\\`` inside
values are backslash-escaped on encode; unescaped historical blobs decode the
same way they always did.

The structured columns on ProcessingEvaluation are the primary
representation; this module exists for intake of legacy comment blobs,
the one-time backfill and the ``failure_comment`` field legacy clients read.

Usage:
    from coffee_processing.services.failure_codec import FailureDetail, decode, encode

    blob = encode(FailureDetail(2, "Hulling", "moisture too high", "dry 2 more days"))
    detail = decode(blob)            # FailureDetail | None, never raises
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from coffee_processing.core.exceptions import DecodeFailure

logger = logging.getLogger(__name__)

ORDER_PREFIX = "FAILED_STAGE_ID:"
NAME_PREFIX = "FAILED_STAGE_NAME:"
DETAILS_PREFIX = "DETAILS:"
RECOMMENDATIONS_PREFIX = "RECOMMENDATIONS:"
STAGE_REF_PREFIX = "STAGE_REF:"

# Leading integer, parsed leniently the way historical clients did ("2 ", "02", "2a")
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

# Expert form label: "Bước 2: Hulling" (original UI) or "Step 2: Hulling"
_PROBLEMATIC_STEP = re.compile(r"(?:Bước|Step)\s*(\d+)\s*:\s*(.+)", re.IGNORECASE)

DEFAULT_FORM_DETAILS = "Stage reported as problematic"
DEFAULT_FORM_RECOMMENDATIONS = "Improve following the method guidelines"


@dataclass(frozen=True)
class FailureDetail:
    """Which stage a Fail evaluation implicates, and what the expert said about it."""
    order_index: int
    stage_name: str
    details: str
    recommendations: str = ""
    stage_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "order_index": self.order_index,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "details": self.details,
            "recommendations": self.recommendations,
        }


# ── Encoding ─────────────────────────────────────────────────────────────────


def _escape(value: str) -> str:
    return (value or "").replace("\\", "\\\\").replace("|", "\\|")


def encode(detail: FailureDetail) -> str:
    """Render *detail* in the comment-blob format."""
    blob = (
        f"{ORDER_PREFIX}{int(detail.order_index)}"
        f"|{NAME_PREFIX}{_escape(detail.stage_name)}"
        f"|{DETAILS_PREFIX}{_escape(detail.details)}"
        f"|{RECOMMENDATIONS_PREFIX}{_escape(detail.recommendations)}"
    )
    if detail.stage_id is not None:
        blob += f"|{STAGE_REF_PREFIX}{int(detail.stage_id)}"
    return blob


# ── Decoding ─────────────────────────────────────────────────────────────────


def _split(text: str) -> list[str]:
    """Split on unescaped ``|`` and unescape each part."""
    parts: list[str] = []
    buf: list[str] = []
    chars = iter(text)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, None)
            if nxt is None:
                buf.append(ch)
            elif nxt in ("\\", "|"):
                buf.append(nxt)
            else:
                # not an escape we produce; keep historical text verbatim
                buf.append(ch)
                buf.append(nxt)
        elif ch == "|":
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return parts


def _field(parts: list[str], prefix: str) -> str | None:
    for part in parts:
        if part.startswith(prefix):
            return part[len(prefix):]
    return None


def _parse_int(raw: str | None, label: str) -> int:
    if raw is None:
        raise DecodeFailure(f"missing {label}")
    m = _LEADING_INT.match(raw)
    if not m:
        raise DecodeFailure(f"non-numeric {label}: {raw!r}")
    return int(m.group(1))


def _decode_strict(text: str) -> FailureDetail:
    parts = _split(text)
    order_index = _parse_int(_field(parts, ORDER_PREFIX), "order index")
    if order_index <= 0:
        raise DecodeFailure(f"non-positive order index: {order_index}")

    stage_ref = _field(parts, STAGE_REF_PREFIX)
    stage_id = _parse_int(stage_ref, "stage ref") if stage_ref is not None else None

    return FailureDetail(
        order_index=order_index,
        stage_name=_field(parts, NAME_PREFIX) or "",
        details=_field(parts, DETAILS_PREFIX) or "",
        recommendations=_field(parts, RECOMMENDATIONS_PREFIX) or "",
        stage_id=stage_id,
    )


def decode(text: str | None) -> FailureDetail | None:
    """Parse a comment blob. Returns None for absent, malformed or foreign text."""
    if not is_failure_comment(text):
        return None
    try:
        return _decode_strict(text)
    except DecodeFailure as exc:
        logger.debug("Failure blob not decodable: %s", exc)
        return None
    except (TypeError, ValueError) as exc:
        logger.debug("Failure blob not decodable: %s", exc)
        return None


def is_failure_comment(text: str | None) -> bool:
    return bool(text) and isinstance(text, str) and ORDER_PREFIX in text


# ── Intake helpers ───────────────────────────────────────────────────────────


def validate(detail: FailureDetail) -> list[str]:
    """Return a list of human-readable problems; empty when *detail* is usable."""
    errors = []
    if not detail.stage_name or not detail.stage_name.strip():
        errors.append("stage_name must not be empty")
    if detail.order_index is None or detail.order_index <= 0:
        errors.append("order_index must be greater than 0")
    if not detail.details or not detail.details.strip():
        errors.append("details must not be empty")
    return errors


def from_form(problematic_step: str, details: str = "", recommendations: str = "") -> FailureDetail | None:
    """Build a FailureDetail from the expert form's "Step N: Stage name" label.

    Returns None when the label does not carry a step number.
    """
    m = _PROBLEMATIC_STEP.search(problematic_step or "")
    if not m:
        return None
    return FailureDetail(
        order_index=int(m.group(1)),
        stage_name=m.group(2).strip(),
        details=details or DEFAULT_FORM_DETAILS,
        recommendations=recommendations or DEFAULT_FORM_RECOMMENDATIONS,
    )
