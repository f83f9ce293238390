"""
Stage Catalog: service layer

Ordered stage sets per processing method. Read side is a pure lookup;
``define_method`` is the only way stages come into existence and it writes
the whole set at once with contiguous order indexes 1..N.

Usage:
    from coffee_processing.services import stage_catalog

    method = stage_catalog.define_method("WET", "Washed", stages=["Drying", "Hulling", "Grading"])
    stages = stage_catalog.stages_for(method.id)   # [Drying(1), Hulling(2), Grading(3)]
"""

import logging

from sqlalchemy import select

from coffee_processing.core.exceptions import NotFoundError, ValidationError
from coffee_processing.models import db
from coffee_processing.models.audit import write_audit
from coffee_processing.models.processing import ProcessingMethod, ProcessingStage

logger = logging.getLogger(__name__)


def stages_for(method_id: int) -> list[ProcessingStage]:
    """Return the method's stages ordered by order_index.

    Raises:
        NotFoundError: The method does not exist or has no stages.
    """
    stages = list(
        db.session.execute(
            select(ProcessingStage)
            .where(ProcessingStage.method_id == method_id)
            .order_by(ProcessingStage.order_index)
        ).scalars()
    )
    if not stages:
        raise NotFoundError(resource="ProcessingStage catalog", resource_id=method_id)
    return stages


def stage_at(stages: list[ProcessingStage], order_index: int) -> ProcessingStage | None:
    for stage in stages:
        if stage.order_index == order_index:
            return stage
    return None


def final_order_index(stages: list[ProcessingStage]) -> int:
    return max((s.order_index for s in stages), default=0)


def get_method(method_id: int) -> ProcessingMethod:
    method = db.session.get(ProcessingMethod, method_id)
    if not method:
        raise NotFoundError(resource="ProcessingMethod", resource_id=method_id)
    return method


def list_methods() -> list[ProcessingMethod]:
    return list(
        db.session.execute(select(ProcessingMethod).order_by(ProcessingMethod.id)).scalars()
    )


def _normalise_stage(item, position: int) -> dict:
    if isinstance(item, str):
        item = {"name": item}
    if not isinstance(item, dict):
        raise ValidationError(
            "Each stage must be a name or an object",
            details={f"stages[{position}]": "invalid type"},
        )
    name = (item.get("name") or "").strip()
    if not name:
        raise ValidationError(
            "Stage name is required",
            details={f"stages[{position}].name": "required"},
        )
    return {
        "name": name,
        "stage_code": (item.get("stage_code") or "").strip(),
        "description": item.get("description") or "",
        "is_required": bool(item.get("is_required", True)),
    }


def define_method(method_code: str, name: str, *, description: str = "", stages=None) -> ProcessingMethod:
    """
    Create a processing method together with its stage set.

    ``stages`` is a list of names or ``{"name", "stage_code", "description",
    "is_required"}`` dicts in processing order; order indexes are assigned
    1..N from list position.

    Raises:
        ValidationError: Missing code/name, empty stage list, blank or
            duplicate stage names, or a method code already in use.
    """
    method_code = (method_code or "").strip()
    name = (name or "").strip()
    errors = {}
    if not method_code:
        errors["method_code"] = "required"
    if not name:
        errors["name"] = "required"
    if not stages:
        errors["stages"] = "at least one stage is required"
    if errors:
        raise ValidationError("Invalid processing method", details=errors)

    normalised = [_normalise_stage(item, i) for i, item in enumerate(stages)]
    seen = set()
    for i, item in enumerate(normalised):
        key = item["name"].casefold()
        if key in seen:
            raise ValidationError(
                f"Duplicate stage name '{item['name']}'",
                details={f"stages[{i}].name": "duplicate"},
            )
        seen.add(key)

    exists = db.session.execute(
        select(ProcessingMethod.id).where(ProcessingMethod.method_code == method_code)
    ).scalar_one_or_none()
    if exists is not None:
        raise ValidationError(
            f"Method code '{method_code}' already exists",
            details={"method_code": "duplicate"},
        )

    method = ProcessingMethod(method_code=method_code, name=name, description=description or "")
    db.session.add(method)
    db.session.flush()

    for order_index, item in enumerate(normalised, start=1):
        db.session.add(ProcessingStage(method_id=method.id, order_index=order_index, **item))
    db.session.flush()

    write_audit(
        entity_type="processing_method",
        entity_id=method.id,
        action="method.define",
        diff={"method_code": method_code, "stages": [s["name"] for s in normalised]},
    )
    db.session.commit()
    logger.info(
        "Processing method defined",
        extra={"method_id": method.id, "stage_count": len(normalised)},
    )
    return method
