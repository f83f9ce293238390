"""
Processing-core exception hierarchy.

Services raise these types and nothing else for expected failures.
Blueprints register handlers against them once and map each to a stable
HTTP status and ``ERR_*`` code (see ``coffee_processing.utils.errors``).

Usage:
    from coffee_processing.core.exceptions import NotFoundError, StaleStepError

    raise NotFoundError(resource="ProcessingBatch", resource_id=42)
    raise StaleStepError(batch_id=42, expected=(3, 3), current=(3, 4))
"""


class NotFoundError(Exception):
    """Raised when a batch, stage, method or evaluation does not exist.

    Args:
        resource: Human-readable entity name (e.g. "ProcessingBatch").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidInputError(ValidationError):
    """Non-positive quantity, missing required field, unknown enum value."""


class InvalidStateError(Exception):
    """Raised when an operation is not legal for the batch's current status.

    Example: advancing or evaluating a Completed batch.
    """

    def __init__(self, batch_id: int, status: str, action: str, reason: str | None = None) -> None:
        self.batch_id = batch_id
        self.status = status
        self.action = action
        self.reason = reason
        msg = f"Cannot '{action}' batch {batch_id} (status={status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class StaleStepError(Exception):
    """Raised when an advancement targets a step snapshot that is no longer current.

    ``expected`` and ``current`` are ``(step_index, sequence_no)`` pairs.
    The caller should refresh the batch view and resubmit; the core never
    retries on its own.
    """

    def __init__(self, batch_id: int, expected: tuple | None = None, current: tuple | None = None) -> None:
        self.batch_id = batch_id
        self.expected = expected
        self.current = current
        msg = f"Batch {batch_id} has moved on"
        if expected is not None and current is not None:
            msg += f": request was based on step {expected[0]} (seq {expected[1]}), " \
                   f"current is step {current[0]} (seq {current[1]})"
        super().__init__(msg)


class OrderingViolationError(Exception):
    """Raised by the progress log when a step index falls below the allowed window."""

    def __init__(self, batch_id: int, step_index: int, latest: int, window: int) -> None:
        self.batch_id = batch_id
        self.step_index = step_index
        self.latest = latest
        self.window = window
        super().__init__(
            f"Step {step_index} is behind batch {batch_id} latest step {latest} "
            f"(resubmission window {window})"
        )


class DecodeFailure(Exception):
    """Internal to the failure-detail codec; never propagates to callers."""
