"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Job", resource_id=42)
    raise ValidationError("Invalid yes/no response", details={"value": "maybe"})
"""

from dataclasses import dataclass, field
from datetime import datetime


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts,
    so a 404 never confirms that another tenant's record exists.

    Args:
        resource: Human-readable model/entity name (e.g. "Job", "Stage").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Covers malformed, missing or type-mismatched response values and invalid
    stage configuration. No state is changed when this is raised.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a mutation collides with state another mutation already changed.

    Maps to HTTP 409. The caller should refetch the job before deciding
    whether to retry the user action.

    Args:
        resource: Model name.
        field: The field whose current value conflicts.
        value: The conflicting value (truncated in HTTP response; full in logs).
        message: Optional override for the default message.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StaleVersionError(ConflictError):
    """Optimistic version check on a job's stage pointer failed."""

    def __init__(self, job_id, expected: int | None, actual: int | None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            "Job",
            "stage_version",
            str(actual),
            message=(
                f"Job id={job_id} was modified concurrently "
                f"(expected stage_version={expected}, found {actual})"
            ),
        )


class StageClosedError(ConflictError):
    """An answer targets a stage the job has already left.

    Reopening a closed stage is an administrative override, never a live
    response submission.
    """

    def __init__(self, job_id, question_stage_id, current_stage_id) -> None:
        self.question_stage_id = question_stage_id
        self.current_stage_id = current_stage_id
        super().__init__(
            "Job",
            "current_stage_id",
            str(current_stage_id),
            message=(
                f"Job id={job_id} is in stage {current_stage_id}; "
                f"questions of stage {question_stage_id} are closed"
            ),
        )


class ConfigurationError(Exception):
    """Stage configuration cannot decide a transition.

    Raised when two rules ambiguously match the same answer, or a rule points
    at a stage that no longer exists. Non-fatal: the job stays in its current
    stage and the caller sees it as awaiting manual resolution.

    Args:
        message: Human-readable explanation.
        rule_ids: The rules involved, for the admin tooling to highlight.
    """

    def __init__(self, message: str, rule_ids: list | None = None) -> None:
        self.rule_ids = list(rule_ids or [])
        super().__init__(message)


@dataclass(frozen=True)
class TimelineAnomaly:
    """A degenerate segment dropped during timeline reconstruction.

    Not raised: reconstruction collects these and keeps going.
    """

    kind: str
    stage_id: int | None
    start: datetime | None
    end: datetime | None
    detail: str = ""
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "stage_id": self.stage_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "detail": self.detail,
        }
