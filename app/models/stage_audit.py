"""
Stage audit domain model.

Models:
    - StageAuditLog: immutable, append-only ledger of realised stage transitions.

The timeline reconstruction is only correct because this ledger is never
rewritten: ``before_update`` / ``before_delete`` listeners reject any ORM
mutation.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import event, select

from app.models import db
from app.models.base import TenantModel
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

TRIGGER_SOURCES = ("question_response", "manual", "system")


class StageAuditLog(TenantModel):
    """
    One row per realised stage transition.

    Stage names and statuses are snapshotted at write time so that rows keep
    rendering after the referenced stage definition is renamed or retired.
    """

    __tablename__ = "stage_audit_log"
    __table_args__ = (
        db.Index("idx_stage_audit_job_ts", "job_id", "created_at"),
        db.Index("idx_stage_audit_trigger", "trigger_source"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer,
        db.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    from_stage_id = db.Column(db.Integer, nullable=True)
    to_stage_id = db.Column(db.Integer, nullable=True)
    from_stage_name = db.Column(db.String(150), nullable=True)
    to_stage_name = db.Column(db.String(150), nullable=True)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=True)

    trigger_source = db.Column(
        db.String(30), nullable=False,
        comment="question_response | manual | system",
    )
    triggered_by = db.Column(db.String(150), nullable=False, default="system")
    triggered_by_name = db.Column(db.String(200), nullable=True)

    question_id = db.Column(db.Integer, nullable=True)
    response_value = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, default=dict)

    duration_in_previous_stage_hours = db.Column(db.Float, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "job_id": self.job_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "from_stage_name": self.from_stage_name,
            "to_stage_name": self.to_stage_name,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "trigger_source": self.trigger_source,
            "triggered_by": self.triggered_by,
            "triggered_by_name": self.triggered_by_name,
            "question_id": self.question_id,
            "response_value": self.response_value,
            "details": self.details or {},
            "duration_in_previous_stage_hours": self.duration_in_previous_stage_hours,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<StageAuditLog {self.id}: job={self.job_id} "
            f"{self.from_stage_id}->{self.to_stage_id} ({self.trigger_source})>"
        )


@event.listens_for(StageAuditLog, "before_update")
@event.listens_for(StageAuditLog, "before_delete")
def _block_audit_mutation(mapper, connection, target) -> None:  # noqa: ANN001
    """The stage audit ledger is append-only."""
    raise RuntimeError(
        f"stage_audit_log row id={target.id} is append-only; updates and deletes are not permitted"
    )


# ── Ledger API ───────────────────────────────────────────────────────────────


def _latest_entry(job_id: int) -> StageAuditLog | None:
    return db.session.execute(
        select(StageAuditLog)
        .where(StageAuditLog.job_id == job_id)
        .order_by(StageAuditLog.created_at.desc(), StageAuditLog.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def append_stage_audit(
    *,
    job,
    from_stage,
    to_stage,
    trigger_source: str,
    triggered_by: str = "system",
    triggered_by_name: str | None = None,
    question_id: int | None = None,
    response_value: str | None = None,
    details: dict | None = None,
    from_status: str | None = None,
    created_at: datetime | None = None,
) -> StageAuditLog:
    """
    Append one ledger row for ``job``.  Uses ``flush`` so callers keep
    transaction control.

    ``duration_in_previous_stage_hours`` is the time elapsed since the job's
    previous entry, or None when this is the job's first entry.

    Returns the (flushed) StageAuditLog instance.
    """
    if trigger_source not in TRIGGER_SOURCES:
        raise ValueError(f"Unknown trigger_source: {trigger_source!r}")

    created_at = as_utc(created_at) if created_at else datetime.now(UTC)

    previous = _latest_entry(job.id)
    duration_hours = None
    if previous is not None:
        elapsed = created_at - as_utc(previous.created_at)
        duration_hours = round(elapsed.total_seconds() / 3600, 4)

    entry = StageAuditLog(
        tenant_id=job.tenant_id,
        job_id=job.id,
        from_stage_id=from_stage.id if from_stage is not None else None,
        to_stage_id=to_stage.id if to_stage is not None else None,
        from_stage_name=from_stage.name if from_stage is not None else None,
        to_stage_name=to_stage.name if to_stage is not None else None,
        from_status=from_status or (from_stage.maps_to_status if from_stage is not None else None),
        to_status=to_stage.maps_to_status if to_stage is not None else None,
        trigger_source=trigger_source,
        triggered_by=str(triggered_by),
        triggered_by_name=triggered_by_name,
        question_id=question_id,
        response_value=response_value,
        details=details or {},
        duration_in_previous_stage_hours=duration_hours,
        created_at=created_at,
    )
    db.session.add(entry)
    db.session.flush()
    logger.debug(
        "Stage audit appended job=%s %s->%s source=%s",
        job.id, entry.from_stage_id, entry.to_stage_id, trigger_source,
        extra={"tenant_id": job.tenant_id, "job_id": job.id},
    )
    return entry


def stage_history(job_id: int) -> list[StageAuditLog]:
    """Return a job's ledger ordered by ``created_at`` ascending (id breaks ties)."""
    return list(
        db.session.execute(
            select(StageAuditLog)
            .where(StageAuditLog.job_id == job_id)
            .order_by(StageAuditLog.created_at.asc(), StageAuditLog.id.asc())
        ).scalars()
    )
