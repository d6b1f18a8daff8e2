"""
Job domain model.

Models:
    - Job:                     the work item moving through a tenant's stages.
    - StageResponse:           an answer recorded for one question of one job.
    - PendingStageTransition:  a manual rule match awaiting confirmation.

Ownership: ``title``, ``start_date``, ``end_date`` and ``status`` belong to
job management. The progression engine owns ``current_stage_id``,
``stage_entered_at``, ``last_progression_at`` and the optimistic-lock
counter ``stage_version``.
"""

from datetime import UTC, datetime

from sqlalchemy import event

from app.models import db
from app.models.base import TenantModel

JOB_STATUSES = ("planning", "active", "on_hold", "completed", "cancelled")
RESPONSE_SOURCES = ("web_app", "mobile_app", "sms", "email", "client_portal")


class Job(TenantModel):
    """A tracked job.

    ``stage_version`` is the SQLAlchemy version counter: every UPDATE of the
    row is issued as ``... WHERE stage_version = <loaded value>`` and fails
    with ``StaleDataError`` when another writer got there first.
    """

    __tablename__ = "jobs"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="planning")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    current_stage_id = db.Column(
        db.Integer,
        db.ForeignKey("job_stages.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    stage_entered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stage_version = db.Column(db.Integer, nullable=False, default=1)
    last_progression_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    current_stage = db.relationship("Stage", lazy="joined")

    __mapper_args__ = {"version_id_col": stage_version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "current_stage_id": self.current_stage_id,
            "current_stage": self.current_stage.to_dict() if self.current_stage else None,
            "stage_entered_at": self.stage_entered_at.isoformat() if self.stage_entered_at else None,
            "stage_version": self.stage_version,
        }

    def __repr__(self):
        return f"<Job {self.id}: stage={self.current_stage_id} v{self.stage_version}>"


class StageResponse(TenantModel):
    """Recorded answer. Append-only; the latest row per question wins."""

    __tablename__ = "stage_responses"
    __table_args__ = (
        db.Index("idx_stage_responses_job_question", "job_id", "question_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer,
        db.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    question_id = db.Column(
        db.Integer,
        db.ForeignKey("stage_questions.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_id = db.Column(db.Integer, nullable=False)
    response_value = db.Column(db.Text, nullable=False)
    response_metadata = db.Column(db.JSON, default=dict)
    responded_by = db.Column(db.String(150), nullable=False, default="system")
    response_source = db.Column(db.String(30), nullable=False, default="web_app")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "question_id": self.question_id,
            "stage_id": self.stage_id,
            "response_value": self.response_value,
            "response_metadata": self.response_metadata or {},
            "responded_by": self.responded_by,
            "response_source": self.response_source,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PendingStageTransition(TenantModel):
    """A manual transition proposed by an answer, not yet applied.

    At most one row per job has ``resolved_at IS NULL``. Confirming applies
    it; a newer proposal or an administrative override supersedes it.
    """

    __tablename__ = "pending_stage_transitions"

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer,
        db.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id = db.Column(
        db.Integer,
        db.ForeignKey("stage_transitions.id", ondelete="SET NULL"),
        nullable=True,
    )
    from_stage_id = db.Column(db.Integer, nullable=False)
    to_stage_id = db.Column(db.Integer, nullable=False)
    question_id = db.Column(db.Integer, nullable=True)
    response_value = db.Column(db.Text, nullable=True)
    proposed_by = db.Column(db.String(150), nullable=False, default="system")
    proposed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution = db.Column(db.String(20), nullable=True)  # confirmed | superseded

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "rule_id": self.rule_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "question_id": self.question_id,
            "response_value": self.response_value,
            "proposed_by": self.proposed_by,
            "proposed_at": self.proposed_at.isoformat() if self.proposed_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
        }


@event.listens_for(StageResponse, "before_update")
@event.listens_for(StageResponse, "before_delete")
def _block_response_mutation(mapper, connection, target) -> None:  # noqa: ANN001
    """Responses are evidence for committed transitions; never rewrite them."""
    raise RuntimeError(
        f"stage_responses row id={target.id} is immutable; record a new response instead"
    )
