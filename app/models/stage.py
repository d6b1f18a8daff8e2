"""
Stage graph domain model.

Models:
    - Stage:            one node in a tenant's ordered progression sequence.
    - StageQuestion:    a prompt attached to a stage whose answer may drive a transition.
    - StageTransition:  (from_stage, trigger_response) -> to_stage rule.

Rows here are authored by tenant administration. The progression engine only
reads them, through an immutable StageGraph snapshot.
"""

from datetime import UTC, datetime

from app.models import db
from app.models.base import TenantModel

# ── Constants ────────────────────────────────────────────────────────────────

STAGE_TYPES = ("standard", "milestone", "approval")
STAGE_STATUSES = ("planning", "active", "completed")
RESPONSE_TYPES = ("yes_no", "text", "number", "date", "file_upload", "multiple_choice")

# Job statuses that close a job's lifecycle.
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})


class Stage(TenantModel):
    """A tenant's stage definition.

    ``sequence_order`` totally orders a tenant's stages. Retiring a stage
    (``active=False``) keeps its row so historical audit entries still
    resolve, and keeps its sequence number reserved.
    """

    __tablename__ = "job_stages"
    __table_args__ = (
        TenantModel.tenant_composite_index("job_stages", "sequence_order", unique=True),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, default="")
    color = db.Column(db.String(7), nullable=False, default="#6B7280")
    sequence_order = db.Column(db.Integer, nullable=False)
    stage_type = db.Column(db.String(20), nullable=False, default="standard")
    maps_to_status = db.Column(db.String(20), nullable=False, default="planning")
    min_duration_hours = db.Column(db.Integer, nullable=False, default=0)
    max_duration_hours = db.Column(db.Integer, nullable=True)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    questions = db.relationship(
        "StageQuestion", back_populates="stage", lazy="select",
        order_by="StageQuestion.sequence_order",
    )

    @property
    def is_terminal(self) -> bool:
        return self.maps_to_status == "completed"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "sequence_order": self.sequence_order,
            "stage_type": self.stage_type,
            "maps_to_status": self.maps_to_status,
            "min_duration_hours": self.min_duration_hours,
            "max_duration_hours": self.max_duration_hours,
            "requires_approval": self.requires_approval,
            "active": self.active,
            "is_terminal": self.is_terminal,
        }

    def __repr__(self):
        return f"<Stage {self.id}: #{self.sequence_order} {self.name}>"


class StageQuestion(TenantModel):
    """A question asked while a job sits in ``stage``.

    ``skip_conditions`` holds a conjunction of clauses over this job's prior
    responses, see :mod:`app.services.skip_conditions`.
    """

    __tablename__ = "stage_questions"
    __table_args__ = (
        db.Index("idx_stage_questions_stage_seq", "stage_id", "sequence_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("job_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    question_text = db.Column(db.Text, nullable=False)
    response_type = db.Column(db.String(20), nullable=False, default="yes_no")
    response_options = db.Column(db.JSON, default=list)
    sequence_order = db.Column(db.Integer, nullable=False, default=1)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    help_text = db.Column(db.Text, default="")
    skip_conditions = db.Column(db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    stage = db.relationship("Stage", back_populates="questions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "question_text": self.question_text,
            "response_type": self.response_type,
            "response_options": self.response_options or [],
            "sequence_order": self.sequence_order,
            "is_required": self.is_required,
            "help_text": self.help_text,
            "skip_conditions": self.skip_conditions or {},
        }

    def __repr__(self):
        return f"<StageQuestion {self.id}: stage={self.stage_id} #{self.sequence_order}>"


class StageTransition(TenantModel):
    """Transition rule keyed by (from_stage, trigger_response).

    ``conditions`` may carry:
        question_id  scope the rule to one question of the stage
        condition    numeric comparison such as ">=90"
        action       free-form label, informational only

    ``priority`` breaks ties between equally specific rules; equal
    priorities are a configuration error.
    """

    __tablename__ = "stage_transitions"
    __table_args__ = (
        db.Index("idx_stage_transitions_from_trigger", "from_stage_id", "trigger_response"),
    )

    id = db.Column(db.Integer, primary_key=True)
    from_stage_id = db.Column(
        db.Integer,
        db.ForeignKey("job_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    to_stage_id = db.Column(
        db.Integer,
        db.ForeignKey("job_stages.id", ondelete="CASCADE"),
        nullable=False,
    )
    trigger_response = db.Column(db.String(255), nullable=False)
    conditions = db.Column(db.JSON, default=dict)
    is_automatic = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def question_id(self):
        return (self.conditions or {}).get("question_id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "trigger_response": self.trigger_response,
            "conditions": self.conditions or {},
            "is_automatic": self.is_automatic,
            "priority": self.priority,
        }

    def __repr__(self):
        return (
            f"<StageTransition {self.id}: {self.from_stage_id} "
            f"--{self.trigger_response!r}--> {self.to_stage_id}>"
        )
