"""stage_progression_engine

Create tenants, the per-tenant stage graph (job_stages, stage_questions,
stage_transitions), jobs with their engine-owned stage pointer, responses,
pending manual transitions and the append-only stage audit ledger.

Revision ID: a1c2e3f4b501
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c2e3f4b501"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def _tenant_fk():
    return sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE")


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "tenants" not in existing_tables:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("stage_config_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "job_stages" not in existing_tables:
        op.create_table(
            "job_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("color", sa.String(length=7), nullable=False, server_default="#6B7280"),
            sa.Column("sequence_order", sa.Integer(), nullable=False),
            sa.Column("stage_type", sa.String(length=20), nullable=False, server_default="standard"),
            sa.Column("maps_to_status", sa.String(length=20), nullable=False, server_default="planning"),
            sa.Column("min_duration_hours", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_duration_hours", sa.Integer(), nullable=True),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            _tenant_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_stages_tenant_id", "job_stages", ["tenant_id"])
        op.create_index(
            "ix_job_stages_tenant_sequence_order", "job_stages",
            ["tenant_id", "sequence_order"], unique=True,
        )

    if "stage_questions" not in existing_tables:
        op.create_table(
            "stage_questions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("question_text", sa.Text(), nullable=False),
            sa.Column("response_type", sa.String(length=20), nullable=False, server_default="yes_no"),
            sa.Column("response_options", sa.JSON(), nullable=True),
            sa.Column("sequence_order", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("help_text", sa.Text(), nullable=True),
            sa.Column("skip_conditions", sa.JSON(), nullable=True),
            _created_at(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["stage_id"], ["job_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stage_questions_tenant_id", "stage_questions", ["tenant_id"])
        op.create_index("ix_stage_questions_stage_id", "stage_questions", ["stage_id"])
        op.create_index(
            "idx_stage_questions_stage_seq", "stage_questions", ["stage_id", "sequence_order"],
        )

    if "stage_transitions" not in existing_tables:
        op.create_table(
            "stage_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("from_stage_id", sa.Integer(), nullable=False),
            sa.Column("to_stage_id", sa.Integer(), nullable=False),
            sa.Column("trigger_response", sa.String(length=255), nullable=False),
            sa.Column("conditions", sa.JSON(), nullable=True),
            sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["from_stage_id"], ["job_stages.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["to_stage_id"], ["job_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stage_transitions_tenant_id", "stage_transitions", ["tenant_id"])
        op.create_index("ix_stage_transitions_from_stage_id", "stage_transitions", ["from_stage_id"])
        op.create_index(
            "idx_stage_transitions_from_trigger", "stage_transitions",
            ["from_stage_id", "trigger_response"],
        )

    if "jobs" not in existing_tables:
        op.create_table(
            "jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="planning"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("current_stage_id", sa.Integer(), nullable=True),
            sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stage_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("last_progression_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["current_stage_id"], ["job_stages.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"])
        op.create_index("ix_jobs_current_stage_id", "jobs", ["current_stage_id"])

    if "stage_responses" not in existing_tables:
        op.create_table(
            "stage_responses",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("question_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("response_value", sa.Text(), nullable=False),
            sa.Column("response_metadata", sa.JSON(), nullable=True),
            sa.Column("responded_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("response_source", sa.String(length=30), nullable=False, server_default="web_app"),
            _created_at(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["question_id"], ["stage_questions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stage_responses_tenant_id", "stage_responses", ["tenant_id"])
        op.create_index("ix_stage_responses_job_id", "stage_responses", ["job_id"])
        op.create_index(
            "idx_stage_responses_job_question", "stage_responses", ["job_id", "question_id"],
        )

    if "pending_stage_transitions" not in existing_tables:
        op.create_table(
            "pending_stage_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=True),
            sa.Column("from_stage_id", sa.Integer(), nullable=False),
            sa.Column("to_stage_id", sa.Integer(), nullable=False),
            sa.Column("question_id", sa.Integer(), nullable=True),
            sa.Column("response_value", sa.Text(), nullable=True),
            sa.Column("proposed_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("proposed_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolution", sa.String(length=20), nullable=True),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["rule_id"], ["stage_transitions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_pending_stage_transitions_tenant_id", "pending_stage_transitions", ["tenant_id"])
        op.create_index("ix_pending_stage_transitions_job_id", "pending_stage_transitions", ["job_id"])

    if "stage_audit_log" not in existing_tables:
        op.create_table(
            "stage_audit_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("job_id", sa.Integer(), nullable=False),
            sa.Column("from_stage_id", sa.Integer(), nullable=True),
            sa.Column("to_stage_id", sa.Integer(), nullable=True),
            sa.Column("from_stage_name", sa.String(length=150), nullable=True),
            sa.Column("to_stage_name", sa.String(length=150), nullable=True),
            sa.Column("from_status", sa.String(length=20), nullable=True),
            sa.Column("to_status", sa.String(length=20), nullable=True),
            sa.Column("trigger_source", sa.String(length=30), nullable=False,
                      comment="question_response | manual | system"),
            sa.Column("triggered_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("triggered_by_name", sa.String(length=200), nullable=True),
            sa.Column("question_id", sa.Integer(), nullable=True),
            sa.Column("response_value", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("duration_in_previous_stage_hours", sa.Float(), nullable=True),
            _created_at(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stage_audit_log_tenant_id", "stage_audit_log", ["tenant_id"])
        op.create_index("ix_stage_audit_log_job_id", "stage_audit_log", ["job_id"])
        op.create_index("idx_stage_audit_job_ts", "stage_audit_log", ["job_id", "created_at"])
        op.create_index("idx_stage_audit_trigger", "stage_audit_log", ["trigger_source"])


def downgrade():
    for table in (
        "stage_audit_log",
        "pending_stage_transitions",
        "stage_responses",
        "jobs",
        "stage_transitions",
        "stage_questions",
        "job_stages",
        "tenants",
    ):
        op.drop_table(table)
