"""
Progression Engine — question-driven stage state machine.

States are a tenant's stage ids; the initial state is the active stage with
the lowest ``sequence_order``; terminal states map to ``completed``.

Operations (all synchronous, one DB transaction each):
    create_job / initialize_job_stage   seed the stage pointer
    submit_response                     validate, record, resolve, maybe move
    confirm_manual_transition           apply a pending manual proposal
    override_stage                      administrative move with a reason
    bootstrap_job_stages                one-time status -> stage migration

Concurrency: every mutation touches the job row, whose UPDATE carries an
optimistic ``stage_version`` check (SQLAlchemy ``version_id_col``). Two
concurrent mutations of the same job cannot both commit; the loser gets a
StaleVersionError (HTTP 409). Callers may also pass the ``expected_version``
they read. Nothing here retries.

Usage:
    from app.services.progression_service import submit_response

    outcome = submit_response(tenant_id, job_id, question_id, "Yes", actor="u-17")
    outcome.outcome   # "applied" | "pending_manual" | "no_match"
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StageClosedError,
    StaleVersionError,
    ValidationError,
)
from app.models import db
from app.models.job import (
    JOB_STATUSES,
    RESPONSE_SOURCES,
    Job,
    PendingStageTransition,
    StageResponse,
)
from app.models.stage import Stage
from app.models.stage_audit import append_stage_audit, stage_history
from app.services.helpers.scoped_queries import get_scoped
from app.services.response_validation import validate_response
from app.services.stage_config_service import load_stage_graph, next_question
from app.services.transition_resolver import resolve
from app.utils.helpers import as_utc, day_start_utc, parse_date_input

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_PENDING = "pending_manual"
OUTCOME_NO_MATCH = "no_match"


@dataclass
class SubmissionOutcome:
    """What ``submit_response`` did."""

    outcome: str
    job: dict
    response: dict
    proposal: dict | None = None
    audit_entry: dict | None = None
    pending_transition: dict | None = None
    next_question: dict | None = None
    message: str = ""
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "message": self.message,
            "job": self.job,
            "response": self.response,
            "proposal": self.proposal,
            "audit_entry": self.audit_entry,
            "pending_transition": self.pending_transition,
            "next_question": self.next_question,
        }


# ── Private helpers ──────────────────────────────────────────────────────────


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(UTC)


def _load_job(tenant_id: int, job_id: int) -> Job:
    return get_scoped(Job, job_id, tenant_id=tenant_id)


def _check_version(job: Job, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != job.stage_version:
        raise StaleVersionError(job.id, expected_version, job.stage_version)


def _current_version(job_id: int) -> int | None:
    return db.session.execute(
        select(Job.stage_version).where(Job.id == job_id)
    ).scalar_one_or_none()


def _rollback_stale(job_id: int, expected_version: int | None) -> StaleVersionError:
    db.session.rollback()
    actual = _current_version(job_id)
    logger.warning(
        "Concurrent stage mutation on job %s (expected v%s, now v%s)",
        job_id, expected_version, actual,
        extra={"job_id": job_id},
    )
    return StaleVersionError(job_id, expected_version, actual)


def _touch(job: Job, now: datetime) -> None:
    """Dirty the job row so its UPDATE runs the version check."""
    job.last_progression_at = now


def _responses(job_id: int) -> list[StageResponse]:
    return list(
        db.session.execute(
            select(StageResponse)
            .where(StageResponse.job_id == job_id)
            .order_by(StageResponse.created_at, StageResponse.id)
        ).scalars()
    )


def prior_responses(job: Job) -> tuple[dict, set]:
    """Return (latest value per question id, question ids answered in the current stage visit)."""
    latest = {}
    answered = set()
    entered = as_utc(job.stage_entered_at)
    for row in _responses(job.id):
        latest[row.question_id] = row.response_value
        if row.stage_id == job.current_stage_id and (
            entered is None or as_utc(row.created_at) >= entered
        ):
            answered.add(row.question_id)
    return latest, answered


def _open_pending(job_id: int) -> PendingStageTransition | None:
    return db.session.execute(
        select(PendingStageTransition)
        .where(
            PendingStageTransition.job_id == job_id,
            PendingStageTransition.resolved_at.is_(None),
        )
        .order_by(PendingStageTransition.proposed_at.desc(), PendingStageTransition.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _supersede_pending(job_id: int, now: datetime) -> None:
    for pending in db.session.execute(
        select(PendingStageTransition).where(
            PendingStageTransition.job_id == job_id,
            PendingStageTransition.resolved_at.is_(None),
        )
    ).scalars():
        pending.resolved_at = now
        pending.resolution = "superseded"


def _move_job(
    job: Job,
    graph,
    to_stage_id: int,
    *,
    trigger_source: str,
    actor: str,
    actor_name: str | None,
    now: datetime,
    question_id: int | None = None,
    response_value: str | None = None,
    details: dict | None = None,
):
    """Append the audit row and move the pointer. Caller commits."""
    from_stage = graph.stage(job.current_stage_id)
    to_stage = graph.stage(to_stage_id)
    entry = append_stage_audit(
        job=job,
        from_stage=from_stage,
        to_stage=to_stage,
        trigger_source=trigger_source,
        triggered_by=actor,
        triggered_by_name=actor_name,
        question_id=question_id,
        response_value=response_value,
        details=details,
        created_at=now,
    )
    job.current_stage_id = to_stage_id
    job.current_stage = db.session.get(Stage, to_stage_id)
    job.stage_entered_at = now
    _touch(job, now)
    return entry


def _next_question_dict(job: Job, graph) -> dict | None:
    latest, answered = prior_responses(job)
    question = next_question(graph, job.current_stage_id, latest, answered)
    return question.to_dict() if question else None


# ── Job lifecycle ────────────────────────────────────────────────────────────


def initialize_job_stage(job: Job, graph=None, *, now: datetime | None = None) -> Job:
    """Seed ``job``'s stage pointer to the tenant's initial stage.

    No audit row is written: seeding is not a transition. Caller commits.
    """
    if job.current_stage_id is not None:
        return job
    graph = graph or load_stage_graph(job.tenant_id)
    initial = graph.initial_stage()
    if initial is None:
        raise ConfigurationError(f"Tenant {job.tenant_id} has no active stages configured")
    job.current_stage_id = initial.id
    job.current_stage = db.session.get(Stage, initial.id)
    job.stage_entered_at = _now(now)
    return job


def create_job(tenant_id: int, data: dict, *, now: datetime | None = None) -> Job:
    """Create a job and seed its stage pointer."""
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    status = data.get("status") or "planning"
    if status not in JOB_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'", details={"valid_statuses": list(JOB_STATUSES)},
        )
    try:
        start_date = parse_date_input(data.get("start_date"))
        end_date = parse_date_input(data.get("end_date"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    if start_date and end_date and end_date < start_date:
        raise ValidationError(
            "end_date must not be before start_date",
            details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )

    graph = load_stage_graph(tenant_id)
    job = Job(
        tenant_id=tenant_id,
        title=title,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )
    try:
        initialize_job_stage(job, graph, now=now)
        db.session.add(job)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Job created id=%s tenant=%s stage=%s", job.id, tenant_id, job.current_stage_id,
                extra={"tenant_id": tenant_id, "job_id": job.id})
    return job


# ── Responses ────────────────────────────────────────────────────────────────


def submit_response(
    tenant_id: int,
    job_id: int,
    question_id: int,
    value,
    actor: str,
    *,
    actor_name: str | None = None,
    expected_version: int | None = None,
    source: str = "web_app",
    metadata: dict | None = None,
    now: datetime | None = None,
) -> SubmissionOutcome:
    """Record an answer and apply whatever transition it triggers.

    Raises:
        NotFoundError: job or question outside the tenant.
        ValidationError: bad value, unknown source, skipped question, or a
            job with no stage.
        StageClosedError: the question belongs to a stage the job is not in
            (e.g. a retry after the transition was already applied).
        ConfigurationError: ambiguous rules; nothing is recorded.
        StaleVersionError: a concurrent mutation won.
    """
    now = _now(now)
    job = _load_job(tenant_id, job_id)
    graph = load_stage_graph(tenant_id)

    question = graph.question(int(question_id)) if str(question_id).isdigit() else None
    if question is None:
        raise NotFoundError(resource="StageQuestion", resource_id=question_id, tenant_id=tenant_id)

    _check_version(job, expected_version)

    if job.current_stage_id is None:
        raise ValidationError(
            "Job has no current stage; initialise it before answering questions",
            details={"job_id": job.id},
        )
    if question.stage_id != job.current_stage_id:
        raise StageClosedError(job.id, question.stage_id, job.current_stage_id)
    if source not in RESPONSE_SOURCES:
        raise ValidationError(
            f"Unknown response source '{source}'", details={"valid_sources": list(RESPONSE_SOURCES)},
        )

    canonical = validate_response(question, value)

    latest, _answered = prior_responses(job)
    if question.skip_condition.is_satisfied({str(k): v for k, v in latest.items()}):
        raise ValidationError(
            "This question is skipped for this job",
            details={"question_id": question.id},
        )

    # Resolve before writing anything: an ambiguous configuration records nothing.
    proposal = resolve(graph, job.current_stage_id, question, canonical)

    log_extra = {"tenant_id": tenant_id, "job_id": job.id}
    audit_entry = None
    pending = None
    try:
        response = StageResponse(
            tenant_id=tenant_id,
            job_id=job.id,
            question_id=question.id,
            stage_id=job.current_stage_id,
            response_value=canonical,
            response_metadata=metadata or {},
            responded_by=str(actor),
            response_source=source,
            created_at=now,
        )
        db.session.add(response)

        if proposal is None:
            outcome = OUTCOME_NO_MATCH
            message = "No transition rule matched; stage awaits manual resolution"
            _touch(job, now)
        elif proposal.is_automatic:
            outcome = OUTCOME_APPLIED
            message = "Stage transition applied"
            _supersede_pending(job.id, now)
            audit_entry = _move_job(
                job, graph, proposal.to_stage_id,
                trigger_source="question_response",
                actor=str(actor),
                actor_name=actor_name,
                now=now,
                question_id=question.id,
                response_value=canonical,
                details={"rule_id": proposal.rule_id, "source": source},
            )
        else:
            outcome = OUTCOME_PENDING
            message = "Transition proposed; awaiting manual confirmation"
            _supersede_pending(job.id, now)
            pending = PendingStageTransition(
                tenant_id=tenant_id,
                job_id=job.id,
                rule_id=proposal.rule_id,
                from_stage_id=proposal.from_stage_id,
                to_stage_id=proposal.to_stage_id,
                question_id=question.id,
                response_value=canonical,
                proposed_by=str(actor),
                proposed_at=now,
            )
            db.session.add(pending)
            _touch(job, now)

        db.session.commit()
    except StaleDataError:
        raise _rollback_stale(job_id, expected_version) from None
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Response recorded job=%s question=%s outcome=%s", job.id, question.id, outcome,
        extra=log_extra,
    )
    return SubmissionOutcome(
        outcome=outcome,
        message=message,
        job=job.to_dict(),
        response=response.to_dict(),
        proposal=proposal.to_dict() if proposal else None,
        audit_entry=audit_entry.to_dict() if audit_entry else None,
        pending_transition=pending.to_dict() if pending else None,
        next_question=_next_question_dict(job, graph),
    )


# ── Manual transitions ───────────────────────────────────────────────────────


def get_pending_transition(tenant_id: int, job_id: int) -> PendingStageTransition | None:
    job = _load_job(tenant_id, job_id)
    return _open_pending(job.id)


def confirm_manual_transition(
    tenant_id: int,
    job_id: int,
    actor: str,
    *,
    proposed_stage_id: int | None = None,
    actor_name: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> dict:
    """Apply the job's open pending manual transition.

    Raises:
        ValidationError: nothing pending, or ``proposed_stage_id`` differs
            from the pending target.
        ConflictError: the pending proposal was made from a stage the job
            has since left.
        ConfigurationError: the target stage has been retired.
        StaleVersionError: a concurrent mutation won.
    """
    now = _now(now)
    job = _load_job(tenant_id, job_id)
    _check_version(job, expected_version)

    pending = _open_pending(job.id)
    if pending is None:
        raise ValidationError("No pending manual transition for this job", details={"job_id": job.id})
    if proposed_stage_id is not None and int(proposed_stage_id) != pending.to_stage_id:
        raise ValidationError(
            "proposed_stage_id does not match the pending transition",
            details={"pending_to_stage_id": pending.to_stage_id},
        )
    if pending.from_stage_id != job.current_stage_id:
        raise ConflictError(
            "Job", "current_stage_id", str(job.current_stage_id),
            message=(
                f"Pending transition {pending.id} was proposed from stage "
                f"{pending.from_stage_id}; job is now in stage {job.current_stage_id}"
            ),
        )

    graph = load_stage_graph(tenant_id)
    target = graph.stage(pending.to_stage_id)
    if target is None or not target.active:
        raise ConfigurationError(
            f"Pending transition targets unavailable stage {pending.to_stage_id}",
            rule_ids=[pending.rule_id] if pending.rule_id else [],
        )

    try:
        entry = _move_job(
            job, graph, pending.to_stage_id,
            trigger_source="manual",
            actor=str(actor),
            actor_name=actor_name,
            now=now,
            question_id=pending.question_id,
            response_value=pending.response_value,
            details={"rule_id": pending.rule_id, "pending_id": pending.id, "confirmed": True},
        )
        pending.resolved_at = now
        pending.resolution = "confirmed"
        db.session.commit()
    except StaleDataError:
        raise _rollback_stale(job_id, expected_version) from None
    except Exception:
        db.session.rollback()
        raise

    logger.info("Manual transition confirmed job=%s -> stage %s by %s", job.id, target.id, actor,
                extra={"tenant_id": tenant_id, "job_id": job.id})
    return {"job": job.to_dict(), "audit_entry": entry.to_dict()}


def override_stage(
    tenant_id: int,
    job_id: int,
    target_stage_id: int,
    actor: str,
    reason: str,
    *,
    actor_name: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> dict:
    """Administrative move to any active stage. Requires a reason."""
    now = _now(now)
    if not (reason or "").strip():
        raise ValidationError("A reason is required for a stage override", details={"reason": "required"})

    job = _load_job(tenant_id, job_id)
    _check_version(job, expected_version)
    graph = load_stage_graph(tenant_id)
    target = graph.stage(target_stage_id)
    if target is None:
        raise NotFoundError(resource="Stage", resource_id=target_stage_id, tenant_id=tenant_id)
    if not target.active:
        raise ValidationError("Cannot move a job into a retired stage", details={"stage_id": target.id})
    if target.id == job.current_stage_id:
        raise ValidationError("Job is already in this stage", details={"stage_id": target.id})

    try:
        _supersede_pending(job.id, now)
        entry = _move_job(
            job, graph, target.id,
            trigger_source="manual",
            actor=str(actor),
            actor_name=actor_name,
            now=now,
            details={"override": True, "reason": reason.strip()},
        )
        db.session.commit()
    except StaleDataError:
        raise _rollback_stale(job_id, expected_version) from None
    except Exception:
        db.session.rollback()
        raise

    logger.warning("Stage override job=%s -> stage %s by %s: %s", job.id, target.id, actor, reason,
                   extra={"tenant_id": tenant_id, "job_id": job.id})
    return {"job": job.to_dict(), "audit_entry": entry.to_dict()}


# ── Bootstrap ────────────────────────────────────────────────────────────────


def _stage_for_status(graph, status: str):
    active = graph.active_stages
    if not active:
        return None
    if status == "completed":
        completed = [s for s in active if s.maps_to_status == "completed"]
        return completed[-1] if completed else active[-1]
    if status in ("active", "on_hold"):
        return next((s for s in active if s.maps_to_status == "active"), active[0])
    return active[0]


def bootstrap_job_stages(tenant_id: int) -> int:
    """Assign a stage to every job of the tenant that has none.

    One-time migration for jobs created before stage progression existed:
    the stage is derived from the job's status. No audit rows are written.
    Returns the number of jobs updated.
    """
    graph = load_stage_graph(tenant_id)
    if graph.initial_stage() is None:
        raise ConfigurationError(f"Tenant {tenant_id} has no active stages configured")

    jobs = list(
        db.session.execute(
            select(Job).where(Job.tenant_id == tenant_id, Job.current_stage_id.is_(None))
        ).unique().scalars()
    )
    try:
        for job in jobs:
            stage = _stage_for_status(graph, job.status)
            job.current_stage_id = stage.id
            job.current_stage = db.session.get(Stage, stage.id)
            job.stage_entered_at = day_start_utc(job.start_date) or as_utc(job.created_at)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError(
            "Job", "stage_version",
            message=f"Jobs of tenant {tenant_id} changed during bootstrap; run it again",
        ) from None
    except Exception:
        db.session.rollback()
        raise

    logger.info("Bootstrapped stage pointer for %d jobs of tenant %s", len(jobs), tenant_id,
                extra={"tenant_id": tenant_id})
    return len(jobs)


# ── Read API ─────────────────────────────────────────────────────────────────


def audit_history(tenant_id: int, job_id: int) -> list[dict]:
    job = _load_job(tenant_id, job_id)
    return [entry.to_dict() for entry in stage_history(job.id)]


def question_flow_state(tenant_id: int, job_id: int) -> dict:
    """Where the job stands in its current stage's question flow."""
    job = _load_job(tenant_id, job_id)
    graph = load_stage_graph(tenant_id)
    current = graph.stage(job.current_stage_id)

    latest, answered = prior_responses(job)
    normalised = {str(k): v for k, v in latest.items()}
    stage_questions = graph.questions_for(job.current_stage_id) if current else []
    applicable = [q for q in stage_questions if not q.skip_condition.is_satisfied(normalised)]
    question = next_question(graph, job.current_stage_id, latest, answered) if current else None
    pending = _open_pending(job.id)

    if current is None:
        awaiting = "initialization"
    elif question is not None:
        awaiting = "response"
    elif pending is not None:
        awaiting = "confirmation"
    elif current.is_terminal:
        awaiting = "none"
    else:
        awaiting = "manual_resolution"

    active = graph.active_stages
    position = graph.position(job.current_stage_id)
    return {
        "job": job.to_dict(),
        "config_version": graph.version,
        "current_stage": current.to_dict() if current else None,
        "next_question": question.to_dict() if question else None,
        "answered_count": len([q for q in applicable if q.id in answered]),
        "total_questions": len(applicable),
        "stage_position": position,
        "total_stages": len(active),
        "pending_transition": pending.to_dict() if pending else None,
        "awaiting": awaiting,
    }
