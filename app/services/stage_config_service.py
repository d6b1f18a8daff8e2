"""
Stage Graph Store & Question Registry.

Tenant administration authors stages, questions and transition rules through
the ``create_*`` / ``update_*`` helpers below. Each change bumps the tenant's
``stage_config_version``.

The progression engine and the timeline never read those ORM rows directly:
they work on a :class:`StageGraph`, an immutable snapshot of one tenant's
configuration loaded once per request with :func:`load_stage_graph`. The
snapshot holds plain values only, so it is safe to share across threads.

Hardcoded default stages exist only as seed data
(``scripts/seed_data/stages.py``, applied by :func:`seed_default_stages`).

Usage:
    from app.services.stage_config_service import load_stage_graph, next_question

    graph = load_stage_graph(tenant_id)
    question = next_question(graph, job.current_stage_id, prior_responses)
"""

import logging
import re
from dataclasses import dataclass, field

from sqlalchemy import func, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.stage import (
    RESPONSE_TYPES,
    STAGE_STATUSES,
    STAGE_TYPES,
    Stage,
    StageQuestion,
    StageTransition,
)
from app.models.tenant import Tenant
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from app.services.skip_conditions import SkipCondition, parse_skip_conditions

logger = logging.getLogger(__name__)

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
_ORDINAL_PREFIX = re.compile(r"^\s*\d+\s*/\s*\d+\s*")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_stage_name(name: str | None) -> str:
    """Canonical key for name lookups: "3/12 Quote & Prep" -> "quote_prep"."""
    if not name:
        return ""
    stripped = _ORDINAL_PREFIX.sub("", name).lower()
    return _NON_ALNUM.sub("_", stripped).strip("_")


# ═════════════════════════════════════════════════════════════════════════
# Snapshot types
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StageInfo:
    id: int
    name: str
    color: str
    sequence_order: int
    stage_type: str
    maps_to_status: str
    description: str = ""
    min_duration_hours: int = 0
    max_duration_hours: int | None = None
    requires_approval: bool = False
    active: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.maps_to_status == "completed"

    @classmethod
    def from_model(cls, stage: Stage) -> "StageInfo":
        return cls(
            id=stage.id,
            name=stage.name,
            color=stage.color,
            sequence_order=stage.sequence_order,
            stage_type=stage.stage_type,
            maps_to_status=stage.maps_to_status,
            description=stage.description or "",
            min_duration_hours=stage.min_duration_hours or 0,
            max_duration_hours=stage.max_duration_hours,
            requires_approval=bool(stage.requires_approval),
            active=bool(stage.active),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "sequence_order": self.sequence_order,
            "stage_type": self.stage_type,
            "maps_to_status": self.maps_to_status,
            "description": self.description,
            "min_duration_hours": self.min_duration_hours,
            "max_duration_hours": self.max_duration_hours,
            "requires_approval": self.requires_approval,
            "active": self.active,
            "is_terminal": self.is_terminal,
        }


@dataclass(frozen=True)
class QuestionInfo:
    id: int
    stage_id: int
    question_text: str
    response_type: str
    sequence_order: int
    is_required: bool = True
    response_options: tuple = ()
    help_text: str = ""
    skip_condition: SkipCondition = field(default_factory=SkipCondition)

    @classmethod
    def from_model(cls, question: StageQuestion) -> "QuestionInfo":
        return cls(
            id=question.id,
            stage_id=question.stage_id,
            question_text=question.question_text,
            response_type=question.response_type,
            sequence_order=question.sequence_order,
            is_required=bool(question.is_required),
            response_options=tuple(question.response_options or ()),
            help_text=question.help_text or "",
            skip_condition=parse_skip_conditions(question.skip_conditions),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "question_text": self.question_text,
            "response_type": self.response_type,
            "sequence_order": self.sequence_order,
            "is_required": self.is_required,
            "response_options": list(self.response_options),
            "help_text": self.help_text,
            "skip_conditions": self.skip_condition.to_dict() if self.skip_condition else {},
        }


@dataclass(frozen=True)
class RuleInfo:
    id: int
    from_stage_id: int
    to_stage_id: int
    trigger_response: str
    is_automatic: bool
    priority: int = 0
    question_id: str | None = None
    condition: str | None = None
    action: str | None = None

    @classmethod
    def from_model(cls, rule: StageTransition) -> "RuleInfo":
        conditions = rule.conditions or {}
        question_id = conditions.get("question_id")
        return cls(
            id=rule.id,
            from_stage_id=rule.from_stage_id,
            to_stage_id=rule.to_stage_id,
            trigger_response=rule.trigger_response,
            is_automatic=bool(rule.is_automatic),
            priority=rule.priority or 0,
            question_id=str(question_id) if question_id not in (None, "") else None,
            condition=conditions.get("condition"),
            action=conditions.get("action"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "trigger_response": self.trigger_response,
            "is_automatic": self.is_automatic,
            "priority": self.priority,
            "question_id": self.question_id,
            "condition": self.condition,
            "action": self.action,
        }


@dataclass(frozen=True)
class StageGraph:
    """Immutable per-tenant configuration snapshot."""

    tenant_id: int
    version: int
    stages: tuple = ()
    questions: tuple = ()
    rules: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "_by_id", {s.id: s for s in self.stages})
        by_name = {}
        for s in sorted(self.stages, key=lambda s: (not s.active, s.sequence_order)):
            by_name.setdefault(normalize_stage_name(s.name), s)
        object.__setattr__(self, "_by_name", by_name)
        object.__setattr__(self, "_questions_by_id", {q.id: q for q in self.questions})

    # ── Stages ───────────────────────────────────────────────────────────

    @property
    def active_stages(self) -> list[StageInfo]:
        return sorted((s for s in self.stages if s.active), key=lambda s: s.sequence_order)

    def stage(self, stage_id) -> StageInfo | None:
        if stage_id is None:
            return None
        return self._by_id.get(stage_id)

    def stage_by_name(self, name) -> StageInfo | None:
        key = normalize_stage_name(name)
        return self._by_name.get(key) if key else None

    def initial_stage(self) -> StageInfo | None:
        active = self.active_stages
        return active[0] if active else None

    def position(self, stage_id) -> int | None:
        """1-based position of ``stage_id`` among active stages."""
        for idx, s in enumerate(self.active_stages, start=1):
            if s.id == stage_id:
                return idx
        return None

    # ── Questions & rules ────────────────────────────────────────────────

    def question(self, question_id) -> QuestionInfo | None:
        return self._questions_by_id.get(question_id)

    def questions_for(self, stage_id) -> list[QuestionInfo]:
        return sorted(
            (q for q in self.questions if q.stage_id == stage_id),
            key=lambda q: (q.sequence_order, q.id),
        )

    def rules_from(self, stage_id) -> list[RuleInfo]:
        return [r for r in self.rules if r.from_stage_id == stage_id]


# ═════════════════════════════════════════════════════════════════════════
# Read API
# ═════════════════════════════════════════════════════════════════════════


def _get_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    return tenant


def list_stages(tenant_id: int, include_inactive: bool = False) -> list[Stage]:
    """Return a tenant's stages ordered by ``sequence_order``."""
    stmt = select(Stage).where(Stage.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(Stage.active.is_(True))
    return list(db.session.execute(stmt.order_by(Stage.sequence_order)).scalars())


def list_questions(tenant_id: int, stage_id: int) -> list[StageQuestion]:
    """Return a stage's questions ordered by ``sequence_order``."""
    get_scoped(Stage, stage_id, tenant_id=tenant_id)
    return list(
        db.session.execute(
            select(StageQuestion)
            .where(StageQuestion.stage_id == stage_id)
            .order_by(StageQuestion.sequence_order, StageQuestion.id)
        ).scalars()
    )


def list_transition_rules(tenant_id: int, from_stage_id: int | None = None) -> list[StageTransition]:
    stmt = select(StageTransition).where(StageTransition.tenant_id == tenant_id)
    if from_stage_id is not None:
        stmt = stmt.where(StageTransition.from_stage_id == from_stage_id)
    return list(db.session.execute(stmt.order_by(StageTransition.id)).scalars())


def load_stage_graph(tenant_id: int) -> StageGraph:
    """Load the tenant's full configuration into an immutable snapshot."""
    tenant = _get_tenant(tenant_id)
    stages = list_stages(tenant_id, include_inactive=True)
    questions = db.session.execute(
        select(StageQuestion).where(StageQuestion.tenant_id == tenant_id)
    ).scalars()
    rules = list_transition_rules(tenant_id)

    graph = StageGraph(
        tenant_id=tenant_id,
        version=tenant.stage_config_version or 1,
        stages=tuple(StageInfo.from_model(s) for s in stages),
        questions=tuple(QuestionInfo.from_model(q) for q in questions),
        rules=tuple(RuleInfo.from_model(r) for r in rules),
    )
    logger.debug(
        "Loaded stage graph tenant=%s version=%s stages=%d questions=%d rules=%d",
        tenant_id, graph.version, len(graph.stages), len(graph.questions), len(graph.rules),
        extra={"tenant_id": tenant_id},
    )
    return graph


def next_question(
    graph: StageGraph,
    stage_id,
    prior_responses: dict,
    answered: set | None = None,
) -> QuestionInfo | None:
    """Return the first question of ``stage_id`` still to be asked.

    Iterates the stage's questions in ``sequence_order``; a question is
    passed over when it is already answered or when its skip condition is
    satisfied by ``prior_responses`` (question_id -> latest value).

    ``answered`` defaults to the keys of ``prior_responses``; the engine
    narrows it to answers given since the job entered the stage, so a job
    sent back to an earlier stage is asked again.

    Returns None when the stage is complete and awaiting a transition.
    """
    normalised = {str(k): v for k, v in (prior_responses or {}).items()}
    answered_ids = {str(a) for a in answered} if answered is not None else set(normalised)

    for question in graph.questions_for(stage_id):
        if str(question.id) in answered_ids:
            continue
        if question.skip_condition.is_satisfied(normalised):
            logger.debug("Question %s skipped by condition", question.id)
            continue
        return question
    return None


# ═════════════════════════════════════════════════════════════════════════
# Admin API (write)
# ═════════════════════════════════════════════════════════════════════════


def _validate_stage_fields(data: dict, *, partial: bool = False) -> dict:
    errors = {}
    clean = {}

    if "name" in data or not partial:
        name = (data.get("name") or "").strip()
        if not name:
            errors["name"] = "required"
        clean["name"] = name

    if "color" in data or not partial:
        color = (data.get("color") or "#6B7280").strip()
        if not _HEX_COLOR.match(color):
            errors["color"] = "must be a #RRGGBB hex colour"
        clean["color"] = color.upper()

    if "sequence_order" in data or not partial:
        seq = data.get("sequence_order")
        if not isinstance(seq, int) or isinstance(seq, bool) or seq < 1:
            errors["sequence_order"] = "must be a positive integer"
        clean["sequence_order"] = seq

    if "stage_type" in data or not partial:
        stage_type = data.get("stage_type", "standard")
        if stage_type not in STAGE_TYPES:
            errors["stage_type"] = f"must be one of {', '.join(STAGE_TYPES)}"
        clean["stage_type"] = stage_type

    if "maps_to_status" in data or not partial:
        status = data.get("maps_to_status", "planning")
        if status not in STAGE_STATUSES:
            errors["maps_to_status"] = f"must be one of {', '.join(STAGE_STATUSES)}"
        clean["maps_to_status"] = status

    for key in ("min_duration_hours", "max_duration_hours"):
        if key in data:
            val = data.get(key)
            if val is not None and (not isinstance(val, int) or isinstance(val, bool) or val < 0):
                errors[key] = "must be a non-negative integer"
            clean[key] = val
    if not partial:
        clean.setdefault("min_duration_hours", 0)

    for key in ("description", "requires_approval", "active"):
        if key in data:
            clean[key] = data[key]

    if errors:
        raise ValidationError("Invalid stage definition", details=errors)
    return clean


def _check_duration_bounds(min_hours, max_hours) -> None:
    if max_hours is not None and max_hours < (min_hours or 0):
        raise ValidationError(
            "max_duration_hours must be >= min_duration_hours",
            details={"min_duration_hours": min_hours, "max_duration_hours": max_hours},
        )


def _check_sequence_free(tenant_id: int, sequence_order: int, exclude_id: int | None = None) -> None:
    stmt = select(func.count(Stage.id)).where(
        Stage.tenant_id == tenant_id,
        Stage.sequence_order == sequence_order,
    )
    if exclude_id is not None:
        stmt = stmt.where(Stage.id != exclude_id)
    if db.session.execute(stmt).scalar_one():
        raise ValidationError(
            f"sequence_order {sequence_order} is already used by another stage",
            details={"sequence_order": "duplicate"},
        )


def create_stage(tenant_id: int, data: dict, *, commit: bool = True) -> Stage:
    """Create a stage definition for ``tenant_id``."""
    tenant = _get_tenant(tenant_id)
    clean = _validate_stage_fields(data)
    _check_sequence_free(tenant_id, clean["sequence_order"])
    _check_duration_bounds(clean.get("min_duration_hours"), clean.get("max_duration_hours"))

    stage = Stage(tenant_id=tenant_id, **clean)
    db.session.add(stage)
    tenant.bump_config_version()
    db.session.flush()
    if commit:
        db.session.commit()
    logger.info("Stage created id=%s tenant=%s name=%r", stage.id, tenant_id, stage.name,
                extra={"tenant_id": tenant_id})
    return stage


def update_stage(tenant_id: int, stage_id: int, data: dict) -> Stage:
    """Update a stage. Only supplied fields change."""
    tenant = _get_tenant(tenant_id)
    stage = get_scoped(Stage, stage_id, tenant_id=tenant_id)
    clean = _validate_stage_fields(data, partial=True)
    if "sequence_order" in clean and clean["sequence_order"] != stage.sequence_order:
        _check_sequence_free(tenant_id, clean["sequence_order"], exclude_id=stage.id)

    _check_duration_bounds(
        clean.get("min_duration_hours", stage.min_duration_hours),
        clean.get("max_duration_hours", stage.max_duration_hours),
    )

    try:
        for key, value in clean.items():
            setattr(stage, key, value)
        tenant.bump_config_version()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Stage updated id=%s tenant=%s fields=%s", stage.id, tenant_id, sorted(clean),
                extra={"tenant_id": tenant_id})
    return stage


def retire_stage(tenant_id: int, stage_id: int) -> Stage:
    """Mark a stage inactive. The row stays so old audit entries still resolve."""
    return update_stage(tenant_id, stage_id, {"active": False})


def create_question(tenant_id: int, stage_id: int, data: dict, *, commit: bool = True) -> StageQuestion:
    """Attach a question to a stage."""
    tenant = _get_tenant(tenant_id)
    get_scoped(Stage, stage_id, tenant_id=tenant_id)

    errors = {}
    text = (data.get("question_text") or "").strip()
    if not text:
        errors["question_text"] = "required"
    response_type = data.get("response_type", "yes_no")
    if response_type not in RESPONSE_TYPES:
        errors["response_type"] = f"must be one of {', '.join(RESPONSE_TYPES)}"
    options = data.get("response_options") or []
    if response_type == "multiple_choice" and not options:
        errors["response_options"] = "required for multiple_choice"
    seq = data.get("sequence_order")
    if seq is None:
        seq = (
            db.session.execute(
                select(func.max(StageQuestion.sequence_order)).where(StageQuestion.stage_id == stage_id)
            ).scalar_one_or_none() or 0
        ) + 1
    elif not isinstance(seq, int) or isinstance(seq, bool) or seq < 1:
        errors["sequence_order"] = "must be a positive integer"
    if errors:
        raise ValidationError("Invalid question definition", details=errors)

    # Rejects malformed clauses before they are stored.
    skip = parse_skip_conditions(data.get("skip_conditions"))

    question = StageQuestion(
        tenant_id=tenant_id,
        stage_id=stage_id,
        question_text=text,
        response_type=response_type,
        response_options=list(options),
        sequence_order=seq,
        is_required=data.get("is_required", True),
        help_text=data.get("help_text") or "",
        skip_conditions=skip.to_dict() if skip else {},
    )
    db.session.add(question)
    tenant.bump_config_version()
    db.session.flush()
    if commit:
        db.session.commit()
    return question


def reorder_questions(tenant_id: int, stage_id: int, updates: list) -> list[StageQuestion]:
    """Apply new ``sequence_order`` values to questions of one stage, atomically.

    ``updates`` is ``[{"question_id": 7, "sequence_order": 2}, ...]``. Every
    question must belong to ``stage_id``, and the stage's resulting orders
    (listed and unlisted questions together) must be distinct positive
    integers. Either all rows change or none do.

    Returns the stage's questions in their new order.
    """
    tenant = _get_tenant(tenant_id)
    get_scoped(Stage, stage_id, tenant_id=tenant_id)
    if not isinstance(updates, list) or not updates:
        raise ValidationError("updates must be a non-empty list", details={"updates": "required"})

    new_orders = {}
    errors = {}
    for item in updates:
        if not isinstance(item, dict):
            raise ValidationError("each update must be an object", details={"update": item})
        qid, seq = item.get("question_id"), item.get("sequence_order")
        if not isinstance(seq, int) or isinstance(seq, bool) or seq < 1:
            errors[str(qid)] = "sequence_order must be a positive integer"
        elif qid in new_orders:
            errors[str(qid)] = "listed more than once"
        else:
            new_orders[qid] = seq
    if errors:
        raise ValidationError("Invalid question order", details=errors)

    foreign = [
        qid for qid in new_orders
        if get_scoped_or_none(StageQuestion, qid, tenant_id=tenant_id, stage_id=stage_id) is None
    ]
    if foreign:
        raise ValidationError(
            "Questions do not belong to this stage",
            details={"question_ids": foreign, "stage_id": stage_id},
        )

    questions = db.session.execute(
        select(StageQuestion).where(StageQuestion.stage_id == stage_id)
    ).scalars().all()
    final = {q.id: new_orders.get(q.id, q.sequence_order) for q in questions}
    if len(set(final.values())) != len(final):
        raise ValidationError(
            "sequence_order values must be unique within the stage",
            details={"sequence_order": "duplicate"},
        )

    try:
        for question in questions:
            question.sequence_order = final[question.id]
        tenant.bump_config_version()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Questions reordered stage=%s tenant=%s count=%d", stage_id, tenant_id, len(new_orders),
                extra={"tenant_id": tenant_id, "stage_id": stage_id})
    return sorted(questions, key=lambda q: q.sequence_order)


def create_transition_rule(tenant_id: int, data: dict, *, commit: bool = True) -> StageTransition:
    """Create a (from_stage, trigger_response) -> to_stage rule."""
    tenant = _get_tenant(tenant_id)
    from_stage = get_scoped(Stage, data.get("from_stage_id"), tenant_id=tenant_id)
    to_stage = get_scoped(Stage, data.get("to_stage_id"), tenant_id=tenant_id)

    trigger = data.get("trigger_response")
    if trigger is None or str(trigger) == "":
        raise ValidationError("trigger_response is required", details={"trigger_response": "required"})

    conditions = dict(data.get("conditions") or {})
    question_id = conditions.get("question_id")
    if question_id is not None:
        question = db.session.get(StageQuestion, question_id)
        if question is None or question.tenant_id != tenant_id or question.stage_id != from_stage.id:
            raise ValidationError(
                "conditions.question_id must reference a question of the from-stage",
                details={"question_id": question_id},
            )
    if conditions.get("condition") is not None:
        from app.services.transition_resolver import parse_numeric_condition
        if parse_numeric_condition(conditions["condition"]) is None:
            raise ValidationError(
                "conditions.condition must look like '>=90'",
                details={"condition": conditions["condition"]},
            )

    priority = data.get("priority", 0)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ValidationError("priority must be an integer", details={"priority": priority})

    rule = StageTransition(
        tenant_id=tenant_id,
        from_stage_id=from_stage.id,
        to_stage_id=to_stage.id,
        trigger_response=str(trigger),
        conditions=conditions,
        is_automatic=bool(data.get("is_automatic", True)),
        priority=priority,
    )
    db.session.add(rule)
    tenant.bump_config_version()
    db.session.flush()
    if commit:
        db.session.commit()
    return rule


def seed_default_stages(tenant_id: int) -> int:
    """Seed the default twelve-stage catalog for a tenant with no stages.

    Returns the number of stages created (0 when the tenant already has a
    configuration).
    """
    from scripts.seed_data.stages import DEFAULT_STAGES

    _get_tenant(tenant_id)
    existing = db.session.execute(
        select(func.count(Stage.id)).where(Stage.tenant_id == tenant_id)
    ).scalar_one()
    if existing:
        logger.info("Tenant %s already has %d stages; seed skipped", tenant_id, existing)
        return 0

    stage_ids = {}
    question_ids = {}
    try:
        for entry in DEFAULT_STAGES:
            stage = create_stage(tenant_id, entry["stage"], commit=False)
            stage_ids[entry["key"]] = stage.id
            for q in entry.get("questions", []):
                raw_skip = q.get("skip_if") or []
                question = create_question(
                    tenant_id,
                    stage.id,
                    {
                        **{k: v for k, v in q.items() if k not in ("key", "skip_if")},
                        "skip_conditions": {"all": [
                            {"question_id": question_ids[ref], "operator": op, "value": val}
                            for ref, op, val in raw_skip
                        ]},
                    },
                    commit=False,
                )
                question_ids[q["key"]] = question.id

        for entry in DEFAULT_STAGES:
            for t in entry.get("transitions", []):
                conditions = {k: v for k, v in t.get("conditions", {}).items()}
                if t.get("question"):
                    conditions["question_id"] = question_ids[t["question"]]
                create_transition_rule(
                    tenant_id,
                    {
                        "from_stage_id": stage_ids[entry["key"]],
                        "to_stage_id": stage_ids[t["to"]],
                        "trigger_response": t["trigger"],
                        "conditions": conditions,
                        "is_automatic": t.get("is_automatic", True),
                        "priority": t.get("priority", 0),
                    },
                    commit=False,
                )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Seeded %d default stages for tenant %s", len(stage_ids), tenant_id,
                extra={"tenant_id": tenant_id})
    return len(stage_ids)
