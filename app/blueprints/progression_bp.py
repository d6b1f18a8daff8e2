"""
Job progression blueprint — question-driven stage engine over HTTP.

Endpoints:
    POST /api/v1/jobs                                  — create job (stage seeded)
    GET  /api/v1/jobs/<id>                             — job with current stage
    GET  /api/v1/jobs/<id>/current-question            — question flow state
    POST /api/v1/jobs/<id>/responses                   — answer a question
    GET  /api/v1/jobs/<id>/pending-transition          — open manual proposal
    POST /api/v1/jobs/<id>/transitions/confirm         — apply manual proposal
    POST /api/v1/jobs/<id>/stage-override              — admin move (reason required)
    GET  /api/v1/jobs/<id>/stage-history               — audit trail
    GET  /api/v1/jobs/<id>/timeline                    — segments + anomalies + progress
    GET  /api/v1/jobs/<id>/progress                    — progress indicators
    POST /api/v1/timelines                             — batch timelines
    GET  /api/v1/stage-performance                     — per-stage dwell statistics

``tenant_id`` travels in the JSON body or the query string. The acting user
is ``actor`` in the body (or the ``X-User-Id`` header).
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import (
    BadRequest,
    int_field,
    json_body,
    register_error_handlers,
    tenant_id_from_request,
)
from app.models.job import Job
from app.services import progression_service, timeline_service
from app.services.helpers.scoped_queries import get_scoped
from app.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

progression_bp = Blueprint("progression_bp", __name__, url_prefix="/api/v1")
register_error_handlers(progression_bp)


def _actor(data: dict) -> tuple[str, str | None]:
    actor = data.get("actor") or request.headers.get("X-User-Id")
    if not actor:
        raise BadRequest("actor is required", {"actor": "required"})
    return str(actor), data.get("actor_name")


def _at():
    """Optional ``at`` query parameter: evaluate the timeline as of this instant."""
    try:
        return parse_datetime_input(request.args.get("at"))
    except ValueError as exc:
        raise BadRequest(str(exc), {"at": request.args.get("at")}) from None


# ═════════════════════════════════════════════════════════════════════════
# Jobs
# ═════════════════════════════════════════════════════════════════════════


@progression_bp.route("/jobs", methods=["POST"])
def create_job():
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    job = progression_service.create_job(tenant_id, data)
    return jsonify(job.to_dict()), 201


@progression_bp.route("/jobs/<int:job_id>", methods=["GET"])
def get_job(job_id):
    tenant_id = tenant_id_from_request()
    job = get_scoped(Job, job_id, tenant_id=tenant_id)
    return jsonify(job.to_dict()), 200


@progression_bp.route("/jobs/<int:job_id>/current-question", methods=["GET"])
def current_question(job_id):
    tenant_id = tenant_id_from_request()
    return jsonify(progression_service.question_flow_state(tenant_id, job_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Responses & transitions
# ═════════════════════════════════════════════════════════════════════════


@progression_bp.route("/jobs/<int:job_id>/responses", methods=["POST"])
def submit_response(job_id):
    """Record an answer.

    Body: ``{tenant_id, question_id, response_value, actor, expected_version?,
    response_source?, metadata?}``. Returns 201 with the outcome
    (``applied`` / ``pending_manual`` / ``no_match``).
    """
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    question_id = int_field(data, "question_id")
    if "response_value" not in data:
        raise BadRequest("response_value is required", {"response_value": "required"})
    actor, actor_name = _actor(data)

    outcome = progression_service.submit_response(
        tenant_id,
        job_id,
        question_id,
        data["response_value"],
        actor,
        actor_name=actor_name,
        expected_version=int_field(data, "expected_version", required=False),
        source=data.get("response_source") or "web_app",
        metadata=data.get("metadata") or {},
    )
    return jsonify(outcome.to_dict()), 201


@progression_bp.route("/jobs/<int:job_id>/pending-transition", methods=["GET"])
def pending_transition(job_id):
    tenant_id = tenant_id_from_request()
    pending = progression_service.get_pending_transition(tenant_id, job_id)
    return jsonify({"pending_transition": pending.to_dict() if pending else None}), 200


@progression_bp.route("/jobs/<int:job_id>/transitions/confirm", methods=["POST"])
def confirm_transition(job_id):
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    actor, actor_name = _actor(data)
    result = progression_service.confirm_manual_transition(
        tenant_id,
        job_id,
        actor,
        proposed_stage_id=int_field(data, "proposed_stage_id", required=False),
        actor_name=actor_name,
        expected_version=int_field(data, "expected_version", required=False),
    )
    return jsonify(result), 200


@progression_bp.route("/jobs/<int:job_id>/stage-override", methods=["POST"])
def stage_override(job_id):
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    actor, actor_name = _actor(data)
    result = progression_service.override_stage(
        tenant_id,
        job_id,
        int_field(data, "stage_id"),
        actor,
        data.get("reason") or "",
        actor_name=actor_name,
        expected_version=int_field(data, "expected_version", required=False),
    )
    return jsonify(result), 200


@progression_bp.route("/jobs/<int:job_id>/stage-history", methods=["GET"])
def stage_history(job_id):
    tenant_id = tenant_id_from_request()
    entries = progression_service.audit_history(tenant_id, job_id)
    return jsonify({"job_id": job_id, "items": entries, "total": len(entries)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Timeline & progress
# ═════════════════════════════════════════════════════════════════════════


@progression_bp.route("/jobs/<int:job_id>/timeline", methods=["GET"])
def job_timeline(job_id):
    tenant_id = tenant_id_from_request()
    return jsonify(timeline_service.job_timeline(tenant_id, job_id, now=_at())), 200


@progression_bp.route("/jobs/<int:job_id>/progress", methods=["GET"])
def job_progress(job_id):
    tenant_id = tenant_id_from_request()
    return jsonify(timeline_service.job_progress(tenant_id, job_id, now=_at())), 200


@progression_bp.route("/timelines", methods=["POST"])
def batch_timelines():
    """Body: ``{tenant_id, job_ids?}``; all of the tenant's jobs when ``job_ids`` is omitted."""
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    job_ids = data.get("job_ids")
    if job_ids is not None:
        if not isinstance(job_ids, list):
            raise BadRequest("job_ids must be a list of integers", {"job_ids": job_ids})
        try:
            job_ids = [int(j) for j in job_ids]
        except (TypeError, ValueError):
            raise BadRequest("job_ids must be a list of integers", {"job_ids": job_ids}) from None
    return jsonify(timeline_service.tenant_timelines(tenant_id, job_ids, now=_at())), 200


@progression_bp.route("/stage-performance", methods=["GET"])
def stage_performance():
    """Per-stage dwell statistics; optional ``from`` / ``to`` ISO timestamps."""
    tenant_id = tenant_id_from_request()
    bounds = {}
    for key in ("from", "to"):
        try:
            bounds[key] = parse_datetime_input(request.args.get(key))
        except ValueError as exc:
            raise BadRequest(str(exc), {key: request.args.get(key)}) from None
    report = timeline_service.stage_duration_report(tenant_id, bounds["from"], bounds["to"])
    return jsonify(report), 200
