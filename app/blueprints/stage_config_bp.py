"""
Stage configuration blueprint — tenant stage catalog administration.

Endpoints:
    GET  /api/v1/stages                        — list stages (?include_inactive=true)
    POST /api/v1/stages                        — create stage
    PUT  /api/v1/stages/<id>                   — update stage
    POST /api/v1/stages/<id>/retire            — retire stage
    GET  /api/v1/stages/<id>/questions         — list questions of a stage
    POST /api/v1/stages/<id>/questions         — add question
    PUT  /api/v1/stages/<id>/questions/order   — reorder questions (atomic)
    GET  /api/v1/stages/transitions            — list transition rules
    POST /api/v1/stages/transitions            — add transition rule
    GET  /api/v1/stages/graph                  — full configuration snapshot
    POST /api/v1/stages/seed-defaults          — seed default catalog (idempotent)

Every write bumps the tenant's ``stage_config_version``.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import (
    int_field,
    json_body,
    register_error_handlers,
    tenant_id_from_request,
)
from app.services import stage_config_service

logger = logging.getLogger(__name__)

stage_config_bp = Blueprint("stage_config_bp", __name__, url_prefix="/api/v1/stages")
register_error_handlers(stage_config_bp)


# ── Stages ───────────────────────────────────────────────────────────────────


@stage_config_bp.route("", methods=["GET"])
def list_stages():
    tenant_id = tenant_id_from_request()
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    stages = stage_config_service.list_stages(tenant_id, include_inactive=include_inactive)
    return jsonify({"items": [s.to_dict() for s in stages], "total": len(stages)}), 200


@stage_config_bp.route("", methods=["POST"])
def create_stage():
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    stage = stage_config_service.create_stage(tenant_id, data)
    return jsonify(stage.to_dict()), 201


@stage_config_bp.route("/<int:stage_id>", methods=["PUT"])
def update_stage(stage_id):
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    fields = {k: v for k, v in data.items() if k != "tenant_id"}
    stage = stage_config_service.update_stage(tenant_id, stage_id, fields)
    return jsonify(stage.to_dict()), 200


@stage_config_bp.route("/<int:stage_id>/retire", methods=["POST"])
def retire_stage(stage_id):
    tenant_id = tenant_id_from_request(json_body())
    stage = stage_config_service.retire_stage(tenant_id, stage_id)
    return jsonify(stage.to_dict()), 200


# ── Questions ────────────────────────────────────────────────────────────────


@stage_config_bp.route("/<int:stage_id>/questions", methods=["GET"])
def list_questions(stage_id):
    tenant_id = tenant_id_from_request()
    questions = stage_config_service.list_questions(tenant_id, stage_id)
    return jsonify({"items": [q.to_dict() for q in questions], "total": len(questions)}), 200


@stage_config_bp.route("/<int:stage_id>/questions", methods=["POST"])
def create_question(stage_id):
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    question = stage_config_service.create_question(tenant_id, stage_id, data)
    return jsonify(question.to_dict()), 201


@stage_config_bp.route("/<int:stage_id>/questions/order", methods=["PUT"])
def reorder_questions(stage_id):
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    questions = stage_config_service.reorder_questions(tenant_id, stage_id, data.get("updates"))
    return jsonify({"items": [q.to_dict() for q in questions], "total": len(questions)}), 200


# ── Transition rules ─────────────────────────────────────────────────────────


@stage_config_bp.route("/transitions", methods=["GET"])
def list_transitions():
    tenant_id = tenant_id_from_request()
    from_stage_id = request.args.get("from_stage_id", type=int)
    rules = stage_config_service.list_transition_rules(tenant_id, from_stage_id)
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)}), 200


@stage_config_bp.route("/transitions", methods=["POST"])
def create_transition():
    data = json_body()
    tenant_id = tenant_id_from_request(data)
    payload = dict(data)
    payload["from_stage_id"] = int_field(data, "from_stage_id")
    payload["to_stage_id"] = int_field(data, "to_stage_id")
    rule = stage_config_service.create_transition_rule(tenant_id, payload)
    return jsonify(rule.to_dict()), 201


# ── Snapshot & seed ──────────────────────────────────────────────────────────


@stage_config_bp.route("/graph", methods=["GET"])
def stage_graph():
    tenant_id = tenant_id_from_request()
    graph = stage_config_service.load_stage_graph(tenant_id)
    return jsonify({
        "tenant_id": graph.tenant_id,
        "version": graph.version,
        "stages": [s.to_dict() for s in graph.stages],
        "questions": [q.to_dict() for q in graph.questions],
        "rules": [r.to_dict() for r in graph.rules],
    }), 200


@stage_config_bp.route("/seed-defaults", methods=["POST"])
def seed_defaults():
    tenant_id = tenant_id_from_request(json_body())
    created = stage_config_service.seed_default_stages(tenant_id)
    return jsonify({"tenant_id": tenant_id, "stages_created": created}), 201 if created else 200
