"""
Blueprint registry helpers.

Every engine blueprint maps the service exception hierarchy onto the same
JSON error body: ``{"error", "code", "details"}``.
"""

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StageClosedError,
    StaleVersionError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    """Malformed request caught before any service call (HTTP 400)."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


def error_body(message: str, code: str, details: dict | None = None):
    return jsonify({"error": message, "code": code, "details": details or {}})


def tenant_id_from_request(data: dict | None = None) -> int:
    """Tenant id from the JSON body or the ``tenant_id`` query parameter."""
    raw = (data or {}).get("tenant_id", request.args.get("tenant_id"))
    if raw is None or raw == "":
        raise BadRequest("tenant_id is required", {"tenant_id": "required"})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest("tenant_id must be an integer", {"tenant_id": raw}) from None


def int_field(data: dict, key: str, *, required: bool = True):
    raw = data.get(key)
    if raw is None or raw == "":
        if required:
            raise BadRequest(f"{key} is required", {key: "required"})
        return None
    if isinstance(raw, bool):
        raise BadRequest(f"{key} must be an integer", {key: raw})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an integer", {key: raw}) from None


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def register_error_handlers(bp) -> None:
    """Attach the engine's exception → HTTP mapping to ``bp``."""

    @bp.errorhandler(BadRequest)
    def _handle_bad_request(error: BadRequest):
        return error_body(str(error), "bad_request", error.details), 400

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return error_body(f"{error.resource} not found", "not_found"), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return error_body(str(error), "validation_error", error.details), 422

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        code = "conflict"
        details = {"field": error.field}
        if isinstance(error, StaleVersionError):
            code = "stale_version"
            details.update(expected=error.expected, actual=error.actual)
        elif isinstance(error, StageClosedError):
            code = "stage_closed"
            details.update(
                question_stage_id=error.question_stage_id,
                current_stage_id=error.current_stage_id,
            )
        return error_body(str(error), code, details), 409

    @bp.errorhandler(ConfigurationError)
    def _handle_configuration(error: ConfigurationError):
        logger.warning("Stage configuration error on %s: %s", request.endpoint, error)
        return error_body(str(error), "awaiting_manual_resolution", {"rule_ids": error.rule_ids}), 409

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return error_body("Internal server error", "internal_error"), 500
