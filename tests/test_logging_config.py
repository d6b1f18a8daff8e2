"""
Tests for structured logging formatters.

Covers:
  - JSON output carries tenant/job context passed through ``extra``
  - Readable output tags records with [t= job=]
  - Records without context stay untagged
"""

import json
import logging

from app.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(msg="Response recorded", **extra):
    record = logging.LogRecord(
        name="app.services.progression_service", level=logging.INFO,
        pathname=__file__, lineno=1, msg=msg, args=(), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_context_fields(self):
        payload = json.loads(JSONFormatter().format(_record(tenant_id=3, job_id=42)))
        assert payload["message"] == "Response recorded"
        assert payload["level"] == "INFO"
        assert payload["tenant_id"] == 3
        assert payload["job_id"] == 42
        assert "stage_id" not in payload
        assert payload["timestamp"].endswith("+00:00")


class TestReadableFormatter:
    def test_scope_tag(self):
        line = ReadableFormatter().format(_record(tenant_id=3, job_id=42))
        assert "[t=3 job=42]" in line

    def test_tenant_only(self):
        line = ReadableFormatter().format(_record(tenant_id=3))
        assert "[t=3]" in line

    def test_no_context(self):
        line = ReadableFormatter().format(_record())
        assert "[t=" not in line
        assert "Response recorded" in line
