"""
Tests for app/services/helpers/scoped_queries.py

These tests are security-critical: they verify the tenant isolation helper
behaves correctly under adversarial conditions.

Scenarios covered:
  1. ValueError when called with no scope parameter at all
  2. ValueError when the provided scope field does not exist on the model
  3. NotFoundError when PK is correct but scope (tenant) does not match
  4. Correct entity returned when PK + scope both match
  5. get_scoped_or_none returns None instead of raising NotFoundError
  6. get_scoped_or_none still raises ValueError for missing/invalid scope
  7. Tenant A cannot see Tenant B's jobs (core isolation guarantee)

Test isolation strategy:
  Relies on the autouse `session` fixture from conftest.py which rolls back
  and recreates tables after every test. Each test creates its own data.
"""

import pytest

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.job import Job, StageResponse
from app.models.stage import Stage
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none


# ── Test helpers ─────────────────────────────────────────────────────────────


def _make_tenant(*, name: str = "Test Tenant", slug: str = "test-tenant"):
    """Create and flush a minimal Tenant record.

    Slug must be unique per test: within a single test that creates
    multiple tenants, distinct slugs are required.
    """
    from app.models.tenant import Tenant

    tenant = Tenant(name=name, slug=slug)
    db.session.add(tenant)
    db.session.flush()
    return tenant


def _make_job(*, tenant_id: int, title: str = "Test Job"):
    """Create and flush a minimal Job scoped to the given tenant (no stage)."""
    job = Job(tenant_id=tenant_id, title=title)
    db.session.add(job)
    db.session.flush()
    return job


# ── 1. ValueError: no scope provided ────────────────────────────────────────


class TestGetScopedRequiresAtLeastOneScope:
    """get_scoped must refuse to execute when no scope argument is given."""

    def test_get_scoped_without_scope_raises_value_error(self):
        """No scope → ValueError. Fail-loud prevents accidental unscoped lookups."""
        with pytest.raises(ValueError, match="requires at least one scope filter"):
            get_scoped(Job, 999)

    def test_error_message_includes_model_name(self):
        with pytest.raises(ValueError, match="Job"):
            get_scoped(Job, 1)

    def test_all_scope_kwargs_none_is_equivalent_to_no_scope(self):
        with pytest.raises(ValueError):
            get_scoped(Job, 1, tenant_id=None, job_id=None, stage_id=None)


# ── 2. ValueError: scope field absent from model ────────────────────────────


class TestGetScopedRejectsInvalidScopeField:
    """A scope kwarg naming a column the model lacks cannot be applied.

    Silently ignoring it would produce an unscoped query, so get_scoped
    raises ValueError instead.
    """

    def test_scope_field_not_on_model_raises_value_error(self):
        """Job has current_stage_id, not stage_id → ValueError."""
        with pytest.raises(ValueError, match="none of the scope fields"):
            get_scoped(Job, 1, stage_id=99)

    def test_error_message_lists_missing_fields(self):
        with pytest.raises(ValueError, match="job_id"):
            get_scoped(Stage, 1, job_id=99)


# ── 3. NotFoundError: wrong scope (cross-tenant access) ─────────────────────


class TestGetScopedWrongScopeRaisesNotFound:
    """Accessing an entity with a mismatched scope MUST raise NotFoundError.

    Callers cannot distinguish 'does not exist' from 'exists but belongs to
    another tenant'. Both produce NotFoundError → 404.
    """

    def test_wrong_tenant_id_raises_not_found(self):
        tenant_a = _make_tenant(name="Company A", slug="company-a")
        tenant_b = _make_tenant(name="Company B", slug="company-b")
        job = _make_job(tenant_id=tenant_a.id, title="A's Job")

        with pytest.raises(NotFoundError):
            get_scoped(Job, job.id, tenant_id=tenant_b.id)

    def test_nonexistent_pk_raises_not_found(self):
        tenant = _make_tenant()
        with pytest.raises(NotFoundError):
            get_scoped(Job, 999_999, tenant_id=tenant.id)

    def test_none_pk_raises_not_found(self):
        tenant = _make_tenant()
        with pytest.raises(NotFoundError):
            get_scoped(Stage, None, tenant_id=tenant.id)

    def test_not_found_error_carries_resource_name(self):
        tenant = _make_tenant()
        with pytest.raises(NotFoundError) as exc_info:
            get_scoped(Job, 999_999, tenant_id=tenant.id)
        assert exc_info.value.resource == "Job"
        assert exc_info.value.resource_id == 999_999


# ── 4. Success: correct PK + scope ─────────────────────────────────────────


class TestGetScopedReturnsEntity:
    def test_returns_matching_job(self):
        tenant = _make_tenant()
        job = _make_job(tenant_id=tenant.id, title="Mine")
        found = get_scoped(Job, job.id, tenant_id=tenant.id)
        assert found.id == job.id
        assert found.title == "Mine"

    def test_multiple_scopes_all_applied(self, pipeline, make_job):
        """job_id and stage_id are both applied to StageResponse lookups."""
        from app.services.progression_service import submit_response

        job = make_job()
        outcome = submit_response(pipeline.tenant_id, job.id, pipeline.q_a, "No", "u-1")
        response_id = outcome.response["id"]

        found = get_scoped(StageResponse, response_id, job_id=job.id, stage_id=pipeline.a)
        assert found.response_value == "No"
        with pytest.raises(NotFoundError):
            get_scoped(StageResponse, response_id, job_id=job.id, stage_id=pipeline.b)


# ── 5/6. get_scoped_or_none ─────────────────────────────────────────────────


class TestGetScopedOrNone:
    def test_returns_none_on_wrong_scope(self):
        tenant_a = _make_tenant(name="Company A", slug="company-a")
        tenant_b = _make_tenant(name="Company B", slug="company-b")
        job = _make_job(tenant_id=tenant_a.id)
        assert get_scoped_or_none(Job, job.id, tenant_id=tenant_b.id) is None

    def test_returns_entity_on_match(self):
        tenant = _make_tenant()
        job = _make_job(tenant_id=tenant.id)
        assert get_scoped_or_none(Job, job.id, tenant_id=tenant.id).id == job.id

    def test_still_raises_value_error_without_scope(self):
        with pytest.raises(ValueError):
            get_scoped_or_none(Job, 1)


# ── 7. Isolation end to end ─────────────────────────────────────────────────


class TestTenantIsolation:
    def test_tenant_cannot_read_other_tenants_stage(self):
        tenant_a = _make_tenant(name="Company A", slug="company-a")
        tenant_b = _make_tenant(name="Company B", slug="company-b")
        stage = Stage(tenant_id=tenant_a.id, name="Lead", sequence_order=1)
        db.session.add(stage)
        db.session.flush()

        assert get_scoped(Stage, stage.id, tenant_id=tenant_a.id).name == "Lead"
        with pytest.raises(NotFoundError):
            get_scoped(Stage, stage.id, tenant_id=tenant_b.id)
