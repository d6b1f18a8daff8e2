"""
Shared pytest fixtures for the Job Progression Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - pipeline: Five-stage graph with questions and transition rules
    - make_job: Factory creating a job seeded into the initial stage
"""

from datetime import UTC, date, datetime
from types import SimpleNamespace

import pytest

from app import create_app
from app.models import db as _db

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    from app.models.tenant import Tenant
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    from app.models.tenant import Tenant
    return Tenant.query.filter_by(slug="test-default").first()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def pipeline(default_tenant):
    """A small stage graph exercising every rule flavour.

        A  Lead        q_a  yes_no   "Yes" -> B (automatic)
        B  Survey      q_b  number   ">=90" -> C (automatic), "0" -> A (manual)
        C  Build       q_c  yes_no   "Yes" -> D (automatic)
                       q_c2 text     skipped when q_c == "Yes"
        D  Inspection  q_d  yes_no   "No" -> C (manual), "Yes" -> E (automatic)
        E  Handover    terminal (maps_to_status=completed)
    """
    from app.services.stage_config_service import (
        create_question,
        create_stage,
        create_transition_rule,
    )

    tid = default_tenant.id
    stages = {}
    for seq, (key, name, color, status) in enumerate([
        ("a", "1/5 Lead", "#C7D2FE", "planning"),
        ("b", "2/5 Survey", "#93C5FD", "planning"),
        ("c", "3/5 Build", "#FB923C", "active"),
        ("d", "4/5 Inspection", "#F87171", "active"),
        ("e", "5/5 Handover", "#D1D5DB", "completed"),
    ], start=1):
        stages[key] = create_stage(tid, {
            "name": name, "color": color, "sequence_order": seq, "maps_to_status": status,
        }).id

    q_a = create_question(tid, stages["a"], {"question_text": "Lead qualified?", "response_type": "yes_no"}).id
    q_b = create_question(tid, stages["b"], {"question_text": "Survey score?", "response_type": "number"}).id
    q_c = create_question(tid, stages["c"], {"question_text": "Build done?", "response_type": "yes_no"}).id
    q_c2 = create_question(tid, stages["c"], {
        "question_text": "Why is the build late?",
        "response_type": "text",
        "is_required": False,
        "skip_conditions": {"all": [{"question_id": q_c, "operator": "eq", "value": "Yes"}]},
    }).id
    q_d = create_question(tid, stages["d"], {"question_text": "Inspection passed?", "response_type": "yes_no"}).id

    rules = SimpleNamespace(
        a_yes=create_transition_rule(tid, {
            "from_stage_id": stages["a"], "to_stage_id": stages["b"], "trigger_response": "Yes",
            "conditions": {"question_id": q_a},
        }).id,
        b_score=create_transition_rule(tid, {
            "from_stage_id": stages["b"], "to_stage_id": stages["c"], "trigger_response": "pass",
            "conditions": {"question_id": q_b, "condition": ">=90"},
        }).id,
        b_zero=create_transition_rule(tid, {
            "from_stage_id": stages["b"], "to_stage_id": stages["a"], "trigger_response": "0",
            "conditions": {"question_id": q_b, "action": "requalify"}, "is_automatic": False,
        }).id,
        c_yes=create_transition_rule(tid, {
            "from_stage_id": stages["c"], "to_stage_id": stages["d"], "trigger_response": "Yes",
            "conditions": {"question_id": q_c},
        }).id,
        d_no=create_transition_rule(tid, {
            "from_stage_id": stages["d"], "to_stage_id": stages["c"], "trigger_response": "No",
            "conditions": {"question_id": q_d, "action": "rework"}, "is_automatic": False,
        }).id,
        d_yes=create_transition_rule(tid, {
            "from_stage_id": stages["d"], "to_stage_id": stages["e"], "trigger_response": "Yes",
            "conditions": {"question_id": q_d},
        }).id,
    )

    return SimpleNamespace(
        tenant_id=tid,
        q_a=q_a, q_b=q_b, q_c=q_c, q_c2=q_c2, q_d=q_d,
        rules=rules,
        **stages,
    )


@pytest.fixture()
def make_job(pipeline):
    """Factory: create a job in the pipeline tenant, seeded at ``now``."""
    from app.services.progression_service import create_job

    def _make(title="Kitchen remodel", *, start_date=date(2024, 1, 1),
              end_date=date(2024, 3, 31), status="active", now=T0):
        return create_job(pipeline.tenant_id, {
            "title": title,
            "start_date": start_date,
            "end_date": end_date,
            "status": status,
        }, now=now)

    return _make
