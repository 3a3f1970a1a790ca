"""
Shared pytest fixtures for the Feedback Action Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_*: ORM factories for tenants, users, surveys, feedback and actions
    - tenant / other_tenant / company_admin / member: common seeds
    - auth_headers: Bearer header for a user
"""

import itertools
from datetime import datetime, timezone

import pytest

from feedback_actions import create_app
from feedback_actions.models import db as _db
from feedback_actions.models.action import Action
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN, ROLE_MEMBER, Tenant, User
from feedback_actions.models.survey import FeedbackAnalysis, Survey, SurveyResponse
from feedback_actions.services import realtime
from feedback_actions.services.jwt_service import generate_access_token
from feedback_actions.services.scope_guard import ActorScope

_seq = itertools.count(1)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
        realtime.reset_backend()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        realtime.reset_backend()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_tenant():
    def _make(slug=None, is_active=True):
        n = next(_seq)
        t = Tenant(name=f"Tenant {n}", slug=slug or f"tenant-{n}", is_active=is_active)
        _db.session.add(t)
        _db.session.commit()
        return t
    return _make


@pytest.fixture()
def make_user():
    def _make(tenant, role=ROLE_MEMBER, department=None, is_active=True, preferences=None, created_at=None):
        n = next(_seq)
        u = User(
            tenant_id=tenant.id if tenant is not None else None,
            email=f"user{n}@example.com",
            full_name=f"User {n}",
            role=role,
            department=department,
            is_active=is_active,
            notification_preferences=preferences or {},
        )
        if created_at is not None:
            u.created_at = created_at
        _db.session.add(u)
        _db.session.commit()
        return u
    return _make


@pytest.fixture()
def make_survey():
    def _make(tenant, title="Engagement Survey", created_at=None, permissions=None):
        s = Survey(
            tenant_id=tenant.id,
            title=title,
            action_permissions=permissions or {},
            created_at=created_at or datetime.now(timezone.utc),
        )
        _db.session.add(s)
        _db.session.commit()
        return s
    return _make


@pytest.fixture()
def make_feedback():
    def _make(tenant, survey=None, sentiment="neutral", categories=None, summary=None,
              confidence=None, with_response=True):
        response_id = None
        if survey is not None and with_response:
            response = SurveyResponse(tenant_id=tenant.id, survey_id=survey.id)
            _db.session.add(response)
            _db.session.flush()
            response_id = response.id
        f = FeedbackAnalysis(
            tenant_id=tenant.id,
            survey_id=survey.id if survey is not None else None,
            response_id=response_id,
            sentiment=sentiment,
            categories=categories or [],
            summary=summary,
            confidence=confidence,
        )
        _db.session.add(f)
        _db.session.commit()
        return f
    return _make


@pytest.fixture()
def make_action():
    """Insert an Action row directly, bypassing the service layer."""
    def _make(tenant, **fields):
        fields.setdefault("title", "Review onboarding flow")
        fields.setdefault("description", "Review onboarding flow for new hires")
        fields.setdefault("priority", "medium")
        fields.setdefault("status", "pending")
        a = Action(tenant_id=tenant.id, **fields)
        _db.session.add(a)
        _db.session.commit()
        return a
    return _make


# ── Common seeds ─────────────────────────────────────────────────────────


@pytest.fixture()
def tenant(make_tenant):
    return make_tenant("acme")


@pytest.fixture()
def other_tenant(make_tenant):
    return make_tenant("globex")


@pytest.fixture()
def company_admin(make_user, tenant):
    return make_user(tenant, role=ROLE_COMPANY_ADMIN, department="HR")


@pytest.fixture()
def member(make_user, tenant):
    return make_user(tenant, role=ROLE_MEMBER, department="Ops")


def scope_of(user):
    """ActorScope for a user row, as the tenant-context middleware builds it."""
    return ActorScope(user_id=user.id, tenant_id=user.tenant_id, role=user.role, department=user.department)


@pytest.fixture()
def actor_for():
    return scope_of


@pytest.fixture()
def auth_headers():
    def _headers(user):
        token = generate_access_token(user.id, user.tenant_id, user.role, user.department)
        return {"Authorization": f"Bearer {token}"}
    return _headers
