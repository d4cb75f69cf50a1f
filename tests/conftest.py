"""
Shared pytest fixtures for the Procurement Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant, requester / approver, ctx / approver_ctx
    - rfp, workflow (3 stages: 24h, 48h, 24h)
    - submission, criterion (scale 1..5), evaluators (three users)
    - auth_headers: builds gateway identity headers for API tests
    - captured_events: records every approval.* event emitted during a test
"""

import pytest

from procurement import create_app
from procurement.core.context import RequestContext
from procurement.models import db as _db
from procurement.models.auth import Tenant, User
from procurement.models.rfp import RFP, RubricCriterion, Submission
from procurement.services import events
from procurement.services.workflow_registry import create_workflow


THREE_STAGES = [
    {"name": "Draft Review", "approverRole": "procurement_manager", "slaHours": 24, "order": 1},
    {"name": "Legal Review", "approverRole": "legal_counsel", "slaHours": 48, "order": 2},
    {"name": "Publish Approval", "approverRole": "procurement_director", "slaHours": 24, "order": 3},
]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Start from empty tables (the factory seeds scheduled jobs), drop at end."""
    with app.app_context():
        _db.drop_all()
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity fixtures ────────────────────────────────────────────────────


def _make_user(tenant, email, full_name=None, is_active=True):
    user = User(tenant_id=tenant.id, email=email, full_name=full_name or email, is_active=is_active)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def tenant():
    t = Tenant(name="Acme Corp", slug="acme")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def other_tenant():
    t = Tenant(name="Globex", slug="globex")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def requester(tenant):
    return _make_user(tenant, "buyer@acme.test", "Bea Buyer")


@pytest.fixture()
def approver(tenant):
    return _make_user(tenant, "approver@acme.test", "Alex Approver")


@pytest.fixture()
def ctx(tenant, requester):
    return RequestContext(tenant_id=tenant.id, user_id=requester.id, roles=("procurement_manager",))


@pytest.fixture()
def approver_ctx(tenant, approver):
    return RequestContext(tenant_id=tenant.id, user_id=approver.id, roles=("legal_counsel",))


@pytest.fixture()
def auth_headers():
    """Return a builder for gateway identity headers."""

    def _build(tenant_id, user_id=None, roles=()):
        headers = {"X-Tenant-ID": str(tenant_id)}
        if user_id is not None:
            headers["X-User-ID"] = str(user_id)
        if roles:
            headers["X-User-Roles"] = ",".join(roles)
        return headers

    return _build


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def rfp(tenant):
    r = RFP(tenant_id=tenant.id, title="Office Furniture 2026", status="draft")
    _db.session.add(r)
    _db.session.commit()
    return r


@pytest.fixture()
def workflow(ctx):
    return create_workflow(ctx, "Three Stage Review", "test workflow", [dict(s) for s in THREE_STAGES])


@pytest.fixture()
def submission(rfp):
    s = Submission(rfp_id=rfp.id, vendor_name="Vendor One")
    _db.session.add(s)
    _db.session.commit()
    return s


@pytest.fixture()
def criterion(rfp):
    c = RubricCriterion(rfp_id=rfp.id, label="Technical fit", weight=1.0, scale_min=1, scale_max=5)
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def evaluators(tenant):
    return [
        _make_user(tenant, f"evaluator{i}@acme.test", f"Evaluator {i}")
        for i in range(1, 4)
    ]


@pytest.fixture()
def captured_events():
    """Subscribe a recorder to every approval event for the duration of one test."""
    captured = []

    def _record(event):
        captured.append(event)

    for name in events.EVENT_NAMES:
        events.subscribe(name)(_record)
    yield captured
    for name in events.EVENT_NAMES:
        events.unsubscribe(name, _record)
