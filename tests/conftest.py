"""
Shared pytest fixtures for the Capacity Insights test suite.

The Flask app is built once (``create_app("testing")``, SQLite in-memory).
Every test runs inside a pushed app context against freshly created tables
holding one seeded tenant; test-client requests reuse that context and so
see the same ``db.session``.

Fixtures:
    app, client       Flask application / test client
    default_tenant    the seeded "test-default" tenant
    auth_headers      ``auth_headers(tenant_id, role="planer")`` → Bearer header
"""

import pytest

from capacity_insights import create_app
from capacity_insights.models import db as _db
from capacity_insights.models.auth import Tenant

DEFAULT_TENANT_SLUG = "test-default"


def _seed_default_tenant():
    if Tenant.query.filter_by(slug=DEFAULT_TENANT_SLUG).first() is None:
        _db.session.add(Tenant(name="Test Default", slug=DEFAULT_TENANT_SLUG))
        _db.session.commit()


@pytest.fixture(scope="session")
def app():
    return create_app("testing")


@pytest.fixture(scope="session")
def _schema(app):
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _schema):
    """Per-test app context; tables are rebuilt afterwards so tests never share rows."""
    with app.app_context():
        _seed_default_tenant()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def default_tenant():
    return Tenant.query.filter_by(slug=DEFAULT_TENANT_SLUG).one()


@pytest.fixture()
def auth_headers():
    from capacity_insights.services.jwt_service import AccessClaims, issue_access_token

    def _build(tenant_id, role="planer", user_id=1):
        token = issue_access_token(AccessClaims(user_id=str(user_id), tenant_id=tenant_id,
                                                roles=(role,)))
        return {"Authorization": f"Bearer {token}"}
    return _build
