"""
Shared pytest fixtures for the QAForge test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - fake_gateway: scripted generation client installed on the app
"""

import pytest

from qaforge import create_app
from qaforge.core.exceptions import GenerationError
from qaforge.models import db as _db


PROJECT_ID = "proj-1"


class FakeGateway:
    """Generation client returning queued responses in call order.

    Queue entries are strings (returned as model text) or exceptions
    (raised as GenerationError). An empty queue returns ``default``.
    """

    available_providers = ["local"]
    default_model = "fake"

    def __init__(self):
        self.responses = []
        self.calls = []
        self.default = "[]"

    def queue(self, *responses):
        self.responses.extend(responses)
        return self

    def generate(self, prompt, *, temperature=0.0, max_tokens=1500, purpose="",
                 project_id=None, model=None):
        self.calls.append({
            "prompt": prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "purpose": purpose,
            "project_id": project_id,
        })
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise GenerationError(f"LLM call failed: {response}", cause=str(response))
        return response

    def purposes(self):
        return [c["purpose"] for c in self.calls]


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def fake_gateway(app):
    """Swap the app's generation client for a FakeGateway for one test."""
    original = app.extensions["llm_gateway"]
    gateway = FakeGateway()
    app.extensions["llm_gateway"] = gateway
    yield gateway
    app.extensions["llm_gateway"] = original
