# Test configuration
import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Make the top-level modules importable without installing the project
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ["LOG_LEVEL"] = "WARNING"

import db_manager  # noqa: E402
from app import create_app  # noqa: E402
from models import db  # noqa: E402


@pytest.fixture
def app():
    """Application backed by a fresh in-memory SQLite database."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    """Push an application context for tests that call db_manager directly."""
    with app.app_context():
        yield


@pytest.fixture
def make_client(ctx):
    def _make(**overrides):
        data = {"name": "Acme Ltd", "email": "billing@acme.example.com",
                "phone": None, "company": None, "notes": None}
        data.update(overrides)
        return db_manager.create_client(data)
    return _make


@pytest.fixture
def make_project(make_client):
    def _make(client=None, **overrides):
        client = client or make_client()
        data = {"title": "Website", "client_id": client.id, "status": "in_progress",
                "description": None, "deadline": None, "amount": None, "notes": None}
        data.update(overrides)
        return db_manager.create_project(data)
    return _make


@pytest.fixture
def make_task(make_project):
    def _make(project=None, **overrides):
        project = project or make_project()
        data = {"title": "Wireframes", "project_id": project.id, "priority": "medium",
                "description": None, "deadline": None, "is_completed": False}
        data.update(overrides)
        return db_manager.create_task(data)
    return _make


@pytest.fixture
def make_payment(make_project):
    def _make(project=None, **overrides):
        project = project or make_project()
        data = {"invoice_number": "INV-001", "project_id": project.id,
                "amount": Decimal("100.00"), "status": "pending",
                "payment_method": None, "due_date": None, "notes": None}
        data.update(overrides)
        return db_manager.create_payment(data)
    return _make
