"""
Pytest configuration and fixtures.
"""
from datetime import datetime

import pytest

from app import create_app
from extensions import db
from models import Department, User

PASSWORD = "Str0ng-Passw0rd!"
CENTRAL = {"lat": 40.7550, "lng": -74.0100, "address": "14 Main Street"}


@pytest.fixture
def app(tmp_path):
    """
    Application bound to a file-backed SQLite database so that separate
    sessions really do see each other's commits.
    """
    app = create_app(
        "testing",
        overrides={
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'issues.db'}",
            "LOG_DIR": str(tmp_path / "logs"),
        },
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def app_ctx(app):
    """Pushed application context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def now():
    return datetime(2024, 5, 14, 9, 30, 0)


@pytest.fixture
def department_id(app):
    def _department_id(code: str) -> str:
        with app.app_context():
            return Department.query.filter_by(code=code).one().id

    return _department_id


@pytest.fixture
def make_user(app):
    """Create an account in its own context and return its id."""

    def _make_user(username, role="authority", department_code=None, ward_area=None, password=PASSWORD):
        with app.app_context():
            department = Department.query.filter_by(code=department_code).one() if department_code else None
            user = User(
                username=username,
                full_name=username.title(),
                role=role,
                department_id=department.id if department else None,
                ward_area=ward_area,
            )
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            return user.id

    return _make_user


@pytest.fixture
def login():
    def _login(client, username, password=PASSWORD):
        response = client.post("/auth/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.get_json()
        return response

    return _login


@pytest.fixture
def submission():
    def _build(**overrides):
        payload = {
            "category": "garbage",
            "title": "Overflowing bin",
            "description": "Bin has not been emptied for a week",
            "location": dict(CENTRAL),
            "images": ["https://images.example.org/report-1.jpg"],
            "citizen_name": "Asha Rao",
            "citizen_email": "asha@example.org",
        }
        payload.update(overrides)
        return payload

    return _build


@pytest.fixture
def classifier_returning():
    """Stand-in vision classifier returning a fixed verdict and recording its calls."""

    def _factory(category, confidence, explanation="Visible in the submitted photo"):
        calls = []

        def _classify(images, citizen_category):
            calls.append((list(images), citizen_category))
            return {"category": category, "confidence": confidence, "explanation": explanation}

        _classify.calls = calls
        return _classify

    return _factory
