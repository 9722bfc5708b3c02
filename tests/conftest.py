"""
Shared fixtures: an in-memory MongoDB (mongomock) wired into the app through
the `get_db` dependency, plus signed-in tutors and students.
"""

from datetime import date, datetime, time, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password, issue_session
from database import create_document, ensure_indexes, get_db
from main import app
from schemas import User


@pytest.fixture
def mock_db():
    database = mongomock.MongoClient()["course_correct_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(mock_db):
    app.dependency_overrides[get_db] = lambda: mock_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(mock_db):
    """Create a user with a live session; returns an object with id and headers."""

    class Account:
        def __init__(self, user_id, token, name):
            self.id = user_id
            self.name = name
            self.headers = {"Authorization": f"Bearer {token}"}

    def _make(role, name=None, subjects=None):
        name = name or f"{role.title()} {mock_db['user'].count_documents({}) + 1}"
        user = User(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            password_hash=hash_password("secret123"),
            role=role,
            subjects=subjects or [],
        )
        user_id = create_document(mock_db, "user", user)
        token = issue_session(mock_db, {"_id": user_id})
        return Account(user_id, token, name)

    return _make


@pytest.fixture
def tutor(make_user):
    return make_user("tutor", name="Ada Tutor", subjects=["Math", "Physics"])


@pytest.fixture
def other_tutor(make_user):
    return make_user("tutor", name="Grace Tutor", subjects=["Chemistry"])


@pytest.fixture
def student(make_user):
    return make_user("student", name="Sam Student")


@pytest.fixture
def other_student(make_user):
    return make_user("student", name="Riley Student")


@pytest.fixture
def monday():
    """A Monday comfortably in the future."""
    day = date.today() + timedelta(days=14)
    return day + timedelta(days=(7 - day.weekday()) % 7)


@pytest.fixture
def at(monday):
    def _at(hour, minute=0, day=None):
        return datetime.combine(day or monday, time(hour, minute))

    return _at
