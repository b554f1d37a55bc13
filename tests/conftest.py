import os
import sys
import tempfile

import pytest


# Ensure the repository root (where app.py lives) is on the import path
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


# Use a temporary SQLite database **before** importing the app
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "shift_roster_test.db")
if os.path.exists(TEST_DB_PATH):
    os.remove(TEST_DB_PATH)

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["CACHE_TYPE"] = "NullCache"
os.environ.setdefault("ROSTER_ADMIN_PASSWORD", "bootstrap-password")

import app as roster_app  # noqa: E402  (import after setting DATABASE_URL)
from app import db, Shift, User  # noqa: E402


@pytest.fixture(autouse=True)
def clean_database():
    """Every test starts from empty tables and an empty cache."""
    with roster_app.app.app_context():
        db.session.remove()
        db.drop_all()
        db.create_all()
        roster_app.cache.clear()
    yield
    with roster_app.app.app_context():
        db.session.remove()


@pytest.fixture()
def simple_cache():
    """Memoize the month shift map for real while the test runs."""
    roster_app.cache.init_app(roster_app.app, config={"CACHE_TYPE": "SimpleCache"})
    yield roster_app.cache
    with roster_app.app.app_context():
        roster_app.cache.clear()
    roster_app.cache.init_app(roster_app.app, config={"CACHE_TYPE": "NullCache"})


@pytest.fixture()
def app_ctx():
    with roster_app.app.app_context():
        yield
        db.session.rollback()


@pytest.fixture()
def client():
    roster_app.app.config["TESTING"] = True
    return roster_app.app.test_client()


@pytest.fixture()
def make_user():
    def _make(username, password=None, **kwargs):
        with roster_app.app.app_context():
            user = User(
                username=username,
                full_name=kwargs.pop("full_name", username.title()),
                grade=kwargs.pop("grade", "PP4"),
                **kwargs,
            )
            user.set_password(password or f"{username}-secret")
            db.session.add(user)
            db.session.commit()
            return user
    return _make


@pytest.fixture()
def make_shift():
    def _make(user, day, code, source="auto"):
        with roster_app.app.app_context():
            shift = Shift(user_id=user.id, day=day, shift_code=code, source=source)
            db.session.add(shift)
            db.session.commit()
            return shift
    return _make


def login(client, username, password, follow_redirects=True):
    return client.post(
        "/login",
        data={"username": username, "password": password},
        follow_redirects=follow_redirects,
    )
