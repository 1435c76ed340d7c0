"""
Global test configuration and fixtures
"""
import os
import sys
import types

import pytest

# Add the back-end directory to the Python path
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)
TESTS_DIR = os.path.abspath(os.path.dirname(__file__))
if TESTS_DIR not in sys.path:
    sys.path.insert(0, TESTS_DIR)

from fake_firestore import FakeFirestore  # noqa: E402

# Replace firebase_app before any module does `from firebase_app import db`,
# so importing the app never initialises a real Firebase Admin app
_fake_firebase_app = types.ModuleType("firebase_app")
_fake_firebase_app.db = FakeFirestore()
sys.modules["firebase_app"] = _fake_firebase_app

DB_MODULES = ("notifications", "unread", "push", "tasks", "users", "fcm_token", "foreground", "diagnostics")


@pytest.fixture
def fake_db(monkeypatch):
    """Fresh FakeFirestore patched into every module that holds a db reference"""
    import importlib

    db = FakeFirestore()
    for name in DB_MODULES:
        module = importlib.import_module(name)
        monkeypatch.setattr(module, "db", db)
    return db


@pytest.fixture
def app(fake_db):
    """Create Flask app for testing"""
    from app import app as flask_app
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create test client"""
    with app.test_client() as c:
        yield c


def seed_project(db, project_id="p1", name="Alpha", users=("creator", "u2")):
    db.collection("projects").document(project_id).set({"name": name, "users": list(users)})


def seed_user(db, uid, token=None, email=None):
    data = {"email": email or f"{uid}@example.com"}
    if token:
        data["fcmToken"] = token
    db.collection("users").document(uid).set(data)


def batch_response(success, failure=0):
    """Stand-in for messaging.BatchResponse"""
    responses = [types.SimpleNamespace(success=True, exception=None) for _ in range(success)]
    responses += [types.SimpleNamespace(success=False, exception=Exception("invalid token")) for _ in range(failure)]
    return types.SimpleNamespace(success_count=success, failure_count=failure, responses=responses)
