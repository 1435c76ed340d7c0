"""
Tests for fcm_token.py
Permission handling, token retrieval with retries, and token persistence.
"""
import pytest

import fcm_token  # noqa: E402
from conftest import seed_user  # noqa: E402


class FakeProvider:
    """TokenProvider double with scripted permission and tokens"""

    def __init__(self, permission="granted", tokens=("tok-1",), grant_on_request=True):
        self._permission = permission
        self._tokens = list(tokens)
        self.grant_on_request = grant_on_request
        self.requests = 0
        self.refresh_callback = None

    def permission(self):
        return self._permission

    def request_permission(self):
        self.requests += 1
        if self.grant_on_request:
            self._permission = "granted"
        else:
            self._permission = "denied"
        return self._permission

    def get_token(self, vapid_key):
        if not self._tokens:
            return None
        token = self._tokens.pop(0)
        if isinstance(token, Exception):
            raise token
        return token

    def on_token_refresh(self, callback):
        self.refresh_callback = callback


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(fcm_token.time, "sleep", sleeps.append)
    return sleeps


class TestPermission:
    """Test request_notification_permission"""

    def test_granted(self):
        assert fcm_token.request_notification_permission(FakeProvider()) is True

    def test_default_prompts(self):
        provider = FakeProvider(permission="default")
        assert fcm_token.request_notification_permission(provider) is True
        assert provider.requests == 1

    def test_unsupported_platform(self):
        assert fcm_token.request_notification_permission(None) is False
        assert fcm_token.request_notification_permission(FakeProvider(permission="unsupported")) is False

    def test_denied_shows_advisory_once(self):
        shown = []
        advisory = fcm_token.PermissionAdvisory(show=shown.append)
        provider = FakeProvider(permission="denied")
        assert fcm_token.request_notification_permission(provider, advisory) is False
        assert fcm_token.request_notification_permission(provider, advisory) is False
        assert shown == [fcm_token.DENIED_HELP]
        assert provider.requests == 0


class TestGetToken:
    """Test get_fcm_token"""

    def test_returns_token(self):
        assert fcm_token.get_fcm_token(FakeProvider()) == "tok-1"

    def test_provider_error_returns_none(self):
        assert fcm_token.get_fcm_token(FakeProvider(tokens=[RuntimeError("no push service")])) is None

    def test_denied_returns_none(self):
        assert fcm_token.get_fcm_token(FakeProvider(permission="denied")) is None


class TestSaveToken:
    """Test save_fcm_token_to_firestore and clear_fcm_token"""

    def test_updates_existing_user(self, fake_db):
        seed_user(fake_db, "u1")
        assert fcm_token.save_fcm_token_to_firestore("u1", "tok") is True
        stored = fake_db.docs("users")["u1"]
        assert stored["fcmToken"] == "tok"
        assert stored["email"] == "u1@example.com"
        assert ("update", "users/u1") in fake_db.writes

    def test_creates_missing_user(self, fake_db):
        assert fcm_token.save_fcm_token_to_firestore("u1", "tok") is True
        assert ("set", "users/u1") in fake_db.writes

    def test_missing_arguments(self, fake_db):
        assert fcm_token.save_fcm_token_to_firestore("", "tok") is False
        assert fcm_token.save_fcm_token_to_firestore("u1", "") is False
        assert fake_db.writes == []

    def test_write_failure(self, fake_db):
        fake_db.fail_writes = True
        assert fcm_token.save_fcm_token_to_firestore("u1", "tok") is False

    def test_clear_token(self, fake_db):
        seed_user(fake_db, "u1", token="tok")
        assert fcm_token.clear_fcm_token("u1") is True
        assert fake_db.docs("users")["u1"]["fcmToken"] is None
        assert fcm_token.clear_fcm_token("ghost") is False


class TestInitialize:
    """Test initialize_fcm_token and on_token_refresh"""

    def test_saves_on_first_attempt(self, fake_db, no_sleep):
        assert fcm_token.initialize_fcm_token("u1", FakeProvider()) is True
        assert fake_db.docs("users")["u1"]["fcmToken"] == "tok-1"
        assert no_sleep == []

    def test_retries_with_backoff(self, fake_db, no_sleep):
        provider = FakeProvider(tokens=[None, RuntimeError("flaky"), "tok-3"])
        assert fcm_token.initialize_fcm_token("u1", provider, delay=0.5) is True
        assert no_sleep == [0.5, 1.0]
        assert fake_db.docs("users")["u1"]["fcmToken"] == "tok-3"

    def test_gives_up_after_retries(self, fake_db, no_sleep):
        assert fcm_token.initialize_fcm_token("u1", FakeProvider(tokens=[]), retries=3) is False
        assert len(no_sleep) == 2
        assert fake_db.docs("users") == {}

    def test_denied_stops_immediately(self, fake_db, no_sleep):
        provider = FakeProvider(permission="default", grant_on_request=False)
        assert fcm_token.initialize_fcm_token("u1", provider) is False
        assert no_sleep == []

    def test_requires_uid(self, fake_db):
        assert fcm_token.initialize_fcm_token("", FakeProvider()) is False

    def test_refresh_saves_new_token(self, fake_db):
        provider = FakeProvider(tokens=["rotated"])
        fcm_token.on_token_refresh("u1", provider)
        provider.refresh_callback()
        assert fake_db.docs("users")["u1"]["fcmToken"] == "rotated"
