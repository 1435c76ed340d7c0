"""
FCM token registration: permission, token retrieval, storage on users/{uid}.

Token retrieval is platform specific (browser push subscription, desktop agent
enrolment, ...) so it goes through a TokenProvider. Everything that talks to
Firestore or decides what to do on denied permission lives here.
"""
import os
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from firebase_app import db

VAPID_KEY = os.environ.get("FCM_VAPID_KEY")

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_DEFAULT = "default"
PERMISSION_UNSUPPORTED = "unsupported"

DENIED_HELP = (
    "Notifications are blocked. To receive push alerts: click the lock icon in "
    "the address bar, open Site settings, set Notifications to Allow, then "
    "reload and sign in again."
)


class TokenProvider(Protocol):
    def permission(self) -> str: ...
    def request_permission(self) -> str: ...
    def get_token(self, vapid_key: Optional[str]) -> Optional[str]: ...
    def on_token_refresh(self, callback: Callable[[], None]) -> None: ...


class PermissionAdvisory:
    """Shows the re-enable instructions once per session, not on every call."""

    def __init__(self, show: Callable[[str], None] = print):
        self._show = show
        self.shown = False

    def notify_denied(self):
        if self.shown:
            return
        self.shown = True
        try:
            self._show(DENIED_HELP)
        except Exception as e:
            print(f"[fcm_token] advisory display error: {e}")


def request_notification_permission(provider: Optional[TokenProvider], advisory: Optional[PermissionAdvisory] = None) -> bool:
    if provider is None:
        print("[fcm_token] notifications not supported on this platform")
        return False
    state = provider.permission()
    if state == PERMISSION_GRANTED:
        return True
    if state == PERMISSION_UNSUPPORTED:
        print("[fcm_token] notifications not supported on this platform")
        return False
    if state == PERMISSION_DENIED:
        print("[fcm_token] notification permission denied")
        if advisory:
            advisory.notify_denied()
        return False
    return provider.request_permission() == PERMISSION_GRANTED


def get_fcm_token(provider: Optional[TokenProvider], advisory: Optional[PermissionAdvisory] = None) -> Optional[str]:
    try:
        if not request_notification_permission(provider, advisory):
            print("[fcm_token] notification permission not granted")
            return None
        token = provider.get_token(VAPID_KEY)
    except Exception as e:
        print(f"[fcm_token] error getting FCM token: {e}")
        return None
    if not token:
        print("[fcm_token] no FCM token available")
        return None
    print(f"[fcm_token] token obtained: {token[:20]}...")
    return token


def save_fcm_token_to_firestore(user_uid: str, token: str) -> bool:
    """Write fcmToken + fcmTokenUpdatedAt, creating the user doc if missing."""
    if not user_uid or not token:
        print("[fcm_token] user UID or token missing")
        return False
    payload = {
        "fcmToken": token,
        "fcmTokenUpdatedAt": datetime.now(timezone.utc).isoformat(),
    }
    try:
        user_ref = db.collection("users").document(user_uid)
        if user_ref.get().exists:
            user_ref.update(payload)
            print(f"[fcm_token] token saved to user {user_uid}")
        else:
            user_ref.set(payload)
            print(f"[fcm_token] token saved to new user document {user_uid}")
    except Exception as e:
        print(f"[fcm_token] error saving FCM token for {user_uid}: {e}")
        return False
    return True


def clear_fcm_token(user_uid: str) -> bool:
    try:
        user_ref = db.collection("users").document(user_uid)
        if not user_ref.get().exists:
            return False
        user_ref.update({"fcmToken": None, "fcmTokenUpdatedAt": datetime.now(timezone.utc).isoformat()})
    except Exception as e:
        print(f"[fcm_token] error clearing FCM token for {user_uid}: {e}")
        return False
    return True


def initialize_fcm_token(
    user_uid: str,
    provider: Optional[TokenProvider],
    advisory: Optional[PermissionAdvisory] = None,
    retries: int = 3,
    delay: float = 1.0,
) -> bool:
    """Call on login. Retries token retrieval with a linear backoff."""
    if not user_uid:
        print("[fcm_token] user UID not provided")
        return False
    for attempt in range(1, retries + 1):
        print(f"[fcm_token] initialization attempt {attempt}/{retries}")
        token = get_fcm_token(provider, advisory)
        if token:
            return save_fcm_token_to_firestore(user_uid, token)
        if provider is None or provider.permission() in (PERMISSION_DENIED, PERMISSION_UNSUPPORTED):
            break
        if attempt < retries:
            time.sleep(delay * attempt)
    print(f"[fcm_token] could not obtain FCM token for {user_uid}")
    return False


def on_token_refresh(user_uid: str, provider: Optional[TokenProvider]):
    """Re-save the token whenever the push service rotates it."""
    if provider is None:
        return

    def refreshed():
        token = get_fcm_token(provider)
        if token and user_uid:
            if save_fcm_token_to_firestore(user_uid, token):
                print("[fcm_token] token refreshed and saved")

    try:
        provider.on_token_refresh(refreshed)
    except Exception as e:
        print(f"[fcm_token] error setting up token refresh listener: {e}")
