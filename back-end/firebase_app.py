"""Firebase Admin app and the shared Firestore client used by every blueprint."""
import os

import firebase_admin
from firebase_admin import credentials, firestore

PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID", "to-do-app-dcdb3")
SERVICE_ACCOUNT_PATH = os.environ.get("FIREBASE_SERVICE_ACCOUNT_PATH", "./serviceAccountKey.json")
USE_EMULATOR = os.environ.get("FIREBASE_USE_EMULATOR", "").lower() in {"1", "true", "yes"}
EMULATOR_HOST = os.environ.get("FIRESTORE_EMULATOR_HOST", "localhost:8080")


def _credential():
    """Service account when one is on disk, otherwise None (application default credentials)."""
    if USE_EMULATOR:
        # the emulator accepts any project without credentials
        os.environ.setdefault("FIRESTORE_EMULATOR_HOST", EMULATOR_HOST)
        return None
    try:
        return credentials.Certificate(SERVICE_ACCOUNT_PATH)
    except (FileNotFoundError, ValueError) as e:
        print(f"[firebase_app] no usable service account at {SERVICE_ACCOUNT_PATH} ({e}), using default credentials")
        return None


def init_app():
    if firebase_admin._apps:
        return firebase_admin.get_app()
    cred = _credential()
    if cred is None:
        return firebase_admin.initialize_app(options={"projectId": PROJECT_ID})
    return firebase_admin.initialize_app(cred)


init_app()
db = firestore.client()
