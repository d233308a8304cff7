"""Firebase Admin initialization and Firestore client access."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import firebase_admin
from firebase_admin import auth, credentials, firestore

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

_app: firebase_admin.App | None = None


def _get_credentials(settings: Settings):
    """Get Firebase credentials from a service account key path or inline JSON."""
    key = settings.firebase_service_account_key
    if not key:
        return None

    path = Path(key).expanduser()
    if path.exists():
        return credentials.Certificate(str(path))

    try:
        key_data = json.loads(key)
    except json.JSONDecodeError:
        raise ValueError("FIREBASE_SERVICE_ACCOUNT_KEY is neither a file path nor JSON") from None
    return credentials.Certificate(key_data)


def _initialize_firebase(settings: Settings) -> firebase_admin.App:
    global _app
    if _app is not None:
        return _app

    if firebase_admin._apps:
        _app = firebase_admin.get_app()
        return _app

    cred = _get_credentials(settings)
    if cred:
        _app = firebase_admin.initialize_app(cred)
    else:
        # Application default credentials
        _app = firebase_admin.initialize_app()
    logger.info("Initialized Firebase app %s", _app.name)
    return _app


def get_firestore_client(settings: Settings | None = None):
    """Get a Firestore client."""
    settings = settings or get_settings()
    _initialize_firebase(settings)
    return firestore.client()


def verify_id_token(id_token: str, settings: Settings | None = None) -> dict:
    """Verify a Firebase ID token and return its decoded claims."""
    settings = settings or get_settings()
    _initialize_firebase(settings)
    return auth.verify_id_token(id_token)
