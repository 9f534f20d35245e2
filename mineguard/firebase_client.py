# mineguard/firebase_client.py
from __future__ import annotations

import os
import threading
from typing import Optional

from google.cloud import firestore
from google.oauth2 import service_account

from . import config as cfg

_DB: Optional[firestore.Client] = None
_DB_LOCK = threading.Lock()


def _find_key_path() -> str:
    """FIREBASE_KEY_PATH, then GOOGLE_APPLICATION_CREDENTIALS, then ./firebase_key.json."""
    for candidate in (cfg.FIREBASE_KEY_PATH, os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")):
        if candidate and os.path.exists(candidate):
            return candidate
    cred_path = os.path.join(os.getcwd(), "firebase_key.json")
    if not os.path.exists(cred_path):
        raise FileNotFoundError(
            f"Firebase credential not found. Set FIREBASE_KEY_PATH or place firebase_key.json at {cred_path}"
        )
    return cred_path


def get_db() -> firestore.Client:
    """
    Returns the process-wide Firestore client. The gRPC transport stays on:
    insert subscriptions use snapshot listeners, which need streaming.
    """
    global _DB
    if _DB is not None:
        return _DB
    with _DB_LOCK:
        if _DB is None:
            key_path = _find_key_path()
            creds = service_account.Credentials.from_service_account_file(
                key_path,
                scopes=["https://www.googleapis.com/auth/cloud-platform"],
            )
            _DB = firestore.Client(project=creds.project_id, credentials=creds)
    return _DB
