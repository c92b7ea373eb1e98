"""Firebase Admin bootstrap for the account store.

Credentials are taken from the first configured source, in order: a base64
service-account JSON, a raw JSON string, a file path, then Application
Default Credentials.
"""
import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import credentials, firestore


logger = logging.getLogger(__name__)

_CREDENTIAL_SOURCES = (
    ("json_b64", "FIREBASE_SERVICE_ACCOUNT_JSON_B64"),
    ("json", "FIREBASE_SERVICE_ACCOUNT_JSON"),
    ("path", "FIREBASE_SERVICE_ACCOUNT_PATH"),
    ("adc", "GOOGLE_APPLICATION_CREDENTIALS"),
)


def credential_source() -> str:
    for source, env_name in _CREDENTIAL_SOURCES:
        if (os.getenv(env_name) or "").strip():
            return source
    return "none"


def firebase_credentials_available() -> bool:
    return credential_source() != "none"


def _project_id() -> Optional[str]:
    return os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or None


def _service_account_credentials(source: str):
    if source == "json_b64":
        raw = os.environ["FIREBASE_SERVICE_ACCOUNT_JSON_B64"]
        try:
            info = json.loads(base64.b64decode(raw).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("FIREBASE_SERVICE_ACCOUNT_JSON_B64 is not valid base64 JSON") from exc
        return credentials.Certificate(info)
    if source == "json":
        try:
            info = json.loads(os.environ["FIREBASE_SERVICE_ACCOUNT_JSON"])
        except json.JSONDecodeError as exc:
            raise ValueError("FIREBASE_SERVICE_ACCOUNT_JSON is not valid JSON") from exc
        return credentials.Certificate(info)
    if source == "path":
        return credentials.Certificate(os.environ["FIREBASE_SERVICE_ACCOUNT_PATH"])
    return credentials.ApplicationDefault()


def firebase_app() -> firebase_admin.App:
    """Return the default Firebase app, initialising it on first use."""
    if firebase_admin._apps:
        return firebase_admin.get_app()

    source = credential_source()
    project_id = _project_id()
    logger.info("[Firebase] Initialising app (credentials=%s, project=%s)", source, project_id or "-")
    options = {"projectId": project_id} if project_id else None
    return firebase_admin.initialize_app(_service_account_credentials(source), options)


def get_firestore_client():
    return firestore.client(app=firebase_app())


def firebase_status() -> Dict[str, Any]:
    return {
        "credential_source": credential_source(),
        "project_id": _project_id(),
        "initialized": bool(firebase_admin._apps),
    }
