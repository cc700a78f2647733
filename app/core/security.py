"""Signed session cookies issued by the auth collaborator."""

import hashlib
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="shadownews-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None
