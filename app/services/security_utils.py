from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

PBKDF2_ALGORITHM = "sha256"
PBKDF2_ITERATIONS = 390_000
PBKDF2_SALT_BYTES = 16
OAUTH_STATE_TOKEN_TYPE = "google_calendar_oauth_state"


def hash_password(password: str) -> str:
    password_bytes = password.encode("utf-8")
    salt = os.urandom(PBKDF2_SALT_BYTES)
    digest = hashlib.pbkdf2_hmac(
        PBKDF2_ALGORITHM,
        password_bytes,
        salt,
        PBKDF2_ITERATIONS,
    )
    return (
        "pbkdf2_sha256"
        f"${PBKDF2_ITERATIONS}"
        f"${_b64url_encode(salt)}"
        f"${_b64url_encode(digest)}"
    )


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        algorithm, raw_iterations, raw_salt, raw_digest = stored_hash.split("$", maxsplit=3)
    except ValueError:
        return False

    if algorithm != "pbkdf2_sha256":
        return False

    try:
        iterations = int(raw_iterations)
        salt = _b64url_decode(raw_salt)
        expected_digest = _b64url_decode(raw_digest)
    except (ValueError, TypeError):
        return False

    actual_digest = hashlib.pbkdf2_hmac(
        PBKDF2_ALGORITHM,
        password.encode("utf-8"),
        salt,
        iterations,
    )
    return hmac.compare_digest(actual_digest, expected_digest)


def create_access_token(
    *,
    claims: dict[str, Any],
    secret_key: str,
    ttl_minutes: int,
    issued_at: datetime | None = None,
) -> tuple[str, int]:
    issued_at = issued_at or datetime.now(UTC)
    expires_at = issued_at + timedelta(minutes=ttl_minutes)

    payload = {
        **claims,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = _sign_payload(payload, secret_key)
    expires_in_seconds = max(int((expires_at - issued_at).total_seconds()), 0)
    return token, expires_in_seconds


def decode_access_token(
    token: str,
    secret_key: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    payload = _verify_signed_payload(token, secret_key)
    if payload is None:
        return None

    raw_expiration = payload.get("exp")
    if not isinstance(raw_expiration, int):
        return None
    current_time = now or datetime.now(UTC)
    if raw_expiration < int(current_time.timestamp()):
        return None

    return payload


def create_oauth_state_token(
    *,
    subject_id: str,
    secret_key: str,
    ttl_minutes: int,
    issued_at: datetime | None = None,
) -> tuple[str, str]:
    """Return a signed OAuth ``state`` value and the nonce it carries."""
    nonce = secrets.token_urlsafe(16)
    token, _ = create_access_token(
        claims={
            "type": OAUTH_STATE_TOKEN_TYPE,
            "sub": subject_id,
            "nonce": nonce,
        },
        secret_key=secret_key,
        ttl_minutes=ttl_minutes,
        issued_at=issued_at,
    )
    return token, nonce


def decode_oauth_state_token(
    token: str,
    secret_key: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    payload = decode_access_token(token, secret_key, now=now)
    if not payload or payload.get("type") != OAUTH_STATE_TOKEN_TYPE:
        return None
    subject_id = payload.get("sub")
    nonce = payload.get("nonce")
    if not isinstance(subject_id, str) or not subject_id.strip():
        return None
    if not isinstance(nonce, str) or not nonce:
        return None
    return payload


def _sign_payload(payload: dict[str, Any], secret_key: str) -> str:
    payload_bytes = json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_segment = _b64url_encode(payload_bytes)
    signature_segment = _b64url_encode(_signature(payload_segment, secret_key))
    return f"{payload_segment}.{signature_segment}"


def _verify_signed_payload(token: str, secret_key: str) -> dict[str, Any] | None:
    try:
        payload_segment, signature_segment = token.split(".", maxsplit=1)
        provided_signature = _b64url_decode(signature_segment)
    except ValueError:
        return None

    expected_signature = _signature(payload_segment, secret_key)
    if not hmac.compare_digest(expected_signature, provided_signature):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def _signature(payload_segment: str, secret_key: str) -> bytes:
    return hmac.new(
        secret_key.encode("utf-8"),
        payload_segment.encode("utf-8"),
        hashlib.sha256,
    ).digest()


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding_size = (-len(value)) % 4
    padded = f"{value}{'=' * padding_size}"
    return base64.urlsafe_b64decode(padded.encode("ascii"))
