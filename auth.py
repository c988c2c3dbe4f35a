from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable

from errors import Forbidden, NotFound, Unauthenticated

TOKEN_TYPE_ACCESS = "access"
PBKDF2_ITERATIONS = 120_000
SALT_BYTES = 16


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _derive(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)


def hash_password(password: str) -> str:
    """PBKDF2-HMAC-SHA256 with a random per-user salt, stored as base64(salt + digest)."""
    salt = secrets.token_bytes(SALT_BYTES)
    return base64.b64encode(salt + _derive(password, salt)).decode("ascii")


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a plaintext password against a stored PBKDF2-HMAC-SHA256 hash."""
    try:
        raw = base64.b64decode(stored_hash.encode("utf-8"))
    except ValueError:
        return False
    if len(raw) <= SALT_BYTES:
        return False
    return hmac.compare_digest(raw[SALT_BYTES:], _derive(password, raw[:SALT_BYTES]))


def create_token(
    payload: dict[str, Any],
    secret: str,
    ttl_seconds: int,
    now: float | None = None,
) -> str:
    """Create a signed, expiring token payload using HMAC-SHA256."""
    issued_at = int(time.time() if now is None else now)
    data = dict(payload)
    data["iat"] = issued_at
    data["exp"] = issued_at + ttl_seconds
    body = _b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))
    signature = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return f"{body}.{_b64encode(signature)}"


def verify_token(token: str, secret: str, now: float | None = None) -> dict[str, Any]:
    """Verify token signature and expiry, returning the payload if valid."""
    try:
        body, signature = token.split(".", 1)
    except ValueError as exc:
        raise ValueError("Invalid token format.") from exc

    expected = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    if not hmac.compare_digest(_b64encode(expected), signature):
        raise ValueError("Invalid token signature.")

    payload = json.loads(_b64decode(body).decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Invalid token payload.")
    exp = payload.get("exp")
    current = int(time.time() if now is None else now)
    if exp is None or int(exp) <= current:
        raise ValueError("Token expired.")

    return payload


def bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        return token or None
    return None


class IdentityVerifier:
    """Resolves a bearer credential to an active user record.

    Must run before any entitlement check. Has no side effects; login
    stamps ``last_login_at`` on its own.
    """

    def __init__(self, store: Any, secret: str, ttl_seconds: int, clock: Callable[[], Any]) -> None:
        self._store = store
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, user: dict[str, Any]) -> str:
        return create_token(
            {"sub": user["id"], "email": user["email"], "typ": TOKEN_TYPE_ACCESS},
            self._secret,
            self._ttl_seconds,
            now=self._clock().timestamp(),
        )

    def verify(self, token: str | None) -> dict[str, Any]:
        if not token:
            raise Unauthenticated("Authentication required")
        try:
            payload = verify_token(token, self._secret, now=self._clock().timestamp())
        except ValueError as exc:
            raise Unauthenticated("Invalid or expired token") from exc
        if payload.get("typ") not in {None, TOKEN_TYPE_ACCESS}:
            raise Unauthenticated("Invalid or expired token")
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthenticated("Invalid or expired token")

        user = self._store.get_user_by_id(str(user_id))
        if not user:
            raise NotFound("User not found")
        if not user.get("is_active"):
            raise Forbidden("Account is deactivated")
        return user
