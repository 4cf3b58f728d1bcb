import hashlib
from typing import Any, Protocol

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from badminton_signup.core.config import get_settings
from badminton_signup.core.exceptions import BadRequestError, UnauthorizedError

SESSION_MAX_AGE = 7 * 24 * 3600  # 7 days
BCRYPT_ROUNDS = 12
BCRYPT_MAX_BYTES = 72


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="badminton-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str, max_age_seconds: int = SESSION_MAX_AGE) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def hash_password(password: str) -> str:
    """Hash a password with bcrypt. bcrypt only reads the first 72 bytes, so longer passwords are refused."""
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise BadRequestError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, credential_ref: str | None) -> bool:
    if not credential_ref:
        return False
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, credential_ref.encode("utf-8"))
    except ValueError:  # not a bcrypt hash
        return False


class AuthProvider(Protocol):
    async def verify(self, credential: str) -> str:
        """Return the verified user id or raise UnauthorizedError."""
        ...


class SessionCookieAuthProvider:
    """Verifies signed session cookies against the user directory."""

    def __init__(self, users) -> None:
        self._users = users

    async def verify(self, credential: str) -> str:
        if not credential:
            raise UnauthorizedError("Not authenticated")
        payload = load_session_cookie(credential)
        if not payload:
            raise UnauthorizedError("Invalid or expired session")
        user_id = payload.get("user_id")
        if not user_id:
            raise UnauthorizedError("Invalid session")
        user = await self._users.find(user_id)
        if user is None or not user.active:
            raise UnauthorizedError("User not found")
        if payload.get("session_version") != user.session_version:
            raise UnauthorizedError("Session invalidated")
        return user.id
