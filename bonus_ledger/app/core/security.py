from __future__ import annotations

from datetime import UTC, datetime, timedelta

import bcrypt
import jwt

from .errors import MalformedRequestError, NotAuthenticatedError

ALGORITHM = "HS256"
# bcrypt only looks at the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


def hash_password(password: str) -> str:
    encoded = password.encode()
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise MalformedRequestError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    encoded = password.encode()
    if len(encoded) > _BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode())
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


def issue_token(user_id: int, secret_key: str, ttl_seconds: int) -> str:
    now = datetime.now(UTC)
    payload = {
        "user_id": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret_key, algorithm=ALGORITHM)


def decode_token(token: str, secret_key: str) -> int:
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise NotAuthenticatedError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise NotAuthenticatedError("Token is invalid") from exc

    user_id = payload.get("user_id")
    if not isinstance(user_id, int):
        raise NotAuthenticatedError("Token carries no user id")
    return user_id
