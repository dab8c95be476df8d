"""
auth/tokens.py -- JWT, password hashing, and single-use action token utilities.

Security design decisions:
  Access JWT: python-jose with HS256, signed with SECRET_KEY. Carries the user
       id (sub), role, type="access" and a short expiry (15 min default).
       decode_access_token() distinguishes expiry (TokenExpiredError) from every
       other failure (TokenInvalidError) so clients know whether a silent
       refresh is worth attempting.

  Refresh JWT: signed with a *different* secret (REFRESH_SECRET_KEY) so one
       leaked secret cannot mint the other token family. Carries "ver", the
       user's token_version at issue time. The refresh route rotates the
       version on use, which makes every refresh token single-use.

  Passwords: bcrypt used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in authenticate_user() so response
       time does not reveal whether an email is registered [C1].

  Action tokens (email verification, password reset): secrets.token_hex(32)
       gives 256 bits of entropy. We store HMAC-SHA256(SECRET_KEY, raw) so a
       copy of the users table alone cannot be replayed as a valid link, and
       lookup stays O(1). bcrypt's intentional slowness is unnecessary for
       high-entropy values.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("salescrm.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE_NAME = "access_token"


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpiredError(TokenError):
    """The token was well-formed and correctly signed but its exp has passed."""


class TokenInvalidError(TokenError):
    """Bad signature, malformed token, wrong token type or missing claims."""


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


_BCRYPT_MAX_BYTES = 72


def _password_bytes(plain: str) -> bytes:
    # bcrypt only reads the first 72 bytes; recent releases raise instead of truncating.
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1], computed once at module load.
_DUMMY_HASH: str = hash_password("salescrm_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the email exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User when the password matches, None otherwise. Inactive users
    ARE returned -- the login route turns them into 403 rather than 401, and
    only after the password has been proven.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, secret: str, lifetime: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {**claims, "iat": now, "exp": now + timedelta(seconds=lifetime)}
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def _decode(token: str, secret: str, token_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpiredError("Token has expired.") from exc
    except JWTError as exc:
        raise TokenInvalidError("Token is invalid.") from exc
    if payload.get("type") != token_type:
        raise TokenInvalidError(f"Expected a {token_type} token.")
    try:
        payload["user_id"] = int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalidError("Token subject is missing or malformed.") from exc
    return payload


def create_access_token(user_id: int, role: str, expire_seconds: int | None = None) -> str:
    """Encode a short-lived access JWT.

    Args:
        user_id:        Subject user id.
        role:           "admin" or "sales". Informational only -- the Auth Gate
                        always re-reads the role from the store.
        expire_seconds: Lifetime override. None uses ACCESS_TOKEN_EXPIRE_SECONDS.
    """
    lifetime = _settings.access_token_expire_seconds if expire_seconds is None else expire_seconds
    return _encode({"sub": str(user_id), "role": role, "type": "access"}, _settings.secret_key, lifetime)


def decode_access_token(token: str) -> dict:
    """Verify an access JWT and return its payload (with an int "user_id" key).

    Raises TokenExpiredError when only the expiry check failed, and
    TokenInvalidError for anything else. Refresh tokens are rejected here even
    though they are valid JWTs: they are signed with another secret.
    """
    return _decode(token, _settings.secret_key, "access")


def create_refresh_token(user_id: int, token_version: int, expire_seconds: int | None = None) -> str:
    """Encode a long-lived refresh JWT bound to the user's current token_version."""
    lifetime = _settings.refresh_token_expire_seconds if expire_seconds is None else expire_seconds
    return _encode(
        {"sub": str(user_id), "ver": token_version, "type": "refresh"},
        _settings.refresh_secret_key,
        lifetime,
    )


def decode_refresh_token(token: str) -> dict:
    """Verify a refresh JWT. Any failure, expiry included, raises TokenInvalidError.

    A refresh failure is terminal for the client (force re-login), so there
    is nothing to gain from distinguishing expiry here.
    """
    try:
        payload = _decode(token, _settings.refresh_secret_key, "refresh")
    except TokenExpiredError as exc:
        raise TokenInvalidError("Refresh token has expired.") from exc
    if not isinstance(payload.get("ver"), int):
        raise TokenInvalidError("Refresh token carries no version.")
    return payload


def issue_token_pair(user: User) -> tuple[str, str]:
    """Return (access_token, refresh_token) for the user's current state."""
    return (
        create_access_token(user.id, user.role),
        create_refresh_token(user.id, user.token_version),
    )


# ---------------------------------------------------------------------------
# Single-use action tokens (email verification, password reset)
# ---------------------------------------------------------------------------


def hash_action_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look the token up by hash with an index.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def generate_action_token() -> tuple[str, str]:
    """Return (raw_token, token_hash). Only the hash may be persisted."""
    raw = secrets.token_hex(32)
    return raw, hash_action_token(raw)


def action_token_expiry(lifetime_seconds: int) -> str:
    """Return the absolute ISO 8601 UTC expiry for a token issued now."""
    return (datetime.now(timezone.utc) + timedelta(seconds=lifetime_seconds)).isoformat()


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str) -> None:
    """Write the access JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the access token lifetime so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.access_token_expire_seconds,
    )
