"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication (the Auth Gate).

Per-request state machine. Every rejection is terminal for the request:

  1. Extract the token: Authorization: Bearer <token>, else the httpOnly
     "access_token" cookie set by the login route. Missing -> 401 unauthorized.
  2. Verify signature and expiry. Expired -> 401 token_expired (the client's
     cue to refresh). Anything else -> 401 invalid_token.
  3. Re-load the user from the store. Claims are never trusted on their own:
     this lookup is what makes deactivation take effect on the very next
     request instead of at the next login.
  4. User gone -> 401 unauthorized. User inactive -> 403 account_deactivated.
  5. Attach the user to request.state.user. require_roles() then compares the
     stored role against the route's allowed set -> 403 forbidden on mismatch.

try_get_current_user() is the soft variant (returns None on any failure).

Layer rule: no imports from api/ or client/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import ACCESS_COOKIE_NAME, TokenExpiredError, TokenInvalidError, decode_access_token

logger = logging.getLogger("salescrm.auth.gate")


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE_NAME) or None


def _reject(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def get_current_user(request: Request) -> User:
    """Require an authenticated, active user. Raises 401/403 per the module docstring.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise _reject(401, "unauthorized", "Access denied. No token provided.")

    try:
        payload = decode_access_token(token)
    except TokenExpiredError:
        raise _reject(401, "token_expired", "Token expired. Please refresh.") from None
    except TokenInvalidError:
        raise _reject(401, "invalid_token", "Invalid token.") from None

    user_store = request.app.state.user_store
    user = user_store.get_by_id(payload["user_id"])
    if user is None:
        raise _reject(401, "unauthorized", "User no longer exists.")
    if not user.is_active:
        logger.info("Rejected request from deactivated user id=%s", user.id)
        raise _reject(403, "account_deactivated", "Account has been deactivated. Contact admin.")

    request.state.user = user
    return user


def try_get_current_user(request: Request) -> User | None:
    """Soft variant of get_current_user(). Returns None instead of raising."""
    try:
        return get_current_user(request)
    except HTTPException:
        return None


def require_roles(*roles: str) -> Callable[[Request], User]:
    """Build a dependency that admits only users whose stored role is in roles.

    Use as a FastAPI dependency:
        @router.get("/admin-only", dependencies=[Depends(require_roles("admin"))])
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if user.role not in allowed:
            raise _reject(
                403,
                "forbidden",
                f"Role '{user.role}' is not authorized to access this resource.",
            )
        return user

    return dependency


require_admin = require_roles("admin")
