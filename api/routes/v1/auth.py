"""
api/routes/v1/auth.py -- Authentication and account self-service endpoints.

Routes:
  POST /api/v1/auth/register               -- create account, email verification link
  GET  /api/v1/auth/verify-email/{token}   -- consume verification token
  POST /api/v1/auth/login                  -- password login; token pair + cookie
  POST /api/v1/auth/refresh-token          -- rotate refresh token, new pair
  POST /api/v1/auth/logout                 -- clear cookie, revoke refresh tokens
  GET  /api/v1/auth/me                     -- current user profile (requires auth)
  POST /api/v1/auth/forgot-password        -- email a reset link (anti-enumeration)
  POST /api/v1/auth/reset-password/{token} -- consume reset token, set password
  PUT  /api/v1/auth/update-profile         -- change own name/email (requires auth)
  PUT  /api/v1/auth/change-password        -- change own password (requires auth)

Security:
  [H2] register/login are limited by AUTH_RATE_LIMIT, forgot/reset by
       PASSWORD_RATE_LIMIT (per client IP).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Single-use token failures (unknown, expired, replayed) all produce the same
  generic 400 so the response is not an oracle for which check failed.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import AUTH_LIMIT, PASSWORD_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangedResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    UpdateProfileRequest,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import get_current_user, try_get_current_user
from auth.mailer import MailDeliveryError, Mailer
from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    ACCESS_COOKIE_NAME,
    TokenInvalidError,
    action_token_expiry,
    authenticate_user,
    decode_refresh_token,
    generate_action_token,
    hash_action_token,
    hash_password,
    issue_token_pair,
    set_auth_cookie,
    verify_password,
)
from core.config import get_settings

logger = logging.getLogger("salescrm.api.auth")

_settings = get_settings()

_FORGOT_PASSWORD_MESSAGE = "If that email is registered, a reset link has been sent."

# Auth policy:
# - register, verify-email, login, refresh-token, forgot/reset-password: public
# - logout: public -- clearing a cookie needs no prior auth; revokes when authenticated
# - me, update-profile, change-password: requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(content: dict, access_token: str, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    set_auth_cookie(resp, access_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _invalid_action_token(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "invalid_token", "message": message})


def _send_verification(user_store: UserStore, mailer: Mailer, user: User) -> None:
    """Issue a fresh verification token and email it. Delivery failure is logged, not raised."""
    raw, token_hash = generate_action_token()
    user_store.set_email_verification_token(
        user.id, token_hash, action_token_expiry(_settings.email_verification_expire_seconds)
    )
    try:
        mailer.send_verification_email(user, raw)
    except MailDeliveryError:
        logger.warning("Verification email could not be delivered (user id=%s)", user.id)


# ---------------------------------------------------------------------------
# Registration and email verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=MessageResponse, status_code=201)
@limiter.limit(AUTH_LIMIT)  # [H2]
def register(request: Request, body: RegisterRequest) -> MessageResponse:
    """Create a sales account (or any role, when an admin is calling) and send a verification link.

    The email is best-effort: an undeliverable address does not fail the
    registration. Such accounts stay unverified and are visible to admins via
    GET /admin/users?isVerified=false, who can resend the link.
    """
    user_store: UserStore = request.app.state.user_store
    caller = try_get_current_user(request)
    role = body.role.value if body.role is not None and caller is not None and caller.is_admin else "sales"

    new_user = User(name=body.name, email=body.email, role=role, hashed_password=hash_password(body.password))
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A record with that email already exists."},
        ) from exc

    created = user_store.get_by_id(user_id)
    logger.info("User registered id=%s role=%s", user_id, role)
    _send_verification(user_store, request.app.state.mailer, created)

    return MessageResponse(message="Registration successful! Please check your email to verify your account.")


@router.get("/auth/verify-email/{token}", response_model=MessageResponse)
def verify_email(request: Request, token: str) -> MessageResponse:
    """Consume an email verification token. Unknown, expired and replayed tokens all get 400."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.consume_email_verification_token(hash_action_token(token))
    if user is None:
        raise _invalid_action_token("Invalid or expired verification link.")

    try:
        request.app.state.mailer.send_welcome_email(user)
    except MailDeliveryError:
        logger.warning("Welcome email could not be delivered (user id=%s)", user.id)

    return MessageResponse(message="Email verified! You can now log in.")


# ---------------------------------------------------------------------------
# Session: login / refresh / logout / me
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(AUTH_LIMIT)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh pair.

    Wrong email and wrong password share one error ("bad_credentials").
    A deactivated account gets 403, but only once the password is proven --
    otherwise the 403 would confirm the email exists.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_credentials", "message": "Invalid credentials."},
            headers={"Cache-Control": "no-store"},  # [M5]
        )
    if not user.is_active:
        raise HTTPException(
            status_code=403,
            detail={"code": "account_deactivated", "message": "Account deactivated. Contact admin."},
        )

    user_store.update_last_login(user.id)
    user = user_store.get_by_id(user.id)
    access_token, refresh_token = issue_token_pair(user)
    logger.info("Login succeeded user id=%s", user.id)

    body_out = LoginResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=_settings.access_token_expire_seconds,
        user=UserResponse.from_user(user),
    )
    return _token_response(body_out.model_dump(by_alias=True), access_token)


@router.post("/auth/refresh-token", response_model=TokenPairResponse)
def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access/refresh pair.

    Rotation: the token's "ver" claim must equal the stored token_version, and
    the version is advanced with a compare-and-set. The presented token is
    therefore dead after this call, and of two concurrent exchanges of the same
    token only one succeeds. Every failure is a terminal 401.
    """
    user_store: UserStore = request.app.state.user_store
    invalid = HTTPException(
        status_code=401,
        detail={"code": "invalid_refresh_token", "message": "Invalid or expired refresh token."},
    )

    try:
        payload = decode_refresh_token(body.refresh_token)
    except TokenInvalidError:
        raise invalid from None

    user = user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        raise invalid
    if payload["ver"] != user.token_version or not user_store.rotate_token_version(user.id, payload["ver"]):
        logger.warning("Rejected stale refresh token for user id=%s", user.id)
        raise invalid

    user.token_version = payload["ver"] + 1
    access_token, new_refresh_token = issue_token_pair(user)
    body_out = TokenPairResponse(
        access_token=access_token,
        refresh_token=new_refresh_token,
        expires_in=_settings.access_token_expire_seconds,
    )
    return _token_response(body_out.model_dump(by_alias=True), access_token)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Clear the access cookie. An authenticated caller also loses every outstanding refresh token."""
    user = try_get_current_user(request)
    if user is not None:
        request.app.state.user_store.revoke_refresh_tokens(user.id)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(ACCESS_COOKIE_NAME)
    return resp


@router.get("/auth/me", response_model=UserEnvelope)
async def me(current_user: User = Depends(get_current_user)) -> UserEnvelope:
    """Return the profile of the currently authenticated user."""
    return UserEnvelope(user=UserResponse.from_user(current_user))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(PASSWORD_LIMIT)  # [H2]
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Email a password reset link.

    Always answers with the same message whether or not the email is
    registered (anti-enumeration). The one exception is a delivery failure for
    a real account: the token is rolled back and the caller gets 500, because
    the user has no other way to reach the reset link.
    """
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_email(body.email)
    if user is None or not user.is_active:
        return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)

    raw, token_hash = generate_action_token()
    user_store.set_password_reset_token(user.id, token_hash, action_token_expiry(_settings.password_reset_expire_seconds))
    try:
        request.app.state.mailer.send_password_reset_email(user, raw)
    except MailDeliveryError as exc:
        user_store.clear_password_reset_token(user.id)
        raise HTTPException(
            status_code=500,
            detail={"code": "email_failed", "message": "Email could not be sent. Try again."},
        ) from exc

    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password/{token}", response_model=MessageResponse)
@limiter.limit(PASSWORD_LIMIT)  # [H2]
def reset_password(request: Request, token: str, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password using a reset token. Also revokes every outstanding refresh token."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.consume_password_reset_token(hash_action_token(token), hash_password(body.password))
    if user is None:
        raise _invalid_action_token("Invalid or expired reset token.")
    logger.info("Password reset completed for user id=%s", user.id)
    return MessageResponse(message="Password reset successful. Please log in.")


# ---------------------------------------------------------------------------
# Self-service profile
# ---------------------------------------------------------------------------


@router.put("/auth/update-profile", response_model=UserEnvelope)
def update_profile(
    request: Request,
    body: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
) -> UserEnvelope:
    """Change the caller's own name and/or email.

    A new email address has not been proven, so the account drops back to
    unverified and a fresh verification link goes to the new address.
    """
    user_store: UserStore = request.app.state.user_store

    updates: dict = {}
    if body.name is not None and body.name != current_user.name:
        updates["name"] = body.name
    email_changed = body.email is not None and body.email != current_user.email
    if email_changed:
        updates["email"] = body.email
        updates["is_verified"] = False

    if updates:
        try:
            user_store.update_user(current_user.id, **updates)
        except IntegrityError as exc:
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": "A record with that email already exists."},
            ) from exc

    updated = user_store.get_by_id(current_user.id)
    if email_changed:
        _send_verification(user_store, request.app.state.mailer, updated)
    return UserEnvelope(user=UserResponse.from_user(updated))


@router.put("/auth/change-password", response_model=PasswordChangedResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Change the caller's password after re-checking the current one.

    Every refresh token issued before the change stops working; the caller's
    own session continues with the pair returned here.
    """
    user_store: UserStore = request.app.state.user_store
    if not verify_password(body.current_password, current_user.hashed_password or ""):
        raise HTTPException(
            status_code=400,
            detail={"code": "wrong_password", "message": "Current password is incorrect."},
        )

    user_store.set_password(current_user.id, hash_password(body.new_password))
    user = user_store.get_by_id(current_user.id)
    access_token, new_refresh_token = issue_token_pair(user)
    body_out = PasswordChangedResponse(
        message="Password changed successfully.",
        access_token=access_token,
        refresh_token=new_refresh_token,
        expires_in=_settings.access_token_expire_seconds,
    )
    return _token_response(body_out.model_dump(by_alias=True), access_token)
