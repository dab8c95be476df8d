"""
api/routes/v1/admin.py -- Admin-only user management.

Routes:
  GET    /api/v1/admin/users                              -- paged, filtered user list
  POST   /api/v1/admin/users                              -- create a (pre-verified) user
  GET    /api/v1/admin/users/{user_id}                    -- one user
  PUT    /api/v1/admin/users/{user_id}                    -- change name / role / isActive
  DELETE /api/v1/admin/users/{user_id}                    -- deactivate (soft delete)
  POST   /api/v1/admin/users/{user_id}/resend-verification -- re-send the verification link

Every route requires the admin role (require_admin). Users are never hard
deleted: leads and deals keep pointing at their owner after deactivation.

Lockout guards [M4]:
  - an admin cannot deactivate their own account
  - the last active admin cannot be deactivated or demoted
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    AdminUserCreate,
    AdminUserUpdate,
    MessageResponse,
    Page,
    RoleEnum,
    SortOrderEnum,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import require_admin
from auth.mailer import MailDeliveryError
from auth.models import User
from auth.store import UserStore
from auth.tokens import action_token_expiry, generate_action_token, hash_password
from core.config import get_settings

logger = logging.getLogger("salescrm.api.admin")

router = APIRouter(prefix="/admin/users")


def _get_or_404(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return user


def _guard_lockout(user_store: UserStore, actor: User, target: User, deactivating: bool, demoting: bool) -> None:
    """Raise 400 if the change would lock the caller or the whole system out of admin access."""
    if deactivating and target.id == actor.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    if (deactivating or demoting) and target.is_admin and target.is_active and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin."},
        )


@router.get("", response_model=Page[UserResponse])
def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: SortOrderEnum = Query(SortOrderEnum.desc, alias="sortOrder"),
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[RoleEnum] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    is_verified: Optional[bool] = Query(None, alias="isVerified"),
    _admin: User = Depends(require_admin),
) -> Page[UserResponse]:
    """List users, newest first by default.

    isVerified=false is how admins find accounts whose verification email
    never arrived.
    """
    users, total = request.app.state.user_store.list_users(
        page=page,
        limit=limit,
        role=role.value if role is not None else None,
        is_active=is_active,
        is_verified=is_verified,
        search=search.strip() if search else None,
        sort_by=sort_by,
        sort_order=sort_order.value,
    )
    return Page[UserResponse](
        count=len(users),
        total=total,
        page=page,
        pages=math.ceil(total / limit) if total else 0,
        items=[UserResponse.from_user(u) for u in users],
    )


@router.post("", response_model=UserEnvelope, status_code=201)
def create_user(
    request: Request,
    body: AdminUserCreate,
    admin: User = Depends(require_admin),
) -> UserEnvelope:
    user_store: UserStore = request.app.state.user_store
    new_user = User(
        name=body.name,
        email=body.email,
        role=body.role.value,
        hashed_password=hash_password(body.password),
        is_verified=True,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A record with that email already exists."},
        ) from exc
    logger.info("Admin id=%s created user id=%s role=%s", admin.id, user_id, new_user.role)
    return UserEnvelope(user=UserResponse.from_user(user_store.get_by_id(user_id)))


@router.get("/{user_id}", response_model=UserEnvelope)
def get_user(request: Request, user_id: int, _admin: User = Depends(require_admin)) -> UserEnvelope:
    return UserEnvelope(user=UserResponse.from_user(_get_or_404(request.app.state.user_store, user_id)))


@router.put("/{user_id}", response_model=UserEnvelope)
def update_user(
    request: Request,
    user_id: int,
    body: AdminUserUpdate,
    admin: User = Depends(require_admin),
) -> UserEnvelope:
    """Change a user's name, role or active flag. Deactivation also revokes their refresh tokens."""
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)

    updates: dict = {}
    if body.name is not None and body.name != target.name:
        updates["name"] = body.name
    if body.role is not None and body.role.value != target.role:
        updates["role"] = body.role.value
    if body.is_active is not None and body.is_active != target.is_active:
        updates["is_active"] = body.is_active

    deactivating = updates.get("is_active") is False
    demoting = "role" in updates and updates["role"] != "admin"
    _guard_lockout(user_store, admin, target, deactivating, demoting)

    if updates:
        user_store.update_user(user_id, **updates)
        if deactivating:
            user_store.revoke_refresh_tokens(user_id)
        logger.info("Admin id=%s updated user id=%s fields=%s", admin.id, user_id, sorted(updates))
    return UserEnvelope(user=UserResponse.from_user(user_store.get_by_id(user_id)))


@router.delete("/{user_id}", response_model=MessageResponse)
def deactivate_user(request: Request, user_id: int, admin: User = Depends(require_admin)) -> MessageResponse:
    """Soft delete: mark the account inactive and revoke its refresh tokens."""
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)
    if target.is_active:
        _guard_lockout(user_store, admin, target, deactivating=True, demoting=False)
        user_store.update_user(user_id, is_active=False)
        user_store.revoke_refresh_tokens(user_id)
        logger.info("Admin id=%s deactivated user id=%s", admin.id, user_id)
    return MessageResponse(message="User deactivated.")


@router.post("/{user_id}/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, user_id: int, admin: User = Depends(require_admin)) -> MessageResponse:
    """Issue a fresh verification link. Earlier links for the account stop working."""
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)
    if target.is_verified:
        raise HTTPException(
            status_code=400,
            detail={"code": "already_verified", "message": "Email is already verified."},
        )

    raw, token_hash = generate_action_token()
    user_store.set_email_verification_token(
        target.id, token_hash, action_token_expiry(get_settings().email_verification_expire_seconds)
    )
    try:
        request.app.state.mailer.send_verification_email(target, raw)
    except MailDeliveryError as exc:
        raise HTTPException(
            status_code=502,
            detail={"code": "email_failed", "message": "Email could not be sent. Try again."},
        ) from exc

    logger.info("Admin id=%s resent verification for user id=%s", admin.id, user_id)
    return MessageResponse(message="Verification email sent.")
