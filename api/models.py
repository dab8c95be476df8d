"""
API request and response models for the CRM REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

JSON keys are camelCase on the wire (accessToken, isVerified, ...). Python
code uses snake_case attributes; the alias generator bridges the two, and
populate_by_name lets tests and scripts send either form.
"""

import re
from enum import Enum
from typing import Annotated, Generic, Optional, TypeVar

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import User

# ---------------------------------------------------------------------------
# Constants and reusable field types
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^\S+@\S+\.\S+$"

_LOWER_RE = re.compile(r"[a-z]")
_UPPER_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"\d")

T = TypeVar("T")


def _check_password_strength(value: str) -> str:
    """Require at least one lower-case letter, one upper-case letter and one digit."""
    if not (_LOWER_RE.search(value) and _UPPER_RE.search(value) and _DIGIT_RE.search(value)):
        raise ValueError("Password must contain uppercase, lowercase, and a number")
    return value


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _normalize_email(value):
    return value.strip().lower() if isinstance(value, str) else value


# Annotated types apply the same constraints wherever the field appears.
# Before-validators run first, so the pattern check sees the normalized form.
_Name = Annotated[str, BeforeValidator(_strip), Field(min_length=1, max_length=60)]
_Email = Annotated[str, BeforeValidator(_normalize_email), Field(max_length=255, pattern=EMAIL_PATTERN)]
_StrongPassword = Annotated[str, Field(min_length=8, max_length=255), AfterValidator(_check_password_strength)]


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    sales = "sales"


class SortOrderEnum(str, Enum):
    asc = "asc"
    desc = "desc"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(_ApiModel):
    """Request body for POST /auth/register.

    role is honoured only when an authenticated admin makes the call.
    """

    name: _Name
    email: _Email
    password: _StrongPassword
    role: Optional[RoleEnum] = None


class LoginRequest(_ApiModel):
    email: _Email
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(_ApiModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class ForgotPasswordRequest(_ApiModel):
    email: _Email


class ResetPasswordRequest(_ApiModel):
    password: _StrongPassword


class UpdateProfileRequest(_ApiModel):
    """Request body for PUT /auth/update-profile. Omitted fields are left unchanged."""

    name: Optional[_Name] = None
    email: Optional[_Email] = None


class ChangePasswordRequest(_ApiModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: _StrongPassword


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(_ApiModel):
    """Client-safe view of a User. Never carries the password hash or token hashes."""

    id: int
    name: str
    email: str
    role: str
    is_verified: bool
    is_active: bool
    last_login: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory Method -- the mapping lives here, colocated with the output model."""
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            is_verified=user.is_verified,
            is_active=user.is_active,
            last_login=user.last_login,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class UserEnvelope(_ApiModel):
    user: UserResponse


class TokenPairResponse(_ApiModel):
    """Response for POST /auth/refresh-token."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenPairResponse):
    """Response for POST /auth/login."""

    user: UserResponse


class MessageResponse(_ApiModel):
    message: str


class PasswordChangedResponse(TokenPairResponse):
    """Response for PUT /auth/change-password.

    Changing the password revokes every refresh token, so the caller's own
    session receives a fresh pair here instead of being logged out.
    """

    message: str


# ---------------------------------------------------------------------------
# Admin -- user management
# ---------------------------------------------------------------------------


class AdminUserCreate(_ApiModel):
    """Request body for POST /admin/users. Admin-created accounts start verified."""

    name: _Name
    email: _Email
    password: _StrongPassword
    role: RoleEnum


class AdminUserUpdate(_ApiModel):
    """Request body for PUT /admin/users/{id}. Only name, role and isActive are mutable here."""

    name: Optional[_Name] = None
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None


class Page(_ApiModel, Generic[T]):
    """Pagination envelope shared by every list endpoint.

    count -- items on this page
    total -- items matching the filters across all pages
    pages -- ceil(total / limit)
    """

    count: int
    total: int
    page: int
    pages: int
    items: list[T]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class FieldError(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[list[FieldError]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
