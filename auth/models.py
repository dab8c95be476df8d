"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work.

Layer rule: no imports from api/, core/, or client/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES: tuple[str, ...] = ("admin", "sales")


@dataclass
class User:
    """A CRM account.

    email is stored lower-cased; the store normalises on every write and lookup
    so uniqueness is effectively case-insensitive.

    The two single-use token pairs hold an HMAC hash of the raw token and an
    absolute ISO 8601 expiry. The raw token only ever exists in the email.

    token_version backs refresh-token rotation: a refresh JWT is accepted only
    while its "ver" claim equals this counter.
    """

    name: str
    email: str
    role: str = "sales"  # "admin" | "sales"
    id: int | None = None
    hashed_password: str | None = None
    is_verified: bool = False
    is_active: bool = True
    email_verification_token: str | None = None
    email_verification_expire: str | None = None
    password_reset_token: str | None = None
    password_reset_expire: str | None = None
    token_version: int = 0
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
