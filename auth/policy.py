"""
auth/policy.py -- Declarative record-ownership policy.

Admins see every record; sales users see only the records they own. Which
field means "owns" differs per record type (a lead is owned by whoever it is
assigned to, a deal by whoever created it), so each record store declares one
OwnershipPolicy and applies it uniformly to list, get and update:

    LEAD_POLICY.scope(user)            -> filter dict to merge into a list query
    LEAD_POLICY.ensure_access(user, r) -> raise 403 before returning/updating r

Records may be dicts or objects with attributes.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException

from auth.models import User


@dataclass(frozen=True)
class OwnershipPolicy:
    owner_field: str
    unrestricted_roles: frozenset[str] = frozenset({"admin"})

    def scope(self, user: User) -> dict[str, Any] | None:
        """Return the filter a list query must apply for this user, or None for no restriction."""
        if user.role in self.unrestricted_roles:
            return None
        return {self.owner_field: user.id}

    def owner_of(self, record: Any) -> Any:
        if isinstance(record, dict):
            return record.get(self.owner_field)
        return getattr(record, self.owner_field, None)

    def can_access(self, user: User, record: Any) -> bool:
        if user.role in self.unrestricted_roles:
            return True
        owner = self.owner_of(record)
        return owner is not None and str(owner) == str(user.id)

    def ensure_access(self, user: User, record: Any) -> None:
        """Raise HTTP 403 unless the user may read or modify the record."""
        if not self.can_access(user, record):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Access denied."},
            )


LEAD_POLICY = OwnershipPolicy(owner_field="assigned_to")
DEAL_POLICY = OwnershipPolicy(owner_field="created_by")
