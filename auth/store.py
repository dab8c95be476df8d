"""
auth/store.py -- SQLAlchemy Core persistence layer for CRM users.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The store only accepts password *hashes*. There is no method that takes a
  plaintext password, so every write path is forced through
  auth.tokens.hash_password() first.

  Single-use token consumption and refresh-token rotation are compare-and-set
  UPDATE statements. rowcount decides the winner, so two concurrent requests
  presenting the same token cannot both succeed.

Layer rule: no imports from api/, core/, or client/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(60), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="sales"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verification_token", String(64), index=True),  # HMAC-SHA256 hex
    Column("email_verification_expire", String(32)),
    Column("password_reset_token", String(64), index=True),  # HMAC-SHA256 hex
    Column("password_reset_expire", String(32)),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# Columns a caller may change through update_user(). Secrets and token columns
# have dedicated methods so their invariants cannot be bypassed.
_UPDATABLE_FIELDS: frozenset[str] = frozenset({"name", "email", "role", "is_active", "is_verified"})

# sortBy values accepted by list_users(), mapped to columns.
_SORTABLE: dict[str, Column] = {
    "createdAt": _users.c.created_at,
    "name": _users.c.name,
    "email": _users.c.email,
    "role": _users.c.role,
    "lastLogin": _users.c.last_login,
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _is_unexpired(expire_iso: str | None) -> bool:
    """True when expire_iso is a parseable timestamp strictly in the future."""
    if not expire_iso:
        return False
    try:
        expires = datetime.fromisoformat(expire_iso)
    except ValueError:
        return False
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires > datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///salescrm.db")
        uid = store.create_user(User(name="Ada", email="ada@example.com", hashed_password=hash_password("...")))
        user = store.get_by_email("ADA@example.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///salescrm.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        role: str | None = None,
        is_active: bool | None = None,
        is_verified: bool | None = None,
        search: str | None = None,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> tuple[list[User], int]:
        """Return one page of users matching the filters, plus the total match count.

        search is a case-insensitive substring match on name or email; "%" and
        "_" in it match literally.
        Unknown sort_by values fall back to createdAt.
        """
        conditions = []
        if role is not None:
            conditions.append(_users.c.role == role)
        if is_active is not None:
            conditions.append(_users.c.is_active == (1 if is_active else 0))
        if is_verified is not None:
            conditions.append(_users.c.is_verified == (1 if is_verified else 0))
        if search:
            escaped = search.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            conditions.append(
                or_(
                    func.lower(_users.c.name).like(pattern, escape="\\"),
                    _users.c.email.like(pattern, escape="\\"),
                )
            )

        column = _SORTABLE.get(sort_by, _users.c.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()

        query = _users.select()
        count_query = select(func.count()).select_from(_users)
        if conditions:
            query = query.where(*conditions)
            count_query = count_query.where(*conditions)
        query = query.order_by(order, _users.c.id).offset((page - 1) * limit).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_user(r) for r in rows], total

    def count_active_admins(self) -> int:
        """Return the number of active admin users.

        Used by the admin routes to prevent locking out the last admin [M4].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where((_users.c.role == "admin") & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Raises ValueError if the user carries no password hash.
        """
        if not user.hashed_password:
            raise ValueError("create_user() requires a hashed_password")
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    name=user.name,
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_verified=1 if user.is_verified else 0,
                    is_active=1 if user.is_active else 0,
                    token_version=user.token_version,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile/status fields on an existing user.

        Accepted fields: name, email, role, is_active, is_verified. Booleans are
        converted to 0/1 for SQLite. Unknown fields raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        Raises sqlalchemy.exc.IntegrityError if email collides with another user.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        for flag in ("is_active", "is_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_password(self, user_id: int, hashed_password: str) -> bool:
        """Replace the password hash, clear any pending reset token and revoke refresh tokens."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    password_reset_token=None,
                    password_reset_expire=None,
                    token_version=_users.c.token_version + 1,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Refresh-token versioning
    # ------------------------------------------------------------------

    def rotate_token_version(self, user_id: int, expected_version: int) -> bool:
        """Advance token_version only if it still equals expected_version.

        Compare-and-set: of several requests presenting the same refresh token,
        exactly one sees rowcount == 1. The others lose and must re-authenticate.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.token_version == expected_version))
                .values(token_version=expected_version + 1)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_refresh_tokens(self, user_id: int) -> None:
        """Invalidate every outstanding refresh token for the user."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(token_version=_users.c.token_version + 1)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Single-use action tokens
    # ------------------------------------------------------------------

    def set_email_verification_token(self, user_id: int, token_hash: str, expires_at: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(email_verification_token=token_hash, email_verification_expire=expires_at)
            )
            conn.commit()

    def consume_email_verification_token(self, token_hash: str) -> User | None:
        """Mark the owning user verified and clear the token, if it is valid.

        Returns the updated User, or None when no user holds this hash, the
        token has expired, or a concurrent request consumed it first. The
        route answers all three cases with the same generic 400.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email_verification_token == token_hash)).fetchone()
            if row is None or not _is_unexpired(row.email_verification_expire):
                return None
            result = conn.execute(
                _users.update()
                .where((_users.c.id == row.id) & (_users.c.email_verification_token == token_hash))
                .values(
                    is_verified=1,
                    email_verification_token=None,
                    email_verification_expire=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        if result.rowcount != 1:
            return None
        return self.get_by_id(row.id)

    def set_password_reset_token(self, user_id: int, token_hash: str, expires_at: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_reset_token=token_hash, password_reset_expire=expires_at)
            )
            conn.commit()

    def clear_password_reset_token(self, user_id: int) -> None:
        """Roll back an issued reset token (used when the reset email could not be sent)."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_reset_token=None, password_reset_expire=None)
            )
            conn.commit()

    def consume_password_reset_token(self, token_hash: str, hashed_password: str) -> User | None:
        """Set a new password hash if token_hash names a live reset token.

        Clears the token and revokes refresh tokens in the same statement.
        Returns the updated User or None (unknown, expired or already consumed).
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.password_reset_token == token_hash)).fetchone()
            if row is None or not _is_unexpired(row.password_reset_expire):
                return None
            result = conn.execute(
                _users.update()
                .where((_users.c.id == row.id) & (_users.c.password_reset_token == token_hash))
                .values(
                    hashed_password=hashed_password,
                    password_reset_token=None,
                    password_reset_expire=None,
                    token_version=_users.c.token_version + 1,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        if result.rowcount != 1:
            return None
        return self.get_by_id(row.id)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        is_verified=bool(row.is_verified),
        is_active=bool(row.is_active),
        email_verification_token=row.email_verification_token,
        email_verification_expire=row.email_verification_expire,
        password_reset_token=row.password_reset_token,
        password_reset_expire=row.password_reset_expire,
        token_version=row.token_version,
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
