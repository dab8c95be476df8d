"""
client/session.py -- Session state, token storage and the refreshing HTTP client.

Session lifecycle:
  anonymous --login()--> authenticated --update_tokens()--> authenticated
      ^                        |
      +------logout()----------+   (explicit logout, or a failed refresh)

Refresh protocol (SessionClient.request):
  1. Send the call with Authorization: Bearer <access token>.
  2. 401 with error code "token_expired" -> obtain a fresh access token, then
     retry the call exactly once. Any other response is returned untouched.
  3. Obtaining a fresh token is single-flight. The first caller (the leader)
     POSTs /auth/refresh-token; callers arriving meanwhile block on the
     leader's Event and share its outcome. A caller whose rejected token is
     already stale (somebody refreshed after it sent) skips straight to the
     retry with the current token.
  4. Refresh failure -> session cleared, storage cleared, on_session_expired
     called once, and every waiter raises SessionExpiredError.

The in-flight marker is cleared and the Event set in a finally block, so a
refresh that raises still releases every waiter.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import requests

logger = logging.getLogger("salescrm.client")

DEFAULT_TIMEOUT = 15.0

_REFRESH_PATH = "/auth/refresh-token"


class ApiError(Exception):
    """A non-2xx response from the API, unpacked from the {"error": {...}} envelope."""

    def __init__(self, status_code: int, code: str, message: str, payload: Optional[dict] = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.payload = payload or {}

    @classmethod
    def from_response(cls, resp) -> "ApiError":
        payload = _json_or_none(resp)
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return cls(resp.status_code, error.get("code", "error"), error.get("message", ""), error)
        return cls(resp.status_code, f"http_{resp.status_code}", getattr(resp, "text", "") or "")


class SessionExpiredError(Exception):
    """The refresh token was rejected (or could not be used). The user must log in again."""


def _json_or_none(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _error_code(resp) -> Optional[str]:
    payload = _json_or_none(resp)
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    return error.get("code") if isinstance(error, dict) else None


# ---------------------------------------------------------------------------
# Token storage
# ---------------------------------------------------------------------------


class MemoryTokenStorage:
    """Keeps the session in process memory. Lost when the process exits."""

    def __init__(self) -> None:
        self._data: Optional[dict] = None

    def load(self) -> Optional[dict]:
        return dict(self._data) if self._data is not None else None

    def save(self, data: dict) -> None:
        self._data = dict(data)

    def clear(self) -> None:
        self._data = None


class FileTokenStorage:
    """Persists the session as JSON in a file readable only by the owner.

    A missing or corrupt file loads as "no session".
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[dict]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, e)
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.chmod(tmp, 0o600)  # a leftover tmp file keeps its old mode
        os.replace(tmp, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class Session:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[dict] = field(default=None)

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    @property
    def role(self) -> Optional[str]:
        return self.user.get("role") if self.user else None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_sales(self) -> bool:
        return self.role == "sales"

    def rehydrate(self, data: Optional[dict]) -> None:
        """Restore from a storage snapshot. Anything without an access token counts as logged out."""
        if not data or not data.get("accessToken"):
            self.logout()
            return
        self.access_token = data["accessToken"]
        self.refresh_token = data.get("refreshToken")
        self.user = data.get("user")

    def login(self, access_token: str, refresh_token: str, user: Optional[dict]) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.user = user

    def update_tokens(self, access_token: str, refresh_token: str) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def logout(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.user = None

    def snapshot(self) -> dict:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token, "user": self.user}


class _InflightRefresh:
    """Outcome of one refresh, shared by the leader and every waiter."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.access_token: Optional[str] = None
        self.error: Optional[BaseException] = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SessionClient:
    """HTTP client for the CRM API with transparent, single-flight token refresh.

    Usage:
        api = SessionClient("http://localhost:8000/api/v1", storage=FileTokenStorage("~/.crm/session.json"))
        api.login("ada@example.com", "Secret123")
        resp = api.get("/leads", params={"status": "new"})

    http may be any object with a requests-style request(method, url, ...)
    method; a requests.Session is created when omitted. The client is safe
    to share between threads.
    """

    def __init__(
        self,
        base_url: str,
        storage=None,
        http=None,
        timeout: float = DEFAULT_TIMEOUT,
        on_session_expired: Optional[Callable[[], None]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.storage = storage if storage is not None else MemoryTokenStorage()
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout
        self.on_session_expired = on_session_expired
        self.session = Session()
        self.session.rehydrate(self.storage.load())
        self._lock = threading.Lock()
        self._inflight: Optional[_InflightRefresh] = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, token: Optional[str], json_body=None, params=None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return self.http.request(
            method,
            f"{self.base_url}{path}",
            headers=headers,
            json=json_body,
            params=params,
            timeout=self.timeout,
        )

    def request(self, method: str, path: str, *, json=None, params=None, auth: bool = True):
        """Send one API call and return the response, refreshing once on an expired access token.

        Raises SessionExpiredError when the refresh itself fails. Every other
        outcome, error statuses included, is returned as the response.
        """
        token = self.session.access_token if auth else None
        resp = self._send(method, path, token, json, params)
        if not auth or resp.status_code != 401 or _error_code(resp) != "token_expired":
            return resp
        fresh = self._refresh_access_token(token)
        return self._send(method, path, fresh, json, params)

    def get(self, path: str, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs):
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs):
        return self.request("PUT", path, **kwargs)

    def delete(self, path: str, **kwargs):
        return self.request("DELETE", path, **kwargs)

    # ------------------------------------------------------------------
    # Single-flight refresh
    # ------------------------------------------------------------------

    def _refresh_access_token(self, rejected_token: Optional[str]) -> str:
        with self._lock:
            current = self.session.access_token
            if current != rejected_token:
                if current is None:
                    # A refresh already failed and cleared the session.
                    raise SessionExpiredError("Session expired. Please log in again.")
                return current
            inflight = self._inflight
            is_leader = inflight is None
            if is_leader:
                inflight = self._inflight = _InflightRefresh()

        if not is_leader:
            inflight.done.wait()
            if inflight.error is not None:
                raise SessionExpiredError("Session expired. Please log in again.") from inflight.error
            return inflight.access_token

        try:
            inflight.access_token = self._exchange_refresh_token()
        except Exception as exc:
            inflight.error = exc
            self._expire_session()
            raise SessionExpiredError("Session expired. Please log in again.") from exc
        finally:
            with self._lock:
                self._inflight = None
            inflight.done.set()
        return inflight.access_token

    def _exchange_refresh_token(self) -> str:
        refresh_token = self.session.refresh_token
        if not refresh_token:
            raise SessionExpiredError("No refresh token available.")
        resp = self._send("POST", _REFRESH_PATH, None, {"refreshToken": refresh_token})
        if resp.status_code != 200:
            raise ApiError.from_response(resp)
        data = resp.json()
        with self._lock:
            self.session.update_tokens(data["accessToken"], data["refreshToken"])
            self.storage.save(self.session.snapshot())
        logger.debug("Access token refreshed")
        return data["accessToken"]

    def _end_session(self) -> None:
        """Drop tokens from memory, storage and the transport's cookie jar.

        Login and refresh also set the httpOnly access_token cookie; left in
        the jar it would keep authenticating requests after the session ended.
        """
        with self._lock:
            self.session.logout()
            self.storage.clear()
            cookies = getattr(self.http, "cookies", None)
            if cookies is not None:
                cookies.clear()

    def _expire_session(self) -> None:
        self._end_session()
        logger.info("Session expired; stored tokens cleared")
        if self.on_session_expired is not None:
            self.on_session_expired()

    def _persist(self) -> None:
        with self._lock:
            self.storage.save(self.session.snapshot())

    # ------------------------------------------------------------------
    # Typed helpers (raise ApiError on non-2xx)
    # ------------------------------------------------------------------

    def _call(self, method: str, path: str, *, auth: bool = True, **kwargs) -> dict:
        resp = self.request(method, path, auth=auth, **kwargs)
        if resp.status_code >= 400:
            raise ApiError.from_response(resp)
        return _json_or_none(resp) or {}

    def register(self, name: str, email: str, password: str, role: Optional[str] = None) -> str:
        """Create an account. A role is only honoured when the current session is an admin."""
        body = {"name": name, "email": email, "password": password}
        if role is not None:
            body["role"] = role
        return self._call("POST", "/auth/register", json=body, auth=self.session.is_authenticated)["message"]

    def login(self, email: str, password: str) -> dict:
        data = self._call("POST", "/auth/login", json={"email": email, "password": password}, auth=False)
        with self._lock:
            self.session.login(data["accessToken"], data["refreshToken"], data.get("user"))
            self.storage.save(self.session.snapshot())
        return data.get("user") or {}

    def logout(self) -> None:
        """Revoke server-side refresh tokens (best effort) and always clear the local session."""
        try:
            if self.session.is_authenticated:
                self.request("POST", "/auth/logout")
        except (requests.RequestException, SessionExpiredError) as e:
            logger.info("Server-side logout skipped: %s", e)
        finally:
            self._end_session()

    def me(self) -> dict:
        user = self._call("GET", "/auth/me")["user"]
        self.session.user = user
        self._persist()
        return user

    def verify_email(self, token: str) -> str:
        return self._call("GET", f"/auth/verify-email/{token}", auth=False)["message"]

    def forgot_password(self, email: str) -> str:
        return self._call("POST", "/auth/forgot-password", json={"email": email}, auth=False)["message"]

    def reset_password(self, token: str, password: str) -> str:
        return self._call("POST", f"/auth/reset-password/{token}", json={"password": password}, auth=False)[
            "message"
        ]

    def update_profile(self, name: Optional[str] = None, email: Optional[str] = None) -> dict:
        body = {k: v for k, v in (("name", name), ("email", email)) if v is not None}
        user = self._call("PUT", "/auth/update-profile", json=body)["user"]
        self.session.user = user
        self._persist()
        return user

    def change_password(self, current_password: str, new_password: str) -> str:
        data = self._call(
            "PUT",
            "/auth/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )
        with self._lock:
            self.session.update_tokens(data["accessToken"], data["refreshToken"])
            self.storage.save(self.session.snapshot())
        return data["message"]
