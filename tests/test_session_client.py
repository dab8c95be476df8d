"""Tests for client/session.py -- the Session Client.

Covers:
- rehydration from storage, session role helpers
- bearer header and fixed timeout on every call
- 401 token_expired -> one refresh, one retry; other failures returned untouched
- N concurrent expired calls -> exactly one refresh; all succeed or all fail together
- a refresh that raises still releases waiters and clears the in-flight marker
- FileTokenStorage persistence, owner-only file mode from creation
- ending the session (expiry or logout) also clears the login cookie
- end to end against the real app through TestClient
"""

import json
import os
import stat
import threading
import time

import pytest
import requests

from auth.tokens import create_access_token
from client import ApiError, FileTokenStorage, MemoryTokenStorage, Session, SessionClient, SessionExpiredError

BASE = "http://crm.test/api/v1"

# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


def _response(status: int, body: dict) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = json.dumps(body).encode("utf-8")
    resp.headers["Content-Type"] = "application/json"
    return resp


def _expired() -> requests.Response:
    return _response(401, {"error": {"code": "token_expired", "message": "Token expired. Please refresh."}})


class FakeApi:
    """Accepts exactly one access token at a time; /auth/refresh-token swaps it.

    hold_expired: a Barrier every request with a stale token waits on before
    getting its 401, so concurrent callers all see expiry at the same moment.
    """

    def __init__(self, valid_token="new", refresh_ok=True, refresh_delay=0.05, hold_expired=None):
        self.valid_token = valid_token
        self.refresh_ok = refresh_ok
        self.refresh_delay = refresh_delay
        self.hold_expired = hold_expired
        self.refresh_calls = 0
        self.refresh_error = None
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, headers=None, json=None, params=None, timeout=None):
        path = url[len(BASE) :]
        auth = (headers or {}).get("Authorization", "")
        token = auth[len("Bearer ") :] if auth else None
        with self._lock:
            self.calls.append((method, path, token, timeout))

        if path == "/auth/refresh-token":
            with self._lock:
                self.refresh_calls += 1
            time.sleep(self.refresh_delay)
            if self.refresh_error is not None:
                raise self.refresh_error
            if not self.refresh_ok:
                return _response(401, {"error": {"code": "invalid_refresh_token", "message": "Invalid."}})
            return _response(200, {"accessToken": self.valid_token, "refreshToken": "r2", "tokenType": "bearer"})

        if path == "/forbidden":
            return _response(403, {"error": {"code": "forbidden", "message": "Access denied."}})
        if path == "/always-expired":
            return _expired()
        if token != self.valid_token:
            if self.hold_expired is not None:
                self.hold_expired.wait(timeout=5)
            return _expired()
        return _response(200, {"ok": True, "path": path})


def _client(api: FakeApi, access="old", on_expired=None) -> tuple[SessionClient, MemoryTokenStorage]:
    storage = MemoryTokenStorage()
    storage.save({"accessToken": access, "refreshToken": "r1", "user": {"id": 1, "role": "sales"}})
    return SessionClient(BASE, storage=storage, http=api, on_session_expired=on_expired), storage


# ---------------------------------------------------------------------------
# Session object
# ---------------------------------------------------------------------------


class TestSession:
    def test_transitions(self):
        s = Session()
        assert s.is_authenticated is False
        s.login("a", "r", {"role": "admin"})
        assert s.is_authenticated and s.is_admin and not s.is_sales
        s.update_tokens("a2", "r2")
        assert s.snapshot() == {"accessToken": "a2", "refreshToken": "r2", "user": {"role": "admin"}}
        s.logout()
        assert s.snapshot() == {"accessToken": None, "refreshToken": None, "user": None}

    def test_rehydrate_ignores_incomplete_snapshot(self):
        s = Session()
        s.rehydrate({"refreshToken": "r"})
        assert s.is_authenticated is False
        s.rehydrate(None)
        assert s.is_authenticated is False

    def test_client_rehydrates_from_storage(self):
        client, _ = _client(FakeApi())
        assert client.session.is_authenticated
        assert client.session.is_sales


# ---------------------------------------------------------------------------
# Single request behaviour
# ---------------------------------------------------------------------------


class TestRequest:
    def test_bearer_and_timeout(self):
        api = FakeApi(valid_token="old")
        client, _ = _client(api)
        assert client.get("/leads").status_code == 200
        assert api.calls == [("GET", "/leads", "old", 15.0)]

    def test_expired_token_refreshes_and_retries_once(self):
        api = FakeApi()
        client, storage = _client(api)
        resp = client.get("/leads")
        assert resp.status_code == 200
        assert api.refresh_calls == 1
        assert [c[2] for c in api.calls if c[1] == "/leads"] == ["old", "new"]
        assert storage.load()["accessToken"] == "new"
        assert storage.load()["refreshToken"] == "r2"

    def test_other_errors_returned_untouched(self):
        api = FakeApi(valid_token="old")
        client, _ = _client(api)
        resp = client.get("/forbidden")
        assert resp.status_code == 403
        assert api.refresh_calls == 0

    def test_retry_is_not_repeated(self):
        api = FakeApi()
        client, _ = _client(api)
        resp = client.get("/always-expired")
        assert resp.status_code == 401
        assert api.refresh_calls == 1
        assert len([c for c in api.calls if c[1] == "/always-expired"]) == 2

    def test_stale_token_retries_without_refresh(self):
        api = FakeApi()
        client, _ = _client(api, access="new")
        # The call went out with "old"; somebody has refreshed since.
        assert client._refresh_access_token("old") == "new"
        assert api.refresh_calls == 0

    def test_failed_refresh_expires_session(self):
        expired = []
        api = FakeApi(refresh_ok=False)
        client, storage = _client(api, on_expired=lambda: expired.append(True))
        with pytest.raises(SessionExpiredError):
            client.get("/leads")
        assert expired == [True]
        assert storage.load() is None
        assert client.session.is_authenticated is False

    def test_refresh_that_raises_still_clears_inflight(self):
        api = FakeApi()
        api.refresh_error = requests.ConnectionError("network down")
        client, _ = _client(api)
        with pytest.raises(SessionExpiredError):
            client.get("/leads")
        assert client._inflight is None

    def test_typed_helper_raises_api_error(self):
        api = FakeApi(valid_token="old")
        client, _ = _client(api)
        with pytest.raises(ApiError) as exc_info:
            client._call("GET", "/forbidden")
        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "forbidden"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def _run_concurrently(client: SessionClient, n: int) -> list:
    results: list = [None] * n

    def call(i: int) -> None:
        try:
            results[i] = client.get(f"/leads/{i}").status_code
        except SessionExpiredError as e:
            results[i] = e

    threads = [threading.Thread(target=call, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results


class TestSingleFlight:
    N = 8

    def test_concurrent_expiry_issues_one_refresh(self):
        api = FakeApi(hold_expired=threading.Barrier(self.N))
        client, _ = _client(api)
        results = _run_concurrently(client, self.N)
        assert api.refresh_calls == 1
        assert results == [200] * self.N

    def test_concurrent_expiry_all_fail_together(self):
        expired = []
        api = FakeApi(refresh_ok=False, hold_expired=threading.Barrier(self.N))
        client, storage = _client(api, on_expired=lambda: expired.append(True))
        results = _run_concurrently(client, self.N)
        assert api.refresh_calls == 1
        assert all(isinstance(r, SessionExpiredError) for r in results)
        assert expired == [True]
        assert storage.load() is None


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TestFileTokenStorage:
    def test_roundtrip_and_permissions(self, tmp_path):
        path = tmp_path / "nested" / "session.json"
        storage = FileTokenStorage(path)
        assert storage.load() is None
        storage.save({"accessToken": "a", "refreshToken": "r", "user": None})
        assert FileTokenStorage(path).load() == {"accessToken": "a", "refreshToken": "r", "user": None}
        if os.name == "posix":
            assert stat.S_IMODE(path.stat().st_mode) == 0o600
        storage.clear()
        assert not path.exists()
        storage.clear()

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_file_is_created_owner_only(self, tmp_path, monkeypatch):
        monkeypatch.setattr(os, "chmod", lambda *args, **kwargs: None)
        path = tmp_path / "session.json"
        old_umask = os.umask(0)
        try:
            FileTokenStorage(path).save({"accessToken": "a", "refreshToken": "r", "user": None})
        finally:
            os.umask(old_umask)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_corrupt_file_loads_as_empty(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text("{not json", encoding="utf-8")
        assert FileTokenStorage(path).load() is None


# ---------------------------------------------------------------------------
# End to end against the real app
# ---------------------------------------------------------------------------


@pytest.fixture
def live(crm):
    crm.create_user(name="Sam Seller", email="sam@example.com", password="Passw0rd!")
    return crm, SessionClient("http://testserver/api/v1", http=crm.client)


class TestAgainstApp:
    def test_login_and_me(self, live):
        crm, client = live
        user = client.login("sam@example.com", "Passw0rd!")
        assert user["email"] == "sam@example.com"
        assert client.session.is_sales
        assert client.me()["name"] == "Sam Seller"

    def test_wrong_password_raises_api_error(self, live):
        _, client = live
        with pytest.raises(ApiError) as exc_info:
            client.login("sam@example.com", "Wr0ngPass")
        assert exc_info.value.code == "bad_credentials"
        assert client.session.is_authenticated is False

    def test_expired_access_token_is_refreshed_transparently(self, live):
        crm, client = live
        client.login("sam@example.com", "Passw0rd!")
        old_refresh = client.session.refresh_token
        uid = client.session.user["id"]
        client.session.access_token = create_access_token(uid, "sales", expire_seconds=-30)

        assert client.me()["id"] == uid
        assert client.session.refresh_token != old_refresh

    def test_revoked_session_expires(self, live):
        crm, client = live
        expired = []
        client.on_session_expired = lambda: expired.append(True)
        client.login("sam@example.com", "Passw0rd!")
        uid = client.session.user["id"]
        crm.store.revoke_refresh_tokens(uid)
        client.session.access_token = create_access_token(uid, "sales", expire_seconds=-30)

        with pytest.raises(SessionExpiredError):
            client.me()
        assert expired == [True]
        assert client.storage.load() is None

        # the login cookie must not keep the old user signed in
        resp = client.get("/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert not crm.client.cookies

    def test_change_password_keeps_session(self, live):
        _, client = live
        client.login("sam@example.com", "Passw0rd!")
        client.change_password("Passw0rd!", "N3wPassword")
        uid = client.session.user["id"]
        client.session.access_token = create_access_token(uid, "sales", expire_seconds=-30)
        assert client.me()["id"] == uid

    def test_update_profile_updates_session_user(self, live):
        _, client = live
        client.login("sam@example.com", "Passw0rd!")
        client.update_profile(name="Samantha")
        assert client.session.user["name"] == "Samantha"

    def test_logout_clears_everything(self, live):
        crm, client = live
        client.login("sam@example.com", "Passw0rd!")
        refresh = client.session.refresh_token
        client.logout()
        assert client.session.is_authenticated is False
        assert client.storage.load() is None
        assert client.get("/auth/me").status_code == 401
        resp = crm.client.post("/api/v1/auth/refresh-token", json={"refreshToken": refresh})
        assert resp.status_code == 401

    def test_anonymous_helpers(self, live):
        crm, client = live
        assert "check your email" in client.register("New Rep", "newrep@example.com", "Str0ngPass")
        assert "reset link" in client.forgot_password("newrep@example.com")
        token = crm.mailer.last("verification", to="newrep@example.com").token
        assert "verified" in client.verify_email(token)
        reset = crm.mailer.last("reset", to="newrep@example.com").token
        assert "successful" in client.reset_password(reset, "Br4ndNewPass")
        client.login("newrep@example.com", "Br4ndNewPass")
