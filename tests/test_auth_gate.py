"""Integration tests for the Auth Gate (auth/dependencies.py) through the real ASGI stack.

Covers every terminal state of the per-request state machine:
- no token -> 401 unauthorized
- expired token -> 401 token_expired (distinct from invalid)
- malformed / wrongly signed / refresh token -> 401 invalid_token
- user deleted from the store -> 401 unauthorized
- user deactivated after the token was issued -> 403 on the very next request
- role mismatch -> 403 forbidden
- the httpOnly cookie is accepted when no Authorization header is sent
- role changes take effect without re-login (the store, not the claim, is authoritative)
"""

from auth.tokens import ACCESS_COOKIE_NAME, create_access_token, create_refresh_token

ME = "/api/v1/auth/me"
ADMIN_USERS = "/api/v1/admin/users"


def _code(resp) -> str:
    return resp.json()["error"]["code"]


class TestTokenExtraction:
    def test_no_token(self, crm):
        resp = crm.client.get(ME)
        assert resp.status_code == 401
        assert _code(resp) == "unauthorized"

    def test_bearer_token(self, crm):
        user = crm.create_user(name="Sam")
        resp = crm.client.get(ME, headers=crm.auth(user))
        assert resp.status_code == 200
        assert resp.json()["user"]["name"] == "Sam"

    def test_cookie_token(self, crm):
        user = crm.create_user()
        token = create_access_token(user.id, user.role)
        resp = crm.client.get(ME, headers={"Cookie": f"{ACCESS_COOKIE_NAME}={token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == user.id

    def test_empty_bearer_falls_back_to_no_token(self, crm):
        resp = crm.client.get(ME, headers={"Authorization": "Bearer "})
        assert resp.status_code == 401
        assert _code(resp) == "unauthorized"


class TestTokenVerification:
    def test_expired_token(self, crm):
        user = crm.create_user()
        resp = crm.client.get(ME, headers=crm.auth(user, expire_seconds=-30))
        assert resp.status_code == 401
        assert _code(resp) == "token_expired"

    def test_malformed_token(self, crm):
        resp = crm.client.get(ME, headers={"Authorization": "Bearer abc.def.ghi"})
        assert resp.status_code == 401
        assert _code(resp) == "invalid_token"

    def test_refresh_token_rejected_as_access_token(self, crm):
        user = crm.create_user()
        token = create_refresh_token(user.id, user.token_version)
        resp = crm.client.get(ME, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert _code(resp) == "invalid_token"

    def test_token_for_missing_user(self, crm):
        token = create_access_token(4242, "admin")
        resp = crm.client.get(ME, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert _code(resp) == "unauthorized"


class TestFreshUserReload:
    def test_deactivation_rejects_still_valid_token(self, crm):
        """A token issued before deactivation stops working on the next request."""
        user = crm.create_user()
        headers = crm.auth(user)
        assert crm.client.get(ME, headers=headers).status_code == 200

        crm.store.update_user(user.id, is_active=False)

        resp = crm.client.get(ME, headers=headers)
        assert resp.status_code == 403
        assert _code(resp) == "account_deactivated"

    def test_role_comes_from_store_not_claim(self, crm):
        """A token minted while the user was admin loses admin access once demoted."""
        user = crm.create_user(role="admin")
        headers = crm.auth(user)
        assert crm.client.get(ADMIN_USERS, headers=headers).status_code == 200

        crm.store.update_user(user.id, role="sales")
        resp = crm.client.get(ADMIN_USERS, headers=headers)
        assert resp.status_code == 403
        assert _code(resp) == "forbidden"


class TestRoleCheck:
    def test_sales_forbidden_from_admin_routes(self, crm):
        user = crm.create_user(role="sales")
        resp = crm.client.get(ADMIN_USERS, headers=crm.auth(user))
        assert resp.status_code == 403
        assert _code(resp) == "forbidden"

    def test_admin_allowed(self, crm):
        admin = crm.create_user(role="admin")
        assert crm.client.get(ADMIN_USERS, headers=crm.auth(admin)).status_code == 200

    def test_unauthenticated_admin_route_is_401_not_403(self, crm):
        assert crm.client.get(ADMIN_USERS).status_code == 401
