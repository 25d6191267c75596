"""
Auth tests against the real JWT guards: login, refresh, role gating.
"""

import pytest

from attendsheet.core.security import (create_access_token, create_refresh_token,
                                       decode_access_token, get_password_hash)
from attendsheet.models.user import User

API = "/api/v1"
PASSWORD = "s3cret-pass"


@pytest.fixture
async def operators(db_session):
    users = {
        role: User(email=f"{role}@example.com", hashed_password=get_password_hash(PASSWORD), role=role)
        for role in ("admin", "hr", "readonly")
    }
    db_session.add_all(users.values())
    await db_session.commit()
    return users


async def _login(client, email, password=PASSWORD):
    return await client.post(f"{API}/auth/login", data={"username": email, "password": password})


def _bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, actor=user.email)}"}


class TestTokens:
    def test_access_token_carries_actor(self):
        payload = decode_access_token(create_access_token(7, actor="hr@example.com"))
        assert payload["sub"] == "7"
        assert payload["actor"] == "hr@example.com"

    def test_refresh_token_is_not_an_access_token(self):
        assert decode_access_token(create_refresh_token(7)) is None

    def test_garbage_token(self):
        assert decode_access_token("not-a-jwt") is None


class TestLogin:
    async def test_login_sets_tokens(self, async_client, real_auth, operators):
        resp = await _login(async_client, "HR@example.com")

        assert resp.status_code == 200
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert "access_token" in resp.cookies
        assert "refresh_token" in resp.cookies
        set_cookie = resp.headers.get("set-cookie")
        assert "HttpOnly" in set_cookie
        assert "SameSite=lax" in set_cookie

        me = await async_client.get(
            f"{API}/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"}
        )
        assert me.json()["email"] == "hr@example.com"

    async def test_wrong_password(self, async_client, real_auth, operators):
        resp = await _login(async_client, "hr@example.com", "wrong-password")
        assert resp.status_code == 401

    async def test_inactive_user(self, async_client, real_auth, operators, db_session):
        operators["hr"].is_active = False
        await db_session.commit()
        resp = await _login(async_client, "hr@example.com")
        assert resp.status_code == 403

    async def test_refresh(self, async_client, real_auth, operators):
        tokens = (await _login(async_client, "admin@example.com")).json()
        resp = await async_client.post(
            f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert resp.status_code == 200
        assert decode_access_token(resp.json()["access_token"])["actor"] == "admin@example.com"

    async def test_refresh_rejects_access_token(self, async_client, real_auth, operators):
        tokens = (await _login(async_client, "admin@example.com")).json()
        resp = await async_client.post(
            f"{API}/auth/refresh", json={"refresh_token": tokens["access_token"]}
        )
        assert resp.status_code == 401

    async def test_logout(self, async_client, real_auth):
        resp = await async_client.post(f"{API}/auth/logout")
        assert resp.json()["message"] == "Logged out"


class TestGuards:
    async def test_anonymous_rejected(self, async_client, real_auth):
        resp = await async_client.get(f"{API}/sheets")
        assert resp.status_code == 401

    async def test_readonly_can_read_but_not_send(self, async_client, real_auth, operators):
        headers = _bearer(operators["readonly"])
        assert (await async_client.get(f"{API}/sheets", headers=headers)).status_code == 200

        resp = await async_client.post(f"{API}/sheets/1/send", json={}, headers=headers)
        assert resp.status_code == 403

    async def test_hr_cannot_change_rules(self, async_client, real_auth, operators):
        headers = _bearer(operators["hr"])
        rules = (await async_client.get(f"{API}/rules/acme", headers=headers)).json()["rules"]
        resp = await async_client.put(f"{API}/rules/acme", json={"rules": rules}, headers=headers)
        assert resp.status_code == 403

    async def test_admin_creates_operator(self, async_client, real_auth, operators):
        headers = _bearer(operators["admin"])
        resp = await async_client.post(
            f"{API}/auth/users",
            json={"email": "New.HR@example.com", "password": "longenough", "role": "hr"},
            headers=headers,
        )
        assert resp.status_code == 201
        assert resp.json()["email"] == "new.hr@example.com"

        dup = await async_client.post(
            f"{API}/auth/users",
            json={"email": "new.hr@example.com", "password": "longenough", "role": "hr"},
            headers=headers,
        )
        assert dup.status_code == 400

    async def test_cookie_auth(self, async_client, real_auth, operators):
        token = create_access_token(operators["hr"].id, actor="hr@example.com")
        async_client.cookies.set("access_token", token)
        resp = await async_client.get(f"{API}/auth/me")
        assert resp.json()["role"] == "hr"
