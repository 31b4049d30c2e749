"""End-to-end tests for the transparent refresh middleware."""

import asyncio
import base64
import json
import time
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from tokenline import app as app_module
from tokenline.service.runtime import get_runtime
from tokenline.storage.common import hash_token
from tokenline.storage.errors import StoreUnavailable
from tokenline.storage.models import RotationTokenState

ROOT_EMAIL = "root@example.com"
ROOT_PASSWORD = "root-password-123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def login(client):
    response = client.post(
        "/v1/auth/login", json={"email": ROOT_EMAIL, "password": ROOT_PASSWORD}
    )
    assert response.status_code == 200
    return response.json()["data"]


def expired_credential(user_id):
    return get_runtime().codec.issue(
        {"sub": user_id, "email": ROOT_EMAIL, "display_name": "Root"},
        timedelta(seconds=-5),
    )


def _cookie_value(response, name):
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header.split(";", 1)[0].split("=", 1)[1]
    return None


def _token_state(value):
    row = get_runtime().store.get_rotation_token(hash_token(value))
    return row.state() if row else None


class TestExpiredCredential:
    def test_expired_credential_is_refreshed_in_flight(self, client):
        session = login(client)
        stale = expired_credential(session["user_id"])

        response = client.get(
            "/v1/auth/me",
            headers={
                "Authorization": f"Bearer {stale}",
                "Cookie": f"refresh_token={session['refresh_token']}",
            },
        )

        assert response.status_code == 200
        assert response.json()["data"]["email"] == ROOT_EMAIL
        new_access = _cookie_value(response, "access_token")
        new_refresh = _cookie_value(response, "refresh_token")
        assert new_access and new_access != stale
        assert new_refresh and new_refresh != session["refresh_token"]
        assert get_runtime().codec.parse(new_access)["sub"] == session["user_id"]
        assert _token_state(session["refresh_token"]) is RotationTokenState.USED

    def test_missing_credential_is_refreshed(self, client):
        session = login(client)
        response = client.get(
            "/v1/auth/me", headers={"Cookie": f"refresh_token={session['refresh_token']}"}
        )
        assert response.status_code == 200

    def test_header_transport_returns_new_pair_in_headers(self, client):
        session = login(client)
        stale = expired_credential(session["user_id"])

        response = client.get(
            "/v1/auth/me",
            headers={
                "Authorization": f"Bearer {stale}",
                "X-Refresh-Token": session["refresh_token"],
            },
        )

        assert response.status_code == 200
        assert response.headers["X-Access-Token"]
        assert response.headers["X-Refresh-Token"] != session["refresh_token"]
        assert _cookie_value(response, "refresh_token") == response.headers["X-Refresh-Token"]

    def test_header_wins_over_cookie(self, client):
        session = login(client)
        other = login(client)

        response = client.get(
            "/v1/auth/me",
            headers={
                "X-Refresh-Token": session["refresh_token"],
                "Cookie": f"refresh_token={other['refresh_token']}",
            },
        )

        assert response.status_code == 200
        assert _token_state(session["refresh_token"]) is RotationTokenState.USED
        assert _token_state(other["refresh_token"]) is RotationTokenState.ACTIVE


class TestNoRefresh:
    def test_valid_credential_passes_through(self, client):
        session = login(client)

        response = client.get(
            "/v1/auth/me",
            headers={
                "Authorization": f"Bearer {session['access_token']}",
                "Cookie": f"refresh_token={session['refresh_token']}",
            },
        )

        assert response.status_code == 200
        assert response.headers.get_list("set-cookie") == []
        assert _token_state(session["refresh_token"]) is RotationTokenState.ACTIVE

    def test_no_rotation_token_passes_through(self, client):
        session = login(client)
        stale = expired_credential(session["user_id"])
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {stale}"})
        assert response.status_code == 401

    def test_disabled_by_configuration(self, client):
        session = login(client)
        get_runtime().settings.transparent_refresh_enabled = False

        response = client.get(
            "/v1/auth/me", headers={"Cookie": f"refresh_token={session['refresh_token']}"}
        )

        assert response.status_code == 401
        assert _token_state(session["refresh_token"]) is RotationTokenState.ACTIVE


class TestRejectedRotation:
    def test_replayed_token_proceeds_unauthenticated(self, client):
        session = login(client)
        client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})

        response = client.get(
            "/v1/auth/me", headers={"Cookie": f"refresh_token={session['refresh_token']}"}
        )

        assert response.status_code == 401
        assert response.headers.get_list("set-cookie") == []
        rows = get_runtime().store.list_owner_tokens(session["user_id"])
        assert all(row.state() is RotationTokenState.REVOKED for row in rows)

    def test_invalid_and_replayed_look_the_same(self, client):
        session = login(client)
        client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})

        replayed = client.get(
            "/v1/auth/me", headers={"Cookie": f"refresh_token={session['refresh_token']}"}
        )
        unknown = client.get("/v1/auth/me", headers={"Cookie": "refresh_token=bogus"})

        assert replayed.status_code == unknown.status_code == 401
        assert replayed.json()["error"] == unknown.json()["error"]

    def test_store_outage_does_not_fail_request(self, client, monkeypatch):
        session = login(client)

        def broken(token_hash):
            raise StoreUnavailable("down", backend="memory")

        monkeypatch.setattr(get_runtime().store, "get_rotation_token", broken)
        response = client.get(
            "/v1/auth/me", headers={"Cookie": f"refresh_token={session['refresh_token']}"}
        )

        assert response.status_code == 401

    def test_unexpected_error_is_swallowed(self, client, monkeypatch):
        session = login(client)

        async def explode(token):
            raise RuntimeError("boom")

        monkeypatch.setattr(get_runtime().tokens, "rotate", explode)
        response = client.get(
            "/v1/auth/me", headers={"Cookie": f"refresh_token={session['refresh_token']}"}
        )

        assert response.status_code == 401


class CountingSlowStore:
    """Delays lookups so concurrent requests overlap inside one rotation."""

    def __init__(self, store, delay=0.2):
        self.store = store
        self.delay = delay
        self.marks = 0
        self._original_get = store.get_rotation_token
        self._original_mark = store.mark_rotation_token_used

    def get_rotation_token(self, token_hash):
        time.sleep(self.delay)
        return self._original_get(token_hash)

    def mark_rotation_token_used(self, token_id, now):
        self.marks += 1
        return self._original_mark(token_id, now)


async def test_concurrent_requests_share_one_rotation(monkeypatch):
    runtime = get_runtime()
    session = await runtime.tokens.issue_session(
        runtime.identity.get_user_by_email(ROOT_EMAIL).id,
        {"email": ROOT_EMAIL, "display_name": "Root"},
    )
    slow = CountingSlowStore(runtime.store)
    monkeypatch.setattr(runtime.store, "get_rotation_token", slow.get_rotation_token)
    monkeypatch.setattr(runtime.store, "mark_rotation_token_used", slow.mark_rotation_token_used)

    transport = httpx.ASGITransport(app=app_module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        responses = await asyncio.gather(
            *(
                ac.get(
                    "/v1/auth/me",
                    headers={"Cookie": f"refresh_token={session.rotation_token}"},
                )
                for _ in range(10)
            )
        )

    assert [r.status_code for r in responses] == [200] * 10
    assert slow.marks == 1
    new_tokens = {_cookie_value(r, "refresh_token") for r in responses}
    assert len(new_tokens) == 1
    assert session.rotation_token not in new_tokens
    assert len(runtime.store.list_owner_tokens(session.owner_id)) == 2


def _forged_credential(exp_literal):
    def segment(raw):
        return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")

    header = segment(json.dumps({"alg": "HS256"}))
    payload = segment("{\"exp\":" + exp_literal + "}")
    return f"{header}.{payload}.sig"


class TestUnreadableCredential:
    def test_infinite_exp_is_treated_as_absent(self, client):
        session = login(client)

        response = client.get(
            "/v1/auth/me",
            headers={
                "Authorization": f"Bearer {_forged_credential('1e999')}",
                "Cookie": f"refresh_token={session['refresh_token']}",
            },
        )

        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == session["user_id"]
        assert _token_state(session["refresh_token"]) is RotationTokenState.USED

    def test_infinite_exp_with_unknown_token_is_unauthenticated(self, client):
        response = client.get(
            "/v1/auth/me",
            headers={
                "Authorization": f"Bearer {_forged_credential('1e999')}",
                "Cookie": "refresh_token=whatever",
            },
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
