"""Tests for the HTTP surface (routers, deps, error mapping)."""

import time

import pytest
from httpx import AsyncClient

from authgate.services import totp

from conftest import FakeAuthenticator

PASSWORD = "Sup3rSecret!"


async def signup_and_signin(client: AsyncClient, email: str = "alice@example.com") -> dict:
    r = await client.post("/auth/signup", json={"email": email, "password": PASSWORD})
    assert r.status_code == 201, r.text
    r = await client.post("/auth/signin", json={"email": email, "password": PASSWORD})
    assert r.status_code == 200, r.text
    return r.json()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_signup_signin_me_signout(client):
    body = await signup_and_signin(client, "Carol@Example.com")
    assert body["mfa_required"] is False
    token = body["session_token"]

    r = await client.get("/auth/me", headers=bearer(token))
    assert r.status_code == 200
    assert r.json()["email"] == "carol@example.com"
    assert "password_hash" not in r.json()

    r = await client.post("/auth/signout", headers=bearer(token))
    assert r.status_code == 204
    r = await client.get("/auth/me", headers=bearer(token))
    assert r.status_code == 401
    assert r.json()["code"] == "unauthenticated"


@pytest.mark.asyncio
async def test_duplicate_signup(client):
    await signup_and_signin(client)
    r = await client.post("/auth/signup", json={"email": "ALICE@example.com", "password": PASSWORD})
    assert r.status_code == 409
    assert r.json()["code"] == "email_taken"


@pytest.mark.asyncio
async def test_signin_errors_are_identical(client):
    await signup_and_signin(client)
    wrong = await client.post("/auth/signin", json={"email": "alice@example.com", "password": "nope"})
    missing = await client.post("/auth/signin", json={"email": "ghost@example.com", "password": PASSWORD})
    assert wrong.status_code == missing.status_code == 401
    assert wrong.json() == missing.json() == {
        "code": "invalid_credentials",
        "detail": "No se pudo completar la autenticación",
    }


@pytest.mark.asyncio
async def test_missing_or_garbage_token(client):
    r = await client.get("/auth/me")
    assert r.status_code == 401
    r = await client.get("/auth/me", headers=bearer("not-a-session"))
    assert r.status_code == 401
    assert r.json()["code"] == "unauthenticated"


@pytest.mark.asyncio
async def test_totp_enroll_and_challenge_over_http(client):
    full = (await signup_and_signin(client))["session_token"]

    r = await client.post("/mfa/totp/setup", json={"label": "phone"}, headers=bearer(full))
    assert r.status_code == 200, r.text
    setup = r.json()
    assert setup["otpauth_url"].startswith("otpauth://totp/")

    code = totp.code_at(setup["secret"], time.time())
    r = await client.post(
        "/mfa/totp/confirm", json={"method_id": setup["method_id"], "code": code}, headers=bearer(full)
    )
    assert r.status_code == 200, r.text
    assert r.json()["enabled"] is True

    r = await client.post("/auth/signin", json={"email": "alice@example.com", "password": PASSWORD})
    body = r.json()
    assert body["mfa_required"] is True
    assert body["session_token"] is None
    preauth = body["preauth_token"]

    # la preauth no sirve para endpoints que piden sesión full
    r = await client.get("/auth/me", headers=bearer(preauth))
    assert r.status_code == 401
    assert r.json()["code"] == "session_type_mismatch"
    r = await client.post("/mfa/recovery/generate", headers=bearer(preauth))
    assert r.status_code == 401

    # el mismo código de la confirmación ya no vale (step usado)
    r = await client.post("/mfa/totp/challenge", json={"code": code}, headers=bearer(preauth))
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_code"


@pytest.mark.asyncio
async def test_recovery_over_http(client):
    full = (await signup_and_signin(client))["session_token"]

    r = await client.post("/mfa/recovery/generate", headers=bearer(full))
    assert r.status_code == 200
    codes = r.json()["codes"]
    assert len(codes) == 10

    payload = {"email": "alice@example.com", "password": PASSWORD, "code": codes[0]}
    r = await client.post("/auth/recovery", json=payload)
    assert r.status_code == 200, r.text
    token = r.json()["session_token"]

    r = await client.get("/auth/me", headers=bearer(token))
    assert r.json()["mfa_recheck_required"] is True

    r = await client.post("/auth/recovery", json=payload)
    assert r.status_code == 400
    assert r.json()["code"] == "already_used"


@pytest.mark.asyncio
async def test_webauthn_over_http(client):
    full = (await signup_and_signin(client))["session_token"]
    auth = FakeAuthenticator()

    r = await client.post("/mfa/webauthn/register/begin", headers=bearer(full))
    assert r.status_code == 200, r.text
    options = r.json()["publicKey"]
    assert options["rp"]["id"] == "localhost"

    r = await client.post(
        "/mfa/webauthn/register/complete",
        json={"credential": auth.register(options), "label": "yubikey"},
        headers=bearer(full),
    )
    assert r.status_code == 200, r.text
    assert r.json()["type"] == "webauthn"

    r = await client.post("/auth/signin", json={"email": "alice@example.com", "password": PASSWORD})
    preauth = r.json()["preauth_token"]
    assert r.json()["methods"] == ["webauthn"]

    r = await client.post("/mfa/webauthn/authenticate/begin", headers=bearer(preauth))
    options = r.json()["publicKey"]
    r = await client.post(
        "/mfa/webauthn/authenticate/complete",
        json={"credential": auth.assertion(options)},
        headers=bearer(preauth),
    )
    assert r.status_code == 200, r.text
    token = r.json()["session_token"]

    r = await client.get("/mfa/methods", headers=bearer(token))
    assert [m["type"] for m in r.json()] == ["webauthn"]


@pytest.mark.asyncio
async def test_totp_setup_refuses_preauth_session(client):
    full = (await signup_and_signin(client))["session_token"]
    r = await client.post("/mfa/totp/setup", json={}, headers=bearer(full))
    code = totp.code_at(r.json()["secret"], time.time())
    await client.post("/mfa/totp/confirm", json={"method_id": r.json()["method_id"], "code": code}, headers=bearer(full))

    preauth = (await client.post("/auth/signin", json={"email": "alice@example.com", "password": PASSWORD})).json()
    assert preauth["mfa_required"] is True
    r = await client.post("/mfa/totp/setup", json={}, headers=bearer(preauth["preauth_token"]))
    assert r.status_code == 401
    assert r.json()["code"] == "session_type_mismatch"


@pytest.mark.asyncio
async def test_webauthn_malformed_registration_is_typed_error(client):
    full = (await signup_and_signin(client))["session_token"]
    r = await client.post("/mfa/webauthn/register/begin", headers=bearer(full))
    assert r.status_code == 200

    r = await client.post(
        "/mfa/webauthn/register/complete",
        json={"credential": {"id": "AA", "response": "garbage"}},
        headers=bearer(full),
    )
    assert r.status_code == 400
    assert r.json()["code"] == "attestation_error"


@pytest.mark.asyncio
async def test_admin_revoke_requires_admin(client, admin):
    full = (await signup_and_signin(client))["session_token"]
    r = await client.post("/mfa/totp/setup", json={}, headers=bearer(full))
    method_id = r.json()["method_id"]

    r = await client.post(f"/admin/mfa-methods/{method_id}/revoke", headers=bearer(full))
    assert r.status_code == 403
    assert r.json()["code"] == "forbidden"

    r = await client.post("/auth/signin", json={"email": "root@example.com", "password": "Adm1nSecret!"})
    admin_token = r.json()["session_token"]
    r = await client.post(f"/admin/mfa-methods/{method_id}/revoke", headers=bearer(admin_token))
    assert r.status_code == 200
    assert r.json()["enabled"] is False

    r = await client.post("/admin/mfa-methods/nope/revoke", headers=bearer(admin_token))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_change_password_over_http(client):
    full = (await signup_and_signin(client))["session_token"]
    r = await client.post(
        "/auth/password",
        json={"current_password": PASSWORD, "new_password": "N3wPassword!"},
        headers=bearer(full),
    )
    assert r.status_code == 204
    r = await client.post("/auth/signin", json={"email": "alice@example.com", "password": "N3wPassword!"})
    assert r.status_code == 200
