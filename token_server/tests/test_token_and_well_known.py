"""
Tests for POST /token, well-known endpoints and the audit listing, through the FastAPI app.
"""
import base64
import dataclasses
import secrets

import jwt
import pytest
from fastapi.testclient import TestClient

from token_server.grants import s256_challenge
from token_server.keys import KeyProvider
from token_server.ledger import ConsumptionLedger
from token_server.main import create_app

REDIRECT_URI = "http://127.0.0.1:8000/callback"


@pytest.fixture
def client(settings, engine, keys, user_id):
    app = create_app(settings=settings, engine=engine, keys=keys)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def ledger(settings, session_factory):
    return ConsumptionLedger(session_factory, settings.refresh_token_lifetime)


def _error(r):
    return r.json().get("error")


def _basic(client_id, secret):
    raw = f"{client_id}:{secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}


def _code_and_verifier(ledger, user_id, scopes=("openid", "profile", "api.read"), nonce=None):
    verifier = secrets.token_urlsafe(32)
    code = ledger.issue_authorization_code(
        client_id="spa",
        redirect_uri=REDIRECT_URI,
        user_id=user_id,
        scopes=scopes,
        ttl=30,
        code_challenge=s256_challenge(verifier),
        code_challenge_method="S256",
        nonce=nonce,
    )
    return code, verifier


def _redeem(client, code, verifier):
    return client.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": "spa",
            "code_verifier": verifier,
        },
    )


# --- client_credentials ---


def test_client_credentials_success(client):
    r = client.post(
        "/token",
        data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "s3cr3t", "scope": "api"},
    )
    assert r.status_code == 200
    data = r.json()
    assert data["access_token"]
    assert data["token_type"] == "Bearer"
    assert data["scope"] == "api"
    assert data["expires_in"] == 300
    assert "refresh_token" not in data
    assert "id_token" not in data
    assert r.headers.get("cache-control") == "no-store"
    claims = jwt.decode(data["access_token"], options={"verify_signature": False})
    assert claims["sub"] == "svc1"


def test_client_credentials_wrong_secret(client):
    r = client.post(
        "/token",
        data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "wrong", "scope": "api"},
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_client"
    assert "access_token" not in r.json()


def test_client_credentials_basic_auth(client):
    r = client.post(
        "/token",
        data={"grant_type": "client_credentials", "scope": "api"},
        headers=_basic("svc1", "s3cr3t"),
    )
    assert r.status_code == 200
    assert r.json()["scope"] == "api"


def test_basic_auth_failure_is_401_with_challenge(client):
    r = client.post(
        "/token",
        data={"grant_type": "client_credentials", "scope": "api"},
        headers=_basic("svc1", "wrong"),
    )
    assert r.status_code == 401
    assert _error(r) == "invalid_client"
    assert r.headers.get("www-authenticate", "").startswith("Basic")


def test_credentials_in_header_and_body_rejected(client):
    r = client.post(
        "/token",
        data={"grant_type": "client_credentials", "client_secret": "s3cr3t"},
        headers=_basic("svc1", "s3cr3t"),
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_unknown_client(client):
    r = client.post("/token", data={"grant_type": "client_credentials", "client_id": "ghost", "client_secret": "x"})
    assert r.status_code == 400
    assert _error(r) == "invalid_client"


def test_invalid_scope(client):
    r = client.post(
        "/token",
        data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "s3cr3t", "scope": "openid"},
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_scope"


def test_unknown_scopes_are_dropped(client):
    r = client.post(
        "/token",
        data={
            "grant_type": "client_credentials",
            "client_id": "svc1",
            "client_secret": "s3cr3t",
            "scope": "api not-registered",
        },
    )
    assert r.status_code == 200
    assert r.json()["scope"] == "api"


# --- request parsing ---


def test_missing_grant_type(client):
    r = client.post("/token", data={"client_id": "svc1"})
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_unsupported_grant_type(client):
    r = client.post(
        "/token",
        data={"grant_type": "urn:ietf:params:oauth:grant-type:device_code", "client_id": "svc1"},
    )
    assert r.status_code == 400
    assert _error(r) == "unsupported_grant_type"


def test_repeated_parameter_rejected(client):
    r = client.post(
        "/token",
        content="grant_type=client_credentials&client_id=svc1&client_id=svc1&client_secret=s3cr3t",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_unauthorized_client(client):
    r = client.post(
        "/token",
        data={"grant_type": "password", "client_id": "spa", "username": "alice", "password": "wonderland"},
    )
    assert r.status_code == 400
    assert _error(r) == "unauthorized_client"


# --- authorization_code ---


def test_authorization_code_returns_id_token(client, ledger, user_id):
    code, verifier = _code_and_verifier(ledger, user_id, nonce="nonce-1")
    r = _redeem(client, code, verifier)
    assert r.status_code == 200
    data = r.json()
    assert data["scope"] == "api.read openid profile"
    assert data["refresh_token"]
    assert data["refresh_expires_in"] == 3600

    jwks = client.get("/.well-known/jwks.json").json()
    kid = jwt.get_unverified_header(data["id_token"])["kid"]
    jwk = next(k for k in jwks["keys"] if k["kid"] == kid)
    public_key = jwt.PyJWK(jwk).key
    id_claims = jwt.decode(data["id_token"], public_key, algorithms=["RS256"], audience="spa", issuer="https://auth.test")
    assert id_claims["sub"] == str(user_id)
    assert id_claims["nonce"] == "nonce-1"
    assert id_claims["name"] == "Alice Liddell"
    assert id_claims["exp"] - id_claims["iat"] == 300

    access_claims = jwt.decode(data["access_token"], public_key, algorithms=["RS256"], audience="spa")
    assert "nonce" not in access_claims
    assert "name" not in access_claims


def test_authorization_code_consumed_twice(client, ledger, user_id):
    code, verifier = _code_and_verifier(ledger, user_id)
    assert _redeem(client, code, verifier).status_code == 200

    r = _redeem(client, code, verifier)
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"

    events = client.get("/audit", params={"client_id": "spa"}).json()
    assert events[0]["event_type"] == "code_replayed"
    assert events[0]["error"] == "invalid_grant"


def test_authorization_code_missing_redirect_uri(client, ledger, user_id):
    code, verifier = _code_and_verifier(ledger, user_id)
    r = client.post(
        "/token",
        data={"grant_type": "authorization_code", "code": code, "client_id": "spa", "code_verifier": verifier},
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


# --- refresh_token and password ---


def test_refresh_token_rotation(client, ledger, user_id):
    code, verifier = _code_and_verifier(ledger, user_id)
    refresh = _redeem(client, code, verifier).json()["refresh_token"]

    r2 = client.post("/token", data={"grant_type": "refresh_token", "refresh_token": refresh, "client_id": "spa"})
    assert r2.status_code == 200
    assert r2.json()["refresh_token"] != refresh

    r3 = client.post("/token", data={"grant_type": "refresh_token", "refresh_token": refresh, "client_id": "spa"})
    assert r3.status_code == 400
    assert _error(r3) == "invalid_grant"


def test_refresh_token_missing(client):
    r = client.post("/token", data={"grant_type": "refresh_token", "client_id": "spa"})
    assert r.status_code == 400
    assert _error(r) == "invalid_request"


def test_password_grant(client, user_id):
    r = client.post(
        "/token",
        data={
            "grant_type": "password",
            "username": "alice",
            "password": "wonderland",
            "scope": "api profile",
        },
        headers=_basic("webapp", "websecret"),
    )
    assert r.status_code == 200
    data = r.json()
    assert data["scope"] == "api profile"
    assert "id_token" not in data
    claims = jwt.decode(data["access_token"], options={"verify_signature": False})
    assert claims["sub"] == str(user_id)
    assert claims["preferred_username"] == "alice"


def test_password_grant_bad_credentials(client):
    r = client.post(
        "/token",
        data={
            "grant_type": "password",
            "client_id": "webapp",
            "client_secret": "websecret",
            "username": "alice",
            "password": "nope",
        },
    )
    assert r.status_code == 400
    assert _error(r) == "invalid_grant"


# --- configuration and server errors ---


def test_configured_lifetime_reported(settings, engine, keys, user_id):
    app = create_app(settings=dataclasses.replace(settings, access_token_lifetime=120), engine=engine, keys=keys)
    with TestClient(app) as c:
        r = c.post(
            "/token",
            data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "s3cr3t"},
        )
    assert r.status_code == 200
    data = r.json()
    assert data["expires_in"] == 120
    claims = jwt.decode(data["access_token"], options={"verify_signature": False})
    assert claims["exp"] - claims["iat"] == 120


def test_missing_signing_key_is_server_error(settings, engine, user_id):
    app = create_app(settings=settings, engine=engine, keys=KeyProvider())
    with TestClient(app) as c:
        r = c.post(
            "/token",
            data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "s3cr3t"},
        )
    assert r.status_code == 500
    assert _error(r) == "server_error"


# --- well-known, audit, health ---


def test_jwks_returns_active_key(client, keys):
    r = client.get("/.well-known/jwks.json")
    assert r.status_code == 200
    kids = [k["kid"] for k in r.json()["keys"]]
    assert keys.active_key().key_id in kids


def test_openid_configuration(client):
    r = client.get("/.well-known/openid-configuration")
    assert r.status_code == 200
    data = r.json()
    assert data["issuer"] == "https://auth.test"
    assert data["token_endpoint"] == "https://auth.test/token"
    assert data["jwks_uri"] == "https://auth.test/.well-known/jwks.json"
    assert set(data["grant_types_supported"]) == {
        "client_credentials",
        "authorization_code",
        "refresh_token",
        "password",
    }
    assert "client_secret_basic" in data["token_endpoint_auth_methods_supported"]
    assert data["code_challenge_methods_supported"] == ["S256"]
    assert data["scopes_supported"] == ["api", "api.read", "email", "openid", "profile"]


def test_audit_records_success_and_failure(client):
    client.post(
        "/token",
        data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "s3cr3t", "scope": "api"},
    )
    client.post(
        "/token",
        data={"grant_type": "client_credentials", "client_id": "svc1", "client_secret": "wrong", "scope": "api"},
    )
    r = client.get("/audit", params={"client_id": "svc1"})
    assert r.status_code == 200
    events = r.json()
    assert [e["event_type"] for e in events[:2]] == ["token_failed", "token_issued"]
    assert events[0]["error"] == "invalid_client"
    assert events[1]["subject"] == "svc1"
    for e in events:
        assert "client_secret" not in e
        assert "access_token" not in e


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
