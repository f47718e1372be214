"""
Tests for authentication primitives and HTTP middleware.

Covers:
- Password hashing
- JWT creation and decoding (no organization claim)
- Security headers and request-id middleware
- Client IP extraction for audit metadata
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import jwt as pyjwt
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.core.auth import (
    create_jwt,
    decode_jwt,
    generate_temporary_password,
    hash_password,
    verify_password,
)
from app.core.middleware import (
    REQUEST_ID_HEADER,
    SECURITY_HEADERS,
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
    client_ip,
)


# ---------------------------------------------------------------------------
# Unit Tests: Password Hashing
# ---------------------------------------------------------------------------

class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("my-secure-password")
        assert hashed.startswith("$2b$12$")
        assert verify_password("my-secure-password", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_temporary_passwords_are_unique(self):
        a, b = generate_temporary_password(), generate_temporary_password()
        assert a != b
        assert len(a) >= 12


# ---------------------------------------------------------------------------
# Unit Tests: JWT
# ---------------------------------------------------------------------------

class TestJWT:
    def test_create_and_decode(self):
        uid = uuid.uuid4()
        token, jti, expires_at = create_jwt(uid, "ORG_ADMIN", 3)
        payload = decode_jwt(token)
        assert payload["sub"] == str(uid)
        assert payload["role"] == "ORG_ADMIN"
        assert payload["ver"] == 3
        assert payload["jti"] == jti
        assert payload["exp"] == int(expires_at.timestamp())

    def test_token_carries_no_organization(self):
        token, _, _ = create_jwt(uuid.uuid4(), "USER", 1)
        payload = decode_jwt(token)
        assert not any("org" in key for key in payload)

    def test_expired_jwt_raises(self):
        token, _, _ = create_jwt(uuid.uuid4(), "USER", 1, expires_delta=timedelta(seconds=-1))
        with pytest.raises(pyjwt.ExpiredSignatureError):
            decode_jwt(token)

    def test_tampered_jwt_raises(self):
        token, _, _ = create_jwt(uuid.uuid4(), "USER", 1)
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[::-1]])
        with pytest.raises(pyjwt.PyJWTError):
            decode_jwt(tampered)


# ---------------------------------------------------------------------------
# Integration Tests: Middleware
# ---------------------------------------------------------------------------

def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)

    @app.get("/test")
    async def test_endpoint(request: Request):
        return {"ip": client_ip(request)}

    return app


class TestSecurityHeadersMiddleware:
    def test_headers_present(self):
        client = TestClient(_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        for header, value in SECURITY_HEADERS.items():
            assert resp.headers.get(header) == value


class TestRequestContextMiddleware:
    def test_request_id_generated(self):
        resp = TestClient(_app()).get("/test")
        assert len(resp.headers[REQUEST_ID_HEADER]) == 32

    def test_request_id_echoed(self):
        resp = TestClient(_app()).get("/test", headers={REQUEST_ID_HEADER: "abc-123"})
        assert resp.headers[REQUEST_ID_HEADER] == "abc-123"

    def test_forwarded_for_first_hop(self):
        resp = TestClient(_app()).get(
            "/test", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        )
        assert resp.json() == {"ip": "203.0.113.7"}
