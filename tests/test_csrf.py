from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from salonauth.api.csrf import (
    CSRF_HEADER_NAME,
    CsrfOptions,
    CsrfProtection,
    ensure_csrf_token,
    is_path_excluded,
    requires_protection,
)
from salonauth.api.error_handling import register_exception_handlers
from salonauth.result import Ok
from salonauth.storage.memory import MemoryStore
from salonauth.storage.models import Session


@pytest.fixture
def csrf_store():
    return MemoryStore()


@pytest.fixture
def client(csrf_store):
    app = FastAPI()
    register_exception_handlers(app)
    options = CsrfOptions(exclude_paths=("/auth/login", "/webhooks/*"))
    app.middleware("http")(CsrfProtection(options, lambda: csrf_store.sessions))

    @app.get("/appointments")
    async def list_appointments():
        return {"items": []}

    @app.post("/appointments")
    async def book():
        return {"booked": True}

    @app.post("/auth/login")
    async def login():
        return {"ok": True}

    @app.post("/webhooks/payments")
    async def payment_webhook():
        return {"ok": True}

    return TestClient(app)


@pytest.fixture
def session(csrf_store):
    created = Session.new("user-1", "refresh-token", timedelta(days=1))
    return csrf_store.sessions.save(created).value


def _token_for(client, session):
    client.cookies.set("session_id", session.id)
    response = client.get("/appointments")
    assert response.status_code == 200
    return response.headers[CSRF_HEADER_NAME]


def test_safe_request_issues_token_once(client, session, csrf_store):
    first = _token_for(client, session)
    assert csrf_store.sessions.find_by_id(session.id).value.csrf_token == first
    assert _token_for(client, session) == first


def test_safe_request_without_session_has_no_token(client):
    response = client.get("/appointments")
    assert response.status_code == 200
    assert CSRF_HEADER_NAME not in response.headers


def test_post_without_session_is_refused(client):
    response = client.post("/appointments")
    assert response.status_code == 403
    assert response.json()["error"]["type"] == "SESSION_REQUIRED"


def test_post_with_unknown_session_is_refused(client):
    client.cookies.set("session_id", "not-a-session")
    response = client.post("/appointments")
    assert response.status_code == 403
    assert response.json()["error"]["type"] == "SESSION_REQUIRED"


def test_post_without_token_is_refused(client, session):
    _token_for(client, session)
    response = client.post("/appointments")
    assert response.status_code == 403
    assert response.json()["error"]["type"] == "INVALID_CSRF_TOKEN"

    wrong = client.post("/appointments", headers={CSRF_HEADER_NAME: "0" * 64})
    assert wrong.status_code == 403


def test_token_accepted_from_header_body_and_query(client, session):
    token = _token_for(client, session)
    assert client.post("/appointments", headers={CSRF_HEADER_NAME: token}).status_code == 200
    assert client.post("/appointments", json={"_csrf": token}).status_code == 200
    assert client.post("/appointments", data={"_csrf": token}).status_code == 200
    assert client.post(f"/appointments?_csrf={token}").status_code == 200


def test_header_token_wins_over_body_and_query(client, session):
    token = _token_for(client, session)
    wrong_header = {CSRF_HEADER_NAME: "0" * 64}

    body = client.post("/appointments", headers=wrong_header, json={"_csrf": token})
    assert body.status_code == 403
    assert body.json()["error"]["type"] == "INVALID_CSRF_TOKEN"

    query = client.post(f"/appointments?_csrf={token}", headers=wrong_header)
    assert query.status_code == 403
    assert query.json()["error"]["type"] == "INVALID_CSRF_TOKEN"


def test_excluded_paths_skip_the_check(client):
    assert client.post("/auth/login").status_code == 200
    assert client.post("/webhooks/payments").status_code == 200


def test_bearer_requests_are_exempt(client):
    response = client.post("/appointments", headers={"Authorization": "Bearer abc.def.ghi"})
    assert response.status_code == 200


def test_is_path_excluded_patterns():
    patterns = ("/api/v1/auth/login", "/api/v1/public/*")
    assert is_path_excluded("/api/v1/auth/login", patterns)
    assert not is_path_excluded("/api/v1/auth/login/extra", patterns)
    assert is_path_excluded("/api/v1/public/salons/42", patterns)
    assert not is_path_excluded("/api/v1/private", patterns)


def test_protected_methods():
    assert all(requires_protection(m) for m in ("POST", "put", "DELETE", "PATCH"))
    assert not any(requires_protection(m) for m in ("GET", "HEAD", "OPTIONS"))


def test_ensure_csrf_token_reuses_existing(csrf_store, session):
    token = ensure_csrf_token(csrf_store.sessions, session).value
    stored = csrf_store.sessions.find_by_id(session.id).value
    assert ensure_csrf_token(csrf_store.sessions, stored) == Ok(token)
