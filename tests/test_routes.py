from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import sent_code
from main import app
from utils.otp_errors import MailerError


@pytest.fixture
def client(store, mailer, identity):
    # No `with`: startup would build the real collaborators and scheduler.
    app.state.otp_store = store
    app.state.mailer = mailer
    app.state.identity = identity
    return TestClient(app)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_send_otp_ok(client, mailer):
    resp = client.post("/sendOtp", json={"email": " User@Example.com "})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert mailer.send.call_args.kwargs["to_email"] == "user@example.com"


@pytest.mark.parametrize("body", [{}, {"email": ""}, {"email": "  "}, {"email": None}])
def test_send_otp_requires_email(client, body):
    resp = client.post("/sendOtp", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": "email_required"}


def test_send_otp_without_body(client):
    resp = client.post("/sendOtp")
    assert resp.status_code == 400
    assert resp.json() == {"error": "email_required"}


def test_send_otp_rate_limited(client, mailer):
    assert client.post("/sendOtp", json={"email": "a@b.com"}).status_code == 200
    resp = client.post("/sendOtp", json={"email": "a@b.com"})
    assert resp.status_code == 429
    assert resp.json() == {"error": "rate_limited"}
    assert mailer.send.call_count == 1


def test_send_otp_mailer_failure_reports_transport_code(client, mailer):
    mailer.send.side_effect = MailerError("down", code="smtp_failed")
    resp = client.post("/sendOtp", json={"email": "a@b.com"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "smtp_failed"}


def test_send_otp_store_failure_is_generic(client):
    broken = MagicMock()
    broken.transaction.side_effect = RuntimeError("connection refused")
    app.state.otp_store = broken

    resp = client.post("/sendOtp", json={"email": "a@b.com"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "send_failed"}


@pytest.mark.parametrize("body", [{}, {"email": "a@b.com"}, {"code": "123456"}, {"email": "a@b.com", "code": " "}])
def test_verify_otp_missing_fields(client, body):
    resp = client.post("/verifyOtp", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": "missing_fields"}


def test_verify_otp_not_found(client):
    resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": "123456"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "otp_not_found"}


def test_verify_flow(client, mailer, identity):
    client.post("/sendOtp", json={"email": "a@b.com"})
    code = sent_code(mailer)

    resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": "000000"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "invalid_code"}

    # Numeric codes are accepted as well as strings.
    resp = client.post("/verifyOtp", json={"email": "A@B.com", "code": int(code)})
    assert resp.status_code == 200
    token = resp.json()["customToken"]
    assert identity.decode_token(token) == identity.get_user_by_email("a@b.com")

    resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": code})
    assert resp.status_code == 400
    assert resp.json() == {"error": "otp_not_found"}


def test_verify_too_many_attempts(client, mailer):
    client.post("/sendOtp", json={"email": "a@b.com"})
    code = sent_code(mailer)

    for _ in range(5):
        resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": "000000"})
        assert resp.json() == {"error": "invalid_code"}

    resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": code})
    assert resp.status_code == 429
    assert resp.json() == {"error": "too_many_attempts"}


def test_verify_expired(client, mailer):
    client.post("/sendOtp", json={"email": "a@b.com"})
    code = sent_code(mailer)

    later = datetime.utcnow() + timedelta(minutes=6)
    with patch("utils.otp_service._now", return_value=later):
        resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": code})

    assert resp.status_code == 400
    assert resp.json() == {"error": "otp_expired"}


def test_verify_identity_failure(client, mailer):
    client.post("/sendOtp", json={"email": "a@b.com"})
    code = sent_code(mailer)
    broken = MagicMock()
    broken.mint_token.side_effect = RuntimeError("signing key unavailable")
    app.state.identity = broken

    resp = client.post("/verifyOtp", json={"email": "a@b.com", "code": code})
    assert resp.status_code == 500
    assert resp.json() == {"error": "verify_failed"}


@pytest.mark.parametrize(
    "path,code",
    [("/sendOtp", "email_required"), ("/verifyOtp", "missing_fields")],
)
def test_malformed_json_body_gets_short_error(client, path, code):
    resp = client.post(path, content="not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": code}


@pytest.mark.parametrize(
    "path,code",
    [("/sendOtp", "email_required"), ("/verifyOtp", "missing_fields")],
)
@pytest.mark.parametrize("body", [["a"], "a@b.com", 42])
def test_non_object_body_gets_short_error(client, mailer, path, code, body):
    resp = client.post(path, json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": code}
    mailer.send.assert_not_called()
