"""
tests/test_device_routes.py -- Integration tests for the device authorization endpoints.

Covers:
  - POST /device/code returns codes, verification URI, expiry and interval
  - Poll: 202 pending -> 200 approved (credential) -> 404 afterwards
  - Deny: 403 access_denied once, then 404
  - Expired: 410 expired_token once, then 404
  - verify/deny require a session; bad format -> 400; unknown -> 404; reused -> 400
  - Lower-case user codes are accepted
"""

from __future__ import annotations

from datetime import timedelta

from auth.store import utcnow


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


def _start(harness) -> dict:
    resp = harness.client.post("/device/code")
    assert resp.status_code == 200
    return resp.json()


def test_device_code_response(harness):
    data = _start(harness)
    assert len(data["device_code"]) == 32
    assert len(data["user_code"]) == 9 and data["user_code"][4] == "-"
    assert data["verification_uri"] == "http://testserver/device/verify"
    assert data["expires_in"] == harness.services.settings.device_code_ttl_seconds
    assert data["interval"] == harness.services.settings.device_poll_interval_seconds


def test_full_approval_flow(harness, login):
    data = _start(harness)
    poll = {"device_code": data["device_code"]}

    pending = harness.client.post("/device/token", json=poll)
    assert pending.status_code == 202
    assert pending.json() == {"status": "authorization_pending"}

    session = login("alice")
    verify = harness.client.post(
        "/device/verify", json={"user_code": data["user_code"].lower()}, headers={"X-Session-Token": session}
    )
    assert verify.status_code == 200
    assert verify.json()["status"] == "approved"
    namespace = verify.json()["namespace"]

    approved = harness.client.post("/device/token", json=poll)
    assert approved.status_code == 200
    body = approved.json()
    assert body["status"] == "approved"
    assert body["namespace"] == namespace
    assert body["mesh_url"] == "https://mesh.example.test"
    assert body["authkey"] == harness.mesh.auth_keys[-1].key
    assert harness.mesh.auth_keys[-1].reusable is False

    gone = harness.client.post("/device/token", json=poll)
    assert gone.status_code == 404
    assert _error_code(gone) == "invalid_or_expired_code"


def test_second_verify_rejected(harness, login):
    data = _start(harness)
    session = login("alice")
    headers = {"X-Session-Token": session}
    assert harness.client.post("/device/verify", json={"user_code": data["user_code"]}, headers=headers).status_code == 200
    again = harness.client.post("/device/verify", json={"user_code": data["user_code"]}, headers=headers)
    assert again.status_code == 400
    assert _error_code(again) == "code_already_used"
    assert len(harness.mesh.auth_keys) == 1


def test_deny_flow(harness, login):
    data = _start(harness)
    session = login("alice")
    deny = harness.client.post(
        "/device/deny", json={"user_code": data["user_code"]}, headers={"X-Session-Token": session}
    )
    assert deny.status_code == 200
    assert deny.json()["status"] == "denied"

    denied = harness.client.post("/device/token", json={"device_code": data["device_code"]})
    assert denied.status_code == 403
    assert denied.json() == {"status": "access_denied"}
    assert harness.client.post("/device/token", json={"device_code": data["device_code"]}).status_code == 404


def test_expired_flow(harness, login):
    req = harness.services.device_flow.create(now=utcnow() - timedelta(seconds=901))

    session = login("alice")
    verify = harness.client.post(
        "/device/verify", json={"user_code": req.user_code}, headers={"X-Session-Token": session}
    )
    assert verify.status_code == 404
    assert _error_code(verify) == "invalid_or_expired_code"

    expired = harness.client.post("/device/token", json={"device_code": req.device_code})
    assert expired.status_code == 410
    assert expired.json() == {"status": "expired_token"}
    assert harness.client.post("/device/token", json={"device_code": req.device_code}).status_code == 404


def test_verify_requires_session(harness):
    data = _start(harness)
    resp = harness.client.post("/device/verify", json={"user_code": data["user_code"]})
    assert resp.status_code == 401


def test_verify_bad_format(harness, login):
    session = login("alice")
    resp = harness.client.post("/device/verify", json={"user_code": "0000-0000"}, headers={"X-Session-Token": session})
    assert resp.status_code == 400
    assert _error_code(resp) == "invalid_code_format"


def test_verify_unknown_code(harness, login):
    session = login("alice")
    resp = harness.client.post("/device/verify", json={"user_code": "ABCD-EFGH"}, headers={"X-Session-Token": session})
    assert resp.status_code == 404


def test_poll_bad_device_code_format(harness):
    resp = harness.client.post("/device/token", json={"device_code": "not-hex"})
    assert resp.status_code == 400
    assert _error_code(resp) == "invalid_code_format"


def test_poll_unknown_device_code(harness):
    resp = harness.client.post("/device/token", json={"device_code": "f" * 32})
    assert resp.status_code == 404
