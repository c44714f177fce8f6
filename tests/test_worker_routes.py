"""
tests/test_worker_routes.py -- Integration tests for join tokens and bootstrap credentials.

Covers:
  - POST /api/v1/join-token: session required, default and explicit TTL, max TTL
  - POST /api/v1/worker/join: valid token (JWT or CLI form) -> 200 single-use credential
  - Expired -> 401 token_expired; forged -> 401 invalid_token; garbage -> 400 malformed_token
  - Token for an unknown realm -> 401 invalid_token
  - Missing namespace in mesh-control is recreated on join
  - POST /api/v1/authkey: session required, reusable flag honoured
  - POST /api/v1/deployer/join: deployer:connect key -> 200 in the key's realm;
    no credential or bogus key -> 401; key without the scope -> 403
  - Mesh-control failure -> 502 mesh_control_error
"""

from __future__ import annotations

from datetime import timedelta

from auth.join_tokens import JoinTokenService
from auth.models import Identity, Realm
from auth.store import utcnow


def _seed_realm(harness, realm_id: str = "r-abc123", namespace: str = "r-abc123") -> None:
    harness.services.store.create_identity_with_realm(
        Identity(id="owner-1", issuer="https://idp.example.test", subject="owner"),
        Realm(id=realm_id, owner_id="owner-1", namespace=namespace),
    )


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


class TestJoinTokenIssue:
    def test_requires_session(self, harness):
        resp = harness.client.post("/api/v1/join-token", json={})
        assert resp.status_code == 401

    def test_issue_default_ttl(self, harness, login):
        token = login("alice")
        resp = harness.client.post("/api/v1/join-token", json={}, headers={"X-Session-Token": token})
        assert resp.status_code == 200
        data = resp.json()
        assert data["namespace"].startswith("realm-")
        assert data["coordinator_url"] == "http://testserver"
        assert data["token"].count(".") == 2
        assert "." not in data["cli_token"]
        claims = harness.services.join_tokens.validate(data["token"])
        ttl = claims.expires_at - claims.issued_at
        assert ttl == timedelta(seconds=harness.services.settings.join_token_default_ttl_seconds)

    def test_issue_over_max_ttl(self, harness, login):
        token = login("alice")
        too_long = harness.services.settings.join_token_max_ttl_seconds + 1
        resp = harness.client.post(
            "/api/v1/join-token", json={"ttl_seconds": too_long}, headers={"X-Session-Token": token}
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_ttl"

    def test_issued_token_joins(self, harness, login):
        session = login("alice")
        issued = harness.client.post(
            "/api/v1/join-token", json={"ttl_seconds": 600}, headers={"X-Session-Token": session}
        ).json()
        resp = harness.client.post("/api/v1/worker/join", json={"token": issued["cli_token"]})
        assert resp.status_code == 200
        assert resp.json()["namespace"] == issued["namespace"]


class TestWorkerJoin:
    def test_valid_token(self, harness):
        _seed_realm(harness)
        token = harness.services.join_tokens.generate("r-abc123", "r-abc123", 3600)
        resp = harness.client.post("/api/v1/worker/join", json={"token": token})
        assert resp.status_code == 200
        data = resp.json()
        assert data["namespace"] == "r-abc123"
        assert data["mesh_url"] == "https://mesh.example.test"
        assert data["reusable"] is False
        assert data["authkey"] == harness.mesh.auth_keys[-1].key
        # Self-healing: the namespace did not exist in mesh-control before the join.
        assert "r-abc123" in harness.mesh.namespaces

    def test_expired_token(self, harness):
        _seed_realm(harness)
        token = harness.services.join_tokens.generate(
            "r-abc123", "r-abc123", 3600, now=utcnow() - timedelta(seconds=3601)
        )
        resp = harness.client.post("/api/v1/worker/join", json={"token": token})
        assert resp.status_code == 401
        assert _error_code(resp) == "token_expired"

    def test_forged_token(self, harness):
        _seed_realm(harness)
        forged = JoinTokenService("f" * 48, "http://testserver").generate("r-abc123", "r-abc123", 3600)
        resp = harness.client.post("/api/v1/worker/join", json={"token": forged})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"

    def test_malformed_token(self, harness):
        resp = harness.client.post("/api/v1/worker/join", json={"token": "a.b.c"})
        assert resp.status_code == 400
        assert _error_code(resp) == "malformed_token"

    def test_unknown_realm(self, harness):
        token = harness.services.join_tokens.generate("r-missing", "r-missing", 3600)
        resp = harness.client.post("/api/v1/worker/join", json={"token": token})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"
        assert harness.mesh.auth_keys == []

    def test_namespace_mismatch(self, harness):
        _seed_realm(harness)
        token = harness.services.join_tokens.generate("r-abc123", "someone-else", 3600)
        resp = harness.client.post("/api/v1/worker/join", json={"token": token})
        assert resp.status_code == 401
        assert harness.mesh.auth_keys == []

    def test_mesh_failure(self, harness):
        _seed_realm(harness)
        harness.mesh.fail_auth_keys = True
        token = harness.services.join_tokens.generate("r-abc123", "r-abc123", 3600)
        resp = harness.client.post("/api/v1/worker/join", json={"token": token})
        assert resp.status_code == 502
        assert _error_code(resp) == "mesh_control_error"


class TestAuthKey:
    def test_requires_session(self, harness):
        assert harness.client.post("/api/v1/authkey", json={}).status_code == 401

    def test_single_use_by_default(self, harness, login):
        token = login("alice")
        resp = harness.client.post("/api/v1/authkey", json={}, headers={"X-Session-Token": token})
        assert resp.status_code == 200
        assert resp.json()["reusable"] is False

    def test_reusable(self, harness, login):
        token = login("alice")
        resp = harness.client.post(
            "/api/v1/authkey", json={"ttl_seconds": 600, "reusable": True}, headers={"X-Session-Token": token}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["reusable"] is True
        assert data["namespace"].startswith("realm-")

    def test_ttl_above_cap_rejected(self, harness, login):
        token = login("alice")
        resp = harness.client.post(
            "/api/v1/authkey", json={"ttl_seconds": 31 * 24 * 3600}, headers={"X-Session-Token": token}
        )
        assert resp.status_code == 422


class TestDeployerJoin:
    def _key(self, harness, session: str, scopes: list[str]) -> str:
        resp = harness.client.post(
            "/api/v1/api-keys",
            json={"name": "paas", "scopes": scopes},
            headers={"X-Session-Token": session},
        )
        assert resp.status_code == 201
        return resp.json()["key"]

    def test_deployer_key_mints_credential(self, harness, login):
        session = login("alice")
        namespace = harness.client.get("/auth/me", headers={"X-Session-Token": session}).json()["realm"]["namespace"]
        raw = self._key(harness, session, ["deployer:connect"])

        resp = harness.client.post("/api/v1/deployer/join", headers={"Authorization": f"Bearer {raw}"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["namespace"] == namespace
        assert data["reusable"] is False
        assert data["mesh_url"] == "https://mesh.example.test"
        assert data["authkey"] == harness.mesh.auth_keys[-1].key
        assert harness.mesh.auth_keys[-1].namespace == namespace

    def test_requires_credential(self, harness):
        resp = harness.client.post("/api/v1/deployer/join")
        assert resp.status_code == 401
        assert harness.mesh.auth_keys == []

    def test_bogus_key(self, harness):
        resp = harness.client.post("/api/v1/deployer/join", headers={"Authorization": "Bearer rg_" + "0" * 64})
        assert resp.status_code == 401
        assert _error_code(resp) == "unauthorized"

    def test_key_without_deployer_scope(self, harness, login):
        raw = self._key(harness, login("alice"), ["nodes:read"])
        resp = harness.client.post("/api/v1/deployer/join", headers={"Authorization": f"Bearer {raw}"})
        assert resp.status_code == 403
        assert _error_code(resp) == "insufficient_scope"
        assert harness.mesh.auth_keys == []
