"""
tests/test_store.py -- Unit tests for AuthStore persistence semantics.

Covers:
  - Identity + realm created together; (issuer, subject) unique
  - Realm lookups by owner, namespace and id
  - Session lazy expiry on read and periodic purge
  - Auth state consumed exactly once
  - Device request insert: live user-code collision refused, expired holder replaced
  - Conditional device transitions succeed once
  - Timestamps round-trip as timezone-aware UTC
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AuthState, DeviceRequest, DeviceStatus, Identity, Realm, Session
from auth.store import utcnow


def _identity(id_: str = "id-1", subject: str = "sub-1") -> Identity:
    return Identity(id=id_, issuer="https://idp.example.test", subject=subject, email="a@example.test", name="A")


def _realm(owner_id: str = "id-1", realm_id: str = "realm-id-1", namespace: str = "realm-aaaaaaaaaaaa") -> Realm:
    return Realm(id=realm_id, owner_id=owner_id, namespace=namespace, display_name="A")


def _device(user_code: str = "ABCD-EFGH", device_code: str = "a" * 32, ttl: int = 900, now=None) -> DeviceRequest:
    now = now or utcnow()
    return DeviceRequest(
        device_code=device_code,
        user_code=user_code,
        status=DeviceStatus.pending,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )


# ---------------------------------------------------------------------------
# Identities and realms
# ---------------------------------------------------------------------------


class TestIdentities:
    def test_create_identity_with_realm_and_lookups(self, store):
        store.create_identity_with_realm(_identity(), _realm())

        identity = store.get_identity_by_subject("https://idp.example.test", "sub-1")
        assert identity is not None
        assert identity.id == "id-1"
        assert identity.created_at is not None and identity.created_at.tzinfo is not None

        realm = store.get_realm_by_owner("id-1")
        assert realm.namespace == "realm-aaaaaaaaaaaa"
        assert store.get_realm("realm-id-1").owner_id == "id-1"

    def test_duplicate_issuer_subject_rejected(self, store):
        store.create_identity_with_realm(_identity(), _realm())
        with pytest.raises(IntegrityError):
            store.create_identity_with_realm(
                _identity(id_="id-2"),
                _realm(owner_id="id-2", realm_id="realm-id-2", namespace="realm-bbbbbbbbbbbb"),
            )
        # The losing transaction left nothing behind.
        assert store.get_identity("id-2") is None
        assert store.get_realm("realm-id-2") is None

    def test_same_subject_different_issuer_is_a_different_identity(self, store):
        store.create_identity_with_realm(_identity(), _realm())
        other = Identity(id="id-2", issuer="https://github.com", subject="sub-1")
        store.create_identity_with_realm(
            other, _realm(owner_id="id-2", realm_id="realm-id-2", namespace="realm-bbbbbbbbbbbb")
        )
        assert store.get_identity_by_subject("https://github.com", "sub-1").id == "id-2"

    def test_update_profile(self, store):
        store.create_identity_with_realm(_identity(), _realm())
        assert store.update_identity_profile("id-1", "new@example.test", "New Name", "https://pic")
        identity = store.get_identity("id-1")
        assert identity.email == "new@example.test"
        assert identity.name == "New Name"
        assert identity.subject == "sub-1"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_live_session_is_returned(self, store):
        now = utcnow()
        store.create_session(Session("s1", "id-1", now, now + timedelta(hours=1), now))
        session = store.get_session("s1")
        assert session is not None
        assert session.identity_id == "id-1"

    def test_expired_session_is_deleted_on_read(self, store):
        now = utcnow()
        store.create_session(Session("s1", "id-1", now - timedelta(hours=2), now - timedelta(hours=1), now))
        assert store.get_session("s1") is None
        # Lazy expiry removed the row; delete now finds nothing.
        assert store.delete_session("s1") is False

    def test_purge_expired_sessions(self, store):
        now = utcnow()
        store.create_session(Session("old", "id-1", now, now - timedelta(seconds=1), now))
        store.create_session(Session("new", "id-1", now, now + timedelta(hours=1), now))
        assert store.purge_expired_sessions(now) == 1
        assert store.get_session("new") is not None


# ---------------------------------------------------------------------------
# Auth states
# ---------------------------------------------------------------------------


class TestAuthStates:
    def test_consume_once(self, store):
        store.create_auth_state(AuthState("st", "nonce", "http://testserver/x", "fake", utcnow()))
        first = store.consume_auth_state("st")
        assert first is not None
        assert first.nonce == "nonce"
        assert store.consume_auth_state("st") is None

    def test_purge_before_cutoff(self, store):
        now = utcnow()
        store.create_auth_state(AuthState("old", "n", "/", "fake", now - timedelta(hours=1)))
        store.create_auth_state(AuthState("new", "n", "/", "fake", now))
        assert store.purge_auth_states_before(now - timedelta(minutes=10)) == 1
        assert store.consume_auth_state("new") is not None


# ---------------------------------------------------------------------------
# Device requests
# ---------------------------------------------------------------------------


class TestDeviceRequests:
    def test_live_user_code_collision_refused(self, store):
        assert store.insert_device_request(_device(device_code="a" * 32))
        assert store.insert_device_request(_device(device_code="b" * 32)) is False

    def test_expired_holder_of_user_code_is_replaced(self, store):
        now = utcnow()
        assert store.insert_device_request(_device(device_code="a" * 32, now=now - timedelta(hours=1)), now=now)
        assert store.insert_device_request(_device(device_code="b" * 32, now=now), now=now)
        assert store.get_device_request_by_device_code("a" * 32) is None
        assert store.get_device_request_by_user_code("ABCD-EFGH").device_code == "b" * 32

    def test_approve_only_once(self, store):
        store.insert_device_request(_device())
        assert store.approve_device_request("ABCD-EFGH", "id-1", "r1", "ns", "key-1", "https://mesh")
        assert store.approve_device_request("ABCD-EFGH", "id-2", "r2", "ns2", "key-2", "https://mesh") is False
        req = store.get_device_request_by_user_code("ABCD-EFGH")
        assert req.status is DeviceStatus.approved
        assert req.auth_key == "key-1"
        assert req.approver_id == "id-1"

    def test_deny_after_approve_refused(self, store):
        store.insert_device_request(_device())
        store.approve_device_request("ABCD-EFGH", "id-1", "r1", "ns", "key-1", "https://mesh")
        assert store.deny_device_request("ABCD-EFGH", "id-1") is False
        assert store.get_device_request_by_user_code("ABCD-EFGH").status is DeviceStatus.approved

    def test_approve_past_deadline_refused(self, store):
        now = utcnow()
        store.insert_device_request(_device(ttl=60, now=now - timedelta(minutes=5)), now=now - timedelta(minutes=5))
        assert store.approve_device_request("ABCD-EFGH", "id-1", "r1", "ns", "k", "https://mesh", now=now) is False

    def test_delete_succeeds_once(self, store):
        store.insert_device_request(_device())
        assert store.delete_device_request("a" * 32)
        assert store.delete_device_request("a" * 32) is False

    def test_ping(self, store):
        assert store.ping() is True
