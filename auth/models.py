"""
auth/models.py -- Domain dataclasses for identity, realm and credential entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these only own the domain shape.

Timestamps are timezone-aware UTC datetimes throughout. The store converts
to and from ISO 8601 strings at the persistence boundary.

Layer rule: no imports from api/ or mesh/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass
class UserInfo:
    """Normalized profile returned by any identity provider after code exchange."""

    subject: str
    email: str = ""
    email_verified: bool = False
    name: str = ""
    picture: str = ""


@dataclass
class Identity:
    """A local user linked to exactly one (issuer, subject) pair.

    (issuer, subject) is immutable once created; email, name and picture are
    profile fields refreshed on every login.
    """

    id: str
    issuer: str
    subject: str
    email: str = ""
    name: str = ""
    picture: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Realm:
    """An isolated namespace inside the mesh-control service.

    id is a random UUID generated once; namespace is derived from it by
    mesh.realms.namespace_for() and never changes.
    """

    id: str
    owner_id: str
    namespace: str
    display_name: str = ""
    created_at: datetime | None = None


@dataclass
class Session:
    """A logged-in browser or CLI context.

    id is a 256-bit random token. Expired sessions are inert: the store
    deletes them lazily on read and in the periodic sweep.
    """

    id: str
    identity_id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime


@dataclass
class AuthState:
    """CSRF and replay guard for one in-flight OIDC login. Single-use."""

    state: str
    nonce: str
    redirect_uri: str
    provider_name: str
    created_at: datetime


@dataclass
class ApiKey:
    """A delegated, scoped, revocable credential for third-party access.

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, raw_key). Deterministic hash lets the
      store do an O(1) lookup; 256-bit random keys make brute force infeasible.
    - key_prefix (first 12 chars of the raw key) is stored for display only.
    - The raw key is never persisted. It is returned ONCE at creation.
    - scopes is a comma-separated list, matched token-by-token (has_scope()).
    """

    id: str
    identity_id: str
    realm_id: str
    name: str
    scopes: str
    key_hash: str
    key_prefix: str
    created_at: datetime | None = None
    expires_at: datetime | None = None
    last_used_at: datetime | None = None


class DeviceStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not DeviceStatus.pending


@dataclass
class DeviceRequest:
    """One device-authorization-flow attempt.

    Transitions are one-directional: pending -> approved | denied | expired.
    auth_key, mesh_url and namespace are filled in only on approval.
    """

    device_code: str
    user_code: str
    status: DeviceStatus
    created_at: datetime
    expires_at: datetime
    approver_id: str | None = None
    realm_id: str | None = None
    namespace: str | None = None
    auth_key: str | None = None
    mesh_url: str | None = None


@dataclass
class JoinClaims:
    """Claims carried by a join token."""

    issuer: str
    realm_id: str
    namespace: str
    issued_at: datetime
    expires_at: datetime
