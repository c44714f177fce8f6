"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and credential entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; the _row_to_* functions are the mappers.
Services and routes never touch SQL directly.

Concurrency:
  Every write runs inside engine.begin() so it commits or rolls back as a
  unit. State transitions that must not race (auth-state consumption,
  device approval, device token delivery) are single conditional statements
  whose rowcount tells the caller whether *this* request won. Reads are plain
  SELECTs with no repository-wide lock.

Security:
  All queries use bound parameters. No f-strings in SQL.
  API keys are stored as HMAC hashes only (see auth/api_keys.py).

Timestamps are stored as fixed-width ISO 8601 UTC strings so lexicographic
comparison in SQL matches chronological order.

Layer rule: no imports from api/ or mesh/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ApiKey, AuthState, DeviceRequest, DeviceStatus, Identity, Realm, Session

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'realmgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("issuer", String(255), nullable=False),
    Column("subject", String(255), nullable=False),
    Column("email", String(320), nullable=False, server_default=""),
    Column("name", String(255), nullable=False, server_default=""),
    Column("picture", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("issuer", "subject", name="uq_identities_issuer_subject"),
)

_realms = Table(
    "realms",
    _metadata,
    Column("id", String(36), primary_key=True),
    # Single-owner model: one realm per identity.
    Column("owner_id", String(36), nullable=False, unique=True),
    Column("namespace", String(64), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("identity_id", String(36), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("last_used_at", String(32), nullable=False),
)

_auth_states = Table(
    "auth_states",
    _metadata,
    Column("state", String(64), primary_key=True),
    Column("nonce", String(64), nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("provider_name", String(64), nullable=False),
    Column("created_at", String(32), nullable=False, index=True),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36), nullable=False, index=True),
    Column("realm_id", String(36), nullable=False),
    Column("name", String(100), nullable=False),
    Column("scopes", Text, nullable=False, server_default=""),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(16), nullable=False),  # display only
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("last_used_at", String(32)),
)

_device_requests = Table(
    "device_requests",
    _metadata,
    Column("device_code", String(32), primary_key=True),
    Column("user_code", String(9), nullable=False, unique=True),
    Column("status", String(16), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("approver_id", String(36)),
    Column("realm_id", String(36)),
    Column("namespace", String(64)),
    Column("auth_key", Text),
    Column("mesh_url", Text),
)

Index("ix_device_requests_expires_at", _device_requests.c.expires_at)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _iso_or_none(dt: datetime | None) -> str | None:
    return _iso(dt) if dt is not None else None


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for identities, realms, sessions, auth states, API keys and device requests.

    Usage:
        store = AuthStore("sqlite:///realmgate.db")
        session = store.get_session(session_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            return False
        return True

    # ------------------------------------------------------------------
    # Identities and realms
    # ------------------------------------------------------------------

    def create_identity_with_realm(self, identity: Identity, realm: Realm) -> None:
        """Insert a new identity and its realm in one transaction.

        Raises sqlalchemy.exc.IntegrityError if (issuer, subject) already
        exists -- a concurrent first login for the same person won the race.
        The caller re-reads the winner's identity in that case.
        """
        now = _iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                _identities.insert().values(
                    id=identity.id,
                    issuer=identity.issuer,
                    subject=identity.subject,
                    email=identity.email,
                    name=identity.name,
                    picture=identity.picture,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.execute(
                _realms.insert().values(
                    id=realm.id,
                    owner_id=realm.owner_id,
                    namespace=realm.namespace,
                    display_name=realm.display_name,
                    created_at=now,
                )
            )

    def get_identity(self, identity_id: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_subject(self, issuer: str, subject: str) -> Identity | None:
        """Look up an identity by its (issuer, subject) pair. Returns None if unknown."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where((_identities.c.issuer == issuer) & (_identities.c.subject == subject))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def update_identity_profile(self, identity_id: str, email: str, name: str, picture: str) -> bool:
        """Refresh the mutable profile fields. issuer and subject never change."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(email=email, name=name, picture=picture, updated_at=_iso(utcnow()))
            )
        return result.rowcount > 0

    def get_realm(self, realm_id: str) -> Realm | None:
        with self.engine.connect() as conn:
            row = conn.execute(_realms.select().where(_realms.c.id == realm_id)).fetchone()
        return _row_to_realm(row) if row is not None else None

    def get_realm_by_owner(self, owner_id: str) -> Realm | None:
        with self.engine.connect() as conn:
            row = conn.execute(_realms.select().where(_realms.c.owner_id == owner_id)).fetchone()
        return _row_to_realm(row) if row is not None else None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    identity_id=session.identity_id,
                    created_at=_iso(session.created_at),
                    expires_at=_iso(session.expires_at),
                    last_used_at=_iso(session.last_used_at),
                )
            )

    def get_session(self, session_id: str, now: datetime | None = None) -> Session | None:
        """Return a live session, or None.

        An expired session is deleted on the spot (lazy expiry) and reported
        as absent -- callers cannot distinguish "expired" from "never existed".
        """
        now = now or utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        if row is None:
            return None
        session = _row_to_session(row)
        if session.expires_at <= now:
            self.delete_session(session_id)
            return None
        return session

    def touch_session(self, session_id: str) -> None:
        """Stamp last_used_at after a successful authentication."""
        with self.engine.begin() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_used_at=_iso(utcnow())))

    def delete_session(self, session_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        """Delete every session past its expiry. Returns the number removed."""
        cutoff = _iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Auth states
    # ------------------------------------------------------------------

    def create_auth_state(self, auth_state: AuthState) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _auth_states.insert().values(
                    state=auth_state.state,
                    nonce=auth_state.nonce,
                    redirect_uri=auth_state.redirect_uri,
                    provider_name=auth_state.provider_name,
                    created_at=_iso(auth_state.created_at),
                )
            )

    def consume_auth_state(self, state: str) -> AuthState | None:
        """Fetch and delete an auth state in one transaction.

        Returns the state only to the caller whose DELETE actually removed
        the row, so two concurrent callbacks carrying the same state cannot
        both succeed.
        """
        with self.engine.begin() as conn:
            row = conn.execute(_auth_states.select().where(_auth_states.c.state == state)).fetchone()
            if row is None:
                return None
            result = conn.execute(_auth_states.delete().where(_auth_states.c.state == state))
        if result.rowcount != 1:
            return None
        return _row_to_auth_state(row)

    def purge_auth_states_before(self, cutoff: datetime) -> int:
        """Delete auth states created before cutoff. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_auth_states.delete().where(_auth_states.c.created_at < _iso(cutoff)))
        return result.rowcount

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _api_keys.insert().values(
                    id=api_key.id,
                    identity_id=api_key.identity_id,
                    realm_id=api_key.realm_id,
                    name=api_key.name,
                    scopes=api_key.scopes,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    created_at=_iso(api_key.created_at or utcnow()),
                    expires_at=_iso_or_none(api_key.expires_at),
                )
            )

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up a key by its HMAC hash. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key(self, key_id: str, identity_id: str) -> ApiKey | None:
        """Fetch one key owned by identity_id. The owner check blocks IDOR."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.id == key_id) & (_api_keys.c.identity_id == identity_id))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, identity_id: str) -> list[ApiKey]:
        """Return every key owned by identity_id, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.identity_id == identity_id)
                .order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def touch_api_key(self, key_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_iso(utcnow())))

    def delete_api_key(self, key_id: str, identity_id: str) -> bool:
        """Delete a key. Both id and owner must match. Returns False otherwise."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.delete().where((_api_keys.c.id == key_id) & (_api_keys.c.identity_id == identity_id))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Device requests
    # ------------------------------------------------------------------

    def insert_device_request(self, req: DeviceRequest, now: datetime | None = None) -> bool:
        """Insert a pending device request unless its user code is held by a live request.

        A row holding the same user code but already past its expiry is
        dropped first. Returns False on collision (including the race where
        a concurrent insert claims the code between the check and the write,
        which the UNIQUE index turns into an IntegrityError).
        """
        now = now or utcnow()
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    _device_requests.select().where(_device_requests.c.user_code == req.user_code)
                ).fetchone()
                if row is not None:
                    if _parse(row.expires_at) > now:
                        return False
                    conn.execute(_device_requests.delete().where(_device_requests.c.device_code == row.device_code))
                conn.execute(
                    _device_requests.insert().values(
                        device_code=req.device_code,
                        user_code=req.user_code,
                        status=req.status.value,
                        created_at=_iso(req.created_at),
                        expires_at=_iso(req.expires_at),
                    )
                )
        except IntegrityError:
            return False
        return True

    def get_device_request_by_device_code(self, device_code: str) -> DeviceRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_requests.select().where(_device_requests.c.device_code == device_code)
            ).fetchone()
        return _row_to_device_request(row) if row is not None else None

    def get_device_request_by_user_code(self, user_code: str) -> DeviceRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(_device_requests.select().where(_device_requests.c.user_code == user_code)).fetchone()
        return _row_to_device_request(row) if row is not None else None

    def expire_device_request(self, device_code: str, now: datetime | None = None) -> bool:
        """Write back pending -> expired once the deadline has passed."""
        cutoff = _iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_requests.update()
                .where(
                    (_device_requests.c.device_code == device_code)
                    & (_device_requests.c.status == DeviceStatus.pending.value)
                    & (_device_requests.c.expires_at <= cutoff)
                )
                .values(status=DeviceStatus.expired.value)
            )
        return result.rowcount > 0

    def approve_device_request(
        self,
        user_code: str,
        approver_id: str,
        realm_id: str,
        namespace: str,
        auth_key: str,
        mesh_url: str,
        now: datetime | None = None,
    ) -> bool:
        """Move a live pending request to approved. Returns False if it was not pending."""
        cutoff = _iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_requests.update()
                .where(
                    (_device_requests.c.user_code == user_code)
                    & (_device_requests.c.status == DeviceStatus.pending.value)
                    & (_device_requests.c.expires_at > cutoff)
                )
                .values(
                    status=DeviceStatus.approved.value,
                    approver_id=approver_id,
                    realm_id=realm_id,
                    namespace=namespace,
                    auth_key=auth_key,
                    mesh_url=mesh_url,
                )
            )
        return result.rowcount == 1

    def deny_device_request(self, user_code: str, approver_id: str, now: datetime | None = None) -> bool:
        """Move a live pending request to denied. Returns False if it was not pending."""
        cutoff = _iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_requests.update()
                .where(
                    (_device_requests.c.user_code == user_code)
                    & (_device_requests.c.status == DeviceStatus.pending.value)
                    & (_device_requests.c.expires_at > cutoff)
                )
                .values(status=DeviceStatus.denied.value, approver_id=approver_id)
            )
        return result.rowcount == 1

    def delete_device_request(self, device_code: str) -> bool:
        """Delete a request. True only for the caller whose DELETE removed the row."""
        with self.engine.begin() as conn:
            result = conn.execute(_device_requests.delete().where(_device_requests.c.device_code == device_code))
        return result.rowcount == 1

    def purge_device_requests_before(self, cutoff: datetime) -> int:
        """Delete requests whose expiry is before cutoff, whatever their status."""
        with self.engine.begin() as conn:
            result = conn.execute(_device_requests.delete().where(_device_requests.c.expires_at < _iso(cutoff)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        issuer=row.issuer,
        subject=row.subject,
        email=row.email,
        name=row.name,
        picture=row.picture,
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )


def _row_to_realm(row) -> Realm:
    return Realm(
        id=row.id,
        owner_id=row.owner_id,
        namespace=row.namespace,
        display_name=row.display_name,
        created_at=_parse(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        identity_id=row.identity_id,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        last_used_at=_parse(row.last_used_at),
    )


def _row_to_auth_state(row) -> AuthState:
    return AuthState(
        state=row.state,
        nonce=row.nonce,
        redirect_uri=row.redirect_uri,
        provider_name=row.provider_name,
        created_at=_parse(row.created_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        identity_id=row.identity_id,
        realm_id=row.realm_id,
        name=row.name,
        scopes=row.scopes,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        last_used_at=_parse(row.last_used_at),
    )


def _row_to_device_request(row) -> DeviceRequest:
    return DeviceRequest(
        device_code=row.device_code,
        user_code=row.user_code,
        status=DeviceStatus(row.status),
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        approver_id=row.approver_id,
        realm_id=row.realm_id,
        namespace=row.namespace,
        auth_key=row.auth_key,
        mesh_url=row.mesh_url,
    )
