"""
auth/login.py -- Turns a verified provider identity into a realm and a session.

Order of operations on every successful callback:

  1. Look up the identity by (issuer, subject). Returning users get their
     profile fields refreshed; first-time users get a new realm ID and the
     namespace derived from it.
  2. Ensure the namespace exists in mesh-control (idempotent).
  3. Ensure the namespace has its isolation rule. Failure here is a hard
     login failure: a realm nobody can reach must not look "logged in".
  4. Only then persist a new identity and realm (one transaction), and
  5. issue a session.

Nothing is written locally until mesh-control has confirmed steps 2 and 3,
so a downstream failure leaves no half-created realm behind.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.models import Identity, Realm, Session, UserInfo
from auth.store import AuthStore, utcnow
from auth.tokens import generate_session_id
from mesh.acl import ACLSynchronizer, PolicySyncError
from mesh.realms import RealmManager, generate_realm_id, namespace_for

logger = logging.getLogger("realmgate.auth")


class LoginError(Exception):
    """Login could not be completed. code is a stable machine-readable reason."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class LoginResult:
    identity: Identity
    realm: Realm
    session: Session
    created: bool


class LoginService:
    def __init__(
        self,
        store: AuthStore,
        realm_manager: RealmManager,
        acl: ACLSynchronizer,
        session_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.store = store
        self.realm_manager = realm_manager
        self.acl = acl
        self.session_ttl = timedelta(seconds=session_ttl_seconds)

    def create_session(self, identity_id: str) -> Session:
        now = utcnow()
        session = Session(
            id=generate_session_id(),
            identity_id=identity_id,
            created_at=now,
            expires_at=now + self.session_ttl,
            last_used_at=now,
        )
        self.store.create_session(session)
        return session

    async def complete_login(self, issuer: str, user_info: UserInfo) -> LoginResult:
        """Resolve user_info to an identity with a reachable realm, then open a session.

        Raises mesh.client.MeshControlError when mesh-control fails, and
        LoginError when the access policy cannot be synchronized.
        """
        identity = self.store.get_identity_by_subject(issuer, user_info.subject)
        created = identity is None
        if identity is not None:
            self.store.update_identity_profile(identity.id, user_info.email, user_info.name, user_info.picture)
            realm = self.store.get_realm_by_owner(identity.id)
            if realm is None:
                logger.error("Identity %s has no realm", identity.id)
                raise LoginError("realm_missing", "identity has no realm")
        else:
            identity = Identity(
                id=str(uuid.uuid4()),
                issuer=issuer,
                subject=user_info.subject,
                email=user_info.email,
                name=user_info.name,
                picture=user_info.picture,
            )
            realm_id = generate_realm_id()
            realm = Realm(
                id=realm_id,
                owner_id=identity.id,
                namespace=namespace_for(realm_id),
                display_name=user_info.name or user_info.email,
            )

        await self.realm_manager.get_or_create_realm(realm.namespace)
        try:
            await self.acl.add_realm_to_policy(realm.namespace)
        except PolicySyncError as e:
            logger.error("Access policy sync failed for %s: %s", realm.namespace, e)
            raise LoginError("acl_sync_failed", "could not update the access policy for this realm") from e

        if created:
            try:
                self.store.create_identity_with_realm(identity, realm)
                logger.info("Created identity %s with realm %s", identity.id, realm.namespace)
            except IntegrityError:
                # A concurrent first login for the same subject committed first.
                winner = self.store.get_identity_by_subject(issuer, user_info.subject)
                winner_realm = self.store.get_realm_by_owner(winner.id) if winner else None
                if winner is None or winner_realm is None:
                    raise
                logger.warning(
                    "Concurrent first login for identity %s; namespace %s left unowned", winner.id, realm.namespace
                )
                identity, realm, created = winner, winner_realm, False

        session = self.create_session(identity.id)
        return LoginResult(identity=identity, realm=realm, session=session, created=created)

    def logout(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)
