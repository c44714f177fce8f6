"""
mesh/realms.py -- Realm (tenant namespace) lifecycle inside the mesh-control service.

The mesh-control service is the source of truth for which namespaces exist.
get_or_create_realm() is called on every login and on every credential
mint, so it must be idempotent under concurrency:

  1. A per-name asyncio.Lock serializes callers inside this process.
  2. A NamespaceExistsError from create (another process won the race, or
     the list was stale) is treated as success: re-list and return the match.

Realm IDs are random UUID4 strings generated once. The namespace name is a
pure function of the realm ID (namespace_for) so it can always be recomputed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref

from mesh.client import AuthKey, MeshControlClient, MeshControlError, NamespaceExistsError, Namespace, Node

logger = logging.getLogger("realmgate.mesh")

_NAMESPACE_PREFIX = "realm-"


def generate_realm_id() -> str:
    return str(uuid.uuid4())


def namespace_for(realm_id: str) -> str:
    """Derive the mesh namespace name from a realm ID.

    12 hex chars of a UUID4 is 48 random bits -- ample for uniqueness across
    tenants while staying short enough for hostnames and ACL rules.
    """
    return _NAMESPACE_PREFIX + realm_id.replace("-", "")[:12]


class RealmManager:
    """Idempotent get-or-create of namespaces plus credential minting."""

    def __init__(self, client: MeshControlClient) -> None:
        self.client = client
        # Entries vanish once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    async def _find(self, name: str) -> Namespace | None:
        for ns in await self.client.list_namespaces():
            if ns.name == name:
                return ns
        return None

    async def get_or_create_realm(self, name: str) -> Namespace:
        """Return the namespace called name, creating it if it does not exist."""
        async with self._lock_for(name):
            existing = await self._find(name)
            if existing is not None:
                return existing
            try:
                created = await self.client.create_namespace(name)
            except NamespaceExistsError:
                existing = await self._find(name)
                if existing is None:
                    raise MeshControlError("create_namespace", f"namespace {name} reported as existing but not listed")
                return existing
            logger.info("Created mesh namespace %s", name)
            return created

    async def create_auth_key_by_name(self, name: str, ttl_seconds: int, reusable: bool = False) -> AuthKey:
        """Mint a bootstrap credential for name.

        The namespace is ensured first so a mesh-control restart that lost
        its state heals on the next credential request.
        """
        namespace = await self.get_or_create_realm(name)
        key = await self.client.create_auth_key(namespace, ttl_seconds, reusable=reusable)
        logger.info("Issued %s bootstrap credential for %s", "reusable" if reusable else "single-use", name)
        return key

    async def get_realm_nodes(self, name: str) -> list[Node]:
        """List members of namespace name. An unknown namespace has no members."""
        namespace = await self._find(name)
        if namespace is None:
            return []
        return await self.client.list_nodes(namespace)
