"""
tests/test_realms.py -- Unit tests for RealmManager and namespace naming.

Covers:
  - namespace_for() is deterministic, prefixed and short
  - Concurrent get_or_create_realm() for one name creates one namespace
  - Per-namespace locks are dropped once nobody holds them
  - NamespaceExistsError from create is treated as success
  - create_auth_key_by_name() heals a missing namespace
  - get_realm_nodes() scopes to one namespace; unknown namespace -> []
"""

from __future__ import annotations

import asyncio
import gc

from fakes import FakeMeshControl
from mesh.client import Namespace
from mesh.realms import RealmManager, generate_realm_id, namespace_for


def test_namespace_for_is_deterministic():
    realm_id = generate_realm_id()
    ns = namespace_for(realm_id)
    assert ns == namespace_for(realm_id)
    assert ns.startswith("realm-")
    assert len(ns) == len("realm-") + 12
    assert "-" not in ns[len("realm-"):]


def test_realm_ids_are_unique():
    assert len({generate_realm_id() for _ in range(100)}) == 100


def test_concurrent_get_or_create_makes_one_namespace():
    mesh = FakeMeshControl()
    manager = RealmManager(mesh)

    async def run():
        return await asyncio.gather(*(manager.get_or_create_realm("realm-x") for _ in range(5)))

    results = asyncio.run(run())
    assert len({ns.id for ns in results}) == 1
    assert list(mesh.namespaces) == ["realm-x"]
    assert mesh.create_calls == 1


def test_namespace_locks_are_released():
    manager = RealmManager(FakeMeshControl())

    async def run():
        await asyncio.gather(*(manager.get_or_create_realm(f"realm-{i}") for i in range(20)))

    asyncio.run(run())
    gc.collect()
    assert len(manager._locks) == 0


class _StaleListMesh(FakeMeshControl):
    """Hides one namespace from the first list call, as if another process created it meanwhile."""

    def __init__(self) -> None:
        super().__init__()
        self._hide_once = True

    async def list_namespaces(self):
        found = await super().list_namespaces()
        if self._hide_once:
            self._hide_once = False
            return []
        return found


def test_namespace_exists_is_success():
    mesh = _StaleListMesh()
    mesh.namespaces["realm-y"] = Namespace(id="42", name="realm-y")
    ns = asyncio.run(RealmManager(mesh).get_or_create_realm("realm-y"))
    assert ns.id == "42"
    assert mesh.create_calls == 1


def test_create_auth_key_heals_missing_namespace():
    mesh = FakeMeshControl()
    key = asyncio.run(RealmManager(mesh).create_auth_key_by_name("realm-z", 3600))
    assert "realm-z" in mesh.namespaces
    assert key.namespace == "realm-z"
    assert key.reusable is False


def test_get_realm_nodes_scoped_to_namespace():
    mesh = FakeMeshControl()
    manager = RealmManager(mesh)

    async def run():
        await manager.get_or_create_realm("realm-a")
        await manager.get_or_create_realm("realm-b")
        mesh.add_node("realm-a", "web-1")
        mesh.add_node("realm-b", "db-1")
        return await manager.get_realm_nodes("realm-a"), await manager.get_realm_nodes("realm-missing")

    nodes, missing = asyncio.run(run())
    assert [n.name for n in nodes] == ["web-1"]
    assert missing == []
