"""
mesh/acl.py -- Keeps the mesh-control access policy in step with the known realms.

Isolation model: one "accept" rule per namespace, letting members of that
namespace reach only each other:

    {"action": "accept", "src": ["<ns>@"], "dst": ["<ns>@:*"]}

Anything without a rule is denied by the mesh-control service.

Concurrency:
  add_realm_to_policy() is a read-modify-write against a single remote
  document. Two logins appending to the same stale read would silently lose
  one rule, so every mutation holds one asyncio.Lock for the whole cycle.
  This is the only process-wide lock in the service; policy writes are rare
  compared with logins.

Every failure (transport, status, unparseable document) is raised as
PolicySyncError so the login path can treat it as a hard failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from mesh.client import MeshControlClient, MeshControlError

logger = logging.getLogger("realmgate.mesh.acl")

_KNOWN_KEYS = ("acls", "groups", "tagOwners", "hosts")


class PolicySyncError(Exception):
    """The access policy could not be read, parsed or written."""


def _string_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{what} must be a list of strings")
    return list(value)


def _mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return dict(value)


@dataclass
class ACLRule:
    """One policy rule. Per-rule keys other than action/src/dst (e.g. proto) ride along in extra."""

    action: str
    src: list[str]
    dst: list[str]
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_namespace(cls, namespace: str) -> "ACLRule":
        return cls(action="accept", src=[f"{namespace}@"], dst=[f"{namespace}@:*"])

    @classmethod
    def from_dict(cls, raw: Any) -> "ACLRule":
        if not isinstance(raw, dict):
            raise ValueError("acl rule is not a JSON object")
        action = raw.get("action", "")
        if not isinstance(action, str):
            raise ValueError("acl rule action must be a string")
        return cls(
            action=action,
            src=_string_list(raw.get("src"), "acl rule src"),
            dst=_string_list(raw.get("dst"), "acl rule dst"),
            extra={k: v for k, v in raw.items() if k not in ("action", "src", "dst")},
        )

    @property
    def key(self) -> str | None:
        """Rules are identified by their first source."""
        return self.src[0] if self.src else None

    def to_dict(self) -> dict:
        data = {"action": self.action, "src": list(self.src), "dst": list(self.dst)}
        data.update(self.extra)
        return data


@dataclass
class ACLPolicy:
    """Parsed policy document.

    Top-level keys this service does not manage are kept in extra and written
    back untouched.
    """

    acls: list[ACLRule] = field(default_factory=list)
    groups: dict[str, list[str]] = field(default_factory=dict)
    tag_owners: dict[str, list[str]] = field(default_factory=dict)
    hosts: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, text: str) -> "ACLPolicy":
        """Parse a policy document. An empty document is an empty policy.

        Raises ValueError when the document or any rule has the wrong shape.
        """
        if not text.strip():
            return cls()
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("policy document is not a JSON object")
        raw_rules = data.get("acls")
        if raw_rules is None:
            raw_rules = []
        if not isinstance(raw_rules, list):
            raise ValueError("acls must be a list")
        return cls(
            acls=[ACLRule.from_dict(raw) for raw in raw_rules],
            groups=_mapping(data.get("groups"), "groups"),
            tag_owners=_mapping(data.get("tagOwners"), "tagOwners"),
            hosts=_mapping(data.get("hosts"), "hosts"),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_json(self) -> str:
        data: dict[str, Any] = dict(self.extra)
        data["acls"] = [r.to_dict() for r in self.acls]
        if self.groups:
            data["groups"] = self.groups
        if self.tag_owners:
            data["tagOwners"] = self.tag_owners
        if self.hosts:
            data["hosts"] = self.hosts
        return json.dumps(data)

    def has_rule_for(self, namespace: str) -> bool:
        wanted = f"{namespace}@"
        return any(rule.key == wanted for rule in self.acls)

    def add_namespace(self, namespace: str) -> bool:
        """Append the isolation rule for namespace. Returns False if already present."""
        if self.has_rule_for(namespace):
            return False
        self.acls.append(ACLRule.for_namespace(namespace))
        return True

    @classmethod
    def isolation_for(cls, namespaces: list[str]) -> "ACLPolicy":
        policy = cls()
        for ns in namespaces:
            policy.add_namespace(ns)
        return policy


class ACLSynchronizer:
    """Serialized read-modify-write access to the mesh-control policy."""

    def __init__(self, client: MeshControlClient) -> None:
        self.client = client
        self._lock = asyncio.Lock()

    async def _write(self, policy: ACLPolicy) -> None:
        try:
            await self.client.set_policy(policy.to_json())
        except MeshControlError as e:
            raise PolicySyncError(f"write policy: {e}") from e

    async def add_realm_to_policy(self, namespace: str) -> bool:
        """Ensure namespace has its isolation rule. Returns True if a rule was added."""
        async with self._lock:
            try:
                text = await self.client.get_policy()
            except MeshControlError as e:
                raise PolicySyncError(f"read policy: {e}") from e
            try:
                policy = ACLPolicy.from_json(text)
            except ValueError as e:
                raise PolicySyncError(f"parse policy: {e}") from e
            if not policy.add_namespace(namespace):
                return False
            await self._write(policy)
        logger.info("Added isolation rule for %s", namespace)
        return True

    async def set_empty_policy(self) -> None:
        """Replace the policy with one that has no rules (deny everything)."""
        async with self._lock:
            await self._write(ACLPolicy())
        logger.info("Reset access policy to empty")

    async def rebuild_policy(self) -> int:
        """Write a fresh isolation policy covering every namespace in mesh-control.

        Returns the number of rules written.
        """
        async with self._lock:
            try:
                namespaces = await self.client.list_namespaces()
            except MeshControlError as e:
                raise PolicySyncError(f"list namespaces: {e}") from e
            policy = ACLPolicy.isolation_for([ns.name for ns in namespaces])
            await self._write(policy)
        logger.info("Rebuilt access policy with %d rule(s)", len(policy.acls))
        return len(policy.acls)
