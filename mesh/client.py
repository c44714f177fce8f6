"""
mesh/client.py -- Async REST client for the mesh-control service.

Every call is one HTTP round trip over a shared httpx.AsyncClient, so a
cancelled request task cancels the in-flight call. Nothing here retries:
a failed call raises MeshControlError and the caller fails its own request.

The mesh-control service names its tenants "users"; this module calls them
namespaces.

Wire format:
  GET  /api/v1/user                    -> {"users": [{"id", "name", ...}]}
  POST /api/v1/user      {"name"}      -> {"user": {...}}
  POST /api/v1/preauthkey {"user", "reusable", "ephemeral", "expiration"}
                                       -> {"preAuthKey": {"key", ...}}
  GET  /api/v1/node[?user=<id>]        -> {"nodes": [...]}
  GET  /api/v1/policy                  -> {"policy": "<json text>"}
  PUT  /api/v1/policy    {"policy"}
  GET  /api/v1/health

Security:
  The bearer API key is sent on every call and is never logged.
  follow_redirects is off -- the base URL is operator configured.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

logger = logging.getLogger("realmgate.mesh")


class MeshControlError(Exception):
    """The mesh-control service was unreachable or rejected an operation."""

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.status_code = status_code


class NamespaceExistsError(MeshControlError):
    """Create was refused because a namespace of that name already exists."""


@dataclass
class Namespace:
    id: str
    name: str


@dataclass
class AuthKey:
    """A bootstrap credential issued by the mesh-control service."""

    key: str
    namespace: str
    reusable: bool = False
    expiration: datetime | None = None


@dataclass
class Node:
    id: str
    name: str
    namespace: str = ""
    ip_addresses: list[str] = field(default_factory=list)
    online: bool = False
    last_seen: str | None = None


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MeshControlClient:
    """Thin async wrapper over the mesh-control REST API.

    Usage:
        client = MeshControlClient("http://127.0.0.1:8080", api_key)
        ns = await client.create_namespace("realm-0123456789ab")
        await client.aclose()

    transport is injectable so tests can use httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Mesh-control %s failed: %s", operation, e)
            raise MeshControlError(operation, f"request failed: {e}") from e
        if resp.status_code not in (200, 201):
            body = resp.text[:500]
            logger.error("Mesh-control %s returned %d: %s", operation, resp.status_code, body)
            raise MeshControlError(operation, f"status {resp.status_code}: {body}", resp.status_code)
        return resp

    @staticmethod
    def _json(operation: str, resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise MeshControlError(operation, "response is not valid JSON") from e
        if not isinstance(data, dict):
            raise MeshControlError(operation, "response is not a JSON object")
        return data

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> None:
        """Raise MeshControlError unless the service answers its health probe."""
        await self._request("health", "GET", "/api/v1/health")

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    async def list_namespaces(self) -> list[Namespace]:
        resp = await self._request("list_namespaces", "GET", "/api/v1/user")
        data = self._json("list_namespaces", resp)
        return [Namespace(id=str(u.get("id", "")), name=u.get("name", "")) for u in data.get("users") or []]

    async def create_namespace(self, name: str) -> Namespace:
        """Create a namespace.

        Raises NamespaceExistsError when the service reports a duplicate,
        either with 409 or with an "already exists" message.
        """
        try:
            resp = await self._request("create_namespace", "POST", "/api/v1/user", json={"name": name})
        except MeshControlError as e:
            if e.status_code == 409 or "already exists" in str(e).lower():
                raise NamespaceExistsError("create_namespace", f"namespace {name} already exists", e.status_code) from e
            raise
        user = self._json("create_namespace", resp).get("user") or {}
        return Namespace(id=str(user.get("id", "")), name=user.get("name", name))

    # ------------------------------------------------------------------
    # Bootstrap credentials
    # ------------------------------------------------------------------

    async def create_auth_key(self, namespace: Namespace, ttl_seconds: int, reusable: bool = False) -> AuthKey:
        """Issue a bootstrap credential for namespace, valid for ttl_seconds."""
        expiration = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        payload = {
            "user": namespace.id,
            "reusable": reusable,
            "ephemeral": False,
            "expiration": _rfc3339(expiration),
        }
        resp = await self._request("create_auth_key", "POST", "/api/v1/preauthkey", json=payload)
        pak = self._json("create_auth_key", resp).get("preAuthKey") or {}
        key = pak.get("key")
        if not key:
            raise MeshControlError("create_auth_key", "response carried no key")
        return AuthKey(
            key=key,
            namespace=namespace.name,
            reusable=bool(pak.get("reusable", reusable)),
            expiration=_parse_timestamp(pak.get("expiration")) or expiration,
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def list_nodes(self, namespace: Namespace | None = None) -> list[Node]:
        params = {"user": namespace.id} if namespace is not None else None
        resp = await self._request("list_nodes", "GET", "/api/v1/node", params=params)
        nodes = []
        for n in self._json("list_nodes", resp).get("nodes") or []:
            owner = n.get("user") or {}
            nodes.append(
                Node(
                    id=str(n.get("id", "")),
                    name=n.get("givenName") or n.get("name", ""),
                    namespace=owner.get("name", ""),
                    ip_addresses=list(n.get("ipAddresses") or []),
                    online=bool(n.get("online", False)),
                    last_seen=n.get("lastSeen"),
                )
            )
        return nodes

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    async def get_policy(self) -> str:
        """Return the raw policy document (JSON text, possibly empty)."""
        resp = await self._request("get_policy", "GET", "/api/v1/policy")
        policy = self._json("get_policy", resp).get("policy", "")
        return policy or ""

    async def set_policy(self, policy: str) -> None:
        await self._request("set_policy", "PUT", "/api/v1/policy", json={"policy": policy})
