"""
api/services.py -- The explicitly constructed service graph.

Everything a handler needs (store, provider registry, mesh-control client,
realm/ACL/device/join/API-key/login services) is built once by
build_services() during lifespan startup and stored on app.state.services.
Handlers reach it through the get_services() dependency; tests build a
Services with fakes and install it the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Request

from auth.api_keys import ApiKeyService
from auth.device_flow import DeviceFlowService
from auth.join_tokens import JoinTokenService
from auth.login import LoginService
from auth.oauth import ProviderRegistry, build_provider_registry
from auth.states import AuthStateManager
from auth.store import AuthStore
from core.config import Settings
from mesh.acl import ACLSynchronizer
from mesh.client import MeshControlClient
from mesh.realms import RealmManager

logger = logging.getLogger("realmgate.api")


@dataclass
class Services:
    settings: Settings
    store: AuthStore
    mesh: MeshControlClient
    providers: ProviderRegistry
    auth_states: AuthStateManager
    realms: RealmManager
    acl: ACLSynchronizer
    join_tokens: JoinTokenService
    device_flow: DeviceFlowService
    api_keys: ApiKeyService
    login: LoginService

    async def aclose(self) -> None:
        await self.mesh.aclose()
        self.store.close()


def assemble_services(
    settings: Settings,
    store: AuthStore,
    mesh: MeshControlClient,
    providers: ProviderRegistry,
) -> Services:
    """Wire the service graph around already-built leaf dependencies."""
    realms = RealmManager(mesh)
    acl = ACLSynchronizer(mesh)
    return Services(
        settings=settings,
        store=store,
        mesh=mesh,
        providers=providers,
        auth_states=AuthStateManager(store, settings.public_url, settings.auth_state_ttl_seconds),
        realms=realms,
        acl=acl,
        join_tokens=JoinTokenService(
            settings.join_token_secret, settings.public_url, settings.join_token_leeway_seconds
        ),
        device_flow=DeviceFlowService(
            store,
            realms,
            verification_uri=f"{settings.public_url}/device/verify",
            mesh_url=settings.mesh_public_url,
            ttl_seconds=settings.device_code_ttl_seconds,
            poll_interval_seconds=settings.device_poll_interval_seconds,
            sweep_grace_seconds=settings.device_sweep_grace_seconds,
            authkey_ttl_seconds=settings.authkey_default_ttl_seconds,
        ),
        api_keys=ApiKeyService(store, settings.secret_key, settings.max_api_keys_per_identity),
        login=LoginService(store, realms, acl, settings.session_ttl_seconds),
    )


async def build_services(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> Services:
    """Build the production service graph. OIDC discovery runs here and may raise."""
    store = AuthStore(settings.database_url)
    mesh = MeshControlClient(
        settings.mesh_control_url,
        settings.mesh_control_api_key,
        timeout=settings.mesh_control_timeout_seconds,
        transport=transport,
    )
    try:
        providers = await build_provider_registry(settings, transport=transport)
    except Exception:
        await mesh.aclose()
        store.close()
        raise
    logger.info("Services initialized (%d identity provider(s))", len(providers))
    return assemble_services(settings, store, mesh, providers)


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's Services."""
    return request.app.state.services
