"""
api/routes/v1/nodes.py -- Mesh members of the caller's realm.

Routes:
  GET /api/v1/nodes -- session, or API key with the nodes:read scope

The realm comes from the credential, never from the request, so one tenant
cannot list another tenant's nodes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import NodeInfo, NodesResponse
from api.services import Services, get_services
from auth.dependencies import AuthContext, require_session_or_api_key

router = APIRouter()


@router.get("/nodes", response_model=NodesResponse)
async def list_nodes(
    ctx: AuthContext = Depends(require_session_or_api_key("nodes:read")),
    services: Services = Depends(get_services),
) -> NodesResponse:
    nodes = await services.realms.get_realm_nodes(ctx.realm.namespace)
    return NodesResponse(
        namespace=ctx.realm.namespace,
        nodes=[
            NodeInfo(id=n.id, name=n.name, ip_addresses=n.ip_addresses, online=n.online, last_seen=n.last_seen)
            for n in nodes
        ],
        count=len(nodes),
    )
