"""
api/routes/v1/api_keys.py -- API key management for the signed-in identity.

Routes:
  POST   /api/v1/api-keys        -- create a key; the raw key is returned ONCE
  GET    /api/v1/api-keys        -- list key metadata
  GET    /api/v1/api-keys/{id}   -- one key's metadata
  DELETE /api/v1/api-keys/{id}   -- revoke

Security:
  [H3] At most MAX_API_KEYS_PER_IDENTITY keys per identity.
  IDOR guard: every lookup passes the caller's identity ID to the store;
  a key owned by someone else answers 404 exactly like a missing one.
  Keys are scoped to the caller's realm at creation time.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse
from api.services import Services, get_services
from auth.api_keys import ApiKeyLimitError
from auth.dependencies import AuthContext, require_session
from auth.store import utcnow

router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "API key not found."},
    )


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    body: ApiKeyCreate,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored."""
    if body.expires_at is not None and body.expires_at <= utcnow():
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_expiry", "message": "expires_at must be in the future."},
        )
    try:
        created = services.api_keys.create(
            ctx.identity.id,
            ctx.realm.id,
            body.name,
            ",".join(body.scopes),
            expires_at=body.expires_at,
        )
    except ApiKeyLimitError as e:  # [H3]
        raise HTTPException(
            status_code=400,
            detail={"code": "key_limit_reached", "message": f"{e}. Revoke an existing key first."},
        ) from e
    meta = ApiKeyResponse.from_api_key(created.api_key)
    return ApiKeyCreatedResponse(**meta.model_dump(), key=created.raw_key)


@router.get("/api-keys", response_model=list[ApiKeyResponse])
async def list_api_keys(
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> list[ApiKeyResponse]:
    """List the caller's keys. Raw key values are never returned."""
    return [ApiKeyResponse.from_api_key(k) for k in services.api_keys.list(ctx.identity.id)]


@router.get("/api-keys/{key_id}", response_model=ApiKeyResponse)
async def get_api_key(
    key_id: str,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> ApiKeyResponse:
    key = services.api_keys.get(key_id, ctx.identity.id)
    if key is None:
        raise _not_found()
    return ApiKeyResponse.from_api_key(key)


@router.delete("/api-keys/{key_id}", status_code=204)
async def revoke_api_key(
    key_id: str,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> Response:
    """Revoke a key. Ownership is verified in the store's WHERE clause [IDOR guard]."""
    if not services.api_keys.delete(key_id, ctx.identity.id):
        raise _not_found()
    return Response(status_code=204)
