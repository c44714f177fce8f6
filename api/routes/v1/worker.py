"""
api/routes/v1/worker.py -- Join tokens and bootstrap credentials.

Routes:
  POST /api/v1/join-token   -- mint a join token for the caller's realm (session)
  POST /api/v1/worker/join  -- exchange a join token for a bootstrap credential (token in body)
  POST /api/v1/authkey      -- mint a bootstrap credential directly (session)
  POST /api/v1/deployer/join -- single-use credential for a third-party deployer
                               (API key with deployer:connect, or session)

Join-token failures:
  400 malformed_token  -- not a JWT (or not valid CLI base64)
  401 invalid_token    -- bad signature, wrong issuer, or realm unknown
  401 token_expired    -- past expiry

Join tokens are stateless: a leaked token works until it expires. TTLs are
bounded by JOIN_TOKEN_MAX_TTL_SECONDS.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from api.models import AuthKeyRequest, AuthKeyResponse, JoinTokenRequest, JoinTokenResponse, WorkerJoinRequest
from api.services import Services, get_services
from auth.dependencies import AuthContext, require_session, require_session_or_api_key
from auth.join_tokens import (
    ExpiredJoinTokenError,
    InvalidJoinTokenError,
    MalformedJoinTokenError,
    encode_for_cli,
    normalize_token,
)

logger = logging.getLogger("realmgate.api.worker")

router = APIRouter()


@router.post("/join-token", response_model=JoinTokenResponse)
async def create_join_token(
    body: JoinTokenRequest | None = None,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> JoinTokenResponse:
    settings = services.settings
    ttl = (body.ttl_seconds if body else None) or settings.join_token_default_ttl_seconds
    if ttl > settings.join_token_max_ttl_seconds:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "invalid_ttl",
                "message": f"ttl_seconds may not exceed {settings.join_token_max_ttl_seconds}.",
            },
        )
    token = services.join_tokens.generate(ctx.realm.id, ctx.realm.namespace, ttl)
    claims = services.join_tokens.validate(token)
    logger.info("Issued join token for namespace %s (ttl %ds)", ctx.realm.namespace, ttl)
    return JoinTokenResponse(
        token=token,
        cli_token=encode_for_cli(token),
        expires_at=claims.expires_at,
        namespace=ctx.realm.namespace,
        coordinator_url=settings.public_url,
    )


@router.post("/worker/join", response_model=AuthKeyResponse)
async def worker_join(body: WorkerJoinRequest, services: Services = Depends(get_services)) -> AuthKeyResponse:
    """Exchange a join token for a single-use bootstrap credential in the token's realm."""
    try:
        claims = services.join_tokens.validate(normalize_token(body.token))
    except MalformedJoinTokenError as e:
        raise HTTPException(
            status_code=400,
            detail={"code": "malformed_token", "message": "Join token is malformed."},
        ) from e
    except ExpiredJoinTokenError as e:
        raise HTTPException(
            status_code=401,
            detail={"code": "token_expired", "message": "Join token has expired."},
        ) from e
    except InvalidJoinTokenError as e:
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_token", "message": "Join token is invalid."},
        ) from e

    realm = services.store.get_realm(claims.realm_id)
    if realm is None or realm.namespace != claims.namespace:
        logger.warning("Join token for unknown realm presented")
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_token", "message": "Join token is invalid."},
        )

    ttl = services.settings.authkey_default_ttl_seconds
    key = await services.realms.create_auth_key_by_name(realm.namespace, ttl, reusable=False)
    return AuthKeyResponse(
        authkey=key.key,
        mesh_url=services.settings.mesh_public_url,
        namespace=realm.namespace,
        reusable=key.reusable,
        expires_at=key.expiration,
    )


@router.post("/authkey", response_model=AuthKeyResponse)
async def create_authkey(
    body: AuthKeyRequest | None = None,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> AuthKeyResponse:
    ttl = (body.ttl_seconds if body else None) or services.settings.authkey_default_ttl_seconds
    reusable = body.reusable if body else False
    key = await services.realms.create_auth_key_by_name(ctx.realm.namespace, ttl, reusable=reusable)
    return AuthKeyResponse(
        authkey=key.key,
        mesh_url=services.settings.mesh_public_url,
        namespace=ctx.realm.namespace,
        reusable=key.reusable,
        expires_at=key.expiration,
    )


@router.post("/deployer/join", response_model=AuthKeyResponse)
async def deployer_join(
    ctx: AuthContext = Depends(require_session_or_api_key("deployer:connect")),
    services: Services = Depends(get_services),
) -> AuthKeyResponse:
    """Mint a single-use bootstrap credential in the realm the API key belongs to."""
    ttl = services.settings.authkey_default_ttl_seconds
    key = await services.realms.create_auth_key_by_name(ctx.realm.namespace, ttl, reusable=False)
    if ctx.api_key is not None:
        logger.info("Deployer key %s minted a credential for %s", ctx.api_key.key_prefix, ctx.realm.namespace)
    return AuthKeyResponse(
        authkey=key.key,
        mesh_url=services.settings.mesh_public_url,
        namespace=ctx.realm.namespace,
        reusable=key.reusable,
        expires_at=key.expiration,
    )
