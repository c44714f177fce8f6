"""
api/routes/device.py -- Device authorization flow for headless and CLI clients.

Routes:
  POST /device/code    -- start a flow; returns device_code + user_code (public, rate-limited)
  POST /device/verify  -- signed-in user approves a user_code (session)
  POST /device/deny    -- signed-in user denies a user_code (session)
  POST /device/token   -- CLI polls with its device_code (public)

Poll responses:
  202 authorization_pending | 200 approved (credential, delivered once)
  410 expired_token         | 403 access_denied
  404 invalid_or_expired_code once a terminal status has been delivered
  or the request was swept.

Unknown and expired user codes both answer 404 invalid_or_expired_code.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    DeviceCodeResponse,
    DeviceTokenRequest,
    DeviceTokenResponse,
    DeviceUserCodeRequest,
    DeviceVerifyResponse,
)
from api.services import Services, get_services
from auth.dependencies import AuthContext, require_session
from auth.device_flow import (
    POLL_APPROVED,
    POLL_DENIED,
    POLL_EXPIRED,
    POLL_PENDING,
    DeviceRequestNotFound,
    DeviceRequestNotPending,
    UserCodeExhaustedError,
    is_valid_device_code,
    is_valid_user_code,
    normalize_user_code,
)
from core.config import get_settings

logger = logging.getLogger("realmgate.api.device")

router = APIRouter()

_POLL_HTTP_STATUS = {
    POLL_PENDING: 202,
    POLL_APPROVED: 200,
    POLL_EXPIRED: 410,
    POLL_DENIED: 403,
}


def _device_code_limit() -> str:
    return get_settings().device_code_rate_limit


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "invalid_or_expired_code", "message": "Code is invalid or has expired."},
    )


def _already_used() -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"code": "code_already_used", "message": "Code has already been used."},
    )


def _checked_user_code(raw: str) -> str:
    user_code = normalize_user_code(raw)
    if not is_valid_user_code(user_code):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_code_format", "message": "User code must look like XXXX-XXXX."},
        )
    return user_code


@limiter.limit(_device_code_limit)
@router.post("/device/code", response_model=DeviceCodeResponse)
async def device_code(request: Request, services: Services = Depends(get_services)) -> DeviceCodeResponse:
    """Start a device flow. The CLI shows user_code and polls with device_code."""
    flow = services.device_flow
    try:
        req = flow.create()
    except UserCodeExhaustedError as e:
        raise HTTPException(
            status_code=503,
            detail={"code": "user_code_exhausted", "message": "Could not allocate a user code. Try again."},
        ) from e
    return DeviceCodeResponse(
        device_code=req.device_code,
        user_code=req.user_code,
        verification_uri=flow.verification_uri,
        expires_in=int(flow.ttl.total_seconds()),
        interval=flow.poll_interval,
    )


@router.post("/device/verify", response_model=DeviceVerifyResponse)
async def device_verify(
    body: DeviceUserCodeRequest,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> DeviceVerifyResponse:
    """Approve a pending request and attach a single-use credential for the caller's realm."""
    user_code = _checked_user_code(body.user_code)
    try:
        await services.device_flow.verify(user_code, ctx.identity, ctx.realm)
    except DeviceRequestNotFound as e:
        raise _not_found() from e
    except DeviceRequestNotPending as e:
        raise _already_used() from e
    return DeviceVerifyResponse(status="approved", namespace=ctx.realm.namespace)


@router.post("/device/deny", response_model=DeviceVerifyResponse)
async def device_deny(
    body: DeviceUserCodeRequest,
    ctx: AuthContext = Depends(require_session),
    services: Services = Depends(get_services),
) -> DeviceVerifyResponse:
    """Deny a pending request. The polling client receives access_denied."""
    user_code = _checked_user_code(body.user_code)
    try:
        services.device_flow.deny(user_code, ctx.identity.id)
    except DeviceRequestNotFound as e:
        raise _not_found() from e
    except DeviceRequestNotPending as e:
        raise _already_used() from e
    return DeviceVerifyResponse(status="denied", namespace=ctx.realm.namespace)


@router.post("/device/token", response_model=DeviceTokenResponse)
async def device_token(body: DeviceTokenRequest, services: Services = Depends(get_services)) -> JSONResponse:
    """Poll for completion. A terminal status is returned once, then the request is gone."""
    if not is_valid_device_code(body.device_code):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_code_format", "message": "Device code must be 32 hex characters."},
        )
    try:
        result = services.device_flow.poll(body.device_code)
    except DeviceRequestNotFound as e:
        raise _not_found() from e
    payload = DeviceTokenResponse(
        status=result.status,
        authkey=result.auth_key,
        mesh_url=result.mesh_url,
        namespace=result.namespace,
    )
    resp = JSONResponse(status_code=_POLL_HTTP_STATUS[result.status], content=payload.model_dump(exclude_none=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp
