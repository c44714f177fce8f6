"""
api/routes/auth.py -- Browser login (OIDC) and session endpoints.

Routes:
  GET  /auth/providers   -- list configured identity providers (public)
  GET  /auth/login       -- create AuthState, 302 to the provider (public, rate-limited)
  GET  /auth/callback    -- finish the exchange, ensure realm + ACL, issue session
  GET  /auth/complete    -- default post-login landing; echoes session token + namespace
  GET  /auth/me          -- identity and realm for the caller (session)
  POST /auth/logout      -- delete the session and clear cookies

Security:
  [H2] /auth/login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries a session token.
  Open-redirect guard: redirect_uri must be on PUBLIC_URL's origin and is
  checked before any state is stored.
  The callback answers a missing, replayed or expired state with the same
  400 invalid_state.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import AuthCompleteResponse, MeResponse, ProviderInfo, ProvidersResponse, RealmInfo
from api.services import Services, get_services
from auth.dependencies import AuthContext, require_session, session_token_from_request
from auth.login import LoginError
from auth.oauth import IdTokenVerificationError, TokenExchangeError
from auth.tokens import NAMESPACE_COOKIE, SESSION_HEADER, clear_session_cookies, set_session_cookies
from core.config import get_settings

logger = logging.getLogger("realmgate.api.auth")

router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=ProvidersResponse)
async def list_providers(services: Services = Depends(get_services)) -> ProvidersResponse:
    """Return the configured identity providers. Empty when none are set up."""
    return ProvidersResponse(providers=[ProviderInfo(**p) for p in services.providers.get_enabled_providers()])


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/login")
async def login(
    request: Request,
    provider: str = Query(..., min_length=1, max_length=64),
    redirect_uri: str | None = Query(default=None, max_length=2048),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """Start a login: store a single-use AuthState and redirect to the provider."""
    idp = services.providers.get(provider)
    if idp is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_provider", "message": f"Provider {provider!r} is not configured."},
        )
    if redirect_uri and not services.auth_states.is_valid_redirect_uri(redirect_uri):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_redirect_uri", "message": "redirect_uri must be on this service's origin."},
        )
    target = services.auth_states.resolve_redirect_uri(redirect_uri)
    auth_state = services.auth_states.create_auth_state(target, idp.name)
    return RedirectResponse(idp.get_auth_url(auth_state.state, auth_state.nonce), status_code=302)


@router.api_route("/auth/callback", methods=["GET", "POST"])
async def callback(
    code: str | None = Query(default=None, max_length=2048),
    state: str | None = Query(default=None, max_length=256),
    error: str | None = Query(default=None, max_length=256),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """Complete the provider round trip and sign the user in.

    Order: consume state -> exchange code -> identity -> realm -> ACL rule
    -> session -> 302 to the redirect target stored with the state.
    """
    auth_state = services.auth_states.validate_state(state or "")
    if auth_state is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_state", "message": "Login state is missing, expired or already used."},
        )
    if error:
        raise HTTPException(
            status_code=400,
            detail={"code": "provider_denied", "message": "The identity provider did not authorize the login."},
        )
    if not code:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_code", "message": "Authorization code is required."},
        )

    idp = services.providers.get(auth_state.provider_name)
    if idp is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_provider", "message": "Provider is no longer configured."},
        )

    try:
        user_info = await idp.exchange_code(code, auth_state.nonce)
    except TokenExchangeError as e:
        logger.error("Code exchange failed for provider %s: %s", idp.name, e)
        raise HTTPException(
            status_code=502,
            detail={"code": "token_exchange_failed", "message": "The identity provider rejected the login."},
        ) from e
    except IdTokenVerificationError as e:
        logger.warning("Identity token rejected for provider %s: %s", idp.name, e)
        raise HTTPException(
            status_code=401,
            detail={"code": "id_token_invalid", "message": "The identity token could not be verified."},
        ) from e

    try:
        result = await services.login.complete_login(idp.issuer, user_info)
    except LoginError as e:
        raise HTTPException(status_code=502, detail={"code": e.code, "message": e.message}) from e

    settings = services.settings
    resp = RedirectResponse(auth_state.redirect_uri, status_code=302)
    set_session_cookies(
        resp,
        result.session.id,
        result.realm.namespace,
        max_age=settings.session_ttl_seconds,
        secure=bool(settings.secure_cookies),
    )
    resp.headers[SESSION_HEADER] = result.session.id
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    logger.info("Login complete for identity %s (namespace %s)", result.identity.id, result.realm.namespace)
    return resp


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/complete", response_model=AuthCompleteResponse)
async def complete(request: Request, ctx: AuthContext = Depends(require_session)) -> JSONResponse:
    """Hand the session token to a CLI or page that cannot read httpOnly cookies."""
    resp = JSONResponse(
        content=AuthCompleteResponse(
            session_token=ctx.session.id,
            namespace=request.cookies.get(NAMESPACE_COOKIE) or ctx.realm.namespace,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(ctx: AuthContext = Depends(require_session)) -> MeResponse:
    return MeResponse(
        identity_id=ctx.identity.id,
        issuer=ctx.identity.issuer,
        email=ctx.identity.email,
        name=ctx.identity.name,
        picture=ctx.identity.picture,
        realm=RealmInfo(id=ctx.realm.id, namespace=ctx.realm.namespace, display_name=ctx.realm.display_name),
    )


@router.post("/auth/logout")
async def logout(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """Delete the caller's session (if any) and clear cookies. Always 200."""
    token = session_token_from_request(request)
    if token:
        services.login.logout(token)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookies(resp, secure=bool(services.settings.secure_cookies))
    return resp
