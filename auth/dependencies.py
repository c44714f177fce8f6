"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential kinds converge on one AuthContext (identity + realm):
  1. Session -- X-Session-Token header (CLI) or the realmgate_session cookie
     (browser). Header wins when both are present.
  2. API key -- Authorization: Bearer <key>. Only accepted by routes that
     opt in via require_session_or_api_key(scope); the key must carry that
     scope as a whole token.

try_get_session_context() is the soft variant (returns None on failure).
require_session() wraps it and raises HTTP 401 if unauthenticated.

Every failure is the same 401 "unauthorized" -- the response never says
whether a session, key or identity exists. Missing scope is 403.

Layer rule: no imports from api/ or mesh/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request

from auth.models import ApiKey, Identity, Realm, Session
from auth.tokens import SESSION_COOKIE, SESSION_HEADER, has_scope


@dataclass
class AuthContext:
    identity: Identity
    realm: Realm
    session: Session | None = None
    api_key: ApiKey | None = None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def session_token_from_request(request: Request) -> str | None:
    token = request.headers.get(SESSION_HEADER, "").strip()
    if token:
        return token
    return request.cookies.get(SESSION_COOKIE) or None


def try_get_session_context(request: Request) -> AuthContext | None:
    """Authenticate the request by session. Never raises.

    A successful lookup refreshes the session's last_used_at.
    """
    token = session_token_from_request(request)
    if not token:
        return None
    store = request.app.state.services.store
    session = store.get_session(token)
    if session is None:
        return None
    identity = store.get_identity(session.identity_id)
    if identity is None:
        return None
    realm = store.get_realm_by_owner(identity.id)
    if realm is None:
        return None
    store.touch_session(session.id)
    return AuthContext(identity=identity, realm=realm, session=session)


def require_session(request: Request) -> AuthContext:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.post("/join-token")
        async def route(ctx: AuthContext = Depends(require_session)): ...
    """
    ctx = try_get_session_context(request)
    if ctx is None:
        raise _unauthorized()
    return ctx


def _api_key_context(request: Request, raw_key: str, scope: str) -> AuthContext:
    services = request.app.state.services
    api_key = services.api_keys.get_by_key(raw_key)
    if api_key is None:
        raise _unauthorized()
    identity = services.store.get_identity(api_key.identity_id)
    realm = services.store.get_realm(api_key.realm_id)
    if identity is None or realm is None:
        raise _unauthorized()
    if not has_scope(api_key.scopes, scope):
        raise HTTPException(
            status_code=403,
            detail={"code": "insufficient_scope", "message": f"API key lacks scope {scope}."},
        )
    return AuthContext(identity=identity, realm=realm, api_key=api_key)


def require_session_or_api_key(scope: str) -> Callable[[Request], AuthContext]:
    """Build a dependency accepting a Bearer API key holding scope, or a session.

    Use as a FastAPI dependency:
        @router.get("/nodes")
        async def route(ctx: AuthContext = Depends(require_session_or_api_key("nodes:read"))): ...
    """

    def dependency(request: Request) -> AuthContext:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return _api_key_context(request, auth_header[7:].strip(), scope)
        return require_session(request)

    return dependency
