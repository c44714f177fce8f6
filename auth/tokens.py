"""
auth/tokens.py -- Session tokens, API key material, scope matching and cookie helpers.

Security design decisions:
  Sessions: secrets.token_hex(32) -- 256 bits, opaque, unrelated to the
       identity it belongs to. Nothing about the user can be derived from it.

  API keys: secrets.token_hex(32) gives 256 bits of entropy -- brute-force is
       computationally infeasible. We store HMAC-SHA256(SECRET_KEY, raw_key) so
       lookup is O(1). A slow password hash is unnecessary for random keys.

  Scopes: comma-separated, matched token-by-token after trimming. Never a
       substring test -- "nodes:readwrite" must not satisfy "nodes:read".

Layer rule: no imports from api/ or mesh/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SESSION_COOKIE = "realmgate_session"
NAMESPACE_COOKIE = "realmgate_namespace"
SESSION_HEADER = "X-Session-Token"

_API_KEY_PREFIX = "rg_"
KEY_PREFIX_LENGTH = 12


def generate_session_id() -> str:
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: rg_<64 hex chars>."""
    return f"{_API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(secret_key: str, raw_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_key) as a hex string.

    An attacker who obtains the DB cannot use or recover keys without also
    knowing SECRET_KEY. The hash is deterministic, enabling O(1) lookup.
    """
    return hmac.new(
        secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


def parse_scopes(scopes: str) -> list[str]:
    return [s.strip() for s in scopes.split(",") if s.strip()]


def has_scope(scopes: str, target: str) -> bool:
    """Return True if target appears as a whole token in the comma-separated scopes."""
    target = target.strip()
    return bool(target) and target in parse_scopes(scopes)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookies(response, session_id: str, namespace: str, max_age: int, secure: bool) -> None:
    """Write the session cookie (httpOnly) and a readable namespace cookie.

    httponly=True: JS cannot read the session (XSS mitigation).
    samesite="lax": cookie sent on top-level navigations (the provider
        redirect back to us) but not on cross-site POST.
    secure: only sent over HTTPS when the public URL is https.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )
    response.set_cookie(
        NAMESPACE_COOKIE,
        value=namespace,
        httponly=False,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )


def clear_session_cookies(response, secure: bool) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")
    response.delete_cookie(NAMESPACE_COOKIE, path="/", secure=secure, samesite="lax")
