"""
auth/join_tokens.py -- Signed, time-bounded join tokens for bootstrapping machines.

A join token is an HS256 JWT (python-jose) carrying:

    iss        -- this service's public URL
    sub        -- realm ID
    namespace  -- the realm's mesh namespace
    iat, exp   -- issued-at / expiry (seconds since epoch)

Validation needs no store lookup: signature, issuer and expiry are enough.

Stateless by design: there is no revocation list. A leaked token stays
valid until it expires, which is why TTLs are short (minutes to hours) and
bounded by JOIN_TOKEN_MAX_TTL_SECONDS.

validate() distinguishes three failures so the HTTP layer can answer
consistently:
    MalformedJoinTokenError  -> 400  (not a JWT at all)
    InvalidJoinTokenError    -> 401  (bad signature, wrong issuer, bad claims)
    ExpiredJoinTokenError    -> 401  (past exp, beyond the leeway)

CLI form: encode_for_cli() wraps the JWT in unpadded URL-safe base64 so it
survives copy-paste through shells; decode_from_cli() reverses it.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import JoinClaims

_ALGORITHM = "HS256"


class JoinTokenError(Exception):
    """Base class for join-token failures."""


class MalformedJoinTokenError(JoinTokenError):
    pass


class InvalidJoinTokenError(JoinTokenError):
    pass


class ExpiredJoinTokenError(JoinTokenError):
    pass


def _claims_from_payload(payload: dict) -> JoinClaims:
    return JoinClaims(
        issuer=payload["iss"],
        realm_id=payload["sub"],
        namespace=payload["namespace"],
        issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )


class JoinTokenService:
    """Mints and verifies join tokens with one HMAC signing key."""

    def __init__(self, signing_key: str, issuer: str, leeway_seconds: int = 0) -> None:
        self._key = signing_key
        self.issuer = issuer
        self.leeway = leeway_seconds

    def generate(self, realm_id: str, namespace: str, ttl_seconds: int, now: datetime | None = None) -> str:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        issued = now or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": realm_id,
            "namespace": namespace,
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM)

    def validate(self, token: str) -> JoinClaims:
        """Verify token and return its claims, or raise a JoinTokenError subclass."""
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as e:
            raise MalformedJoinTokenError("token is not a well-formed JWT") from e

        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                options={
                    "leeway": self.leeway,
                    "require_exp": True,
                    "require_iat": True,
                    "require_iss": True,
                    "require_sub": True,
                },
            )
        except ExpiredSignatureError as e:
            raise ExpiredJoinTokenError("token has expired") from e
        except JWTError as e:
            raise InvalidJoinTokenError(f"token rejected: {e}") from e

        if not payload.get("namespace"):
            raise InvalidJoinTokenError("token carries no namespace")
        try:
            return _claims_from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidJoinTokenError("token claims have the wrong shape") from e


def parse_unverified(token: str) -> JoinClaims:
    """Read claims without checking signature or expiry.

    For display in CLI tooling only. Never use the result for authorization.
    """
    try:
        return _claims_from_payload(jwt.get_unverified_claims(token))
    except (JWTError, KeyError, TypeError, ValueError) as e:
        raise MalformedJoinTokenError("token is not a well-formed join token") from e


def encode_for_cli(token: str) -> str:
    return base64.urlsafe_b64encode(token.encode()).decode().rstrip("=")


def decode_from_cli(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedJoinTokenError("token is not valid URL-safe base64") from e


def normalize_token(raw: str) -> str:
    """Accept a join token in either JWT or CLI-encoded form; return the JWT.

    A JWT always contains two dots; the base64url alphabet has none.
    """
    raw = raw.strip()
    if raw.count(".") == 2:
        return raw
    return decode_from_cli(raw)
