"""
tests/test_join_tokens.py -- Unit tests for JoinTokenService and CLI encoding.

Covers:
  - generate/validate round trip carries realm ID and namespace
  - Expired token -> ExpiredJoinTokenError; leeway tolerates small skew
  - Wrong key or wrong issuer -> InvalidJoinTokenError
  - Non-JWT input -> MalformedJoinTokenError
  - Missing namespace claim -> InvalidJoinTokenError
  - CLI base64 form and normalize_token()
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

from auth.join_tokens import (
    ExpiredJoinTokenError,
    InvalidJoinTokenError,
    JoinTokenService,
    MalformedJoinTokenError,
    decode_from_cli,
    encode_for_cli,
    normalize_token,
    parse_unverified,
)
from auth.store import utcnow

_KEY = "k" * 48
_ISSUER = "https://gate.example.test"


@pytest.fixture
def service() -> JoinTokenService:
    return JoinTokenService(_KEY, _ISSUER)


def test_round_trip(service):
    token = service.generate("r-abc123", "r-abc123", 3600)
    claims = service.validate(token)
    assert claims.realm_id == "r-abc123"
    assert claims.namespace == "r-abc123"
    assert claims.issuer == _ISSUER
    assert claims.expires_at - claims.issued_at == timedelta(seconds=3600)


def test_expired_token(service):
    token = service.generate("r-abc123", "r-abc123", 60, now=utcnow() - timedelta(seconds=120))
    with pytest.raises(ExpiredJoinTokenError):
        service.validate(token)


def test_leeway_tolerates_small_skew():
    lenient = JoinTokenService(_KEY, _ISSUER, leeway_seconds=30)
    token = lenient.generate("r1", "ns1", 60, now=utcnow() - timedelta(seconds=70))
    assert lenient.validate(token).realm_id == "r1"


def test_wrong_signing_key(service):
    token = JoinTokenService("x" * 48, _ISSUER).generate("r1", "ns1", 60)
    with pytest.raises(InvalidJoinTokenError):
        service.validate(token)


def test_wrong_issuer(service):
    token = JoinTokenService(_KEY, "https://other.example.test").generate("r1", "ns1", 60)
    with pytest.raises(InvalidJoinTokenError):
        service.validate(token)


@pytest.mark.parametrize("garbage", ["not-a-token", "a.b.c", ""])
def test_malformed(service, garbage):
    with pytest.raises(MalformedJoinTokenError):
        service.validate(garbage)


def test_missing_namespace_claim(service):
    now = int(utcnow().timestamp())
    token = jwt.encode({"iss": _ISSUER, "sub": "r1", "iat": now, "exp": now + 60}, _KEY, algorithm="HS256")
    with pytest.raises(InvalidJoinTokenError):
        service.validate(token)


def test_non_positive_ttl_rejected(service):
    with pytest.raises(ValueError):
        service.generate("r1", "ns1", 0)


def test_parse_unverified_ignores_signature():
    token = JoinTokenService("x" * 48, _ISSUER).generate("r1", "ns1", 60)
    assert parse_unverified(token).namespace == "ns1"


def test_cli_encoding(service):
    token = service.generate("r1", "ns1", 60)
    encoded = encode_for_cli(token)
    assert "." not in encoded
    assert "=" not in encoded
    assert decode_from_cli(encoded) == token
    assert normalize_token(encoded) == token
    assert normalize_token(f"  {token}\n") == token


def test_decode_from_cli_rejects_garbage():
    with pytest.raises(MalformedJoinTokenError):
        decode_from_cli("!!!not base64!!!")
