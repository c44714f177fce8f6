"""
API request and response models for realmgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import ApiKey

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Scopes an API key may carry.
KNOWN_SCOPES = frozenset({"nodes:read", "deployer:connect"})


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    issuer: str


class ProvidersResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    providers: list[ProviderInfo]


class RealmInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    namespace: str
    display_name: str


class MeResponse(BaseModel):
    """Response body for GET /auth/me."""

    model_config = ConfigDict(frozen=True)

    identity_id: str
    issuer: str
    email: str
    name: str
    picture: str
    realm: RealmInfo


class AuthCompleteResponse(BaseModel):
    """Response body for GET /auth/complete -- the CLI/browser handoff page."""

    model_config = ConfigDict(frozen=True)

    session_token: str
    namespace: str
    message: str = "Login complete. You may close this window."


# ---------------------------------------------------------------------------
# Join tokens and bootstrap credentials
# ---------------------------------------------------------------------------


class JoinTokenRequest(BaseModel):
    """Request body for POST /api/v1/join-token. ttl_seconds defaults server-side."""

    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class JoinTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    cli_token: str
    expires_at: datetime
    namespace: str
    coordinator_url: str


class WorkerJoinRequest(BaseModel):
    """Request body for POST /api/v1/worker/join. token may be a JWT or its CLI encoding."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=4096)


class AuthKeyRequest(BaseModel):
    """Request body for POST /api/v1/authkey. ttl_seconds is capped at 30 days."""

    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=30 * 24 * 3600)
    reusable: bool = False


class AuthKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    authkey: str
    mesh_url: str
    namespace: str
    reusable: bool
    expires_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class NodeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    ip_addresses: list[str]
    online: bool
    last_seen: Optional[str] = None


class NodesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    namespace: str
    nodes: list[NodeInfo]
    count: int


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/api-keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    scopes: list[str] = Field(default_factory=lambda: ["nodes:read"], min_length=1)
    expires_at: Optional[datetime] = None

    @field_validator("scopes")
    @classmethod
    def check_scopes(cls, values: list[str]) -> list[str]:
        """Deduplicate and reject scopes this service does not grant."""
        seen: list[str] = []
        for v in values:
            v = v.strip()
            if v not in KNOWN_SCOPES:
                raise ValueError(f"unknown scope {v!r}")
            if v not in seen:
                seen.append(v)
        return seen

    @field_validator("expires_at")
    @classmethod
    def must_be_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("expires_at must include a timezone")
        return value


class ApiKeyResponse(BaseModel):
    """API key metadata. Never includes the raw key."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    key_prefix: str
    scopes: list[str]
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            scopes=[s for s in key.scopes.split(",") if s],
            created_at=key.created_at,
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once, at creation. key is the only time the raw value is shown."""

    key: str


# ---------------------------------------------------------------------------
# Device flow
# ---------------------------------------------------------------------------


class DeviceCodeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


class DeviceUserCodeRequest(BaseModel):
    """Request body for POST /device/verify and POST /device/deny."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_code: str = Field(min_length=1, max_length=16)


class DeviceVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    namespace: str


class DeviceTokenRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    device_code: str = Field(min_length=1, max_length=64)


class DeviceTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    authkey: Optional[str] = None
    mesh_url: Optional[str] = None
    namespace: Optional[str] = None


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
