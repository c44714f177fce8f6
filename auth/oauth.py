"""
auth/oauth.py -- Identity provider abstraction (GitHub OAuth2, Google OIDC, generic OIDC).

Every provider exposes the same surface:
  name / display_name / issuer
  get_auth_url(state, nonce)   -> URL to redirect the browser to
  exchange_code(code, nonce)   -> UserInfo (async, one or more network calls)

Variants:
  github -- OAuth2 only. The profile comes from the GitHub REST API; there is
            no identity token to verify.
  oidc   -- Discovery-based. build() fetches the discovery document and JWKS
            once at startup and fails fast (ProviderDiscoveryError) if the
            issuer is unreachable or inconsistent. exchange_code() verifies
            the id_token signature, audience, issuer, expiry and nonce with
            python-jose.
  google -- oidc with the issuer fixed to https://accounts.google.com.

Error contract (so the callback can report precisely):
  TokenExchangeError       -- token endpoint or profile endpoint failed.
  IdTokenVerificationError -- id_token missing, forged, expired or nonce mismatch.

The code exchange uses authlib's AsyncOAuth2Client (an httpx.AsyncClient),
one client per exchange so token state is never shared between requests.
transport is injectable so tests can run against httpx.MockTransport.

Layer rule: no imports from api/ or mesh/.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from jose import JWTError, jwt

from auth.models import UserInfo
from core.config import Settings

logger = logging.getLogger("realmgate.auth.oauth")

_GOOGLE_ISSUER = "https://accounts.google.com"
_GITHUB_ISSUER = "https://github.com"
_OIDC_SCOPE = "openid email profile"


class ProviderError(Exception):
    """Base class for identity-provider failures."""


class ProviderDiscoveryError(ProviderError):
    """Discovery document or signing keys could not be loaded."""


class TokenExchangeError(ProviderError):
    """The authorization code could not be exchanged, or the profile fetch failed."""


class IdTokenVerificationError(ProviderError):
    """The identity token failed verification."""


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class Provider(ABC):
    """Common shape of every identity provider."""

    name: str = ""
    display_name: str = ""
    issuer: str = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        authorize_url: str,
        token_url: str,
        scope: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.scope = scope
        self._transport = transport

    def get_auth_url(self, state: str, nonce: str) -> str:
        return prepare_grant_uri(
            self.authorize_url,
            self.client_id,
            "code",
            redirect_uri=self.redirect_uri,
            scope=self.scope,
            state=state,
            nonce=nonce,
        )

    def _oauth_client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            redirect_uri=self.redirect_uri,
            timeout=15.0,
            transport=self._transport,
        )

    @abstractmethod
    async def exchange_code(self, code: str, nonce: str) -> UserInfo:
        """Trade an authorization code for the caller's profile."""

    def metadata(self) -> dict:
        return {"name": self.name, "display_name": self.display_name, "issuer": self.issuer}


# ---------------------------------------------------------------------------
# GitHub (OAuth2 + REST profile)
# ---------------------------------------------------------------------------


class GitHubProvider(Provider):
    name = "github"
    display_name = "GitHub"
    issuer = _GITHUB_ISSUER

    _API = "https://api.github.com"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            client_id,
            client_secret,
            redirect_uri,
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            scope="read:user user:email",
            transport=transport,
        )

    async def exchange_code(self, code: str, nonce: str) -> UserInfo:
        """Exchange code for a token, then read /user (and /user/emails when needed).

        GitHub has no id_token, so nonce is not checked here; state alone
        protects the round trip.
        """
        async with self._oauth_client() as client:
            try:
                await client.fetch_token(self.token_url, grant_type="authorization_code", code=code)
            except (OAuthError, httpx.HTTPError, ValueError) as e:
                raise TokenExchangeError(f"github: token exchange failed: {e}") from e
            try:
                resp = await client.get(f"{self._API}/user")
                resp.raise_for_status()
                profile = resp.json()
                email = profile.get("email") or ""
                verified = False
                if not email:
                    emails_resp = await client.get(f"{self._API}/user/emails")
                    emails_resp.raise_for_status()
                    for entry in emails_resp.json():
                        if entry.get("primary") and entry.get("verified"):
                            email = entry.get("email", "")
                            verified = True
                            break
            except (OAuthError, httpx.HTTPError, ValueError) as e:
                raise TokenExchangeError(f"github: profile fetch failed: {e}") from e

        if "id" not in profile:
            raise TokenExchangeError("github: profile response carried no id")
        return UserInfo(
            subject=str(profile["id"]),
            email=email,
            email_verified=verified,
            name=profile.get("name") or profile.get("login") or "",
            picture=profile.get("avatar_url") or "",
        )


# ---------------------------------------------------------------------------
# OIDC (discovery + signed id_token)
# ---------------------------------------------------------------------------


class OIDCProvider(Provider):
    name = "oidc"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        issuer: str,
        metadata: dict,
        jwks: dict,
        name: str = "oidc",
        display_name: str = "SSO",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            client_id,
            client_secret,
            redirect_uri,
            authorize_url=metadata["authorization_endpoint"],
            token_url=metadata["token_endpoint"],
            scope=_OIDC_SCOPE,
            transport=transport,
        )
        self.name = name
        self.display_name = display_name
        self.issuer = issuer
        self.jwks = jwks
        self.algorithms = metadata.get("id_token_signing_alg_values_supported") or ["RS256"]

    @classmethod
    async def discover(
        cls,
        issuer: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        name: str = "oidc",
        display_name: str = "SSO",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "OIDCProvider":
        """Fetch the discovery document and JWKS, then build the provider.

        Raises ProviderDiscoveryError on any network, format or issuer mismatch.
        """
        issuer = issuer.rstrip("/")
        url = f"{issuer}/.well-known/openid-configuration"
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=transport) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                metadata = resp.json()
                if metadata.get("issuer", "").rstrip("/") != issuer:
                    raise ProviderDiscoveryError(f"{name}: discovery issuer {metadata.get('issuer')!r} != {issuer!r}")
                for required in ("authorization_endpoint", "token_endpoint", "jwks_uri"):
                    if not metadata.get(required):
                        raise ProviderDiscoveryError(f"{name}: discovery document lacks {required}")
                jwks_resp = await client.get(metadata["jwks_uri"])
                jwks_resp.raise_for_status()
                jwks = jwks_resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderDiscoveryError(f"{name}: discovery failed for {issuer}: {e}") from e
        if not isinstance(jwks, dict) or not jwks.get("keys"):
            raise ProviderDiscoveryError(f"{name}: JWKS at {metadata['jwks_uri']} has no keys")
        logger.info("Loaded OIDC discovery for %s (%d signing key(s))", issuer, len(jwks["keys"]))
        return cls(
            client_id,
            client_secret,
            redirect_uri,
            issuer=metadata["issuer"],
            metadata=metadata,
            jwks=jwks,
            name=name,
            display_name=display_name,
            transport=transport,
        )

    async def exchange_code(self, code: str, nonce: str) -> UserInfo:
        async with self._oauth_client() as client:
            try:
                token = await client.fetch_token(self.token_url, grant_type="authorization_code", code=code)
            except (OAuthError, httpx.HTTPError, ValueError) as e:
                raise TokenExchangeError(f"{self.name}: token exchange failed: {e}") from e
        return self.verify_id_token(token, nonce)

    def verify_id_token(self, token: dict, nonce: str) -> UserInfo:
        """Verify the id_token in a token response and map its claims."""
        id_token = token.get("id_token")
        if not id_token:
            raise IdTokenVerificationError(f"{self.name}: token response carried no id_token")
        try:
            claims = jwt.decode(
                id_token,
                self.jwks,
                algorithms=self.algorithms,
                audience=self.client_id,
                issuer=self.issuer,
                access_token=token.get("access_token"),
            )
        except JWTError as e:
            raise IdTokenVerificationError(f"{self.name}: id_token rejected: {e}") from e
        if claims.get("nonce") != nonce:
            raise IdTokenVerificationError(f"{self.name}: id_token nonce mismatch")
        if not claims.get("sub"):
            raise IdTokenVerificationError(f"{self.name}: id_token has no sub claim")
        return UserInfo(
            subject=str(claims["sub"]),
            email=claims.get("email") or "",
            email_verified=bool(claims.get("email_verified", False)),
            name=claims.get("name") or "",
            picture=claims.get("picture") or "",
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Name -> Provider map built once at startup and injected into handlers."""

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        for p in providers or []:
            self.register(p)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def get_enabled_providers(self) -> list[dict]:
        """Return {"name", "display_name", "issuer"} for every registered provider."""
        return [p.metadata() for p in self._providers.values()]

    def __len__(self) -> int:
        return len(self._providers)


async def build_provider_registry(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Register every provider whose credentials are configured.

    OIDC discovery happens here, so an unreachable issuer stops startup
    instead of failing the first login.
    """
    redirect_uri = f"{settings.public_url}/auth/callback"
    registry = ProviderRegistry()

    if settings.github_client_id and settings.github_client_secret:
        registry.register(
            GitHubProvider(settings.github_client_id, settings.github_client_secret, redirect_uri, transport)
        )
        logger.info("GitHub provider registered")

    if settings.google_client_id and settings.google_client_secret:
        registry.register(
            await OIDCProvider.discover(
                _GOOGLE_ISSUER,
                settings.google_client_id,
                settings.google_client_secret,
                redirect_uri,
                name="google",
                display_name="Google",
                transport=transport,
            )
        )
        logger.info("Google provider registered")

    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_issuer:
        registry.register(
            await OIDCProvider.discover(
                settings.oidc_issuer,
                settings.oidc_client_id,
                settings.oidc_client_secret,
                redirect_uri,
                name="oidc",
                display_name=settings.oidc_display_name,
                transport=transport,
            )
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    if not len(registry):
        logger.warning("No identity providers configured; browser login is disabled")
    return registry
