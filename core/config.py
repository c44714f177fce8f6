"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for realmgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or (preferably) receive the values it needs from api/services.py at startup.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. public_url -> PUBLIC_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved -- SECRET_KEY policy, join-token key fallback, skew bounds.

Security notes:
  [M6] SECRET_KEY and JOIN_TOKEN_SECRET shorter than 32 chars are rejected.
       HMAC-SHA256 (API key hashing) and HS256 (join tokens) both rely on key
       entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or mesh/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("realmgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'realmgate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    secret_key: str = ""
    # Empty means "reuse secret_key". Kept separate so join tokens can be
    # rotated without invalidating every stored API key hash.
    join_token_secret: str = ""
    public_url: str = "http://localhost:9080"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Mesh-control service
    # ------------------------------------------------------------------

    mesh_control_url: str = "http://127.0.0.1:8080"
    mesh_control_api_key: str = ""
    # URL machines use to reach the mesh-control service; empty means mesh_control_url.
    mesh_public_url: str = ""
    mesh_control_timeout_seconds: float = 30.0
    acl_init_on_startup: bool = True

    # ------------------------------------------------------------------
    # Sessions and credentials
    # ------------------------------------------------------------------

    # None means "derive from public_url scheme".
    secure_cookies: bool | None = None
    session_ttl_seconds: int = 7 * 24 * 3600
    auth_state_ttl_seconds: int = 600
    join_token_default_ttl_seconds: int = 900
    join_token_max_ttl_seconds: int = 24 * 3600
    join_token_leeway_seconds: int = 0
    authkey_default_ttl_seconds: int = 24 * 3600
    max_api_keys_per_identity: int = 10

    # ------------------------------------------------------------------
    # Device authorization flow
    # ------------------------------------------------------------------

    device_code_ttl_seconds: int = 900
    device_poll_interval_seconds: int = 5
    device_sweep_grace_seconds: int = 60

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    sweep_interval_seconds: int = 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    device_code_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Identity providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_issuer: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7] and key length [M6].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Stored API keys stop verifying after a restart -- acceptable for
            local dev.

        Production mode: refuse to start if SECRET_KEY is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "API keys and join tokens will not survive restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.join_token_secret:
            self.join_token_secret = self.secret_key
        elif len(self.join_token_secret) < 32:
            raise ValueError("JOIN_TOKEN_SECRET must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_urls_and_bounds(self) -> "Settings":
        """Reject a relative PUBLIC_URL and an over-generous clock-skew window."""
        parsed = urlparse(self.public_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("PUBLIC_URL must be an absolute http(s) URL.")
        self.public_url = self.public_url.rstrip("/")
        if not 0 <= self.join_token_leeway_seconds <= 60:
            raise ValueError("JOIN_TOKEN_LEEWAY_SECONDS must be between 0 and 60.")
        if self.secure_cookies is None:
            self.secure_cookies = parsed.scheme == "https"
        self.mesh_control_url = self.mesh_control_url.rstrip("/")
        if not self.mesh_public_url:
            self.mesh_public_url = self.mesh_control_url
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
