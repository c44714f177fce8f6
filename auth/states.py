"""
auth/states.py -- CSRF and replay protection for in-flight OIDC logins.

An AuthState is created when /auth/login redirects to the provider and is
consumed when /auth/callback returns. It is single-use: validate_state()
deletes the row in the same transaction that reads it, whether or not the
state turns out to be expired, so a replayed callback always fails.

Redirect targets are restricted to the service's own origin (open-redirect
guard) before the state is stored.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from urllib.parse import urlparse

from auth.models import AuthState
from auth.store import AuthStore, utcnow

logger = logging.getLogger("realmgate.auth")


class AuthStateManager:
    def __init__(self, store: AuthStore, public_url: str, ttl_seconds: int = 600) -> None:
        self.store = store
        self.public_url = public_url.rstrip("/")
        self.ttl = timedelta(seconds=ttl_seconds)
        origin = urlparse(self.public_url)
        self._scheme = origin.scheme
        self._netloc = origin.netloc.lower()

    @property
    def default_redirect_uri(self) -> str:
        return f"{self.public_url}/auth/complete"

    def is_valid_redirect_uri(self, uri: str) -> bool:
        """True if uri points at this service's own origin.

        Absolute URLs must match scheme and host:port exactly. Relative paths
        are accepted only when they start with a single "/" -- "//host" is a
        scheme-relative URL to another site.
        """
        if not uri:
            return False
        if uri.startswith("/"):
            return not uri.startswith("//") and "\\" not in uri
        parsed = urlparse(uri)
        return parsed.scheme == self._scheme and parsed.netloc.lower() == self._netloc

    def resolve_redirect_uri(self, uri: str | None) -> str:
        """Turn an accepted redirect target into an absolute URL on this origin."""
        if not uri:
            return self.default_redirect_uri
        if uri.startswith("/"):
            return f"{self.public_url}{uri}"
        return uri

    def create_auth_state(self, redirect_uri: str, provider_name: str) -> AuthState:
        """Persist a new state with two independent random tokens.

        The caller validates redirect_uri first.
        """
        auth_state = AuthState(
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            redirect_uri=redirect_uri,
            provider_name=provider_name,
            created_at=utcnow(),
        )
        self.store.create_auth_state(auth_state)
        return auth_state

    def validate_state(self, state: str, now: datetime | None = None) -> AuthState | None:
        """Consume state. Returns it only if it existed and is within its TTL.

        Absent, already-consumed and expired states all return None.
        """
        if not state:
            return None
        auth_state = self.store.consume_auth_state(state)
        if auth_state is None:
            return None
        if (now or utcnow()) - auth_state.created_at > self.ttl:
            logger.info("Rejected expired auth state for provider %s", auth_state.provider_name)
            return None
        return auth_state

    def cleanup(self, now: datetime | None = None) -> int:
        """Delete states older than the TTL. Returns the number removed."""
        return self.store.purge_auth_states_before((now or utcnow()) - self.ttl)
