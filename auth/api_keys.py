"""
auth/api_keys.py -- Scoped, revocable API keys for delegated access.

The raw key is returned exactly once, from create(). Only its HMAC hash and a
short display prefix are stored, so list/get return metadata only and a
database leak does not leak usable keys.

get_by_key() treats an expired key exactly like an unknown one.

Layer rule: no imports from api/ or mesh/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from auth.models import ApiKey
from auth.store import AuthStore, utcnow
from auth.tokens import KEY_PREFIX_LENGTH, generate_api_key, hash_api_key, parse_scopes

logger = logging.getLogger("realmgate.auth")


class ApiKeyLimitError(Exception):
    """The identity already holds the maximum number of keys."""


@dataclass
class CreatedApiKey:
    """Result of create(): metadata plus the raw key, which is never available again."""

    api_key: ApiKey
    raw_key: str


class ApiKeyService:
    def __init__(self, store: AuthStore, secret_key: str, max_keys_per_identity: int = 10) -> None:
        self.store = store
        self._secret = secret_key
        self.max_keys = max_keys_per_identity

    def create(
        self,
        identity_id: str,
        realm_id: str,
        name: str,
        scopes: str,
        expires_at: datetime | None = None,
    ) -> CreatedApiKey:
        """Mint a key for identity_id scoped to realm_id.

        Raises ApiKeyLimitError when the per-identity cap is reached.
        """
        if len(self.store.list_api_keys(identity_id)) >= self.max_keys:
            raise ApiKeyLimitError(f"maximum of {self.max_keys} API keys reached")
        raw = generate_api_key()
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            realm_id=realm_id,
            name=name,
            scopes=",".join(parse_scopes(scopes)),
            key_hash=hash_api_key(self._secret, raw),
            key_prefix=raw[:KEY_PREFIX_LENGTH],
            created_at=utcnow(),
            expires_at=expires_at,
        )
        self.store.create_api_key(api_key)
        logger.info("Created API key %s (%s) for identity %s", api_key.id, api_key.key_prefix, identity_id)
        return CreatedApiKey(api_key=api_key, raw_key=raw)

    def get_by_key(self, raw_key: str, now: datetime | None = None) -> ApiKey | None:
        """Resolve a raw key. Unknown and expired keys both return None.

        A successful lookup stamps last_used_at.
        """
        if not raw_key:
            return None
        api_key = self.store.get_api_key_by_hash(hash_api_key(self._secret, raw_key))
        if api_key is None:
            return None
        if api_key.expires_at is not None and api_key.expires_at <= (now or utcnow()):
            return None
        self.store.touch_api_key(api_key.id)
        return api_key

    def list(self, identity_id: str) -> list[ApiKey]:
        return self.store.list_api_keys(identity_id)

    def get(self, key_id: str, identity_id: str) -> ApiKey | None:
        return self.store.get_api_key(key_id, identity_id)

    def delete(self, key_id: str, identity_id: str) -> bool:
        deleted = self.store.delete_api_key(key_id, identity_id)
        if deleted:
            logger.info("Deleted API key %s for identity %s", key_id, identity_id)
        return deleted
