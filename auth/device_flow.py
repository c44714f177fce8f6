"""
auth/device_flow.py -- Device authorization flow for headless and CLI clients.

State machine (one-directional, terminal states never change):

    pending --approve--> approved
            --deny-----> denied
            --deadline-> expired

Codes:
  device_code -- 32 hex chars (128 bits), held only by the polling client.
  user_code   -- 8 chars from ABCDEFGHJKLMNPQRSTUVWXYZ23456789 shown as
                 XXXX-XXXX; typed by a human into the browser.

Expiry is derived from expires_at. The read paths write "expired" back so
later readers see it without recomputing, and the periodic sweep deletes
requests past expiry plus a grace period to bound storage.

Concurrency: every transition is one conditional UPDATE/DELETE in the store,
so approve succeeds exactly once and an approved credential is delivered to
exactly one poll.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import DeviceRequest, DeviceStatus, Identity, Realm
from auth.store import AuthStore, utcnow
from mesh.realms import RealmManager

logger = logging.getLogger("realmgate.device")

USER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
USER_CODE_PATTERN = re.compile(r"^[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}$")
DEVICE_CODE_PATTERN = re.compile(r"^[a-f0-9]{32}$")
MAX_USER_CODE_ATTEMPTS = 10

# Poll status strings (RFC 8628 vocabulary).
POLL_PENDING = "authorization_pending"
POLL_APPROVED = "approved"
POLL_EXPIRED = "expired_token"
POLL_DENIED = "access_denied"

_POLL_STATUS = {
    DeviceStatus.pending: POLL_PENDING,
    DeviceStatus.approved: POLL_APPROVED,
    DeviceStatus.expired: POLL_EXPIRED,
    DeviceStatus.denied: POLL_DENIED,
}


class DeviceFlowError(Exception):
    """Base class for device-flow failures."""


class DeviceRequestNotFound(DeviceFlowError):
    """No live request for that code (never existed, expired, or already delivered)."""


class DeviceRequestNotPending(DeviceFlowError):
    """The request already reached a terminal state."""


class UserCodeExhaustedError(DeviceFlowError):
    """Could not find a free user code within the attempt budget."""


@dataclass
class DevicePollResult:
    status: str
    auth_key: str | None = None
    mesh_url: str | None = None
    namespace: str | None = None


def generate_device_code() -> str:
    return secrets.token_hex(16)


def generate_user_code() -> str:
    chars = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(8))
    return f"{chars[:4]}-{chars[4:]}"


def normalize_user_code(raw: str) -> str:
    """Uppercase, trim and re-insert the hyphen so "abcd efgh" style input still matches."""
    code = re.sub(r"[\s-]", "", raw or "").upper()
    if len(code) == 8:
        code = f"{code[:4]}-{code[4:]}"
    return code


def is_valid_user_code(code: str) -> bool:
    return bool(USER_CODE_PATTERN.match(code))


def is_valid_device_code(code: str) -> bool:
    return bool(DEVICE_CODE_PATTERN.match(code))


class DeviceFlowService:
    def __init__(
        self,
        store: AuthStore,
        realm_manager: RealmManager,
        verification_uri: str,
        mesh_url: str,
        ttl_seconds: int = 900,
        poll_interval_seconds: int = 5,
        sweep_grace_seconds: int = 60,
        authkey_ttl_seconds: int = 24 * 3600,
    ) -> None:
        self.store = store
        self.realm_manager = realm_manager
        self.verification_uri = verification_uri
        self.mesh_url = mesh_url
        self.ttl = timedelta(seconds=ttl_seconds)
        self.poll_interval = poll_interval_seconds
        self.sweep_grace = timedelta(seconds=sweep_grace_seconds)
        self.authkey_ttl_seconds = authkey_ttl_seconds

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, now: datetime | None = None) -> DeviceRequest:
        """Start a new pending request with a user code no live request holds.

        Raises UserCodeExhaustedError after MAX_USER_CODE_ATTEMPTS collisions.
        """
        now = now or utcnow()
        for _ in range(MAX_USER_CODE_ATTEMPTS):
            req = DeviceRequest(
                device_code=generate_device_code(),
                user_code=generate_user_code(),
                status=DeviceStatus.pending,
                created_at=now,
                expires_at=now + self.ttl,
            )
            if self.store.insert_device_request(req, now=now):
                return req
            logger.debug("User code collision, retrying")
        logger.error("Gave up allocating a device user code after %d attempts", MAX_USER_CODE_ATTEMPTS)
        raise UserCodeExhaustedError("could not allocate a unique user code")

    # ------------------------------------------------------------------
    # Reads (lazy expiry)
    # ------------------------------------------------------------------

    def _with_lazy_expiry(self, req: DeviceRequest | None, now: datetime) -> DeviceRequest | None:
        if req is None:
            return None
        if req.status is DeviceStatus.pending and req.expires_at <= now:
            self.store.expire_device_request(req.device_code, now=now)
            req.status = DeviceStatus.expired
        return req

    def get_by_user_code(self, user_code: str, now: datetime | None = None) -> DeviceRequest | None:
        now = now or utcnow()
        return self._with_lazy_expiry(self.store.get_device_request_by_user_code(user_code), now)

    def get_by_device_code(self, device_code: str, now: datetime | None = None) -> DeviceRequest | None:
        now = now or utcnow()
        return self._with_lazy_expiry(self.store.get_device_request_by_device_code(device_code), now)

    def _pending_or_raise(self, user_code: str, now: datetime) -> DeviceRequest:
        req = self.get_by_user_code(user_code, now)
        if req is None or req.status is DeviceStatus.expired:
            raise DeviceRequestNotFound("invalid or expired code")
        if req.status is not DeviceStatus.pending:
            raise DeviceRequestNotPending("code already used")
        return req

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def approve(
        self,
        user_code: str,
        approver_id: str,
        realm_id: str,
        namespace: str,
        auth_key: str,
        mesh_url: str,
        now: datetime | None = None,
    ) -> DeviceRequest:
        """pending -> approved. Any other starting state is rejected, never overwritten."""
        now = now or utcnow()
        if not self.store.approve_device_request(
            user_code, approver_id, realm_id, namespace, auth_key, mesh_url, now=now
        ):
            self._pending_or_raise(user_code, now)
            raise DeviceRequestNotPending("code already used")
        return self.store.get_device_request_by_user_code(user_code)

    def deny(self, user_code: str, approver_id: str, now: datetime | None = None) -> None:
        """pending -> denied."""
        now = now or utcnow()
        if not self.store.deny_device_request(user_code, approver_id, now=now):
            self._pending_or_raise(user_code, now)
            raise DeviceRequestNotPending("code already used")
        logger.info("Device request denied by identity %s", approver_id)

    async def verify(self, user_code: str, approver: Identity, realm: Realm) -> DeviceRequest:
        """Approve user_code on behalf of approver, minting a single-use bootstrap credential.

        The request must be pending before any credential is minted. If a
        concurrent approval wins between the check and the write, the minted
        credential is never delivered and lapses at its own expiry.
        """
        now = utcnow()
        self._pending_or_raise(user_code, now)
        auth_key = await self.realm_manager.create_auth_key_by_name(
            realm.namespace, self.authkey_ttl_seconds, reusable=False
        )
        req = self.approve(user_code, approver.id, realm.id, realm.namespace, auth_key.key, self.mesh_url)
        logger.info("Device request approved for namespace %s", realm.namespace)
        return req

    # ------------------------------------------------------------------
    # Poll
    # ------------------------------------------------------------------

    def poll(self, device_code: str, now: datetime | None = None) -> DevicePollResult:
        """Report the request's status to the waiting client.

        A terminal status is delivered exactly once: the request is deleted,
        and only the caller whose delete removed the row gets the result.
        """
        req = self.get_by_device_code(device_code, now)
        if req is None:
            raise DeviceRequestNotFound("invalid or expired code")
        if req.status is DeviceStatus.pending:
            return DevicePollResult(status=POLL_PENDING)
        if not self.store.delete_device_request(device_code):
            raise DeviceRequestNotFound("invalid or expired code")
        if req.status is DeviceStatus.approved:
            return DevicePollResult(
                status=POLL_APPROVED,
                auth_key=req.auth_key,
                mesh_url=req.mesh_url,
                namespace=req.namespace,
            )
        return DevicePollResult(status=_POLL_STATUS[req.status])

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> int:
        """Delete requests past expiry plus the grace period. Returns the number removed."""
        return self.store.purge_device_requests_before((now or utcnow()) - self.sweep_grace)
