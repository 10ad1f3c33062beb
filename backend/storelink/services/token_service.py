"""Credential store and token refresher.

WHAT:
    Encrypts and persists per-store platform credentials, and hands out
    valid access tokens, refreshing them transparently when they are about
    to expire.

WHY:
    - Keeps encryption logic out of routers, adapters and sync code.
    - Refresh is single-flight per store: concurrent callers share one
      in-flight refresh instead of each spending (and possibly invalidating)
      the refresh token.

REFERENCES:
    - storelink/security.py (encrypt_secret / decrypt_secret)
    - storelink/adapters/*.py::refresh_token
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Hashable, Optional

from sqlalchemy.orm import Session

from storelink.adapters import get_adapter
from storelink.adapters.base import PlatformAdapter, TokenGrant
from storelink.deps import get_settings
from storelink.exceptions import ReauthorizationRequired
from storelink.models import Credential, Store
from storelink.security import decrypt_secret, encrypt_secret, rotate_secret
from storelink.telemetry import capture_message

logger = logging.getLogger(__name__)


def _label(store: Store) -> str:
    return f"{store.platform.value}:{store.domain}"


# =============================================================================
# CREDENTIAL STORE
# =============================================================================

def store_credential(db: Session, store: Store, grant: TokenGrant) -> Credential:
    """Encrypt and persist the credential for a store.

    WHAT:
        Creates or overwrites the single `Credential` row of the store.
        A grant without a refresh token keeps the stored one (refresh
        responses may omit it).
    WHY:
        One place for encryption + persistence; the caller owns the commit so
        OAuth can write Store and Credential in one transaction.

    Returns:
        The Credential ORM instance associated with the store.
    """
    label = _label(store)
    encrypted_access = encrypt_secret(grant.access_token, context=f"{label}:access")
    encrypted_refresh = (
        encrypt_secret(grant.refresh_token, context=f"{label}:refresh") if grant.refresh_token else None
    )

    credential = store.credential
    if credential is not None:
        credential.access_token_enc = encrypted_access
        credential.access_token_expires_at = grant.access_token_expires_at
        if encrypted_refresh:
            credential.refresh_token_enc = encrypted_refresh
            credential.refresh_token_expires_at = grant.refresh_token_expires_at
        if grant.scope:
            credential.scope = grant.scope
        logger.info("[TOKEN_SERVICE] Updated encrypted credential for %s", label)
    else:
        credential = Credential(
            access_token_enc=encrypted_access,
            refresh_token_enc=encrypted_refresh,
            access_token_expires_at=grant.access_token_expires_at,
            refresh_token_expires_at=grant.refresh_token_expires_at,
            scope=grant.scope,
        )
        store.credential = credential
        db.add(credential)
        logger.info("[TOKEN_SERVICE] Created encrypted credential for %s", label)

    db.flush()
    return credential


def revoke_credential(db: Session, store: Store) -> bool:
    """Delete the local credential of a store. Returns True if one existed."""
    credential = store.credential
    if credential is None:
        return False
    store.credential = None
    db.delete(credential)
    db.flush()
    logger.info("[TOKEN_SERVICE] Revoked local credential for %s", _label(store))
    return True


def reencrypt_credentials(db: Session) -> int:
    """Re-encrypt every stored credential under the current encryption key.

    Run after prepending a new key to TOKEN_ENCRYPTION_KEY; once it returns,
    the old key can be dropped from the list. Returns the number of rows.
    """
    count = 0
    for credential in db.query(Credential).join(Store).all():
        label = _label(credential.store)
        credential.access_token_enc = rotate_secret(credential.access_token_enc, context=f"{label}:access")
        if credential.refresh_token_enc:
            credential.refresh_token_enc = rotate_secret(credential.refresh_token_enc, context=f"{label}:refresh")
        count += 1
    db.commit()
    logger.info("[TOKEN_SERVICE] Re-encrypted %d credentials", count)
    return count


def get_decrypted_token(db: Session, store: Store, token_type: str = "access") -> Optional[str]:
    """Decrypt the stored access or refresh token without any expiry check.

    Returns:
        Plaintext token, or None if there is no such token.
    """
    credential = store.credential
    if credential is None:
        logger.warning("[TOKEN_SERVICE] No credential for %s", _label(store))
        return None

    if token_type == "access":
        ciphertext = credential.access_token_enc
    elif token_type == "refresh":
        ciphertext = credential.refresh_token_enc
    else:
        raise ValueError(f"Invalid token_type: {token_type}")

    if not ciphertext:
        return None
    return decrypt_secret(ciphertext, context=f"{_label(store)}:{token_type}")


def flag_reauthentication(db: Session, store: Store, reason: str) -> None:
    """Mark the store as needing the merchant to reconnect."""
    if not store.needs_reauthentication:
        store.needs_reauthentication = True
        store.reauthentication_flagged_at = datetime.utcnow()
        capture_message(
            "Store flagged for reauthentication",
            level="warning",
            extra={"platform": store.platform.value, "domain": store.domain, "reason": reason},
        )
    logger.warning("[TOKEN_SERVICE] %s needs reauthentication: %s", _label(store), reason)


def _expires_soon(credential: Credential, margin_seconds: int) -> bool:
    if credential.access_token_expires_at is None:
        # Non-expiring offline token
        return False
    return credential.access_token_expires_at <= datetime.utcnow() + timedelta(seconds=margin_seconds)


# =============================================================================
# TOKEN REFRESHER
# =============================================================================

class SingleFlight:
    """Share one in-flight coroutine per key between concurrent callers.

    The first caller for a key starts the work as a task; later callers await
    the same task. The entry is dropped as soon as the task finishes, so the
    next expiry starts a fresh refresh.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[str]]) -> str:
        loop = asyncio.get_running_loop()
        task = self._inflight.get(key)
        if task is None or task.get_loop() is not loop:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._discard(key, done))
        else:
            logger.info("[TOKEN_SERVICE] Joining in-flight refresh for %s", key)
        # A cancelled waiter must not cancel the refresh other waiters depend on
        return await asyncio.shield(task)

    def _discard(self, key: Hashable, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]


_refreshes = SingleFlight()


async def get_valid_token(
    db: Session,
    store: Store,
    adapter: Optional[PlatformAdapter] = None,
    *,
    margin_seconds: Optional[int] = None,
) -> str:
    """Return a non-expired access token for the store.

    WHAT:
        Decrypts the stored access token; if it expires within the safety
        margin, refreshes it first (single-flight per store).

    Raises:
        ReauthorizationRequired: no credential, no refresh token, expired
            refresh token, or the platform rejected the refresh.
        PlatformUnavailable: transient failure talking to the platform.
    """
    if margin_seconds is None:
        margin_seconds = get_settings().TOKEN_REFRESH_MARGIN_SECONDS

    credential = store.credential
    if credential is None:
        raise ReauthorizationRequired(f"No credential stored for {store.name}.", platform=store.platform.value)

    if not _expires_soon(credential, margin_seconds):
        return decrypt_secret(credential.access_token_enc, context=f"{_label(store)}:access")

    adapter = adapter or get_adapter(store.platform)
    return await _refreshes.run(store.id, lambda: _refresh(db, store, adapter, margin_seconds))


async def _refresh(db: Session, store: Store, adapter: PlatformAdapter, margin_seconds: int) -> str:
    label = _label(store)

    # Another worker may have refreshed already; re-read before spending the refresh token
    db.expire(store, ["credential"])
    credential = store.credential
    if credential is not None:
        db.refresh(credential)
    if credential is None:
        raise ReauthorizationRequired(f"No credential stored for {store.name}.", platform=store.platform.value)
    if not _expires_soon(credential, margin_seconds):
        logger.info("[TOKEN_SERVICE] Credential for %s already refreshed elsewhere", label)
        return decrypt_secret(credential.access_token_enc, context=f"{label}:access")

    if not credential.refresh_token_enc:
        flag_reauthentication(db, store, "access token expired and no refresh token is stored")
        db.commit()
        raise ReauthorizationRequired(
            f"Access for {store.name} has expired.", platform=store.platform.value
        )

    if credential.refresh_token_expires_at and credential.refresh_token_expires_at <= datetime.utcnow():
        flag_reauthentication(db, store, "refresh token expired")
        db.commit()
        raise ReauthorizationRequired(
            f"Access for {store.name} has expired.", platform=store.platform.value
        )

    refresh_token = decrypt_secret(credential.refresh_token_enc, context=f"{label}:refresh")
    logger.info("[TOKEN_SERVICE] Refreshing access token for %s", label)

    try:
        grant = await adapter.refresh_token(refresh_token, domain=store.domain)
    except ReauthorizationRequired as exc:
        flag_reauthentication(db, store, exc.message)
        db.commit()
        raise

    store_credential(db, store, grant)
    db.commit()
    logger.info("[TOKEN_SERVICE] Refreshed access token for %s", label)
    return grant.access_token
