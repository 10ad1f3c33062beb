"""Tenant lifecycle: connect, activate, deactivate, disconnect.

WHAT:
    State transitions of a Store and the guards other services call before
    doing work on its behalf.

    Connected(active) <-> Deactivated      (toggle)
    Connected/Deactivated -> Disconnected  (terminal; credential removed)

WHY:
    Deactivated stores still receive webhooks for record-keeping but may not
    create products; disconnected stores get neither syncs nor webhooks.
"""

import logging
import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from storelink.adapters.base import SiteInfo
from storelink.exceptions import StoreDisconnected, StoreInactive
from storelink.models import PlatformEnum, Store, StoreStateEnum
from storelink.services.token_service import revoke_credential

logger = logging.getLogger(__name__)

_DOMAIN_SUFFIXES = (".myshopify.com", ".squarespace.com")


# =============================================================================
# LOOKUPS
# =============================================================================

def find_store(
    db: Session,
    platform: PlatformEnum,
    domain: str,
    *,
    include_disconnected: bool = False,
) -> Optional[Store]:
    query = db.query(Store).filter(Store.platform == platform, Store.domain == domain)
    if not include_disconnected:
        query = query.filter(Store.disconnected_at.is_(None))
    return query.first()


def derive_uid(db: Session, domain: str, *, exclude_store_id: Optional[UUID] = None) -> str:
    """Readable, unique store uid derived from the domain.

    'shop-a.myshopify.com' -> 'shop-a', then 'shop-a-2', 'shop-a-3', ...
    """
    base = domain.lower()
    for suffix in _DOMAIN_SUFFIXES:
        if base.endswith(suffix):
            base = base[: -len(suffix)]
            break
    base = re.sub(r"[^a-z0-9]+", "-", base).strip("-") or "store"

    candidate, counter = base, 1
    while True:
        query = db.query(Store.id).filter(Store.uid == candidate)
        if exclude_store_id is not None:
            query = query.filter(Store.id != exclude_store_id)
        if query.first() is None:
            return candidate
        counter += 1
        candidate = f"{base}-{counter}"


# =============================================================================
# TRANSITIONS
# =============================================================================

def upsert_connected_store(
    db: Session,
    platform: PlatformEnum,
    site: SiteInfo,
    *,
    organization_id: UUID,
    created_by_id: Optional[UUID] = None,
) -> Store:
    """Create or revive the store for (platform, domain) in the connected state.

    Flushes only; the OAuth connector commits together with the credential.
    """
    store = find_store(db, platform, site.domain, include_disconnected=True)
    if store is None:
        store = Store(
            uid=derive_uid(db, site.domain),
            platform=platform,
            domain=site.domain,
            name=site.name,
            organization_id=organization_id,
            created_by_id=created_by_id,
        )
        db.add(store)
        logger.info("[LIFECYCLE] Connecting new store %s:%s", platform.value, site.domain)
    else:
        logger.info("[LIFECYCLE] Reconnecting store %s (%s)", store.uid, store.state.value)
        store.name = site.name
        store.organization_id = organization_id

    store.active = True
    store.disconnected_at = None
    store.needs_reauthentication = False
    store.reauthentication_flagged_at = None
    db.flush()
    return store


def activate(db: Session, store: Store) -> Store:
    ensure_not_disconnected(store)
    store.active = True
    db.commit()
    logger.info("[LIFECYCLE] Activated store %s", store.uid)
    return store


def deactivate(db: Session, store: Store) -> Store:
    ensure_not_disconnected(store)
    store.active = False
    db.commit()
    logger.info("[LIFECYCLE] Deactivated store %s", store.uid)
    return store


def mark_uninstalled(db: Session, store: Store) -> Store:
    """The merchant removed the app on the platform side.

    The credential is dead, so it is dropped and the store is flagged for
    reconnection; mirrored data and the store row stay. Caller commits.
    """
    store.active = False
    revoke_credential(db, store)
    store.needs_reauthentication = True
    store.reauthentication_flagged_at = datetime.utcnow()
    logger.info("[LIFECYCLE] Store %s uninstalled on %s", store.uid, store.platform.value)
    return store


def disconnect(db: Session, store: Store, *, purge_data: bool = True) -> None:
    """Terminal transition.

    purge_data=True hard-deletes the store with its credential and mirror.
    purge_data=False keeps mirrored data on a tombstone that refuses syncs
    and webhooks until the same (platform, domain) is reconnected.
    """
    uid = store.uid
    if purge_data:
        db.delete(store)
    else:
        revoke_credential(db, store)
        store.active = False
        store.disconnected_at = datetime.utcnow()
        store.product_sync_cursor = None
    db.commit()
    logger.info("[LIFECYCLE] Disconnected store %s (purge_data=%s)", uid, purge_data)


# =============================================================================
# GUARDS
# =============================================================================

def ensure_not_disconnected(store: Store) -> None:
    if store.state == StoreStateEnum.disconnected:
        raise StoreDisconnected(f"Store {store.name} is disconnected.", platform=store.platform.value)


def ensure_can_sync(store: Store) -> None:
    """Syncs and webhook dispatch are refused (not queued) once disconnected."""
    ensure_not_disconnected(store)


def ensure_can_create_products(store: Store) -> None:
    ensure_not_disconnected(store)
    if not store.active:
        raise StoreInactive(
            f"Store {store.name} is deactivated; activate it before creating products.",
            platform=store.platform.value,
        )
