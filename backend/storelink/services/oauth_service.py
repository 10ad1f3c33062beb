"""OAuth connector: authorization-code flow for every supported platform.

WHAT:
    begin_authorization  - mint a single-use state bound to the browser
                           session and build the platform authorize URL
    complete_authorization - consume the state, exchange the code, fetch
                           site identity, upsert Store + Credential

WHY:
    State lives in the database (not in the URL) so it can be consumed
    atomically: a replayed or expired state can never connect a store.
    Store and Credential are written in one transaction; a failure after
    the exchange leaves neither behind.

REFERENCES:
    - storelink/routers/oauth.py (HTTP surface)
    - storelink/adapters/*.py (authorize_url / exchange_code / fetch_site_info)
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from storelink.adapters.base import PlatformAdapter
from storelink.deps import get_settings
from storelink.exceptions import InvalidState, PlatformRejected, SignatureInvalid
from storelink.models import OAuthState, PlatformEnum, Store, User
from storelink.services.store_lifecycle import upsert_connected_store
from storelink.services.token_service import store_credential

logger = logging.getLogger(__name__)


@dataclass
class ConsumedState:
    user_id: Any
    organization_id: Any
    return_context: Dict[str, Any]


def new_state_value() -> str:
    """256 bits of randomness, hex encoded."""
    return secrets.token_hex(32)


def begin_authorization(
    db: Session,
    adapter: PlatformAdapter,
    *,
    user: User,
    session_key: str,
    redirect_uri: str,
    return_context: Optional[Dict[str, Any]] = None,
) -> str:
    """Store a fresh state for this browser session and return the authorize URL."""
    settings = get_settings()
    context = dict(return_context or {})
    state_value = new_state_value()

    db.add(
        OAuthState(
            state=state_value,
            platform=adapter.platform,
            session_key=session_key,
            user_id=user.id,
            organization_id=user.organization_id,
            return_context=context,
            expires_at=datetime.utcnow() + timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS),
        )
    )
    db.commit()

    url = adapter.authorize_url(state=state_value, redirect_uri=redirect_uri, domain=context.get("domain"))
    logger.info("[OAUTH] Redirecting user %s to %s consent", user.id, adapter.platform.value)
    return url


def consume_state(
    db: Session,
    platform: PlatformEnum,
    *,
    returned_state: Optional[str],
    session_key: Optional[str],
) -> ConsumedState:
    """Atomically mark the state consumed; exactly one caller can succeed.

    Raises:
        InvalidState: unknown, mismatched session, expired or already consumed.
    """
    if not returned_state or not session_key:
        raise InvalidState()

    now = datetime.utcnow()
    result = db.execute(
        update(OAuthState)
        .where(
            OAuthState.state == returned_state,
            OAuthState.platform == platform,
            OAuthState.session_key == session_key,
            OAuthState.consumed_at.is_(None),
            OAuthState.expires_at > now,
        )
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning("[OAUTH] Rejected %s callback state (replayed, expired or foreign)", platform.value)
        raise InvalidState()
    # The consumption survives any later failure so the state cannot be retried
    db.commit()

    row = db.query(OAuthState).filter(OAuthState.state == returned_state).one()
    return ConsumedState(
        user_id=row.user_id,
        organization_id=row.organization_id,
        return_context=dict(row.return_context or {}),
    )


async def complete_authorization(
    db: Session,
    adapter: PlatformAdapter,
    *,
    returned_state: Optional[str],
    session_key: Optional[str],
    code: Optional[str],
    redirect_uri: str,
    domain: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    callback_params: Optional[Mapping[str, str]] = None,
) -> Store:
    """Finish the flow and return the connected store.

    `callback_params` is the full redirect query string. When given, the
    platform's signature over it is checked before the state is consumed;
    a failed check leaves the state usable.

    Raises:
        SignatureInvalid: callback signature missing or wrong.
        InvalidState: state check failed.
        PlatformRejected: platform reported an OAuth error or refused the code.
        PlatformUnavailable: transient failure during exchange or site lookup.
    """
    platform = adapter.platform
    if callback_params is not None and not adapter.verify_callback(callback_params):
        logger.error("[OAUTH] %s callback signature did not verify", platform.value)
        raise SignatureInvalid(
            "The connection request could not be verified. Please try connecting again.",
            platform=platform.value,
        )

    consumed = consume_state(db, platform, returned_state=returned_state, session_key=session_key)

    if error:
        logger.error("[OAUTH] %s reported error: %s - %s", platform.value, error, error_description)
        raise PlatformRejected(error_description or error, platform=platform.value, errors=[error])

    if not code:
        raise PlatformRejected("No authorization code received", platform=platform.value)

    expected_domain = consumed.return_context.get("domain")
    if expected_domain and domain and domain != expected_domain:
        logger.error("[OAUTH] Shop mismatch: expected %s, got %s", expected_domain, domain)
        raise InvalidState()
    exchange_domain = expected_domain or domain

    grant = await adapter.exchange_code(code, redirect_uri=redirect_uri, domain=exchange_domain)
    logger.info("[OAUTH] Token exchange successful for %s", platform.value)

    site = await adapter.fetch_site_info(grant.access_token, domain=exchange_domain)

    try:
        store = upsert_connected_store(
            db,
            platform,
            site,
            organization_id=consumed.organization_id,
            created_by_id=consumed.user_id,
        )
        store_credential(db, store, grant)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("[OAUTH] Failed to persist %s connection for %s", platform.value, site.domain)
        raise

    db.refresh(store)
    logger.info("[OAUTH] Connected %s store %s (%s)", platform.value, store.uid, site.domain)
    return store
