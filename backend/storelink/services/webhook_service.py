"""Webhook authentication, tenant resolution and dispatch.

WHAT:
    Received -> SignatureChecked -> TenantResolved -> Dispatched -> Acknowledged | Rejected

    `process_webhook()` takes the raw body bytes and headers of one delivery
    and returns a `WebhookOutcome` whose status code tells the platform's
    delivery system whether to retry:

        200  acknowledged (including malformed payloads, recorded as errors)
        401  missing / bad signature (handler never runs)
        400  no shop/site domain in the delivery
        404  domain does not belong to a connected store
        503  transient downstream failure, please redeliver
        500  unexpected handler failure, please redeliver

WHY:
    The signature is computed over the exact bytes received; nothing is
    parsed before it verifies. Redeliveries are safe because every handler
    ends in an upsert keyed by the resource's external id.

REFERENCES:
    - Shopify: https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - Squarespace: https://developers.squarespace.com/commerce-apis/webhook-subscriptions-overview
    - storelink/routers/webhooks.py (HTTP surface)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from storelink.adapters import get_adapter
from storelink.adapters.base import PlatformAdapter
from storelink.context import TenantContext
from storelink.deps import get_settings
from storelink.exceptions import (
    PayloadInvalid,
    PlatformUnavailable,
    ReauthorizationRequired,
    SignatureInvalid,
    StoreDisconnected,
    StorelinkError,
    TenantUnresolved,
)
from storelink.models import Order, PlatformEnum, Store, WebhookLog
from storelink.security import encrypt_secret
from storelink.services import store_lifecycle, sync_service
from storelink.services.token_service import flag_reauthentication, get_valid_token
from storelink.telemetry import capture_exception

logger = logging.getLogger(__name__)


# =============================================================================
# SIGNATURES
# =============================================================================

def compute_signature(secret: bytes, body: bytes, encoding: str = "base64") -> str:
    """HMAC-SHA256 of the raw body, encoded per platform convention."""
    digest = hmac.new(secret, body, hashlib.sha256).digest()
    if encoding == "hex":
        return digest.hex()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(secret: Optional[bytes], body: bytes, signature: Optional[str], encoding: str = "base64") -> bool:
    """Constant-time comparison of the header signature against the computed one."""
    if not secret or not signature:
        return False
    expected = compute_signature(secret, body, encoding)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


# =============================================================================
# PLATFORM SCHEMES
# =============================================================================

@dataclass(frozen=True)
class Envelope:
    """What a scheme extracts from one delivery before dispatch."""
    domain: Optional[str]
    topic: str
    delivery_id: Optional[str]
    payload: Any


@dataclass(frozen=True)
class WebhookScheme:
    platform: PlatformEnum
    signature_header: str
    encoding: str
    secret: Callable[[], Optional[bytes]]
    envelope: Callable[[Mapping[str, str], bytes, Optional[str]], Envelope]


def _shopify_secret() -> Optional[bytes]:
    secret = get_settings().SHOPIFY_API_SECRET
    return secret.encode("utf-8") if secret else None


def _squarespace_secret() -> Optional[bytes]:
    secret = get_settings().SQUARESPACE_WEBHOOK_SECRET
    if not secret:
        return None
    try:
        return bytes.fromhex(secret)
    except ValueError:
        logger.error("[WEBHOOK] SQUARESPACE_WEBHOOK_SECRET is not hex encoded")
        return None


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadInvalid(f"Invalid JSON body: {exc}") from exc


def _shopify_envelope(headers: Mapping[str, str], body: bytes, topic: Optional[str]) -> Envelope:
    return Envelope(
        domain=(headers.get("x-shopify-shop-domain") or "").strip().lower() or None,
        topic=topic or headers.get("x-shopify-topic") or "",
        delivery_id=headers.get("x-shopify-webhook-id"),
        # Parsed lazily after tenant resolution so a bad body still resolves its store
        payload=None,
    )


SQUARESPACE_TOPICS = {
    "order.create": "orders/create",
    "order.update": "orders/updated",
    "extension.uninstall": "app/uninstalled",
}


def _squarespace_envelope(headers: Mapping[str, str], body: bytes, topic: Optional[str]) -> Envelope:
    # Squarespace puts site id, topic and notification id inside the signed body
    try:
        payload = _parse_json(body)
    except PayloadInvalid:
        payload = None
    if not isinstance(payload, dict):
        return Envelope(domain=None, topic=topic or "", delivery_id=None, payload=None)
    raw_topic = payload.get("topic") or topic or ""
    return Envelope(
        domain=str(payload["websiteId"]) if payload.get("websiteId") else None,
        topic=SQUARESPACE_TOPICS.get(raw_topic, raw_topic),
        delivery_id=payload.get("id"),
        payload=payload,
    )


SCHEMES: Dict[PlatformEnum, WebhookScheme] = {
    PlatformEnum.shopify: WebhookScheme(
        platform=PlatformEnum.shopify,
        signature_header="x-shopify-hmac-sha256",
        encoding="base64",
        secret=_shopify_secret,
        envelope=_shopify_envelope,
    ),
    PlatformEnum.squarespace: WebhookScheme(
        platform=PlatformEnum.squarespace,
        signature_header="squarespace-signature",
        encoding="hex",
        secret=_squarespace_secret,
        envelope=_squarespace_envelope,
    ),
}


# =============================================================================
# TENANT RESOLUTION
# =============================================================================

def resolve_store(
    db: Session,
    platform: PlatformEnum,
    domain: Optional[str],
    *,
    include_disconnected: bool = False,
) -> Store:
    """Raises TenantUnresolved (missing_domain distinguishes 400 from 404)."""
    if not domain:
        raise TenantUnresolved("Missing shop domain", missing_domain=True)
    store = store_lifecycle.find_store(db, platform, domain, include_disconnected=include_disconnected)
    if store is None:
        raise TenantUnresolved(f"No connected {platform.value} store for {domain}")
    return store


# =============================================================================
# HANDLERS
# =============================================================================

Handler = Callable[[Session, Store, TenantContext, Any, PlatformAdapter], Awaitable[str]]


def _require_object(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise PayloadInvalid("Webhook body must be a JSON object")
    return payload


async def handle_app_uninstalled(db, store, context, payload, adapter) -> str:
    store_lifecycle.mark_uninstalled(db, store)
    db.commit()
    return "store deactivated"


async def handle_order(db, store, context, payload, adapter) -> str:
    payload = _require_object(payload)

    async def token_provider() -> str:
        return await get_valid_token(db, store, adapter)

    try:
        snapshot = await adapter.order_from_webhook(payload, domain=store.domain, token_provider=token_provider)
    except (KeyError, TypeError, ValueError) as exc:
        raise PayloadInvalid(f"Unreadable order payload: {exc!r}") from exc
    result = sync_service.upsert_order(db, store, snapshot, context=context)
    return f"order {snapshot.external_id} {'created' if result.created else 'synced'}"


async def handle_product(db, store, context, payload, adapter) -> str:
    payload = _require_object(payload)
    try:
        snapshot = adapter.parse_product(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise PayloadInvalid(f"Unreadable product payload: {exc!r}") from exc
    store.products_last_updated_at = datetime.utcnow()
    result = sync_service.upsert_product(db, store, snapshot, context=context)
    return f"product {snapshot.external_id} {'created' if result.created else 'synced'}"


# Shopify's mandatory privacy topics. They are answered for uninstalled and
# tombstoned stores too, and with 200 when the shop is unknown.
PRIVACY_TOPICS = frozenset({"customers/data_request", "customers/redact", "shop/redact"})


def _held_orders(db: Session, store: Store, order_ids: Any) -> List[Order]:
    if not isinstance(order_ids, list) or not order_ids:
        return []
    external_ids = [str(order_id) for order_id in order_ids]
    return (
        db.query(Order)
        .filter(Order.store_id == store.id, Order.external_id.in_(external_ids))
        .all()
    )


async def handle_customer_data_request(db, store, context, payload, adapter) -> str:
    """Mirrored orders hold no customer fields; report which requested orders exist."""
    payload = _require_object(payload)
    customer_id = (payload.get("customer") or {}).get("id")
    orders = _held_orders(db, store, payload.get("orders_requested"))
    logger.info(
        "[WEBHOOK] Customer data request for customer_id=%s: %d mirrored orders, no customer fields (%s)",
        customer_id,
        len(orders),
        context.log_label,
    )
    return f"customer data request: {len(orders)} orders held"


async def handle_customer_redact(db, store, context, payload, adapter) -> str:
    payload = _require_object(payload)
    customer_id = (payload.get("customer") or {}).get("id")
    orders = _held_orders(db, store, payload.get("orders_to_redact"))
    logger.info(
        "[WEBHOOK] Customer redact for customer_id=%s: %d mirrored orders carry no customer fields (%s)",
        customer_id,
        len(orders),
        context.log_label,
    )
    return f"customer redacted: {len(orders)} orders held without customer fields"


async def handle_shop_redact(db, store, context, payload, adapter) -> str:
    store_lifecycle.disconnect(db, store, purge_data=True)
    return "store data purged"


HANDLERS: Dict[str, Handler] = {
    "app/uninstalled": handle_app_uninstalled,
    "orders/create": handle_order,
    "orders/updated": handle_order,
    "products/create": handle_product,
    "products/update": handle_product,
    "customers/data_request": handle_customer_data_request,
    "customers/redact": handle_customer_redact,
    "shop/redact": handle_shop_redact,
}


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class WebhookOutcome:
    status_code: int
    message: str
    store_id: Optional[Any] = None
    error: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _redacted(headers: Mapping[str, str], scheme: WebhookScheme) -> Dict[str, str]:
    return {
        key: ("[REDACTED]" if key == scheme.signature_header else value)
        for key, value in headers.items()
        if key not in ("cookie", "authorization")
    }


async def process_webhook(
    db: Session,
    platform: PlatformEnum,
    *,
    headers: Mapping[str, str],
    body: bytes,
    topic: Optional[str] = None,
    adapter: Optional[PlatformAdapter] = None,
) -> WebhookOutcome:
    """Authenticate, resolve and dispatch one delivery; always returns an outcome."""
    started = time.monotonic()
    scheme = SCHEMES[platform]
    headers = _lower_headers(headers)
    envelope = Envelope(domain=None, topic=topic or "", delivery_id=None, payload=None)
    store: Optional[Store] = None

    try:
        if not verify_signature(scheme.secret(), body, headers.get(scheme.signature_header), scheme.encoding):
            raise SignatureInvalid("Invalid webhook signature", platform=platform.value)

        envelope = scheme.envelope(headers, body, topic)
        privacy = envelope.topic in PRIVACY_TOPICS
        store = resolve_store(db, platform, envelope.domain, include_disconnected=privacy)
        if not privacy:
            store_lifecycle.ensure_can_sync(store)

        context = TenantContext.for_store(store, topic=envelope.topic, delivery_id=envelope.delivery_id)
        outcome = await _dispatch(db, store, context, envelope, body, adapter or get_adapter(platform))

    except SignatureInvalid as exc:
        logger.warning("[WEBHOOK] %s %s rejected: %s", platform.value, topic or "", exc.message)
        outcome = WebhookOutcome(401, exc.message, error=exc.message)
    except TenantUnresolved as exc:
        if envelope.topic in PRIVACY_TOPICS and not exc.missing_domain:
            logger.info("[WEBHOOK] %s %s for unknown shop %s, no data held", platform.value, envelope.topic, envelope.domain)
            outcome = WebhookOutcome(200, "no data held for this shop")
        else:
            logger.warning("[WEBHOOK] %s %s rejected: %s", platform.value, envelope.topic, exc.message)
            outcome = WebhookOutcome(400 if exc.missing_domain else 404, exc.message, error=exc.message)
    except StoreDisconnected as exc:
        outcome = WebhookOutcome(404, exc.message, error=exc.message)

    _record(db, scheme, envelope, headers, body, store, outcome, started)
    return outcome


async def _dispatch(
    db: Session,
    store: Store,
    context: TenantContext,
    envelope: Envelope,
    body: bytes,
    adapter: PlatformAdapter,
) -> WebhookOutcome:
    handler = HANDLERS.get(envelope.topic)
    if handler is None:
        logger.info("[WEBHOOK] Ignoring unsupported topic (%s)", context.log_label)
        return WebhookOutcome(200, f"topic {envelope.topic} ignored", store_id=store.id)

    try:
        payload = envelope.payload if envelope.payload is not None else _parse_json(body)
        message = await handler(db, store, context, payload, adapter)
        logger.info("[WEBHOOK] %s (%s)", message, context.log_label)
        # A purged store cannot be referenced by the delivery log
        store_id = None if inspect(store).was_deleted else store.id
        return WebhookOutcome(200, message, store_id=store_id)

    except PayloadInvalid as exc:
        db.rollback()
        logger.error("[WEBHOOK] Malformed payload acknowledged (%s): %s", context.log_label, exc.message)
        return WebhookOutcome(200, "acknowledged with errors", store_id=store.id, error=exc.message)

    except ReauthorizationRequired as exc:
        db.rollback()
        flag_reauthentication(db, store, exc.message)
        db.commit()
        logger.error("[WEBHOOK] Credential dead, not retrying (%s): %s", context.log_label, exc.message)
        return WebhookOutcome(200, "acknowledged; store needs reauthentication", store_id=store.id, error=exc.message)

    except (PlatformUnavailable, OperationalError) as exc:
        db.rollback()
        logger.warning("[WEBHOOK] Transient failure, asking for redelivery (%s): %s", context.log_label, exc)
        return WebhookOutcome(503, "temporarily unavailable", store_id=store.id, error=str(exc))

    except StorelinkError as exc:
        db.rollback()
        logger.error("[WEBHOOK] Handler rejected delivery (%s): %s", context.log_label, exc.message)
        return WebhookOutcome(200, "acknowledged with errors", store_id=store.id, error=exc.message)

    except Exception as exc:
        db.rollback()
        logger.exception("[WEBHOOK] Handler failed (%s)", context.log_label)
        capture_exception(
            exc,
            extra={
                "platform": context.platform.value,
                "topic": context.topic,
                "domain": context.domain,
                "delivery_id": context.delivery_id,
            },
        )
        return WebhookOutcome(500, "handler failed", store_id=store.id, error=f"{exc.__class__.__name__}: {exc}")


def _record(
    db: Session,
    scheme: WebhookScheme,
    envelope: Envelope,
    headers: Mapping[str, str],
    body: bytes,
    store: Optional[Store],
    outcome: WebhookOutcome,
    started: float,
) -> None:
    """Persist the delivery for manual replay; never changes the outcome."""
    payload_enc = None
    if body and outcome.status_code != 401:
        payload_enc = encrypt_secret(body.decode("utf-8", errors="replace"), context=f"webhook:{scheme.platform.value}")

    try:
        db.add(
            WebhookLog(
                platform=scheme.platform,
                topic=envelope.topic or "unknown",
                shop_domain=envelope.domain,
                store_id=outcome.store_id,
                delivery_id=envelope.delivery_id,
                status_code=outcome.status_code,
                error_message=outcome.error,
                headers=_redacted(headers, scheme),
                payload_enc=payload_enc,
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("[WEBHOOK] Could not record webhook log: %s", exc)


def cleanup_old_webhook_logs(db: Session, days: Optional[int] = None) -> int:
    """Delete webhook logs older than the retention window. Returns rows deleted."""
    days = days if days is not None else get_settings().WEBHOOK_LOG_RETENTION_DAYS
    cutoff = datetime.utcnow() - timedelta(days=days)
    deleted = (
        db.query(WebhookLog)
        .filter(WebhookLog.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("[WEBHOOK] Deleted %d webhook logs older than %d days", deleted, days)
    return deleted
