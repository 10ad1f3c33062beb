"""Synchronization engine: platform state <-> internal mirror.

WHAT:
    - upsert_product / upsert_order: reconcile one platform snapshot into the
      mirror, keyed by (store, external_id)
    - create_product / duplicate_product: push a new product to the platform
      and mirror the platform's canonical response
    - sync_all_products: page through the platform catalog, committing
      record by record so an interrupted run resumes from its cursor
    - assign_variant_mapping: manual mapping for flagged order items

WHY:
    Webhook redeliveries and admin syncs race on the same resources. Each
    upsert is a pure function of the latest snapshot, serialized per key
    in-process and protected by the unique constraint across processes, so
    replays never duplicate and never half-apply a record.

REFERENCES:
    - storelink/services/webhook_service.py (webhook-driven upserts)
    - storelink/workers/arq_worker.py (admin-triggered full sync)
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple, Type

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storelink.adapters import get_adapter
from storelink.adapters.base import (
    LineItemSnapshot,
    OrderSnapshot,
    PlatformAdapter,
    ProductDraft,
    ProductSnapshot,
    VariantSnapshot,
)
from storelink.context import TenantContext
from storelink.exceptions import ValidationRejected
from storelink.models import (
    MappingSourceEnum,
    Order,
    OrderItem,
    Product,
    ProductVariant,
    Store,
)
from storelink.services.store_lifecycle import ensure_can_create_products, ensure_can_sync
from storelink.services.token_service import get_valid_token

logger = logging.getLogger(__name__)

TOTALS_TOLERANCE = Decimal("0.01")


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class UpsertResult:
    record: Any
    created: bool = False
    changed: bool = False


@dataclass
class ProductSyncStats:
    products_created: int = 0
    products_updated: int = 0
    products_unchanged: int = 0
    pages: int = 0
    resumed_from_cursor: bool = False

    @property
    def products_seen(self) -> int:
        return self.products_created + self.products_updated + self.products_unchanged


# =============================================================================
# PER-KEY SERIALIZATION
# =============================================================================

class KeyedLock:
    """Process-wide lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List[Any]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


_upsert_locks = KeyedLock()


def _get_or_create(
    db: Session,
    model: Type[Any],
    filters: Dict[str, Any],
    factory: Callable[[], Any],
) -> Tuple[Any, bool]:
    """Conditional insert keyed on a unique constraint.

    A concurrent writer in another process that wins the insert surfaces as
    IntegrityError inside the savepoint; the row it wrote is then updated
    instead.
    """
    existing = db.query(model).filter_by(**filters).first()
    if existing is not None:
        return existing, False

    try:
        with db.begin_nested():
            record = factory()
            db.add(record)
        return record, True
    except IntegrityError:
        logger.info("[SYNC] Concurrent insert detected for %s %s; updating instead", model.__name__, filters)
        return db.query(model).filter_by(**filters).one(), False


def _assign(record: Any, **fields: Any) -> bool:
    """Set only the fields whose value differs; report whether anything changed."""
    changed = False
    for name, value in fields.items():
        if getattr(record, name) != value:
            setattr(record, name, value)
            changed = True
    return changed


# =============================================================================
# PRODUCTS
# =============================================================================

def upsert_product(
    db: Session,
    store: Store,
    snapshot: ProductSnapshot,
    *,
    context: Optional[TenantContext] = None,
    commit: bool = True,
) -> UpsertResult:
    """Create or overwrite the mirrored product from the latest snapshot.

    Platform-owned fields are overwritten, internal-only fields
    (fulfilment_active on product and variants) are left alone. Variants
    missing from the snapshot are removed.
    """
    ensure_can_sync(store)
    key = ("product", store.id, snapshot.external_id)

    with _upsert_locks.hold(key):
        product, created = _get_or_create(
            db,
            Product,
            {"store_id": store.id, "external_id": snapshot.external_id},
            lambda: Product(
                store_id=store.id,
                external_id=snapshot.external_id,
                title=snapshot.title,
                option_groups=[],
            ),
        )
        changed = _assign(
            product,
            title=snapshot.title,
            description_html=snapshot.description_html,
            handle=snapshot.handle,
            vendor=snapshot.vendor,
            product_type=snapshot.product_type,
            status=snapshot.status,
            option_groups=copy.deepcopy(snapshot.option_groups),
        )
        changed = _sync_variants(db, store, product, snapshot.variants) or changed

        if commit:
            db.commit()

    label = context.log_label if context else f"{store.platform.value} {store.domain}"
    logger.info(
        "[SYNC] Product %s %s (%s)",
        snapshot.external_id,
        "created" if created else ("updated" if changed else "unchanged"),
        label,
    )
    return UpsertResult(record=product, created=created, changed=created or changed)


def _sync_variants(db: Session, store: Store, product: Product, snapshots: Sequence[VariantSnapshot]) -> bool:
    changed = False
    existing = {variant.external_variant_id: variant for variant in product.variants}
    seen = set()

    for snapshot in snapshots:
        if snapshot.external_variant_id in seen:
            continue
        seen.add(snapshot.external_variant_id)

        variant = existing.get(snapshot.external_variant_id)
        if variant is None:
            variant = ProductVariant(store_id=store.id, external_variant_id=snapshot.external_variant_id)
            product.variants.append(variant)
            changed = True

        changed = _assign(
            variant,
            title=snapshot.title,
            sku=snapshot.sku,
            price=snapshot.price,
            position=snapshot.position,
            selected_options=dict(snapshot.selected_options),
        ) or changed

    for external_variant_id, variant in existing.items():
        if external_variant_id in seen:
            continue
        unmapped = (
            db.query(OrderItem)
            .filter(OrderItem.product_variant_id == variant.id)
            .update(
                {
                    OrderItem.product_variant_id: None,
                    OrderItem.mapping_source: None,
                    OrderItem.needs_mapping: True,
                },
                synchronize_session="fetch",
            )
        )
        if unmapped:
            logger.warning(
                "[SYNC] Variant %s removed on platform; %d order items flagged for mapping",
                external_variant_id,
                unmapped,
            )
        product.variants.remove(variant)
        changed = True

    if changed:
        db.flush()
    return changed


def normalize_option_groups(option_groups: Optional[Sequence[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Validate option structure before it is sent anywhere.

    Raises:
        ValidationRejected: empty names, empty value lists, or duplicates.
    """
    groups: List[Dict[str, Any]] = []
    errors: List[str] = []
    names = set()
    for index, group in enumerate(option_groups or []):
        name = str(group.get("name") or "").strip()
        values = [str(value).strip() for value in group.get("values") or []]
        if not name:
            errors.append(f"Option {index + 1} has no name")
            continue
        if name in names:
            errors.append(f"Option '{name}' is listed twice")
        if not values or any(not value for value in values):
            errors.append(f"Option '{name}' needs at least one non-empty value")
        if len(set(values)) != len(values):
            errors.append(f"Option '{name}' has duplicate values")
        names.add(name)
        groups.append({"name": name, "values": values})
    if errors:
        raise ValidationRejected(errors)
    return groups


async def create_product(
    db: Session,
    store: Store,
    *,
    title: str,
    description_html: Optional[str] = None,
    option_groups: Optional[Sequence[Dict[str, Any]]] = None,
    adapter: Optional[PlatformAdapter] = None,
) -> Product:
    """Create the product on the platform, then mirror the platform's response.

    Raises:
        StoreInactive / StoreDisconnected: lifecycle guard.
        ValidationRejected: platform (or local structure check) rejected input.
        PlatformUnavailable: transient; the caller may retry with backoff.
        ReauthorizationRequired: credential can no longer be refreshed.
    """
    ensure_can_create_products(store)
    if not title or not title.strip():
        raise ValidationRejected(["Title can't be blank"], platform=store.platform.value)
    groups = normalize_option_groups(option_groups)

    adapter = adapter or get_adapter(store.platform)
    access_token = await get_valid_token(db, store, adapter)
    snapshot = await adapter.create_product(
        access_token,
        domain=store.domain,
        draft=ProductDraft(title=title.strip(), description_html=description_html, option_groups=groups),
    )
    result = upsert_product(db, store, snapshot)
    logger.info("[SYNC] Created product %s on %s", snapshot.external_id, store.uid)
    return result.record


async def duplicate_product(
    db: Session,
    store: Store,
    source_external_id: str,
    *,
    title: str,
    description_html: Optional[str] = None,
    adapter: Optional[PlatformAdapter] = None,
) -> Product:
    """Create a new product with the source's option structure.

    Only the ordered option groups are copied; price, inventory and images
    are not.
    """
    ensure_can_create_products(store)
    adapter = adapter or get_adapter(store.platform)
    access_token = await get_valid_token(db, store, adapter)
    source = await adapter.fetch_product(access_token, domain=store.domain, external_id=source_external_id)

    return await create_product(
        db,
        store,
        title=title,
        description_html=description_html,
        option_groups=[{"name": g["name"], "values": list(g["values"])} for g in source.option_groups],
        adapter=adapter,
    )


async def sync_all_products(
    db: Session,
    store: Store,
    *,
    adapter: Optional[PlatformAdapter] = None,
    context: Optional[TenantContext] = None,
) -> ProductSyncStats:
    """Mirror the whole platform catalog, page by page.

    Each product commits on its own and the page cursor is saved after every
    page, so a run cut short (timeout, shutdown, retry) picks up from the
    last confirmed page.
    """
    ensure_can_sync(store)
    adapter = adapter or get_adapter(store.platform)
    context = context or TenantContext.for_store(store, trigger="admin")

    stats = ProductSyncStats(resumed_from_cursor=bool(store.product_sync_cursor))
    cursor = store.product_sync_cursor
    if cursor:
        logger.info("[SYNC] Resuming product sync for %s from saved cursor", store.uid)

    while True:
        access_token = await get_valid_token(db, store, adapter)
        page = await adapter.list_products(access_token, domain=store.domain, cursor=cursor)

        for snapshot in page.products:
            result = upsert_product(db, store, snapshot, context=context)
            if result.created:
                stats.products_created += 1
            elif result.changed:
                stats.products_updated += 1
            else:
                stats.products_unchanged += 1

        stats.pages += 1
        cursor = page.next_cursor
        store.product_sync_cursor = cursor
        db.commit()
        if not cursor:
            break

    store.last_synced_at = datetime.utcnow()
    db.commit()
    logger.info(
        "[SYNC] Product sync for %s done: %d created, %d updated, %d unchanged over %d pages",
        store.uid,
        stats.products_created,
        stats.products_updated,
        stats.products_unchanged,
        stats.pages,
    )
    return stats


# =============================================================================
# ORDERS
# =============================================================================

def totals_consistent(snapshot: OrderSnapshot) -> bool:
    """total = sum(line totals) - order-level discount + shipping + tax (when not included)."""
    items_total = sum((item.line_total for item in snapshot.line_items), Decimal("0"))
    line_discounts = sum((item.total_discount for item in snapshot.line_items), Decimal("0"))
    order_discount = snapshot.total_discounts - line_discounts

    expected = items_total - order_discount + snapshot.total_shipping
    if not snapshot.taxes_included:
        expected += snapshot.total_tax
    return abs(expected - snapshot.total_price) <= TOTALS_TOLERANCE


def upsert_order(
    db: Session,
    store: Store,
    snapshot: OrderSnapshot,
    *,
    context: Optional[TenantContext] = None,
    commit: bool = True,
) -> UpsertResult:
    """Create or overwrite the mirrored order and its items.

    Each item's variant mapping is recomputed from the platform variant id
    unless it was mapped manually; unmatched items are flagged with
    `needs_mapping` and kept.
    """
    ensure_can_sync(store)
    key = ("order", store.id, snapshot.external_id)
    label = context.log_label if context else f"{store.platform.value} {store.domain}"

    with _upsert_locks.hold(key):
        order, created = _get_or_create(
            db,
            Order,
            {"store_id": store.id, "external_id": snapshot.external_id},
            lambda: Order(store_id=store.id, external_id=snapshot.external_id),
        )
        changed = _assign(
            order,
            name=snapshot.name,
            currency=snapshot.currency,
            subtotal_price=snapshot.subtotal_price,
            total_discounts=snapshot.total_discounts,
            total_shipping=snapshot.total_shipping,
            total_tax=snapshot.total_tax,
            total_price=snapshot.total_price,
            taxes_included=snapshot.taxes_included,
            placed_at=snapshot.placed_at,
        )
        changed = _sync_order_items(db, store, order, snapshot.line_items) or changed

        consistent = totals_consistent(snapshot)
        if not consistent:
            logger.warning(
                "[SYNC] Order %s totals do not add up (total=%s) (%s)",
                snapshot.external_id,
                snapshot.total_price,
                label,
            )
        changed = _assign(order, totals_mismatch=not consistent) or changed

        if commit:
            db.commit()

    unmatched = sum(1 for item in order.items if item.needs_mapping)
    logger.info(
        "[SYNC] Order %s %s with %d items, %d unmatched (%s)",
        snapshot.external_id,
        "created" if created else ("updated" if changed else "unchanged"),
        len(order.items),
        unmatched,
        label,
    )
    return UpsertResult(record=order, created=created, changed=created or changed)


def _find_variant(db: Session, store: Store, external_variant_id: Optional[str]) -> Optional[ProductVariant]:
    if not external_variant_id:
        return None
    return (
        db.query(ProductVariant)
        .filter(
            ProductVariant.store_id == store.id,
            ProductVariant.external_variant_id == external_variant_id,
        )
        .first()
    )


def _sync_order_items(db: Session, store: Store, order: Order, snapshots: Sequence[LineItemSnapshot]) -> bool:
    changed = False
    existing = {item.external_line_id: item for item in order.items}
    seen = set()

    for snapshot in snapshots:
        if snapshot.external_line_id in seen:
            continue
        seen.add(snapshot.external_line_id)

        item = existing.get(snapshot.external_line_id)
        if item is None:
            item = OrderItem(external_line_id=snapshot.external_line_id, needs_mapping=True)
            order.items.append(item)
            changed = True

        changed = _assign(
            item,
            external_product_id=snapshot.external_product_id,
            external_variant_id=snapshot.external_variant_id,
            title=snapshot.title,
            variant_title=snapshot.variant_title,
            sku=snapshot.sku,
            quantity=snapshot.quantity,
            unit_price=snapshot.unit_price,
            total_discount=snapshot.total_discount,
            line_total=snapshot.line_total,
        ) or changed

        if item.mapping_source == MappingSourceEnum.manual:
            continue

        variant = _find_variant(db, store, snapshot.external_variant_id)
        if variant is not None:
            changed = _assign(
                item,
                product_variant_id=variant.id,
                mapping_source=MappingSourceEnum.auto,
                needs_mapping=False,
            ) or changed
        else:
            changed = _assign(item, product_variant_id=None, mapping_source=None, needs_mapping=True) or changed

    for external_line_id, item in existing.items():
        if external_line_id not in seen:
            order.items.remove(item)
            changed = True

    if changed:
        db.flush()
    return changed


def assign_variant_mapping(db: Session, item: OrderItem, variant: Optional[ProductVariant]) -> OrderItem:
    """Manually map (or unmap) an order item. Manual mappings survive re-syncs."""
    if variant is None:
        item.product_variant_id = None
        item.mapping_source = None
        item.needs_mapping = True
    else:
        if variant.store_id != item.order.store_id:
            raise ValidationRejected(["Variant belongs to a different store"])
        item.product_variant_id = variant.id
        item.mapping_source = MappingSourceEnum.manual
        item.needs_mapping = False
    db.commit()
    logger.info("[SYNC] Order item %s mapped manually to %s", item.id, variant.id if variant else None)
    return item
