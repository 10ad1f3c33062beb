"""Store administration endpoints for staff users.

WHAT:
    List and inspect connected stores, toggle them active, create and
    duplicate products on the platform, queue full catalog syncs and map
    order items to local variants by hand.

WHY:
    Every operation is scoped to the caller's organization; a uid from
    another organization behaves exactly like an unknown one (404).

REFERENCES:
    - storelink/services/store_lifecycle.py
    - storelink/services/sync_service.py
    - storelink/workers/arq_enqueue.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from storelink import schemas
from storelink.adapters import AdapterProvider, get_adapter_provider
from storelink.database import get_db
from storelink.deps import get_current_user
from storelink.exceptions import (
    PlatformRejected,
    PlatformUnavailable,
    ReauthorizationRequired,
    StoreDisconnected,
    StoreInactive,
    StorelinkError,
    ValidationRejected,
)
from storelink.models import Order, OrderItem, ProductVariant, Store, SyncStatusEnum, User
from storelink.services import store_lifecycle, sync_service
from storelink.workers.arq_enqueue import enqueue_product_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stores", tags=["Stores"])


# =============================================================================
# HELPERS
# =============================================================================

def _get_store(db: Session, user: User, uid: str) -> Store:
    store = (
        db.query(Store)
        .filter(Store.uid == uid, Store.organization_id == user.organization_id)
        .first()
    )
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


def _http_error(exc: StorelinkError) -> HTTPException:
    """Translate a domain error into the status code the admin UI expects."""
    if isinstance(exc, ValidationRejected):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": exc.message, "errors": exc.errors},
        )
    if isinstance(exc, PlatformUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_user_message())
    if isinstance(exc, (ReauthorizationRequired, StoreInactive, StoreDisconnected)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_user_message())
    if isinstance(exc, PlatformRejected) and exc.status_code == status.HTTP_404_NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_user_message())
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_user_message())


# =============================================================================
# STORES
# =============================================================================

@router.get("", response_model=schemas.StoreListResponse, summary="List connected stores")
def list_stores(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    stores = (
        db.query(Store)
        .filter(Store.organization_id == current_user.organization_id)
        .order_by(Store.created_at)
        .all()
    )
    return schemas.StoreListResponse(stores=stores, total=len(stores))


@router.get("/{uid}", response_model=schemas.StoreOut)
def get_store(
    uid: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _get_store(db, current_user, uid)


@router.post("/{uid}/activate", response_model=schemas.StoreOut)
def activate_store(
    uid: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = _get_store(db, current_user, uid)
    try:
        return store_lifecycle.activate(db, store)
    except StorelinkError as exc:
        raise _http_error(exc)


@router.post("/{uid}/deactivate", response_model=schemas.StoreOut)
def deactivate_store(
    uid: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = _get_store(db, current_user, uid)
    try:
        return store_lifecycle.deactivate(db, store)
    except StorelinkError as exc:
        raise _http_error(exc)


@router.post("/{uid}/sync", response_model=schemas.SyncEnqueued, status_code=status.HTTP_202_ACCEPTED)
async def sync_store(
    uid: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Queue a full product catalog sync; progress shows on the store."""
    store = _get_store(db, current_user, uid)
    try:
        store_lifecycle.ensure_can_sync(store)
    except StorelinkError as exc:
        raise _http_error(exc)

    job = await enqueue_product_sync(store.id)
    store.last_sync_status = SyncStatusEnum.queued
    db.commit()
    return schemas.SyncEnqueued(uid=store.uid, job_id=job["job_id"], status=job["status"])


# =============================================================================
# PRODUCTS
# =============================================================================

@router.post("/{uid}/products", response_model=schemas.ProductOut, status_code=status.HTTP_201_CREATED)
async def create_product(
    uid: str,
    payload: schemas.ProductCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    store = _get_store(db, current_user, uid)
    try:
        return await sync_service.create_product(
            db,
            store,
            title=payload.title,
            description_html=payload.description_html,
            option_groups=[group.model_dump() for group in payload.option_groups],
            adapter=adapters(store.platform),
        )
    except StorelinkError as exc:
        logger.warning("[STORES] Product create failed on %s: %s", store.uid, exc.message)
        raise _http_error(exc)


@router.post(
    "/{uid}/products/{external_id}/duplicate",
    response_model=schemas.ProductOut,
    status_code=status.HTTP_201_CREATED,
)
async def duplicate_product(
    uid: str,
    external_id: str,
    payload: schemas.ProductDuplicate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    """Create a new product with the option structure of `external_id`."""
    store = _get_store(db, current_user, uid)
    try:
        return await sync_service.duplicate_product(
            db,
            store,
            external_id,
            title=payload.title,
            description_html=payload.description_html,
            adapter=adapters(store.platform),
        )
    except StorelinkError as exc:
        logger.warning("[STORES] Product duplicate failed on %s: %s", store.uid, exc.message)
        raise _http_error(exc)


# =============================================================================
# ORDER ITEM MAPPING
# =============================================================================

@router.post("/{uid}/order-items/{item_id}/mapping", response_model=schemas.OrderItemOut)
def map_order_item(
    uid: str,
    item_id: UUID,
    payload: schemas.VariantMappingIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = _get_store(db, current_user, uid)
    item = (
        db.query(OrderItem)
        .join(Order, OrderItem.order_id == Order.id)
        .filter(OrderItem.id == item_id, Order.store_id == store.id)
        .first()
    )
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order item not found")

    variant = None
    if payload.product_variant_id is not None:
        variant = (
            db.query(ProductVariant)
            .filter(ProductVariant.id == payload.product_variant_id, ProductVariant.store_id == store.id)
            .first()
        )
        if variant is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant not found")

    try:
        return sync_service.assign_variant_mapping(db, item, variant)
    except StorelinkError as exc:
        raise _http_error(exc)
