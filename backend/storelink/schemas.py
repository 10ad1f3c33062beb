"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import MappingSourceEnum, PlatformEnum, StoreStateEnum, SyncStatusEnum


class HealthResponse(BaseModel):
    status: str = Field(description="Service status", example="ok")


# =============================================================================
# STORES
# =============================================================================

class StoreOut(BaseModel):
    """A connected store as shown to staff users."""

    id: UUID
    uid: str = Field(description="Readable unique id derived from the domain", example="shop-a")
    platform: PlatformEnum
    domain: str = Field(example="shop-a.myshopify.com")
    name: str
    active: bool
    state: StoreStateEnum
    needs_reauthentication: bool
    products_last_updated_at: Optional[datetime] = None
    last_sync_status: SyncStatusEnum
    last_sync_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class StoreListResponse(BaseModel):
    stores: List[StoreOut]
    total: int


class SyncEnqueued(BaseModel):
    uid: str
    job_id: Optional[str] = None
    status: str = Field(description="'enqueued' or 'already_queued'")


# =============================================================================
# PRODUCTS
# =============================================================================

class OptionGroupIn(BaseModel):
    name: str = Field(example="Size")
    values: List[str] = Field(example=["8x10", "5x7"])


class ProductCreate(BaseModel):
    """Payload for creating a product on the platform."""

    title: str = Field(min_length=1, example="Framed Print")
    description_html: Optional[str] = None
    option_groups: List[OptionGroupIn] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "example": {
                "title": "Framed Print",
                "description_html": "<p>Archival paper</p>",
                "option_groups": [{"name": "Size", "values": ["8x10", "5x7"]}],
            }
        }
    }


class ProductDuplicate(BaseModel):
    title: str = Field(min_length=1, example="Framed Print (copy)")
    description_html: Optional[str] = None


class VariantOut(BaseModel):
    id: UUID
    external_variant_id: str
    title: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    position: int
    selected_options: Dict[str, Any]

    model_config = {"from_attributes": True}


class ProductOut(BaseModel):
    id: UUID
    external_id: str
    title: str
    description_html: Optional[str] = None
    handle: Optional[str] = None
    status: Optional[str] = None
    option_groups: List[Dict[str, Any]]
    variants: List[VariantOut]

    model_config = {"from_attributes": True}


# =============================================================================
# ORDER ITEM MAPPING
# =============================================================================

class VariantMappingIn(BaseModel):
    """Point an order item at a local variant; null clears the mapping."""

    product_variant_id: Optional[UUID] = None


class OrderItemOut(BaseModel):
    id: UUID
    external_line_id: str
    external_variant_id: Optional[str] = None
    title: Optional[str] = None
    quantity: int
    product_variant_id: Optional[UUID] = None
    mapping_source: Optional[MappingSourceEnum] = None
    needs_mapping: bool

    model_config = {"from_attributes": True}
