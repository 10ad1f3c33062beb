"""SQLAlchemy ORM models and enums.

This module defines the tenant schema using UUID primary keys and explicit
relationships. Platform credentials live in a separate `credentials` table
(encrypted at rest) so the `stores` table never carries secrets.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    shopify = "shopify"
    squarespace = "squarespace"


class StoreStateEnum(str, enum.Enum):
    """Derived lifecycle state (not persisted; see Store.state)."""
    connected = "connected"
    deactivated = "deactivated"
    disconnected = "disconnected"


class SyncStatusEnum(str, enum.Enum):
    idle = "idle"
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class MappingSourceEnum(str, enum.Enum):
    auto = "auto"
    manual = "manual"


class FulfilmentStatusEnum(str, enum.Enum):
    pending = "pending"
    in_production = "in_production"
    fulfilled = "fulfilled"
    cancelled = "cancelled"


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj])


# Ownership boundary ---------------------------------------------

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    users = relationship("User", back_populates="organization")
    stores = relationship("Store", back_populates="organization")

    def __str__(self):
        return self.name


class User(Base):
    """Staff user. Authentication itself is handled outside this service."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    organization = relationship("Organization", back_populates="users")

    def __str__(self):
        return self.email


# Tenancy --------------------------------------------------------

class Store(Base):
    """One merchant's connection to one commerce platform (the tenant).

    WHAT:
        Identity (`uid`, platform, domain) plus lifecycle flags that gate
        webhooks, syncs and product creation.
    WHY:
        Every mirrored record and every webhook delivery is scoped to exactly
        one Store; (platform, domain) is the lookup key for inbound traffic.
    REFERENCES:
        - backend/storelink/services/store_lifecycle.py (state transitions)
        - backend/storelink/services/webhook_service.py (tenant resolution)
    """
    __tablename__ = "stores"
    __table_args__ = (
        UniqueConstraint("platform", "domain", name="uq_stores_platform_domain"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    uid = Column(String, nullable=False, unique=True, index=True)
    platform = Column(_enum(PlatformEnum), nullable=False)
    # Shopify: myshop.myshopify.com, Squarespace: website id
    domain = Column(String, nullable=False)
    name = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    created_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    needs_reauthentication = Column(Boolean, nullable=False, default=False)
    reauthentication_flagged_at = Column(DateTime, nullable=True)
    disconnected_at = Column(DateTime, nullable=True)

    products_last_updated_at = Column(DateTime, nullable=True)
    product_sync_cursor = Column(String, nullable=True)
    last_sync_status = Column(_enum(SyncStatusEnum), nullable=False, default=SyncStatusEnum.idle)
    last_sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    organization = relationship("Organization", back_populates="stores")
    created_by = relationship("User")
    credential = relationship(
        "Credential", back_populates="store", uselist=False, cascade="all, delete-orphan"
    )
    products = relationship("Product", back_populates="store", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="store", cascade="all, delete-orphan")

    @property
    def state(self) -> StoreStateEnum:
        if self.disconnected_at is not None:
            return StoreStateEnum.disconnected
        if not self.active:
            return StoreStateEnum.deactivated
        return StoreStateEnum.connected

    def __str__(self):
        return f"{self.name} ({self.platform.value}:{self.domain})"


class Credential(Base):
    """Encrypted platform credential bundle for one Store.

    WHAT:
        Access and optional refresh token (Fernet ciphertext) with expiries.
    WHY:
        Keeps secrets out of plaintext storage; one live row per Store.
    REFERENCES:
        - backend/storelink/security.py (encrypt_secret / decrypt_secret)
        - backend/storelink/services/token_service.py
    """
    __tablename__ = "credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, unique=True)
    access_token_enc = Column(String, nullable=False)
    refresh_token_enc = Column(String, nullable=True)
    access_token_expires_at = Column(DateTime, nullable=True)
    refresh_token_expires_at = Column(DateTime, nullable=True)
    scope = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    store = relationship("Store", back_populates="credential")

    def __str__(self):
        expires = self.access_token_expires_at.strftime('%Y-%m-%d %H:%M') if self.access_token_expires_at else 'no-expiry'
        return f"credential (expires: {expires})"


class OAuthState(Base):
    """Single-use CSRF state for one authorize redirect.

    Bound to the browser session via `session_key`; consumed atomically on
    callback and rejected once `expires_at` has passed.
    """
    __tablename__ = "oauth_states"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    state = Column(String(64), nullable=False, unique=True, index=True)
    platform = Column(_enum(PlatformEnum), nullable=False)
    session_key = Column(String, nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    # Shop domain for Shopify, return path for the frontend
    return_context = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)


# Mirror -----------------------------------------------------------

class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("store_id", "external_id", name="uq_products_store_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description_html = Column(Text, nullable=True)
    handle = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    status = Column(String, nullable=True)
    # [{"name": "Size", "values": ["8x10", "5x7"]}, ...] in platform order
    option_groups = Column(JSON, nullable=False, default=list)

    # Internal-only: never written from a platform snapshot
    fulfilment_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    store = relationship("Store", back_populates="products")
    variants = relationship(
        "ProductVariant", back_populates="product", cascade="all, delete-orphan",
        order_by="ProductVariant.position",
    )

    def __str__(self):
        return f"{self.title} ({self.external_id})"


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = (
        UniqueConstraint("product_id", "external_variant_id", name="uq_variants_product_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    external_variant_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    price = Column(Numeric(18, 4), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    selected_options = Column(JSON, nullable=False, default=dict)

    fulfilment_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    product = relationship("Product", back_populates="variants")

    def __str__(self):
        return f"{self.title or self.external_variant_id}"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("store_id", "external_id", name="uq_orders_store_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    currency = Column(String(3), nullable=True)

    subtotal_price = Column(Numeric(18, 4), nullable=False, default=0)
    total_discounts = Column(Numeric(18, 4), nullable=False, default=0)
    total_shipping = Column(Numeric(18, 4), nullable=False, default=0)
    total_tax = Column(Numeric(18, 4), nullable=False, default=0)
    total_price = Column(Numeric(18, 4), nullable=False, default=0)
    taxes_included = Column(Boolean, nullable=False, default=False)
    totals_mismatch = Column(Boolean, nullable=False, default=False)

    placed_at = Column(DateTime, nullable=True)

    # Internal-only
    fulfilment_status = Column(_enum(FulfilmentStatusEnum), nullable=False, default=FulfilmentStatusEnum.pending)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    store = relationship("Store", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name or self.external_id}"


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        UniqueConstraint("order_id", "external_line_id", name="uq_order_items_order_line"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    external_line_id = Column(String, nullable=False)
    external_product_id = Column(String, nullable=True)
    external_variant_id = Column(String, nullable=True)
    title = Column(String, nullable=True)
    variant_title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(18, 4), nullable=False, default=0)
    total_discount = Column(Numeric(18, 4), nullable=False, default=0)
    line_total = Column(Numeric(18, 4), nullable=False, default=0)

    # Variant mapping drives fulfilment routing
    product_variant_id = Column(UUID(as_uuid=True), ForeignKey("product_variants.id", ondelete="SET NULL"), nullable=True)
    mapping_source = Column(_enum(MappingSourceEnum), nullable=True)
    needs_mapping = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="items")
    product_variant = relationship("ProductVariant")

    def __str__(self):
        return f"{self.quantity} x {self.title or self.external_line_id}"


# Audit ------------------------------------------------------------

class WebhookLog(Base):
    """One row per inbound webhook delivery.

    Signature headers are redacted and the payload is Fernet-encrypted so a
    delivery can be replayed manually without exposing customer data.
    """
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(_enum(PlatformEnum), nullable=False)
    topic = Column(String, nullable=False, index=True)
    shop_domain = Column(String, nullable=True, index=True)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="SET NULL"), nullable=True)
    delivery_id = Column(String, nullable=True, index=True)
    status_code = Column(Integer, nullable=False)
    error_message = Column(Text, nullable=True)
    headers = Column(JSON, nullable=True)
    payload_enc = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __str__(self):
        return f"{self.platform.value} {self.topic} -> {self.status_code}"
