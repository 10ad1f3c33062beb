"""Platform adapter capability interface and normalized shapes.

WHAT:
    The `PlatformAdapter` protocol every platform implementation satisfies,
    plus the platform-neutral dataclasses adapters return.

WHY:
    Services only see these shapes; URLs, auth headers and response parsing
    stay inside each adapter. Adapters are selected by the store's platform
    (see `storelink.adapters.get_adapter`), not by subclassing.

REFERENCES:
    - storelink/adapters/shopify.py
    - storelink/adapters/squarespace.py
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from storelink.models import PlatformEnum


# Ordered option structure: [{"name": "Size", "values": ["8x10", "5x7"]}, ...]
OptionGroups = List[Dict[str, Any]]


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None


@dataclass
class SiteInfo:
    domain: str
    name: str


@dataclass
class VariantSnapshot:
    external_variant_id: str
    title: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    position: int = 0
    selected_options: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProductSnapshot:
    external_id: str
    title: str
    description_html: Optional[str] = None
    handle: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[str] = None
    option_groups: OptionGroups = field(default_factory=list)
    variants: List[VariantSnapshot] = field(default_factory=list)


@dataclass
class ProductPage:
    products: List[ProductSnapshot]
    next_cursor: Optional[str] = None


@dataclass
class ProductDraft:
    title: str
    description_html: Optional[str] = None
    option_groups: OptionGroups = field(default_factory=list)


@dataclass
class LineItemSnapshot:
    external_line_id: str
    quantity: int
    unit_price: Decimal
    total_discount: Decimal = Decimal("0")
    external_product_id: Optional[str] = None
    external_variant_id: Optional[str] = None
    title: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity - self.total_discount


@dataclass
class OrderSnapshot:
    external_id: str
    line_items: List[LineItemSnapshot]
    name: Optional[str] = None
    currency: Optional[str] = None
    subtotal_price: Decimal = Decimal("0")
    total_discounts: Decimal = Decimal("0")
    total_shipping: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    taxes_included: bool = False
    placed_at: Optional[datetime] = None


TokenProvider = Callable[[], Awaitable[str]]


class PlatformAdapter(Protocol):
    """Generic operations the rest of the system relies on."""

    platform: PlatformEnum

    def authorize_url(self, *, state: str, redirect_uri: str, domain: Optional[str] = None) -> str: ...

    def verify_callback(self, params: Mapping[str, str]) -> bool: ...

    async def exchange_code(self, code: str, *, redirect_uri: str, domain: Optional[str] = None) -> TokenGrant: ...

    async def refresh_token(self, refresh_token: str, *, domain: str) -> TokenGrant: ...

    async def fetch_site_info(self, access_token: str, *, domain: Optional[str] = None) -> SiteInfo: ...

    async def create_product(self, access_token: str, *, domain: str, draft: ProductDraft) -> ProductSnapshot: ...

    async def fetch_product(self, access_token: str, *, domain: str, external_id: str) -> ProductSnapshot: ...

    async def list_products(
        self, access_token: str, *, domain: str, cursor: Optional[str] = None
    ) -> ProductPage: ...

    async def fetch_order(self, access_token: str, *, domain: str, external_id: str) -> OrderSnapshot: ...

    async def order_from_webhook(
        self, payload: Dict[str, Any], *, domain: str, token_provider: TokenProvider
    ) -> OrderSnapshot: ...

    def parse_product(self, payload: Dict[str, Any]) -> ProductSnapshot: ...

    def parse_order(self, payload: Dict[str, Any]) -> OrderSnapshot: ...


def to_decimal(value: Any) -> Decimal:
    """Parse a platform money value without going through float."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, dict):
        # Squarespace money: {"currency": "USD", "value": "12.50"}
        return to_decimal(value.get("value"))
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a money amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a money amount: {value!r}")
    return amount


def option_groups_from_variants(names: List[str], variants: List[VariantSnapshot]) -> OptionGroups:
    """Rebuild ordered option groups from variant selections (first-seen order)."""
    groups: OptionGroups = []
    for name in names:
        values: List[str] = []
        for variant in variants:
            value = variant.selected_options.get(name)
            if value is not None and value not in values:
                values.append(value)
        groups.append({"name": name, "values": values})
    return groups
