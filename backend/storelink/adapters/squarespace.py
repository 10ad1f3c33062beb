"""Squarespace platform adapter.

WHAT:
    OAuth against login.squarespace.com (Basic-auth token endpoint with
    offline refresh tokens), website identity, Commerce v2 products and
    Commerce v1 orders.

WHY:
    Squarespace access tokens expire after ~30 minutes, so this adapter is
    the main consumer of the refresh path in token_service.

REFERENCES:
    - OAuth: https://developers.squarespace.com/commerce-apis/oauth
    - Products: https://developers.squarespace.com/commerce-apis/products-overview
    - Orders: https://developers.squarespace.com/commerce-apis/orders-overview
"""

import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import httpx

from storelink.adapters import http
from storelink.adapters.base import (
    LineItemSnapshot,
    OrderSnapshot,
    ProductDraft,
    ProductPage,
    ProductSnapshot,
    SiteInfo,
    TokenGrant,
    TokenProvider,
    VariantSnapshot,
    option_groups_from_variants,
    to_decimal,
)
from storelink.deps import Settings, get_settings
from storelink.exceptions import PayloadInvalid, PlatformRejected, ValidationRejected
from storelink.models import PlatformEnum

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://login.squarespace.com/api/1/login/oauth/provider/authorize"
TOKEN_URL = "https://login.squarespace.com/api/1/login/oauth/provider/tokens"
API_BASE_URL = "https://api.squarespace.com"
USER_AGENT = "storelink/1.0"


def _from_unix(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


class SquarespaceAdapter:
    """Squarespace implementation of the platform capability interface."""

    platform = PlatformEnum.squarespace

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.timeout = self.settings.PLATFORM_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self, access_token: Optional[str] = None) -> httpx.AsyncClient:
        headers = {"User-Agent": USER_AGENT}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, headers=headers)

    # =========================================================================
    # OAUTH
    # =========================================================================

    def authorize_url(self, *, state: str, redirect_uri: str, domain: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.SQUARESPACE_CLIENT_ID,
            "redirect_uri": redirect_uri,
            "scope": self.settings.SQUARESPACE_SCOPES,
            "state": state,
            "access_type": "offline",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def verify_callback(self, params: Mapping[str, str]) -> bool:
        # Squarespace does not sign its redirect; the session-bound state is the only check
        return True

    async def exchange_code(self, code: str, *, redirect_uri: str, domain: Optional[str] = None) -> TokenGrant:
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            on_client_error=http.REJECTED,
        )

    async def refresh_token(self, refresh_token: str, *, domain: str) -> TokenGrant:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            on_client_error=http.REAUTHORIZE,
        )

    async def _token_request(self, body: Dict[str, Any], *, on_client_error: str) -> TokenGrant:
        async with self._client() as client:
            response = await http.send(
                client,
                "POST",
                TOKEN_URL,
                platform=self.platform.value,
                on_client_error=on_client_error,
                auth=(self.settings.SQUARESPACE_CLIENT_ID or "", self.settings.SQUARESPACE_CLIENT_SECRET or ""),
                json=body,
            )
        data = response.json()
        if not data.get("access_token"):
            raise PlatformRejected("Squarespace did not return an access token", platform=self.platform.value)
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            access_token_expires_at=_from_unix(data.get("access_token_expires_at")),
            refresh_token_expires_at=_from_unix(data.get("refresh_token_expires_at")),
            scope=data.get("scope"),
        )

    async def fetch_site_info(self, access_token: str, *, domain: Optional[str] = None) -> SiteInfo:
        async with self._client(access_token) as client:
            response = await http.send(
                client,
                "GET",
                f"{API_BASE_URL}/1.0/authorization/website",
                platform=self.platform.value,
            )
        data = response.json()
        site_id = data.get("siteId") or data.get("id")
        if not site_id:
            raise PlatformRejected("Squarespace did not return a website id", platform=self.platform.value)
        return SiteInfo(domain=str(site_id), name=data.get("title") or data.get("url") or str(site_id))

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def fetch_product(self, access_token: str, *, domain: str, external_id: str) -> ProductSnapshot:
        async with self._client(access_token) as client:
            response = await http.send(
                client,
                "GET",
                f"{API_BASE_URL}/v2/commerce/products/{external_id}",
                platform=self.platform.value,
            )
        data = response.json()
        products = data.get("products") if isinstance(data, dict) and "products" in data else [data]
        if not products:
            raise PlatformRejected(f"Product {external_id} not found", platform=self.platform.value, status_code=404)
        return self.parse_product(products[0])

    async def list_products(
        self, access_token: str, *, domain: str, cursor: Optional[str] = None
    ) -> ProductPage:
        params = {"cursor": cursor} if cursor else None
        async with self._client(access_token) as client:
            response = await http.send(
                client,
                "GET",
                f"{API_BASE_URL}/v2/commerce/products",
                platform=self.platform.value,
                params=params,
            )
        data = response.json()
        pagination = data.get("pagination") or {}
        return ProductPage(
            products=[self.parse_product(product) for product in data.get("products") or []],
            next_cursor=pagination.get("nextPageCursor") if pagination.get("hasNextPage") else None,
        )

    async def _store_page_id(self, client: httpx.AsyncClient) -> str:
        response = await http.send(
            client,
            "GET",
            f"{API_BASE_URL}/1.0/commerce/store_pages",
            platform=self.platform.value,
        )
        pages = response.json().get("storePages") or []
        enabled = [page for page in pages if page.get("isEnabled", True)]
        if not enabled:
            raise ValidationRejected(["Site has no enabled store page"], platform=self.platform.value)
        return enabled[0]["id"]

    async def create_product(self, access_token: str, *, domain: str, draft: ProductDraft) -> ProductSnapshot:
        """Create a hidden physical product with one variant per option combination.

        Squarespace requires pricing on every variant; variants are created at
        0.00 and priced in the Squarespace admin.
        """
        names = [group["name"] for group in draft.option_groups]
        combinations = list(itertools.product(*(group["values"] for group in draft.option_groups)))
        placeholder_price = {"currency": self.settings.SQUARESPACE_CURRENCY, "value": "0.00"}

        variants: List[Dict[str, Any]] = []
        for combination in combinations:
            variant: Dict[str, Any] = {
                "pricing": {"basePrice": placeholder_price},
                "stock": {"quantity": 0, "unlimited": False},
            }
            if names:
                variant["attributes"] = dict(zip(names, combination))
            variants.append(variant)

        async with self._client(access_token) as client:
            body = {
                "type": "PHYSICAL",
                "storePageId": await self._store_page_id(client),
                "name": draft.title,
                "description": draft.description_html or "",
                "isVisible": False,
                "variantAttributes": names,
                "variants": variants,
            }
            response = await http.send(
                client,
                "POST",
                f"{API_BASE_URL}/v2/commerce/products",
                platform=self.platform.value,
                on_client_error=http.VALIDATION,
                json=body,
            )
        snapshot = self.parse_product(response.json())
        logger.info("[SQUARESPACE] Created product %s on site %s", snapshot.external_id, domain)
        return snapshot

    def parse_product(self, payload: Dict[str, Any]) -> ProductSnapshot:
        variants = []
        for index, variant in enumerate(payload.get("variants") or []):
            attributes = variant.get("attributes") or {}
            pricing = variant.get("pricing") or {}
            price = pricing.get("salePrice") if pricing.get("onSale") else pricing.get("basePrice")
            variants.append(
                VariantSnapshot(
                    external_variant_id=str(variant["id"]),
                    title=" / ".join(str(v) for v in attributes.values()) or f"Variant {index + 1}",
                    sku=variant.get("sku") or None,
                    price=to_decimal(price) if price else None,
                    position=index + 1,
                    selected_options={str(k): str(v) for k, v in attributes.items()},
                )
            )
        names = list(payload.get("variantAttributes") or [])
        return ProductSnapshot(
            external_id=str(payload["id"]),
            title=payload.get("name") or "",
            description_html=payload.get("description"),
            handle=payload.get("urlSlug"),
            product_type=payload.get("type"),
            status="active" if payload.get("isVisible") else "draft",
            option_groups=option_groups_from_variants(names, variants),
            variants=variants,
        )

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def fetch_order(self, access_token: str, *, domain: str, external_id: str) -> OrderSnapshot:
        async with self._client(access_token) as client:
            response = await http.send(
                client,
                "GET",
                f"{API_BASE_URL}/1.0/commerce/orders/{external_id}",
                platform=self.platform.value,
            )
        return self.parse_order(response.json())

    async def order_from_webhook(
        self, payload: Dict[str, Any], *, domain: str, token_provider: TokenProvider
    ) -> OrderSnapshot:
        # Notifications only carry the order id; the order itself is fetched
        order_id = (payload.get("data") or {}).get("orderId")
        if not order_id:
            raise PayloadInvalid("Squarespace order notification without data.orderId")
        access_token = await token_provider()
        return await self.fetch_order(access_token, domain=domain, external_id=str(order_id))

    def parse_order(self, payload: Dict[str, Any]) -> OrderSnapshot:
        line_items = []
        for item in payload.get("lineItems") or []:
            options = item.get("variantOptions") or []
            line_items.append(
                LineItemSnapshot(
                    external_line_id=str(item["id"]),
                    quantity=int(item.get("quantity") or 0),
                    unit_price=to_decimal(item.get("unitPricePaid")),
                    external_product_id=str(item["productId"]) if item.get("productId") else None,
                    external_variant_id=str(item["variantId"]) if item.get("variantId") else None,
                    title=item.get("productName"),
                    variant_title=" / ".join(str(o.get("value")) for o in options) or None,
                    sku=item.get("sku") or None,
                )
            )
        grand_total = payload.get("grandTotal") or {}
        return OrderSnapshot(
            external_id=str(payload["id"]),
            line_items=line_items,
            name=f"#{payload['orderNumber']}" if payload.get("orderNumber") else None,
            currency=grand_total.get("currency"),
            subtotal_price=to_decimal(payload.get("subtotal")),
            total_discounts=to_decimal(payload.get("discountTotal")),
            total_shipping=to_decimal(payload.get("shippingTotal")),
            total_tax=to_decimal(payload.get("taxTotal")),
            total_price=to_decimal(grand_total),
            taxes_included=payload.get("priceTaxInterpretation") == "INCLUSIVE",
            placed_at=_parse_datetime(payload.get("createdOn")),
        )
