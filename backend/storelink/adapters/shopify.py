"""Shopify platform adapter.

WHAT:
    OAuth (per-shop authorize/token endpoints), shop info, and product
    create/fetch/list through the GraphQL Admin API. Also parses the REST
    shaped webhook payloads Shopify delivers for products and orders.

WHY:
    Keeps every Shopify URL, header and response shape in one place; the
    services only see `TokenGrant`, `SiteInfo`, `ProductSnapshot` and
    `OrderSnapshot`.

REFERENCES:
    - Shopify OAuth: https://shopify.dev/docs/apps/auth/oauth
    - productSet: https://shopify.dev/docs/api/admin-graphql/latest/mutations/productSet
    - Expiring offline tokens: https://shopify.dev/docs/apps/build/authentication-authorization/access-tokens/offline-access-tokens
"""

import hashlib
import hmac
import itertools
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode, urlparse

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
    to_decimal,
)
from storelink.deps import Settings, get_settings
from storelink.exceptions import PlatformRejected, PlatformUnavailable, ValidationRejected
from storelink.models import PlatformEnum

logger = logging.getLogger(__name__)

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]{1,98}[a-z0-9]\.myshopify\.com$")

# Shopify's placeholder option on products created without options
DEFAULT_OPTION_NAME = "Title"
DEFAULT_OPTION_VALUE = "Default Title"


# =============================================================================
# DOMAIN HELPERS
# =============================================================================

def normalize_shop_domain(shop_input: str) -> str:
    """Normalize shop input to the myshopify.com domain.

    Examples:
        'myshop' -> 'myshop.myshopify.com'
        'https://myshop.myshopify.com/admin' -> 'myshop.myshopify.com'
    """
    shop = shop_input.strip().lower()

    if shop.startswith("http://") or shop.startswith("https://"):
        parsed = urlparse(shop)
        shop = parsed.netloc or parsed.path.split("/")[0]

    shop = shop.split("/")[0]

    if not shop.endswith(".myshopify.com"):
        shop = f"{shop}.myshopify.com"

    return shop


def validate_shop_domain(shop_domain: str) -> bool:
    return bool(SHOP_DOMAIN_PATTERN.match(shop_domain))


def callback_signature(secret: str, params: Mapping[str, str]) -> str:
    """Hex HMAC-SHA256 Shopify puts in the `hmac` parameter of OAuth redirects.

    Signed message: every other query parameter as `key=value`, sorted by key,
    joined with `&`.
    """
    message = "&".join(
        f"{key}={value}" for key, value in sorted(params.items()) if key not in ("hmac", "signature")
    )
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def gid_to_id(gid: Any) -> str:
    """'gid://shopify/Product/123' -> '123' (plain ids pass through)."""
    value = str(gid)
    return value.rsplit("/", 1)[-1] if value.startswith("gid://") else value


def _product_gid(external_id: str) -> str:
    if str(external_id).startswith("gid://"):
        return str(external_id)
    return f"gid://shopify/Product/{external_id}"


def _expiry(seconds: Any) -> Optional[datetime]:
    if not seconds:
        return None
    return datetime.utcnow() + timedelta(seconds=int(seconds))


def _strip_default_option(groups: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if (
        len(groups) == 1
        and groups[0]["name"] == DEFAULT_OPTION_NAME
        and groups[0]["values"] == [DEFAULT_OPTION_VALUE]
    ):
        return []
    return groups


# =============================================================================
# GRAPHQL DOCUMENTS
# =============================================================================

PRODUCT_FIELDS = """
    id
    title
    handle
    vendor
    productType
    status
    descriptionHtml
    options { name values }
    variants(first: 100) {
      edges { node { id title sku price position selectedOptions { name value } } }
    }
"""

PRODUCT_QUERY = f"""
query GetProduct($id: ID!) {{
  product(id: $id) {{ {PRODUCT_FIELDS} }}
}}
"""

PRODUCTS_QUERY = f"""
query ListProducts($first: Int!, $after: String) {{
  products(first: $first, after: $after) {{
    edges {{ node {{ {PRODUCT_FIELDS} }} }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

PRODUCT_SET_MUTATION = f"""
mutation CreateProduct($input: ProductSetInput!) {{
  productSet(input: $input, synchronous: true) {{
    product {{ {PRODUCT_FIELDS} }}
    userErrors {{ field message }}
  }}
}}
"""


class ShopifyAdapter:
    """Shopify implementation of the platform capability interface.

    Usage:
        adapter = ShopifyAdapter()
        grant = await adapter.exchange_code(code, redirect_uri=uri, domain="shop-a.myshopify.com")
    """

    platform = PlatformEnum.shopify

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.api_version = self.settings.SHOPIFY_API_VERSION
        self.timeout = self.settings.PLATFORM_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # =========================================================================
    # OAUTH
    # =========================================================================

    def authorize_url(self, *, state: str, redirect_uri: str, domain: Optional[str] = None) -> str:
        if not domain:
            raise PlatformRejected("Shopify store domain is required", platform=self.platform.value)
        params = {
            "client_id": self.settings.SHOPIFY_API_KEY,
            "scope": self.settings.SHOPIFY_SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"https://{domain}/admin/oauth/authorize?{urlencode(params)}"

    def verify_callback(self, params: Mapping[str, str]) -> bool:
        provided = params.get("hmac")
        secret = self.settings.SHOPIFY_API_SECRET
        if not provided or not secret:
            return False
        return hmac.compare_digest(callback_signature(secret, params).encode("utf-8"), provided.encode("utf-8"))

    async def exchange_code(self, code: str, *, redirect_uri: str, domain: Optional[str] = None) -> TokenGrant:
        async with self._client() as client:
            response = await http.send(
                client,
                "POST",
                f"https://{domain}/admin/oauth/access_token",
                platform=self.platform.value,
                on_client_error=http.REJECTED,
                json={
                    "client_id": self.settings.SHOPIFY_API_KEY,
                    "client_secret": self.settings.SHOPIFY_API_SECRET,
                    "code": code,
                },
            )
        return self._token_grant(response.json())

    async def refresh_token(self, refresh_token: str, *, domain: str) -> TokenGrant:
        async with self._client() as client:
            response = await http.send(
                client,
                "POST",
                f"https://{domain}/admin/oauth/access_token",
                platform=self.platform.value,
                on_client_error=http.REAUTHORIZE,
                json={
                    "client_id": self.settings.SHOPIFY_API_KEY,
                    "client_secret": self.settings.SHOPIFY_API_SECRET,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )
        return self._token_grant(response.json())

    def _token_grant(self, data: Dict[str, Any]) -> TokenGrant:
        access_token = data.get("access_token")
        if not access_token:
            raise PlatformRejected("Shopify did not return an access token", platform=self.platform.value)
        return TokenGrant(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            access_token_expires_at=_expiry(data.get("expires_in")),
            refresh_token_expires_at=_expiry(data.get("refresh_token_expires_in")),
            scope=data.get("scope"),
        )

    async def fetch_site_info(self, access_token: str, *, domain: Optional[str] = None) -> SiteInfo:
        async with self._client() as client:
            response = await http.send(
                client,
                "GET",
                f"https://{domain}/admin/api/{self.api_version}/shop.json",
                platform=self.platform.value,
                headers=self._headers(access_token),
            )
        shop = response.json().get("shop", {})
        return SiteInfo(
            domain=shop.get("myshopify_domain") or domain,
            name=shop.get("name") or domain,
        )

    # =========================================================================
    # GRAPHQL
    # =========================================================================

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

    async def execute(
        self,
        access_token: str,
        domain: str,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        on_client_error: str = http.API,
    ) -> Dict[str, Any]:
        """Execute one GraphQL document and return its `data`.

        Retrying is the caller's decision: throttling surfaces as
        PlatformUnavailable so webhook deliveries and arq jobs back off.
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        async with self._client() as client:
            response = await http.send(
                client,
                "POST",
                f"https://{domain}/admin/api/{self.api_version}/graphql.json",
                platform=self.platform.value,
                on_client_error=on_client_error,
                json=payload,
                headers=self._headers(access_token),
            )
        data = response.json()

        if "errors" in data:
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in data["errors"]]
            logger.error("[SHOPIFY] GraphQL errors for %s: %s", domain, messages)
            if any("throttled" in msg.lower() for msg in messages):
                raise PlatformUnavailable("Shopify throttled the request", platform=self.platform.value)
            raise PlatformRejected("; ".join(messages), platform=self.platform.value, errors=messages)

        return data.get("data") or {}

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def fetch_product(self, access_token: str, *, domain: str, external_id: str) -> ProductSnapshot:
        data = await self.execute(access_token, domain, PRODUCT_QUERY, {"id": _product_gid(external_id)})
        product = data.get("product")
        if not product:
            raise PlatformRejected(f"Product {external_id} not found", platform=self.platform.value, status_code=404)
        return self._graphql_product(product)

    async def list_products(
        self, access_token: str, *, domain: str, cursor: Optional[str] = None
    ) -> ProductPage:
        variables: Dict[str, Any] = {"first": 50}
        if cursor:
            variables["after"] = cursor
        data = await self.execute(access_token, domain, PRODUCTS_QUERY, variables)
        products = data.get("products") or {}
        page_info = products.get("pageInfo") or {}
        return ProductPage(
            products=[self._graphql_product(edge["node"]) for edge in products.get("edges", [])],
            next_cursor=page_info.get("endCursor") if page_info.get("hasNextPage") else None,
        )

    async def create_product(self, access_token: str, *, domain: str, draft: ProductDraft) -> ProductSnapshot:
        """Create a DRAFT product with one variant per option combination."""
        product_input: Dict[str, Any] = {
            "title": draft.title,
            "descriptionHtml": draft.description_html or "",
            "status": "DRAFT",
        }

        if draft.option_groups:
            product_input["productOptions"] = [
                {"name": group["name"], "values": [{"name": value} for value in group["values"]]}
                for group in draft.option_groups
            ]
            names = [group["name"] for group in draft.option_groups]
            product_input["variants"] = [
                {
                    "optionValues": [
                        {"optionName": name, "name": value} for name, value in zip(names, combination)
                    ]
                }
                for combination in itertools.product(*(group["values"] for group in draft.option_groups))
            ]

        data = await self.execute(
            access_token,
            domain,
            PRODUCT_SET_MUTATION,
            {"input": product_input},
            on_client_error=http.VALIDATION,
        )
        result = data.get("productSet") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise ValidationRejected([e.get("message", str(e)) for e in user_errors], platform=self.platform.value)
        if not result.get("product"):
            raise ValidationRejected(["Shopify did not return the created product"], platform=self.platform.value)

        snapshot = self._graphql_product(result["product"])
        logger.info("[SHOPIFY] Created product %s on %s", snapshot.external_id, domain)
        return snapshot

    def _graphql_product(self, node: Dict[str, Any]) -> ProductSnapshot:
        variants = []
        for index, edge in enumerate((node.get("variants") or {}).get("edges", [])):
            variant = edge["node"]
            variants.append(
                VariantSnapshot(
                    external_variant_id=gid_to_id(variant["id"]),
                    title=variant.get("title"),
                    sku=variant.get("sku") or None,
                    price=to_decimal(variant.get("price")) if variant.get("price") is not None else None,
                    position=variant.get("position") or index + 1,
                    selected_options={o["name"]: o["value"] for o in variant.get("selectedOptions") or []},
                )
            )
        groups = [
            {"name": option["name"], "values": list(option.get("values") or [])}
            for option in node.get("options") or []
        ]
        return ProductSnapshot(
            external_id=gid_to_id(node["id"]),
            title=node.get("title") or "",
            description_html=node.get("descriptionHtml"),
            handle=node.get("handle"),
            vendor=node.get("vendor"),
            product_type=node.get("productType"),
            status=(node.get("status") or "").lower() or None,
            option_groups=_strip_default_option(groups),
            variants=variants,
        )

    def parse_product(self, payload: Dict[str, Any]) -> ProductSnapshot:
        """Parse a products/create or products/update webhook body (REST shape)."""
        options = sorted(payload.get("options") or [], key=lambda o: o.get("position", 0))
        names = [option["name"] for option in options]
        variants = []
        for variant in payload.get("variants") or []:
            selected = {}
            for index, name in enumerate(names[:3]):
                value = variant.get(f"option{index + 1}")
                if value is not None:
                    selected[name] = value
            variants.append(
                VariantSnapshot(
                    external_variant_id=str(variant["id"]),
                    title=variant.get("title"),
                    sku=variant.get("sku") or None,
                    price=to_decimal(variant.get("price")) if variant.get("price") is not None else None,
                    position=variant.get("position") or 0,
                    selected_options=selected,
                )
            )
        groups = [{"name": option["name"], "values": list(option.get("values") or [])} for option in options]
        return ProductSnapshot(
            external_id=str(payload["id"]),
            title=payload.get("title") or "",
            description_html=payload.get("body_html"),
            handle=payload.get("handle"),
            vendor=payload.get("vendor"),
            product_type=payload.get("product_type"),
            status=payload.get("status"),
            option_groups=_strip_default_option(groups),
            variants=variants,
        )

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def fetch_order(self, access_token: str, *, domain: str, external_id: str) -> OrderSnapshot:
        async with self._client() as client:
            response = await http.send(
                client,
                "GET",
                f"https://{domain}/admin/api/{self.api_version}/orders/{external_id}.json",
                platform=self.platform.value,
                headers=self._headers(access_token),
            )
        return self.parse_order(response.json().get("order") or {})

    async def order_from_webhook(
        self, payload: Dict[str, Any], *, domain: str, token_provider: TokenProvider
    ) -> OrderSnapshot:
        # Shopify order webhooks carry the full order
        return self.parse_order(payload)

    def parse_order(self, payload: Dict[str, Any]) -> OrderSnapshot:
        line_items = [
            LineItemSnapshot(
                external_line_id=str(item["id"]),
                quantity=int(item.get("quantity") or 0),
                unit_price=to_decimal(item.get("price")),
                total_discount=to_decimal(item.get("total_discount")),
                external_product_id=str(item["product_id"]) if item.get("product_id") else None,
                external_variant_id=str(item["variant_id"]) if item.get("variant_id") else None,
                title=item.get("title"),
                variant_title=item.get("variant_title"),
                sku=item.get("sku") or None,
            )
            for item in payload.get("line_items") or []
        ]
        shipping = (
            ((payload.get("total_shipping_price_set") or {}).get("shop_money") or {}).get("amount")
            or sum((to_decimal(line.get("price")) for line in payload.get("shipping_lines") or []), to_decimal(0))
        )
        placed_at = payload.get("created_at")
        return OrderSnapshot(
            external_id=str(payload["id"]),
            line_items=line_items,
            name=payload.get("name"),
            currency=payload.get("currency"),
            subtotal_price=to_decimal(payload.get("subtotal_price")),
            total_discounts=to_decimal(payload.get("total_discounts")),
            total_shipping=to_decimal(shipping),
            total_tax=to_decimal(payload.get("total_tax")),
            total_price=to_decimal(payload.get("total_price")),
            taxes_included=bool(payload.get("taxes_included")),
            placed_at=_parse_datetime(placed_at),
        )


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO 8601 into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("[SHOPIFY] Could not parse datetime %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed
