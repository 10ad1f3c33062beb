"""Tests for the Shopify and Squarespace adapters.

WHAT: Request shapes, response parsing and HTTP error classification
WHY: Retry decisions upstream depend entirely on which domain exception
     an adapter raises

REFERENCES:
  - storelink/adapters/http.py
  - storelink/adapters/shopify.py
  - storelink/adapters/squarespace.py

All HTTP goes through httpx.MockTransport; nothing leaves the process.
"""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from storelink.adapters import get_adapter
from storelink.adapters.base import ProductDraft, to_decimal
from storelink.adapters.shopify import (
    ShopifyAdapter,
    callback_signature,
    gid_to_id,
    normalize_shop_domain,
    validate_shop_domain,
)
from storelink.adapters.squarespace import SquarespaceAdapter
from storelink.exceptions import (
    PlatformRejected,
    PlatformUnavailable,
    ReauthorizationRequired,
    ValidationRejected,
)
from storelink.models import PlatformEnum

DOMAIN = "shop-a.myshopify.com"


def shopify(handler):
    return ShopifyAdapter(transport=httpx.MockTransport(handler))


def squarespace(handler):
    return SquarespaceAdapter(transport=httpx.MockTransport(handler))


def product_node(product_id="555"):
    return {
        "id": f"gid://shopify/Product/{product_id}",
        "title": "Framed Print",
        "descriptionHtml": "<p>Archival</p>",
        "handle": "framed-print",
        "status": "DRAFT",
        "options": [{"name": "Size", "values": ["8x10", "5x7"]}],
        "variants": {
            "edges": [
                {"node": {"id": "gid://shopify/ProductVariant/777", "title": "8x10", "price": "20.00", "position": 1,
                          "selectedOptions": [{"name": "Size", "value": "8x10"}]}},
                {"node": {"id": "gid://shopify/ProductVariant/778", "title": "5x7", "price": "15.00", "position": 2,
                          "selectedOptions": [{"name": "Size", "value": "5x7"}]}},
            ]
        },
    }


class TestShopifyHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("shop-a", "shop-a.myshopify.com"),
            ("Shop-A.myshopify.com", "shop-a.myshopify.com"),
            ("https://shop-a.myshopify.com/admin/products", "shop-a.myshopify.com"),
        ],
    )
    def test_normalize_shop_domain(self, raw, expected):
        assert normalize_shop_domain(raw) == expected

    def test_validate_shop_domain(self):
        assert validate_shop_domain("shop-a.myshopify.com")
        assert not validate_shop_domain("shop-a.evil.com")
        assert not validate_shop_domain("shop a.myshopify.com")

    def test_gid_to_id(self):
        assert gid_to_id("gid://shopify/Product/123") == "123"
        assert gid_to_id(123) == "123"

    def test_get_adapter_by_platform(self):
        assert isinstance(get_adapter(PlatformEnum.shopify), ShopifyAdapter)
        assert isinstance(get_adapter("squarespace"), SquarespaceAdapter)


class TestMoneyParsing:
    def test_amounts_keep_exact_decimal(self):
        assert to_decimal("19.99") == Decimal("19.99")
        assert to_decimal({"currency": "USD", "value": "12.50"}) == Decimal("12.50")
        assert to_decimal(None) == Decimal("0")

    @pytest.mark.parametrize("raw", ["N/A", "twelve", "NaN", "Infinity", {"value": "?"}])
    def test_unreadable_amount_is_value_error(self, raw):
        with pytest.raises(ValueError):
            to_decimal(raw)


class TestShopifyOAuth:
    def test_callback_signature_matches_published_example(self):
        params = {
            "code": "0907a61c0c8d55e99db179b68161bc00",
            "shop": "some-shop.myshopify.com",
            "state": "0.6784241404160823",
            "timestamp": "1337178173",
            "hmac": "ignored",
        }

        assert callback_signature("hush", params) == "700e2dadb827fcc8609e9d5ce208b2e9cdaab9df07390d2cbca10d7c328fc4bf"

    def test_verify_callback(self):
        adapter = ShopifyAdapter()
        params = {"code": "c1", "shop": DOMAIN, "state": "s1", "timestamp": "1700000000"}
        signed = {**params, "hmac": callback_signature("test-shopify-secret", params)}

        assert adapter.verify_callback(signed) is True
        assert adapter.verify_callback({**signed, "shop": "evil.myshopify.com"}) is False
        flipped = signed["hmac"][:-1] + ("1" if signed["hmac"].endswith("0") else "0")
        assert adapter.verify_callback({**signed, "hmac": flipped}) is False
        assert adapter.verify_callback(params) is False
        assert adapter.verify_callback({**signed, "hmac": "é"}) is False

    def test_squarespace_callback_is_not_signed(self):
        assert SquarespaceAdapter().verify_callback({"code": "c1", "state": "s1"}) is True

    def test_authorize_url(self):
        url = ShopifyAdapter().authorize_url(state="s1", redirect_uri="http://testserver/cb", domain=DOMAIN)

        assert url.startswith(f"https://{DOMAIN}/admin/oauth/authorize?")
        assert "state=s1" in url
        assert "client_id=test-shopify-key" in url

    def test_exchange_code(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": "shpat_1", "scope": "read_products"})

        grant = asyncio.run(shopify(handler).exchange_code("code-1", redirect_uri="x", domain=DOMAIN))

        assert seen["url"] == f"https://{DOMAIN}/admin/oauth/access_token"
        assert seen["body"]["code"] == "code-1"
        assert seen["body"]["client_secret"] == "test-shopify-secret"
        assert grant.access_token == "shpat_1"
        assert grant.access_token_expires_at is None

    def test_exchange_rejection_is_platform_rejected(self):
        handler = lambda request: httpx.Response(400, json={"error": "invalid_request", "error_description": "Code was already used"})

        with pytest.raises(PlatformRejected) as exc_info:
            asyncio.run(shopify(handler).exchange_code("used", redirect_uri="x", domain=DOMAIN))

        assert exc_info.value.message == "Code was already used"

    def test_refresh_rejection_requires_reauthorization(self):
        handler = lambda request: httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(ReauthorizationRequired):
            asyncio.run(shopify(handler).refresh_token("r", domain=DOMAIN))

    def test_fetch_site_info(self):
        def handler(request):
            assert request.headers["X-Shopify-Access-Token"] == "shpat_1"
            return httpx.Response(200, json={"shop": {"name": "Shop A", "myshopify_domain": DOMAIN, "domain": "shop-a.com"}})

        site = asyncio.run(shopify(handler).fetch_site_info("shpat_1", domain=DOMAIN))

        assert site.domain == DOMAIN
        assert site.name == "Shop A"


class TestHttpClassification:
    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    def test_transient_statuses(self, status_code):
        handler = lambda request: httpx.Response(status_code, headers={"Retry-After": "2"})

        with pytest.raises(PlatformUnavailable) as exc_info:
            asyncio.run(shopify(handler).fetch_product("t", domain=DOMAIN, external_id="1"))

        assert exc_info.value.status_code == status_code
        assert exc_info.value.retry_after == 2.0

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PlatformUnavailable):
            asyncio.run(shopify(handler).fetch_product("t", domain=DOMAIN, external_id="1"))

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PlatformUnavailable):
            asyncio.run(shopify(handler).list_products("t", domain=DOMAIN))

    def test_401_requires_reauthorization(self):
        handler = lambda request: httpx.Response(401, json={"errors": "[API] Invalid API key or access token"})

        with pytest.raises(ReauthorizationRequired):
            asyncio.run(shopify(handler).fetch_product("t", domain=DOMAIN, external_id="1"))

    def test_other_4xx_is_platform_rejected_with_status(self):
        handler = lambda request: httpx.Response(403, json={"errors": "Forbidden"})

        with pytest.raises(PlatformRejected) as exc_info:
            asyncio.run(shopify(handler).fetch_product("t", domain=DOMAIN, external_id="1"))

        assert exc_info.value.status_code == 403

    def test_graphql_throttle_is_transient(self):
        handler = lambda request: httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

        with pytest.raises(PlatformUnavailable):
            asyncio.run(shopify(handler).list_products("t", domain=DOMAIN))


class TestShopifyProducts:
    def test_create_product_sends_every_combination(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content)["variables"]["input"])
            return httpx.Response(200, json={"data": {"productSet": {"product": product_node(), "userErrors": []}}})

        draft = ProductDraft(
            title="Framed Print",
            option_groups=[{"name": "Size", "values": ["8x10", "5x7"]}, {"name": "Frame", "values": ["Oak", "Black"]}],
        )
        snapshot = asyncio.run(shopify(handler).create_product("t", domain=DOMAIN, draft=draft))

        assert sent["status"] == "DRAFT"
        assert [o["name"] for o in sent["productOptions"]] == ["Size", "Frame"]
        assert len(sent["variants"]) == 4
        assert sent["variants"][0]["optionValues"] == [
            {"optionName": "Size", "name": "8x10"},
            {"optionName": "Frame", "name": "Oak"},
        ]
        assert snapshot.external_id == "555"
        assert snapshot.status == "draft"
        assert [v.external_variant_id for v in snapshot.variants] == ["777", "778"]
        assert snapshot.variants[0].price == Decimal("20.00")

    def test_user_errors_become_validation_rejected(self):
        handler = lambda request: httpx.Response(
            200,
            json={"data": {"productSet": {"product": None, "userErrors": [{"field": ["title"], "message": "Title can't be blank"}]}}},
        )

        with pytest.raises(ValidationRejected) as exc_info:
            asyncio.run(shopify(handler).create_product("t", domain=DOMAIN, draft=ProductDraft(title="x")))

        assert exc_info.value.errors == ["Title can't be blank"]

    def test_list_products_cursor(self):
        def handler(request):
            variables = json.loads(request.content)["variables"]
            assert variables.get("after") == "c1"
            return httpx.Response(
                200,
                json={"data": {"products": {"edges": [{"node": product_node()}], "pageInfo": {"hasNextPage": True, "endCursor": "c2"}}}},
            )

        page = asyncio.run(shopify(handler).list_products("t", domain=DOMAIN, cursor="c1"))

        assert page.next_cursor == "c2"
        assert len(page.products) == 1

    def test_missing_product_is_404(self):
        handler = lambda request: httpx.Response(200, json={"data": {"product": None}})

        with pytest.raises(PlatformRejected) as exc_info:
            asyncio.run(shopify(handler).fetch_product("t", domain=DOMAIN, external_id="9"))

        assert exc_info.value.status_code == 404

    def test_parse_webhook_product_strips_default_option(self):
        snapshot = ShopifyAdapter().parse_product(
            {
                "id": 1,
                "title": "Sticker",
                "options": [{"name": "Title", "position": 1, "values": ["Default Title"]}],
                "variants": [{"id": 11, "title": "Default Title", "option1": "Default Title", "price": "3.00"}],
            }
        )

        assert snapshot.option_groups == []
        assert snapshot.variants[0].external_variant_id == "11"

    def test_parse_order_shipping_lines_fallback(self):
        snapshot = ShopifyAdapter().parse_order(
            {
                "id": 7,
                "total_price": "12.00",
                "line_items": [{"id": 1, "quantity": 1, "price": "10.00"}],
                "shipping_lines": [{"price": "2.00"}],
            }
        )

        assert snapshot.total_shipping == Decimal("2.00")
        assert snapshot.line_items[0].line_total == Decimal("10.00")


class TestSquarespace:
    def test_token_request_uses_basic_auth(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "access_token": "sq-1",
                    "refresh_token": "sq-r1",
                    "access_token_expires_at": 1772000000,
                    "refresh_token_expires_at": 1772600000,
                },
            )

        grant = asyncio.run(squarespace(handler).refresh_token("sq-r0", domain="site-123"))

        assert seen["auth"].startswith("Basic ")
        assert seen["body"] == {"grant_type": "refresh_token", "refresh_token": "sq-r0"}
        assert grant.refresh_token == "sq-r1"
        assert grant.access_token_expires_at is not None
        assert grant.access_token_expires_at.tzinfo is None

    def test_refresh_rejection_requires_reauthorization(self):
        handler = lambda request: httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(ReauthorizationRequired):
            asyncio.run(squarespace(handler).refresh_token("sq-r0", domain="site-123"))

    def test_fetch_site_info_uses_website_id(self):
        handler = lambda request: httpx.Response(200, json={"siteId": "site-123", "title": "Print Studio"})

        site = asyncio.run(squarespace(handler).fetch_site_info("sq-1"))

        assert site.domain == "site-123"
        assert site.name == "Print Studio"

    def test_list_products_pagination(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "products": [
                        {
                            "id": "p1",
                            "name": "Print",
                            "isVisible": True,
                            "variantAttributes": ["Size"],
                            "variants": [
                                {"id": "v1", "attributes": {"Size": "8x10"}, "pricing": {"basePrice": {"value": "20.00"}}},
                                {"id": "v2", "attributes": {"Size": "5x7"}, "pricing": {"basePrice": {"value": "15.00"}}},
                            ],
                        }
                    ],
                    "pagination": {"hasNextPage": True, "nextPageCursor": "next-1"},
                },
            )

        page = asyncio.run(squarespace(handler).list_products("sq-1", domain="site-123"))

        assert page.next_cursor == "next-1"
        product = page.products[0]
        assert product.option_groups == [{"name": "Size", "values": ["8x10", "5x7"]}]
        assert product.status == "active"
        assert product.variants[1].price == Decimal("15.00")

    def test_create_product_validation_errors(self):
        def handler(request):
            if request.url.path == "/1.0/commerce/store_pages":
                return httpx.Response(200, json={"storePages": [{"id": "page-1", "isEnabled": True}]})
            return httpx.Response(400, json={"type": "INVALID_REQUEST_ERROR", "message": "name is too long"})

        with pytest.raises(ValidationRejected) as exc_info:
            asyncio.run(squarespace(handler).create_product("sq-1", domain="site-123", draft=ProductDraft(title="x" * 500)))

        assert exc_info.value.errors == ["name is too long"]

    def test_parse_order_inclusive_tax(self):
        snapshot = SquarespaceAdapter().parse_order(
            {
                "id": "o1",
                "orderNumber": "7",
                "priceTaxInterpretation": "INCLUSIVE",
                "lineItems": [{"id": "l1", "quantity": 2, "unitPricePaid": {"value": "10.00"}, "variantId": "v1"}],
                "grandTotal": {"currency": "EUR", "value": "20.00"},
                "taxTotal": {"currency": "EUR", "value": "3.19"},
            }
        )

        assert snapshot.name == "#7"
        assert snapshot.currency == "EUR"
        assert snapshot.taxes_included is True
        assert snapshot.total_price == Decimal("20.00")
        assert snapshot.line_items[0].external_variant_id == "v1"
