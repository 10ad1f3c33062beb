"""Pytest configuration for storelink tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Consistent environment, database isolation and a fake platform adapter
REFERENCES:
    - storelink/main.py: FastAPI application
    - storelink/database.py: Database configuration
    - storelink/adapters/base.py: PlatformAdapter protocol the fake follows
"""

import asyncio
import copy
import itertools
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment before any storelink import
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (storelink.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("SHOPIFY_API_KEY", "test-shopify-key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test-shopify-secret")
os.environ.setdefault("SHOPIFY_OAUTH_REDIRECT_URI", "http://testserver/callback/shopify")
os.environ.setdefault("SQUARESPACE_CLIENT_ID", "test-sqsp-client")
os.environ.setdefault("SQUARESPACE_CLIENT_SECRET", "test-sqsp-secret")
os.environ.setdefault("SQUARESPACE_OAUTH_REDIRECT_URI", "http://testserver/callback/squarespace")
os.environ.setdefault("SQUARESPACE_WEBHOOK_SECRET", "00112233445566778899aabbccddeeff")

from storelink.adapters.base import (  # noqa: E402
    OrderSnapshot,
    ProductDraft,
    ProductPage,
    ProductSnapshot,
    SiteInfo,
    TokenGrant,
    VariantSnapshot,
)
from storelink.adapters.shopify import callback_signature  # noqa: E402
from storelink.exceptions import PayloadInvalid, PlatformRejected  # noqa: E402
from storelink.models import Base, Organization, PlatformEnum, Store, User  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every connection of the test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT (begin_nested) to behave
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def sync_session_factory(test_db_session):
    """Stand-in for storelink.database.get_sync_session bound to the test session."""

    @contextmanager
    def _factory():
        yield test_db_session

    return _factory


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def organization(test_db_session):
    org = Organization(name="Print Studio")
    test_db_session.add(org)
    test_db_session.commit()
    return org


@pytest.fixture
def staff_user(test_db_session, organization):
    user = User(email="staff@printstudio.test", name="Staff", organization_id=organization.id)
    test_db_session.add(user)
    test_db_session.commit()
    return user


@pytest.fixture
def make_store(test_db_session, organization):
    """Factory for connected stores with a stored credential."""
    from storelink.services.store_lifecycle import derive_uid
    from storelink.services.token_service import store_credential

    def _make(
        platform: PlatformEnum = PlatformEnum.shopify,
        domain: str = "shop-a.myshopify.com",
        *,
        access_token: str = "access-0",
        refresh_token: Optional[str] = None,
        expires_in: Optional[timedelta] = None,
        refresh_expires_in: Optional[timedelta] = None,
        active: bool = True,
    ) -> Store:
        store = Store(
            uid=derive_uid(test_db_session, domain),
            platform=platform,
            domain=domain,
            name=domain.split(".")[0].title(),
            active=active,
            organization_id=organization.id,
        )
        test_db_session.add(store)
        test_db_session.flush()
        now = datetime.utcnow()
        store_credential(
            test_db_session,
            store,
            TokenGrant(
                access_token=access_token,
                refresh_token=refresh_token,
                access_token_expires_at=now + expires_in if expires_in is not None else None,
                refresh_token_expires_at=now + refresh_expires_in if refresh_expires_in is not None else None,
            ),
        )
        test_db_session.commit()
        return store

    return _make


@pytest.fixture
def shopify_store(make_store):
    return make_store()


# ============================================================================
# Fake platform adapter
# ============================================================================

class FakeAdapter:
    """In-memory platform following the PlatformAdapter protocol.

    Products created through it get sequential ids and one variant per
    option combination, like both real platforms do.
    """

    def __init__(self, platform: PlatformEnum = PlatformEnum.shopify):
        self.platform = platform
        self.site = SiteInfo(domain="shop-a.myshopify.com", name="Shop A")
        self.grant = TokenGrant(access_token="access-1", refresh_token="refresh-1", scope="read_products")
        self.products: Dict[str, ProductSnapshot] = {}
        self.orders: Dict[str, OrderSnapshot] = {}
        self.pages: List[List[ProductSnapshot]] = []
        self.page_errors: Dict[int, BaseException] = {}
        self.created_drafts: List[ProductDraft] = []
        self.exchanged_codes: List[str] = []
        self.tokens_seen: List[str] = []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.exchange_error: Optional[Exception] = None
        self._next_id = itertools.count(1001)

    def authorize_url(self, *, state, redirect_uri, domain=None):
        return f"https://platform.test/authorize?state={state}&domain={domain or ''}"

    def verify_callback(self, params):
        if self.platform != PlatformEnum.shopify:
            return True
        provided = params.get("hmac")
        return bool(provided) and provided == callback_signature(os.environ["SHOPIFY_API_SECRET"], params)

    async def exchange_code(self, code, *, redirect_uri, domain=None):
        if self.exchange_error:
            raise self.exchange_error
        self.exchanged_codes.append(code)
        return self.grant

    async def refresh_token(self, refresh_token, *, domain):
        self.refresh_calls += 1
        call = self.refresh_calls
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return TokenGrant(
            access_token=f"access-refreshed-{call}",
            refresh_token=f"refresh-{call + 1}",
            access_token_expires_at=datetime.utcnow() + timedelta(hours=1),
        )

    async def fetch_site_info(self, access_token, *, domain=None):
        return self.site

    async def create_product(self, access_token, *, domain, draft):
        self.tokens_seen.append(access_token)
        if self.create_error:
            raise self.create_error
        self.created_drafts.append(draft)
        external_id = str(next(self._next_id))
        names = [group["name"] for group in draft.option_groups]
        combinations = list(itertools.product(*(group["values"] for group in draft.option_groups)))
        variants = [
            VariantSnapshot(
                external_variant_id=f"{external_id}-{index + 1}",
                title=" / ".join(combination) or "Default Title",
                position=index + 1,
                selected_options=dict(zip(names, combination)),
            )
            for index, combination in enumerate(combinations)
        ]
        snapshot = ProductSnapshot(
            external_id=external_id,
            title=draft.title,
            description_html=draft.description_html,
            status="draft",
            option_groups=copy.deepcopy(draft.option_groups),
            variants=variants,
        )
        self.products[external_id] = snapshot
        return snapshot

    async def fetch_product(self, access_token, *, domain, external_id):
        self.tokens_seen.append(access_token)
        try:
            return copy.deepcopy(self.products[external_id])
        except KeyError:
            raise PlatformRejected(f"Product {external_id} not found", platform=self.platform.value, status_code=404)

    async def list_products(self, access_token, *, domain, cursor=None):
        self.tokens_seen.append(access_token)
        index = int(cursor) if cursor else 0
        if index in self.page_errors:
            raise self.page_errors.pop(index)
        has_next = index + 1 < len(self.pages)
        return ProductPage(products=self.pages[index] if self.pages else [], next_cursor=str(index + 1) if has_next else None)

    async def fetch_order(self, access_token, *, domain, external_id):
        self.tokens_seen.append(access_token)
        return copy.deepcopy(self.orders[external_id])

    async def order_from_webhook(self, payload, *, domain, token_provider):
        order_id = payload.get("orderId")
        if not order_id:
            raise PayloadInvalid("missing orderId")
        return await self.fetch_order(await token_provider(), domain=domain, external_id=str(order_id))

    def parse_product(self, payload):
        return ProductSnapshot(external_id=str(payload["id"]), title=payload.get("title") or "")

    def parse_order(self, payload):
        raise NotImplementedError


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """FastAPI test application bound to the test session."""
    from storelink.database import get_db
    from storelink.main import create_app

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def logged_in(app, staff_user):
    """Authenticate every request as `staff_user`."""
    from storelink.deps import get_current_user

    app.dependency_overrides[get_current_user] = lambda: staff_user
    return staff_user


@pytest.fixture
def use_adapter(app):
    """Route every platform to the given adapter for HTTP tests."""
    from storelink.adapters import get_adapter_provider

    def _use(adapter):
        app.dependency_overrides[get_adapter_provider] = lambda: (lambda platform: adapter)
        return adapter

    return _use
