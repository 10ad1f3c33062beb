"""Platform adapters, selected by the store's platform.

Usage:
    adapter = get_adapter(store.platform)
    snapshot = await adapter.fetch_product(token, domain=store.domain, external_id="123")
"""

from typing import Callable, Dict, Optional

from storelink.adapters.base import PlatformAdapter
from storelink.adapters.shopify import ShopifyAdapter
from storelink.adapters.squarespace import SquarespaceAdapter
from storelink.deps import Settings
from storelink.models import PlatformEnum


ADAPTERS: Dict[PlatformEnum, Callable[..., PlatformAdapter]] = {
    PlatformEnum.shopify: ShopifyAdapter,
    PlatformEnum.squarespace: SquarespaceAdapter,
}

AdapterProvider = Callable[[PlatformEnum], PlatformAdapter]


def get_adapter(platform: PlatformEnum, settings: Optional[Settings] = None) -> PlatformAdapter:
    """Return the adapter for `platform` (raises KeyError for unsupported platforms)."""
    return ADAPTERS[PlatformEnum(platform)](settings=settings)


def get_adapter_provider() -> AdapterProvider:
    """FastAPI dependency; tests override it to hand out fake adapters."""
    return get_adapter


__all__ = ["ADAPTERS", "AdapterProvider", "PlatformAdapter", "get_adapter", "get_adapter_provider"]
