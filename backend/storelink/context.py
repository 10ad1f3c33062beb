"""Per-unit-of-work tenant context.

WHAT:
    Immutable description of the store a webhook delivery or sync job is
    operating on, created once per unit of work and passed explicitly to
    every handler and service call.

WHY:
    Concurrent deliveries run interleaved on one event loop; a module-level
    "current store" would leak between them. A value that is passed along
    (and dropped when the call returns) cannot.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from .models import PlatformEnum, Store


@dataclass(frozen=True)
class TenantContext:
    store_id: UUID
    uid: str
    platform: PlatformEnum
    domain: str
    topic: Optional[str] = None
    delivery_id: Optional[str] = None
    trigger: str = "webhook"

    @classmethod
    def for_store(cls, store: Store, **kwargs) -> "TenantContext":
        return cls(
            store_id=store.id,
            uid=store.uid,
            platform=store.platform,
            domain=store.domain,
            **kwargs,
        )

    @property
    def log_label(self) -> str:
        parts = [self.platform.value, self.domain]
        if self.topic:
            parts.append(self.topic)
        if self.delivery_id:
            parts.append(f"delivery={self.delivery_id}")
        return " ".join(parts)
