"""
Connection & Sync Exceptions
============================

Domain exception types raised by adapters and services.

WHY THIS FILE EXISTS
--------------------
Platform calls, OAuth callbacks and webhook deliveries fail in distinct ways
and each failure class maps to a different outcome:
- OAuth/admin errors surface to the acting user with a readable message
- Transient errors are retried with backoff (HTTP 5xx to webhook senders,
  arq Retry for background syncs)
- Reauthorization errors flag the store and stop retrying

RELATED FILES
-------------
- storelink/adapters/http.py: Maps HTTP responses to these exceptions
- storelink/routers/stores.py: Translates them to HTTP status codes
- storelink/services/webhook_service.py: Decides retry-ability from them
"""

from typing import List, Optional


class StorelinkError(Exception):
    """
    Base exception for all connection and sync errors.

    USAGE:
        try:
            await create_product(...)
        except StorelinkError as e:
            raise HTTPException(status_code=..., detail=e.to_user_message())
    """

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.platform = platform
        self.message = message

    def to_user_message(self) -> str:
        return self.message


class InvalidState(StorelinkError):
    """OAuth state missing, mismatched, expired or already consumed (CSRF/replay)."""

    def __init__(self, message: str = "Authorization session is invalid or has expired. Please try connecting again."):
        super().__init__(message)


class PlatformRejected(StorelinkError):
    """
    The platform reported an OAuth or API error.

    The platform's own message is kept verbatim so it can be shown to the
    person who started the flow.
    """

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
        errors: Optional[List[str]] = None,
    ):
        super().__init__(message, platform)
        self.status_code = status_code
        self.errors = errors or []


class ReauthorizationRequired(StorelinkError):
    """Refresh token missing, expired or revoked. The merchant must reconnect."""

    def to_user_message(self) -> str:
        return f"{self.message} Please reconnect the store."


class ValidationRejected(StorelinkError):
    """
    The platform rejected a create/update payload.

    Never retried. `errors` carries the platform's messages verbatim.
    """

    def __init__(self, errors: List[str], platform: Optional[str] = None):
        message = "; ".join(errors) if errors else "Platform rejected the request"
        super().__init__(message, platform)
        self.errors = list(errors)


class PlatformUnavailable(StorelinkError):
    """
    Transient failure: timeout, connection error, 5xx or rate limiting.

    Eligible for caller-driven retry with backoff.
    """

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, platform)
        self.status_code = status_code
        self.retry_after = retry_after


class SignatureInvalid(StorelinkError):
    """Webhook or OAuth callback signature missing or not matching what was signed."""


class TenantUnresolved(StorelinkError):
    """
    Webhook could not be attributed to a store.

    `missing_domain` distinguishes an absent domain header (bad request) from
    an unknown domain (not found).
    """

    def __init__(self, message: str, missing_domain: bool = False):
        super().__init__(message)
        self.missing_domain = missing_domain


class PayloadInvalid(StorelinkError):
    """Webhook body is malformed. Acknowledged so the platform stops redelivering."""


class StoreInactive(StorelinkError):
    """Store is deactivated; admin-triggered product creation is refused."""


class StoreDisconnected(StorelinkError):
    """Store is disconnected; sync and webhook dispatch are refused."""
