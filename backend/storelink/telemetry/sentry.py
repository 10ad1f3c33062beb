"""
Sentry Error Tracking
=====================

Error tracking for the API process and the arq worker.

Related files:
- storelink/main.py: Initializes Sentry on app startup
- storelink/workers/arq_worker.py: Initializes Sentry on worker startup
- storelink/services/webhook_service.py: Captures unexpected handler failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False

# Never forwarded to Sentry, even as extras
_SECRET_KEYS = {"access_token", "refresh_token", "code", "client_secret", "signature"}


def _scrub(extra: Optional[dict]) -> dict:
    return {key: value for key, value in (extra or {}).items() if key not in _SECRET_KEYS}


def init_sentry() -> bool:
    """
    Initialize Sentry once per process.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized
    if _initialized:
        return True

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")
    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.1,
            # Webhook bodies and OAuth query strings carry shop data and codes
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def set_user_context(user_id: str, email: Optional[str] = None, organization_id: Optional[str] = None) -> None:
    """Attach the authenticated user to subsequent events of this request."""
    sentry_sdk.set_user({"id": user_id, "email": email, "organization_id": organization_id})


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception with tenant context attached.

    Example:
        capture_exception(exc, extra={"platform": "shopify", "domain": "shop-a.myshopify.com"})
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    with sentry_sdk.push_scope() as scope:
        for key, value in _scrub(extra).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event, e.g. a store flagged for reauthentication."""
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), f"Message (Sentry disabled): {message}")
        return

    with sentry_sdk.push_scope() as scope:
        for key, value in _scrub(extra).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
