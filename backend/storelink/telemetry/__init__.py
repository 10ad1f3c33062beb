"""
Telemetry Module
================

Error tracking for storelink. Logging itself is plain `logging` with
"[TAG]" prefixes configured in storelink/main.py.

Usage:
    from storelink.telemetry import init_sentry, capture_exception
"""

from storelink.telemetry.sentry import (
    capture_exception,
    capture_message,
    init_sentry,
    set_user_context,
)

__all__ = [
    "init_sentry",
    "set_user_context",
    "capture_exception",
    "capture_message",
]
