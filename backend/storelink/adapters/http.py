"""Shared outbound HTTP handling for platform adapters.

WHAT:
    `send()` performs one request with the adapter's bounded timeout and maps
    transport failures and HTTP status codes onto the domain exceptions.

WHY:
    Every adapter needs the same classification (transient vs. rejected vs.
    reauthorize); keeping it here means retry decisions are made uniformly.
"""

import logging
from typing import Any, List, Optional

import httpx

from storelink.exceptions import (
    PlatformRejected,
    PlatformUnavailable,
    ReauthorizationRequired,
    ValidationRejected,
)

logger = logging.getLogger(__name__)

# What a 4xx (other than 401/429) means for the call being made
REJECTED = "rejected"        # OAuth code exchange
API = "api"                  # authenticated reads
VALIDATION = "validation"    # create/update payloads
REAUTHORIZE = "reauthorize"  # token refresh


def error_messages(response: httpx.Response) -> List[str]:
    """Extract human-readable messages from a platform error body."""
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return [text[:500]] if text else [f"HTTP {response.status_code}"]

    messages: List[str] = []
    if isinstance(data, dict):
        # OAuth style: {"error": "invalid_grant", "error_description": "..."}
        if data.get("error_description"):
            messages.append(str(data["error_description"]))
        elif isinstance(data.get("error"), str):
            messages.append(data["error"])
        # Squarespace style: {"type": "...", "message": "..."}
        if data.get("message"):
            messages.append(str(data["message"]))
        errors = data.get("errors")
        if isinstance(errors, str):
            messages.append(errors)
        elif isinstance(errors, list):
            messages.extend(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
        elif isinstance(errors, dict):
            for field_name, field_errors in errors.items():
                if isinstance(field_errors, list):
                    messages.extend(f"{field_name} {msg}" for msg in field_errors)
                else:
                    messages.append(f"{field_name} {field_errors}")
    return messages or [f"HTTP {response.status_code}"]


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    platform: str,
    on_client_error: str = API,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request and raise a domain exception for any non-2xx outcome.

    Raises:
        PlatformUnavailable: timeout, connection error, 429 or 5xx
        ReauthorizationRequired: 401, or any 4xx when on_client_error=REAUTHORIZE
        ValidationRejected / PlatformRejected: other 4xx
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        logger.warning("[ADAPTER] %s %s timed out (%s)", platform, method, exc.__class__.__name__)
        raise PlatformUnavailable(f"{platform} did not respond in time", platform=platform) from exc
    except httpx.RequestError as exc:
        logger.warning("[ADAPTER] %s %s failed: %s", platform, method, exc.__class__.__name__)
        raise PlatformUnavailable(f"Could not reach {platform}", platform=platform) from exc

    status_code = response.status_code
    if status_code < 400:
        return response

    if status_code == 429 or status_code >= 500:
        logger.warning("[ADAPTER] %s returned %d for %s", platform, status_code, method)
        raise PlatformUnavailable(
            f"{platform} is temporarily unavailable (HTTP {status_code})",
            platform=platform,
            status_code=status_code,
            retry_after=_retry_after(response),
        )

    messages = error_messages(response)
    logger.info("[ADAPTER] %s rejected %s with %d: %s", platform, method, status_code, messages)

    if on_client_error == REAUTHORIZE or (status_code == 401 and on_client_error != REJECTED):
        raise ReauthorizationRequired(
            f"{platform} rejected the stored credentials ({'; '.join(messages)}).", platform=platform
        )
    if on_client_error == VALIDATION:
        raise ValidationRejected(messages, platform=platform)
    raise PlatformRejected("; ".join(messages), platform=platform, status_code=status_code, errors=messages)
