"""Credential encryption and staff session tokens.

WHAT:
    Fernet encryption for platform access/refresh tokens and archived webhook
    bodies, plus the JWT check behind the staff `access_token` cookie.

WHY:
    - Credential secrets must never reach the database or logs in plaintext.
    - Staff login lives outside this service; it only has to read the JWT.
    - TOKEN_ENCRYPTION_KEY may list several comma-separated keys (newest
      first) so the encryption key can be rotated without a re-encrypt
      migration: new writes use the first key, reads try every key.

REFERENCES:
    - storelink/services/token_service.py (credential persistence)
    - storelink/services/webhook_service.py (payload archive)
    - storelink/deps.py::get_current_user
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from jose import JWTError, jwt

from storelink.utils.env import require_env

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
JWT_SECRET = require_env("JWT_SECRET")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))


def _load_cipher(raw_keys: str) -> MultiFernet:
    keys: List[Fernet] = []
    for position, key in enumerate(k.strip() for k in raw_keys.split(",")):
        if not key:
            continue
        try:
            keys.append(Fernet(key))
        except (ValueError, TypeError) as exc:
            raise RuntimeError(
                f"TOKEN_ENCRYPTION_KEY entry #{position + 1} is not a URL-safe base64-encoded 32-byte key. "
                "Generate one with Fernet.generate_key()."
            ) from exc
    if not keys:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY does not contain any key.")
    return MultiFernet(keys)


_cipher = _load_cipher(require_env("TOKEN_ENCRYPTION_KEY"))


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a secret with the current (first) key.

    Args:
        plaintext: Raw secret.
        context:   Log label such as "shopify:shop-a.myshopify.com:access".
                   The secret itself is never logged, only its length.

    Returns:
        Ciphertext as text, ready for a String/Text column.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    token = _cipher.encrypt(plaintext.encode("utf-8"))
    logger.debug("[CRYPTO] Encrypted secret for %s (length=%d)", context, len(plaintext))
    return token.decode("utf-8")


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a value written by `encrypt_secret` under any configured key.

    Raises:
        ValueError: empty value, or no configured key can read it.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8"))
    except InvalidToken as exc:
        logger.error("[CRYPTO] Ciphertext for %s is not readable with the configured keys", context)
        raise ValueError("Unable to decrypt stored secret.") from exc
    return plaintext.decode("utf-8")


def rotate_secret(ciphertext: str, *, context: str) -> str:
    """Re-encrypt a stored value under the current key."""
    try:
        rotated = _cipher.rotate(ciphertext.encode("utf-8"))
    except InvalidToken as exc:
        logger.error("[CRYPTO] Cannot rotate ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored secret.") from exc
    logger.info("[CRYPTO] Rotated secret for %s", context)
    return rotated.decode("utf-8")


def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    """Issue a staff session JWT for `subject` (the user's email)."""
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=JWT_EXPIRES_MINUTES if expires_minutes is None else expires_minutes)
    claims: Dict[str, Any] = {
        "sub": subject,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Return the claims of a valid staff JWT; raises jose.JWTError otherwise."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        logger.info("[AUTH] Rejected staff token")
        raise
