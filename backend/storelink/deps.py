"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional

from fastapi import Cookie, Depends, HTTPException, status
from jose import JWTError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import User
from .security import decode_token
from .telemetry import set_user_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    SESSION_SECRET_KEY: str = "change-this-session-secret"

    REDIS_URL: str = "redis://localhost:6379/0"

    # Shopify app credentials (Partners dashboard)
    SHOPIFY_API_KEY: Optional[str] = None
    SHOPIFY_API_SECRET: Optional[str] = None
    SHOPIFY_OAUTH_REDIRECT_URI: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-07"
    SHOPIFY_SCOPES: str = "read_products,write_products,read_orders,read_inventory"

    # Squarespace OAuth client (Developer platform)
    SQUARESPACE_CLIENT_ID: Optional[str] = None
    SQUARESPACE_CLIENT_SECRET: Optional[str] = None
    SQUARESPACE_OAUTH_REDIRECT_URI: Optional[str] = None
    # Hex-encoded secret returned when the webhook subscription is created
    SQUARESPACE_WEBHOOK_SECRET: Optional[str] = None
    SQUARESPACE_SCOPES: str = "website.orders,website.products,website.inventory"
    # Currency for placeholder variant pricing on products created remotely
    SQUARESPACE_CURRENCY: str = "USD"

    OAUTH_STATE_TTL_SECONDS: int = 600
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    PLATFORM_HTTP_TIMEOUT_SECONDS: float = 30.0

    SYNC_MAX_ATTEMPTS: int = 5
    SYNC_BACKOFF_BASE_SECONDS: int = 5
    WEBHOOK_LOG_RETENTION_DAYS: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the current staff user from the `access_token` cookie.

    The cookie value is expected to be in the form: "Bearer <jwt>".
    """
    if not access_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if access_token.startswith("Bearer "):
        token = access_token[len("Bearer ") :]
    else:
        token = access_token

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = (
        db.query(User)
        .filter(User.email == subject)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    set_user_context(str(user.id), email=user.email, organization_id=str(user.organization_id))
    return user
