"""Environment helpers shared by import-time configuration."""

import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.

    WHY: Fail fast at startup when a secret the process cannot run without is missing.
    """
    value = os.getenv(name)
    if not value:
        # One attempt at a local .env before giving up
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> None:
    """Load variables from a local .env file without overwriting exported ones."""
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
