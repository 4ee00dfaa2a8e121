"""API dependencies."""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException

from pairgate.config import Environment, settings
from pairgate.engine import PairGateEngine
from pairgate.store import DocumentStore, create_store

logger = logging.getLogger("pairgate.api")

_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    """Process-wide document store, built from settings on first use."""
    global _store
    if _store is None:
        _store = create_store(settings)
    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
    _store = None


def get_engine(store: DocumentStore = Depends(get_store)) -> PairGateEngine:
    return PairGateEngine(store, settings)


async def get_caller_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> Optional[str]:
    """
    Verified account id of the caller.

    Identity is established upstream; a missing header is passed through
    and reported as unauthenticated by the engine.
    """
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


async def verify_api_key(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> str:
    """
    Verify the shared API token.

    Returns the auth type on success. Fails closed: without a configured
    token, requests are rejected unless insecure dev mode is explicitly on.
    """
    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return "insecure_dev"

    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:]
    elif x_api_key:
        api_key = x_api_key

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Use Authorization: Bearer <key> or X-API-Key header",
        )

    if settings.api_key:
        if secrets.compare_digest(api_key, settings.api_key):
            return "api_key"
        raise HTTPException(status_code=401, detail="Invalid API key")

    logger.error("SECURITY VIOLATION: No API key configured. Set PAIRGATE_API_KEY.")
    raise HTTPException(
        status_code=503,
        detail="Server misconfigured: authentication not properly initialized",
    )


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set PAIRGATE_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - API key verification is DISABLED\n"
            "  - This mode is ONLY for local development\n"
            "  - Set PAIRGATE_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    else:
        logger.info(f"Authentication enabled: shared API key for {settings.env.value}")
