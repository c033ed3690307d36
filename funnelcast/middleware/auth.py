"""
API key authentication.

Two keys, both from settings:
  - publishable key — ships in the browser pixel snippet; may only write
    browser events
  - secret key      — server-to-server (payment webhook, bot, sweep) and
    every read endpoint

Keys are compared as SHA-256 digests with a constant-time check.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from funnelcast.config import get_settings

import structlog

logger = structlog.get_logger()


class KeyType(str, Enum):
    PUBLISHABLE = "publishable"
    SECRET = "secret"


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class AuthContext:
    """Resolved authentication context for the current request."""
    key_type: KeyType


def _hash_key(raw_key: str) -> bytes:
    return hashlib.sha256(raw_key.encode()).digest()


def _matches(raw_key: str, configured: str) -> bool:
    return bool(configured) and hmac.compare_digest(_hash_key(raw_key), _hash_key(configured))


def _resolve_key(raw_key: str | None) -> AuthContext:
    if not raw_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Include X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    settings = get_settings()
    if _matches(raw_key, settings.secret_key):
        return AuthContext(key_type=KeyType.SECRET)
    if _matches(raw_key, settings.publishable_key):
        return AuthContext(key_type=KeyType.PUBLISHABLE)

    logger.warning("auth_invalid_key", key_prefix=raw_key[:6])
    raise HTTPException(
        status_code=401,
        detail="Invalid API key.",
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def require_auth(
    request: Request,
    api_key: str | None = Security(api_key_header),
) -> AuthContext:
    """Require any valid API key (publishable or secret)."""
    # Pixel snippets may pass the key as ?key=
    if not api_key:
        api_key = request.query_params.get("key")
    return _resolve_key(api_key)


async def require_secret_key(
    api_key: str | None = Security(api_key_header),
) -> AuthContext:
    """Require the secret key. Query-string keys are not accepted here."""
    auth = _resolve_key(api_key)
    if auth.key_type is not KeyType.SECRET:
        raise HTTPException(
            status_code=403,
            detail="This endpoint requires the secret key. Publishable keys can only send browser events.",
        )
    return auth
