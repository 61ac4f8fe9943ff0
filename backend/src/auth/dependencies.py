"""
Authentication dependencies for FastAPI.

The calendar API is authenticated with a static API key sent in the
`X-API-Key` header and checked against CALENDAR_API_KEYS.
"""

import hmac
import logging
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from core import config

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

# API key security scheme
api_key_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _configured_keys() -> List[str]:
    return config.CALENDAR_API_KEYS


def is_valid_api_key(api_key: Optional[str], keys: Optional[List[str]] = None) -> bool:
    """Constant-time comparison against every configured key."""
    if not api_key:
        return False
    candidates = keys if keys is not None else _configured_keys()
    return any(hmac.compare_digest(api_key.encode("utf-8"), key.encode("utf-8")) for key in candidates)


def require_api_key(api_key: Optional[str] = Depends(api_key_scheme)) -> str:
    """Reject requests without a valid API key."""
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key not provided",
        )
    if not is_valid_api_key(api_key):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return api_key
