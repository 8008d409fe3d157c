import os
import secrets
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

# auto_error=False so a missing header is reported as 401, not 403
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def get_configured_api_key() -> str:
    return os.getenv("API_KEY", "")


def require_api_key(
    api_key: str = Depends(api_key_header),
    configured_key: str = Depends(get_configured_api_key)
) -> None:
    """
    Guard for every catalog route

    Raises:
        HTTPException: 401 when the header is missing or does not match
    """
    if not api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key is required")

    # No key configured: any presented key is accepted, but say so loudly
    if not configured_key:
        logger.warning("API_KEY is not configured; request accepted without key verification")
        return

    if not secrets.compare_digest(api_key.encode("utf-8"), configured_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
