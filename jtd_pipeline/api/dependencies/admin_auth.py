"""
Admin API key authentication for the JTD admin endpoints.

Usage:
    @router.post("/retry-event")
    async def retry_event(
        admin_name: str = Depends(get_admin_actor),
    ):
        ...
"""
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import APIKeyHeader

from jtd_pipeline.core.config import settings
from jtd_pipeline.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)

DEFAULT_ADMIN_NAME = "admin"


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 when the key is missing, 403 when it does not match.
    With no ADMIN_API_KEY configured the admin API is locked entirely.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint refused: ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key: X-Admin-API-Key header required",
        )

    if api_key != settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint refused: invalid API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )


async def get_admin_actor(
    _: None = Depends(require_admin_api_key),
    x_admin_name: str | None = Header(default=None, max_length=100),
) -> str:
    """Authenticated admin identity, recorded as performed_by_name"""
    name = (x_admin_name or "").strip()
    return name or DEFAULT_ADMIN_NAME
