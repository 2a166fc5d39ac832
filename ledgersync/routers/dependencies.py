"""
FastAPI dependencies for request identity and the engine instance.

Identity arrives in headers set by the upstream auth layer.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ledgersync.engine import SyncEngine
from ledgersync.utils.logging import get_logger

logger = get_logger(__name__)


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


async def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    """
    Resolve the caller's tenant.

    Raises:
        HTTPException: 401 if the tenant header is missing
    """
    if not x_tenant_id:
        logger.warning("auth_failed", reason="missing_tenant")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing tenant identity",
        )
    return x_tenant_id


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_user_id
