from typing import Optional
from fastapi import Header, HTTPException, status

from .schemas import TenantContext


async def get_current_tenant(
    tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(None, alias="X-User-ID")
) -> TenantContext:
    """
    Resolve the calling tenant.

    Authentication happens upstream; the gateway forwards the resolved
    identity in the X-Tenant-ID and X-User-ID headers.
    """
    if not tenant_id or not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing tenant identity"
        )
    return TenantContext(tenant_id=tenant_id, user_id=user_id)
