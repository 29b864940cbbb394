"""
Bank Connection Routes

User-facing endpoints for:
- Connecting banks (OAuth link + callback)
- Syncing transactions
- Sync history and live balances
- Disconnecting banks
"""

import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from banksync.config import get_settings
from banksync.database import SessionLocal, get_db
from banksync.app import schemas
from banksync.app.auth import get_current_tenant
from banksync.app.errors import (
    BankSyncError, InvalidStateError, NoLinkedAccountsError, NotFoundError,
    ProviderRejectedError, ProviderUnavailableError, TokenExpiredError
)
from banksync.app.bank_integration.providers import BaseBankProvider, TrueLayerProvider
from banksync.app.bank_integration.service import BankIntegrationService
from banksync.app.bank_integration.sync import TransactionSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/banking", tags=["banking"])

DEFAULT_RETURN_PATH = "/dashboard/banking"


def get_bank_provider() -> BaseBankProvider:
    return TrueLayerProvider.from_settings(get_settings())


def get_session_factory():
    return SessionLocal


def get_integration_service(
    db: Session = Depends(get_db),
    provider: BaseBankProvider = Depends(get_bank_provider)
) -> BankIntegrationService:
    return BankIntegrationService(db, provider)


def get_sync_service(
    provider: BaseBankProvider = Depends(get_bank_provider),
    session_factory=Depends(get_session_factory)
) -> TransactionSyncService:
    return TransactionSyncService(session_factory, provider)


def _http_error(e: BankSyncError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (InvalidStateError, TokenExpiredError, NoLinkedAccountsError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ProviderUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, ProviderRejectedError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def build_redirect(return_to: Optional[str], **params) -> RedirectResponse:
    """
    Redirect back to the frontend.

    Only app-relative return paths are honoured, anything else falls back to
    the banking dashboard.
    """
    path = return_to if return_to and return_to.startswith("/") and not return_to.startswith("//") else DEFAULT_RETURN_PATH
    separator = "&" if "?" in path else "?"
    url = f"{get_settings().frontend_url.rstrip('/')}{path}{separator}{urlencode(params)}"
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


async def run_initial_sync(sync_service: TransactionSyncService, connection_id: int, tenant_id: str):
    try:
        result = await sync_service.sync_connection(connection_id, tenant_id)
        logger.info(f"Initial sync of connection {connection_id}: {result.status}, {result.imported} imported")
    except BankSyncError as e:
        logger.warning(f"Initial sync of connection {connection_id} not run: {e}")


@router.get("/link", response_model=schemas.LinkResponse)
def start_link(
    return_to: Optional[str] = Query(None, alias="returnTo"),
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: BankIntegrationService = Depends(get_integration_service)
):
    """
    Initiate OAuth flow for connecting a bank.

    Returns the authorization URL the user should be redirected to.

    Example:
        GET /api/banking/link?returnTo=/accounts

        Response:
        {
            "authorization_url": "https://auth.truelayer.com/?response_type=code&...",
            "state": "abc123..."
        }
    """
    return service.start_link(tenant, return_to)


@router.get("/callback")
async def oauth_callback(
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    service: BankIntegrationService = Depends(get_integration_service),
    sync_service: TransactionSyncService = Depends(get_sync_service)
):
    """
    OAuth callback endpoint.

    The provider redirects the user here after authorization. Always answers
    with a redirect to the frontend carrying status=connected or status=error.
    """
    if error:
        return build_redirect(None, status="error", message=error_description or error)

    if not code or not state:
        return build_redirect(None, status="error", message="Missing authorization code or state.")

    try:
        link_state = service.consume_state(state)
    except InvalidStateError as e:
        return build_redirect(None, status="error", message=str(e))

    return_to = link_state['return_to']
    try:
        connection = await service.complete_link(link_state, code)
    except BankSyncError as e:
        logger.warning(f"Bank link failed for tenant {link_state['tenant_id']}: {e}")
        return build_redirect(return_to, status="error", message=str(e))
    except Exception as e:
        logger.exception(f"Bank link failed for tenant {link_state['tenant_id']}: {e}")
        return build_redirect(
            return_to, status="error",
            message="Failed to complete bank connection. Please try again."
        )

    background_tasks.add_task(run_initial_sync, sync_service, connection.id, connection.tenant_id)

    return build_redirect(return_to, status="connected", connection=str(connection.id))


@router.get("/connections", response_model=List[schemas.BankConnection])
def list_connections(
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: BankIntegrationService = Depends(get_integration_service)
):
    """
    List the tenant's bank connections with linked accounts and latest sync.

    Returns all connections (active and disconnected).
    """
    return service.list_connections(tenant.tenant_id)


@router.post("/connections/sync-all", response_model=List[schemas.SyncResult])
async def sync_all_connections(
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    sync_service: TransactionSyncService = Depends(get_sync_service)
):
    """Sync every active connection; one failing connection does not stop the rest."""
    return await sync_service.sync_all_connections_for_tenant(tenant.tenant_id)


@router.post("/connections/{connection_id}/sync", response_model=schemas.SyncResult)
async def sync_connection(
    connection_id: int,
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    sync_service: TransactionSyncService = Depends(get_sync_service)
):
    """
    Manually trigger a sync.

    Example:
        POST /api/banking/connections/1/sync

        Response:
        {
            "sync_id": 42,
            "status": "success",
            "fetched": 25,
            "imported": 20,
            "skipped": 5,
            "failed": 0,
            "error": null
        }
    """
    try:
        return await sync_service.sync_connection(connection_id, tenant.tenant_id)
    except BankSyncError as e:
        raise _http_error(e)


@router.get("/connections/{connection_id}/history", response_model=List[schemas.SyncRun])
def get_sync_history(
    connection_id: int,
    limit: int = Query(20, ge=1, le=100),
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: BankIntegrationService = Depends(get_integration_service)
):
    """Most recent sync runs first."""
    try:
        return service.get_sync_history(tenant.tenant_id, connection_id, limit)
    except BankSyncError as e:
        raise _http_error(e)


@router.get("/connections/{connection_id}/balances", response_model=List[schemas.AccountBalance])
async def get_balances(
    connection_id: int,
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: BankIntegrationService = Depends(get_integration_service)
):
    try:
        return await service.get_balances(tenant.tenant_id, connection_id)
    except BankSyncError as e:
        raise _http_error(e)


@router.delete("/connections/{connection_id}")
async def disconnect_bank(
    connection_id: int,
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: BankIntegrationService = Depends(get_integration_service)
):
    """
    Disconnect bank.

    Revokes the grant and marks the connection disconnected. Transactions
    already imported are kept.
    """
    try:
        connection = await service.disconnect(tenant.tenant_id, connection_id)
    except BankSyncError as e:
        raise _http_error(e)

    return {
        "success": True,
        "connection_id": connection.id,
        "message": "Bank disconnected successfully"
    }
