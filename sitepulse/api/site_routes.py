"""SitePulse — Live Site API Routes.

Every call here goes to the platform directly; nothing is read from the
snapshot tables.
"""

from fastapi import APIRouter, Depends, HTTPException

from sitepulse.api.dependencies import get_registry, require_client
from sitepulse.connectors.errors import AuthError, PlatformError
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.core.logging import get_logger

logger = get_logger("api.sites")

router = APIRouter(prefix="/sites", tags=["Sites"])


def _upstream_error(site_id: str, e: PlatformError) -> HTTPException:
    logger.error(f"Live fetch for {site_id} failed: {e}", extra={"site_id": site_id})
    if isinstance(e, AuthError):
        return HTTPException(status_code=502, detail=f"Platform authentication failed: {e}")
    return HTTPException(status_code=502, detail=f"Platform request failed: {e}")


@router.get("")
async def list_sites(registry: PlatformRegistry = Depends(get_registry)):
    """All registered sites, keyed by composite id."""
    return {
        "status": "success",
        "sites": [
            {**client.site_info().model_dump(), "id": key}
            for key, client in registry.get_all_clients().items()
        ],
    }


@router.get("/{site_id}/summary")
async def get_site_summary(
    site_id: str, registry: PlatformRegistry = Depends(get_registry)
):
    client = require_client(registry, site_id)
    try:
        summary = await client.get_site_summary()
    except PlatformError as e:
        raise _upstream_error(site_id, e)
    return {"status": "success", "site": client.site_info(), "summary": summary}


@router.get("/{site_id}/tenants")
async def get_site_tenants(
    site_id: str, registry: PlatformRegistry = Depends(get_registry)
):
    client = require_client(registry, site_id)
    try:
        tenants = await client.get_tenant_allocations()
    except PlatformError as e:
        raise _upstream_error(site_id, e)
    return {"status": "success", "count": len(tenants), "tenants": tenants}


@router.get("/{site_id}/tenants/{tenant_id}")
async def get_site_tenant(
    site_id: str, tenant_id: str, registry: PlatformRegistry = Depends(get_registry)
):
    client = require_client(registry, site_id)
    try:
        tenant = await client.get_tenant_allocation(tenant_id)
    except PlatformError as e:
        raise _upstream_error(site_id, e)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")
    return {"status": "success", "tenant": tenant}


@router.post("/{site_id}/test-connection")
async def test_site_connection(
    site_id: str, registry: PlatformRegistry = Depends(get_registry)
):
    """Try to authenticate against the site. Never fails the request."""
    client = require_client(registry, site_id)
    ok = await client.test_connection()
    return {
        "status": "success",
        "site_id": client.config.site_id,
        "platform_type": client.platform_type(),
        "connected": ok,
    }
