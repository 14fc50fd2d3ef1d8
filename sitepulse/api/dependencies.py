"""SitePulse — Shared Route Dependencies."""

from fastapi import HTTPException, Request

from sitepulse.connectors.base import PlatformClient
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.scheduler.jobs import SnapshotPoller
from sitepulse.storage.snapshot_store import SnapshotStore


def get_registry(request: Request) -> PlatformRegistry:
    return request.app.state.registry


def get_poller(request: Request) -> SnapshotPoller:
    return request.app.state.poller


def get_store(request: Request) -> SnapshotStore:
    return request.app.state.store


def require_client(registry: PlatformRegistry, site_id: str) -> PlatformClient:
    """Resolve a site id (bare or `platform:site`) or answer 404."""
    client = registry.get_client(site_id) or registry.get_client_by_site_id(site_id)
    if client is None:
        raise HTTPException(status_code=404, detail=f"Site not found: {site_id}")
    return client
