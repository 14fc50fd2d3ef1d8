"""SitePulse — Polling API Routes.

Snapshot-backed views: what the last poll cycle stored, plus control of
the poller itself.
"""

import json

from fastapi import APIRouter, Depends

from sitepulse.api.dependencies import get_poller, get_store
from sitepulse.core.logging import get_logger
from sitepulse.scheduler.jobs import SnapshotPoller
from sitepulse.storage.snapshot_store import SnapshotStore

logger = get_logger("api.polling")

router = APIRouter(prefix="/polling", tags=["Polling"])


def _plain_site_id(site_id: str) -> str:
    """Snapshot rows store the bare site id; accept `platform:site` too."""
    return site_id.split(":", 1)[1] if ":" in site_id else site_id


@router.get("/status")
async def polling_status(poller: SnapshotPoller = Depends(get_poller)):
    return {
        "status": "success",
        "last_poll_time": poller.last_poll_time,
        "next_poll_time": poller.next_poll_time,
        "interval_hours": poller.interval_seconds / 3600,
        "is_polling": poller.is_running,
        "is_scheduled": poller.is_scheduled,
    }


@router.post("/trigger")
async def trigger_poll(poller: SnapshotPoller = Depends(get_poller)):
    """Start a poll cycle in the background."""
    started = poller.trigger_now()
    return {
        "status": "started" if started else "already_running",
        "message": "Poll cycle started" if started else "A poll cycle is already running",
    }


@router.get("/site/{site_id}/summary")
async def cached_site_summary(site_id: str, store: SnapshotStore = Depends(get_store)):
    """Site summary as stored by the latest poll cycle."""
    snapshot = store.get_latest_site_snapshot(_plain_site_id(site_id))
    if snapshot is None:
        return {"status": "pending", "polled_at": None, "summary": None}
    return {
        "status": "success",
        "polled_at": snapshot.polled_at,
        "summary": json.loads(snapshot.raw_payload or "{}"),
    }


@router.get("/site/{site_id}/tenants")
async def cached_site_tenants(site_id: str, store: SnapshotStore = Depends(get_store)):
    """Tenant rows of the latest poll cycle for the site."""
    rows = store.get_latest_tenant_snapshots(_plain_site_id(site_id))
    if not rows:
        return {"status": "pending", "polled_at": None, "tenants": []}
    return {
        "status": "success",
        "polled_at": rows[0].polled_at,
        "count": len(rows),
        "tenants": [json.loads(r.raw_payload or "{}") for r in rows],
    }
