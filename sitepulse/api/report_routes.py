"""SitePulse — Report API Routes."""

from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from sitepulse.analyzer.backup_engine import compute_backup_by_org
from sitepulse.analyzer.high_water_mark import (
    build_high_water_mark_report,
    get_high_water_marks_for_month,
    month_bounds,
)
from sitepulse.analyzer.overage_engine import (
    commit_lookup_from_mapping,
    compute_overage_points,
    load_commit_levels,
    summarize_overages,
)
from sitepulse.api.dependencies import get_registry
from sitepulse.config import settings
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.core.logging import get_logger
from sitepulse.database import get_session
from sitepulse.models.config_models import PlatformSite
from sitepulse.models.snapshot_models import utc_now
from sitepulse.storage.snapshot_store import (
    get_available_months,
    get_tenant_snapshots_between,
)

logger = get_logger("api.report")

router = APIRouter(prefix="/report", tags=["Reports"])


def _site_names(registry: PlatformRegistry, session: Session):
    """site_id → (name, location) from the registry, then the sites table."""
    names = {s.id: (s.name, s.location) for s in registry.get_all_sites()}
    for site in session.exec(select(PlatformSite)).all():
        names.setdefault(site.site_id, (site.name, site.location))
    return names


@router.get("/high-water-mark")
async def high_water_mark(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    session: Session = Depends(get_session),
    registry: PlatformRegistry = Depends(get_registry),
):
    """Peak usage per tenant for one month (default: the current month)."""
    now = utc_now()
    year = year or now.year
    month = month or now.month

    marks = get_high_water_marks_for_month(session, year, month)
    commits = load_commit_levels(session, settings.report_vcpu_mhz)
    report = build_high_water_mark_report(
        marks,
        year,
        month,
        settings.report_vcpu_mhz,
        commit_lookup=commit_lookup_from_mapping(commits),
        site_names=_site_names(registry, session),
    )
    return {"status": "success", "report": report}


@router.get("/available-months")
async def available_months(session: Session = Depends(get_session)):
    """Months that have tenant snapshot data, newest first."""
    return {
        "status": "success",
        "months": [{"year": y, "month": m} for y, m in get_available_months(session)],
    }


@router.get("/overages")
async def overages(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    site_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    session: Session = Depends(get_session),
):
    """Snapshots above commit, per tenant. Dates are inclusive; default is
    the current month."""
    now = utc_now()
    month_start, month_end = month_bounds(now.year, now.month)
    start = datetime.combine(start_date, datetime.min.time()) if start_date else month_start
    end = (
        datetime.combine(end_date + timedelta(days=1), datetime.min.time())
        if end_date
        else month_end
    )
    if start >= end:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    rows = get_tenant_snapshots_between(session, start, end, site_id, tenant_id)
    lookup = commit_lookup_from_mapping(load_commit_levels(session, settings.report_vcpu_mhz))
    names = {(r.site_id, r.tenant_id): r.tenant_name for r in rows}
    summaries = summarize_overages(compute_overage_points(rows, lookup), lookup, names)
    return {
        "status": "success",
        "start": start,
        "end": end,
        "snapshot_count": len(rows),
        "tenants": summaries,
    }


@router.get("/backup-by-org")
async def backup_by_org(registry: PlatformRegistry = Depends(get_registry)):
    """Veeam protection matched against Cloud Director VMs, per organization."""
    report = await compute_backup_by_org(registry)
    return {"status": "success", **report.model_dump()}
