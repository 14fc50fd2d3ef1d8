"""SitePulse — High-Water-Mark Aggregator.

Reduces a month of tenant snapshots to the peak usage of every tenant,
the basis for usage billing. Pure over stored rows: the same rows always
give the same marks, in any order.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sqlmodel import Session

from sitepulse.core.logging import get_logger
from sitepulse.models.report_models import (
    CommitLookup,
    HighWaterMark,
    HighWaterMarkReport,
    HighWaterMarkRow,
    TierBuckets,
)
from sitepulse.models.snapshot_models import TenantPollSnapshot
from sitepulse.storage.snapshot_store import get_tenant_snapshots_between

logger = get_logger("analyzer.high_water_mark")

MB_PER_GB = 1024


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month)."""
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def compute_high_water_marks(rows: Iterable[TenantPollSnapshot]) -> List[HighWaterMark]:
    """Group by (site_id, tenant_id) and keep the maximum of every column.

    Tier names are lower-cased so 'HPS' and 'hps' collapse. Descriptive
    fields come from the newest row of each tenant.
    """
    marks: Dict[Tuple[str, str], HighWaterMark] = {}
    newest: Dict[Tuple[str, str], datetime] = {}

    for row in rows:
        key = (row.site_id, row.tenant_id)
        mark = marks.get(key)
        if mark is None:
            mark = marks[key] = HighWaterMark(site_id=row.site_id, tenant_id=row.tenant_id)

        if key not in newest or row.polled_at >= newest[key]:
            newest[key] = row.polled_at
            mark.tenant_name = row.tenant_name
            mark.org_name = row.org_name
            mark.org_full_name = row.org_full_name
            mark.platform_type = row.platform_type

        mark.snapshot_count += 1
        mark.max_cpu_used_mhz = max(mark.max_cpu_used_mhz, row.cpu_used_mhz or 0)
        mark.max_ram_used_mb = max(mark.max_ram_used_mb, row.ram_used_mb or 0)
        mark.max_storage_used_mb = max(mark.max_storage_used_mb, row.storage_used_mb or 0)
        mark.max_allocated_ips = max(mark.max_allocated_ips, row.allocated_ips or 0)
        mark.max_vm_count = max(mark.max_vm_count, row.vm_count or 0)

        for tier in row.storage_tiers:
            name = str(tier.get("name") or "unknown").lower()
            used = float(tier.get("used") or 0)
            mark.max_tier_used_mb[name] = max(mark.max_tier_used_mb.get(name, 0), used)

    return sorted(marks.values(), key=lambda m: (m.site_id, m.tenant_name, m.tenant_id))


def get_high_water_marks_for_month(
    session: Session, year: int, month: int
) -> List[HighWaterMark]:
    start, end = month_bounds(year, month)
    rows = get_tenant_snapshots_between(session, start, end)
    logger.info(f"High-water marks for {year}-{month:02d}: {len(rows)} snapshots")
    return compute_high_water_marks(rows)


def bucket_storage_tiers(max_tier_used_mb: Mapping[str, float]) -> TierBuckets:
    """Fold tier peaks into HPS / SPS / VVol / Other, each tier rounded to GB."""
    buckets = TierBuckets()
    for name, used_mb in max_tier_used_mb.items():
        gb = round(used_mb / MB_PER_GB)
        lower = name.lower()
        if "hps" in lower or "high" in lower:
            buckets.hps_gb += gb
        elif "sps" in lower or "standard" in lower:
            buckets.sps_gb += gb
        elif "vvol" in lower:
            buckets.vvol_gb += gb
        else:
            buckets.other_gb += gb
    return buckets


def build_high_water_mark_report(
    marks: List[HighWaterMark],
    year: int,
    month: int,
    vcpu_mhz: float,
    commit_lookup: Optional[CommitLookup] = None,
    site_names: Optional[Mapping[str, Tuple[str, str]]] = None,
) -> HighWaterMarkReport:
    """Enrich marks with vCPU / GB equivalents, tier buckets and commits.

    `site_names` maps site_id → (display name, location).
    """
    start, end = month_bounds(year, month)
    rows = []
    for mark in marks:
        name, location = (site_names or {}).get(mark.site_id, (mark.site_id, ""))
        rows.append(
            HighWaterMarkRow(
                mark=mark,
                site_name=name,
                site_location=location,
                max_vcpu=round(mark.max_cpu_used_mhz / vcpu_mhz) if vcpu_mhz else 0,
                max_ram_gb=round(mark.max_ram_used_mb / MB_PER_GB),
                storage=bucket_storage_tiers(mark.max_tier_used_mb),
                commit=commit_lookup(mark.site_id, mark.tenant_id) if commit_lookup else None,
            )
        )
    return HighWaterMarkReport(
        year=year,
        month=month,
        period_start=start,
        period_end=end,
        vcpu_mhz=vcpu_mhz,
        tenants=rows,
    )
