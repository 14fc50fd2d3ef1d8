"""SitePulse — Overage Engine.

Compares every tenant snapshot against the tenant's commit level and
summarises how often, and by how much, usage ran above it.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sqlmodel import Session, select

from sitepulse.core.logging import get_logger
from sitepulse.models.config_models import TenantCommitLevel
from sitepulse.models.report_models import (
    CommitLevel,
    CommitLookup,
    OveragePoint,
    OverageSummary,
)
from sitepulse.models.snapshot_models import TenantPollSnapshot

logger = get_logger("analyzer.overage")


def commit_lookup_from_mapping(
    commits: Mapping[Tuple[str, str], CommitLevel],
) -> CommitLookup:
    """Wrap a {(site_id, tenant_id): CommitLevel} mapping as a lookup."""

    def lookup(site_id: str, tenant_id: str) -> Optional[CommitLevel]:
        return commits.get((site_id, tenant_id))

    return lookup


def load_commit_levels(
    session: Session, default_vcpu_mhz: float
) -> Dict[Tuple[str, str], CommitLevel]:
    """Read the tenant_commit_levels table into a lookup mapping."""
    rows = session.exec(select(TenantCommitLevel)).all()
    logger.info(f"Loaded {len(rows)} tenant commit levels")
    return {(r.site_id, r.tenant_id): r.to_commit_level(default_vcpu_mhz) for r in rows}


def _excess(used: float, commit: Optional[float]) -> float:
    if not commit or used <= commit:
        return 0.0
    return used - commit


def compute_overage_points(
    rows: Iterable[TenantPollSnapshot], commit_lookup: CommitLookup
) -> List[OveragePoint]:
    """One point per snapshot. Tenants without a commit never overage."""
    points = []
    for row in rows:
        commit = commit_lookup(row.site_id, row.tenant_id)
        cpu_used = row.cpu_used_mhz or 0
        ram_used = row.ram_used_mb or 0
        points.append(
            OveragePoint(
                site_id=row.site_id,
                tenant_id=row.tenant_id,
                polled_at=row.polled_at,
                cpu_used_mhz=cpu_used,
                ram_used_mb=ram_used,
                cpu_overage_mhz=_excess(cpu_used, commit.cpu_mhz if commit else None),
                ram_overage_mb=_excess(ram_used, commit.ram_mb if commit else None),
            )
        )
    return points


def summarize_overages(
    points: Iterable[OveragePoint],
    commit_lookup: Optional[CommitLookup] = None,
    tenant_names: Optional[Mapping[Tuple[str, str], str]] = None,
) -> List[OverageSummary]:
    """Per tenant: CPU and RAM overage counts (independent) and maxima."""
    grouped: Dict[Tuple[str, str], List[OveragePoint]] = defaultdict(list)
    for p in points:
        grouped[(p.site_id, p.tenant_id)].append(p)

    summaries = []
    for (site_id, tenant_id), tenant_points in sorted(grouped.items()):
        summaries.append(
            OverageSummary(
                site_id=site_id,
                tenant_id=tenant_id,
                tenant_name=(tenant_names or {}).get((site_id, tenant_id), ""),
                snapshot_count=len(tenant_points),
                cpu_overage_count=sum(1 for p in tenant_points if p.cpu_overage_mhz > 0),
                ram_overage_count=sum(1 for p in tenant_points if p.ram_overage_mb > 0),
                max_cpu_overage_mhz=max(p.cpu_overage_mhz for p in tenant_points),
                max_ram_overage_mb=max(p.ram_overage_mb for p in tenant_points),
                commit=commit_lookup(site_id, tenant_id) if commit_lookup else None,
            )
        )
    return summaries
