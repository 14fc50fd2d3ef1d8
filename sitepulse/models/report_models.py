"""SitePulse — Report Output Schemas."""

from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field


class CommitLevel(BaseModel):
    """Contracted resources for one tenant, in MHz / MB."""

    cpu_mhz: Optional[float] = None
    ram_mb: Optional[float] = None
    storage_by_tier_mb: Dict[str, float] = Field(default_factory=dict)
    ips: Optional[int] = None


# (site_id, tenant_id) → commit, or None when the tenant has no contract
CommitLookup = Callable[[str, str], Optional[CommitLevel]]


# ─────────────────────────────────────────────
# HIGH-WATER MARK
# ─────────────────────────────────────────────


class HighWaterMark(BaseModel):
    """Peak usage of one tenant across the snapshots of a window."""

    site_id: str
    tenant_id: str
    tenant_name: str = ""
    org_name: Optional[str] = None
    org_full_name: Optional[str] = None
    platform_type: str = ""
    snapshot_count: int = 0
    max_cpu_used_mhz: float = 0
    max_ram_used_mb: float = 0
    max_storage_used_mb: float = 0
    max_allocated_ips: int = 0
    max_vm_count: int = 0
    max_tier_used_mb: Dict[str, float] = Field(default_factory=dict)


class TierBuckets(BaseModel):
    """Storage peaks folded into the billing buckets, in GB."""

    hps_gb: int = 0
    sps_gb: int = 0
    vvol_gb: int = 0
    other_gb: int = 0


class HighWaterMarkRow(BaseModel):
    """One row of the monthly high-water-mark report."""

    mark: HighWaterMark
    site_name: str = ""
    site_location: str = ""
    max_vcpu: int = 0
    max_ram_gb: int = 0
    storage: TierBuckets = Field(default_factory=TierBuckets)
    commit: Optional[CommitLevel] = None


class HighWaterMarkReport(BaseModel):
    year: int
    month: int
    period_start: datetime
    period_end: datetime
    vcpu_mhz: float
    tenants: List[HighWaterMarkRow] = []


# ─────────────────────────────────────────────
# OVERAGES
# ─────────────────────────────────────────────


class OveragePoint(BaseModel):
    """Usage above commit at one snapshot (0 when within commit)."""

    site_id: str
    tenant_id: str
    polled_at: datetime
    cpu_used_mhz: float = 0
    ram_used_mb: float = 0
    cpu_overage_mhz: float = 0
    ram_overage_mb: float = 0


class OverageSummary(BaseModel):
    site_id: str
    tenant_id: str
    tenant_name: str = ""
    snapshot_count: int = 0
    cpu_overage_count: int = 0
    ram_overage_count: int = 0
    max_cpu_overage_mhz: float = 0
    max_ram_overage_mb: float = 0
    commit: Optional[CommitLevel] = None


# ─────────────────────────────────────────────
# BACKUP COVERAGE
# ─────────────────────────────────────────────


class OrgBackupCoverage(BaseModel):
    org_name: str
    org_full_name: Optional[str] = None
    site_ids: List[str] = []
    vdc_count: int = 0
    total_vms: int = 0
    protected_vms: int = 0
    unprotected_vms: int = 0
    protection_percentage: int = 0


class BackupByOrgReport(BaseModel):
    configured: bool = False
    protected_vm_names: int = 0
    organizations: List[OrgBackupCoverage] = []
