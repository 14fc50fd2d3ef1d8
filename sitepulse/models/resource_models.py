"""SitePulse — Normalized Resource Models (Universal Schema).

Every platform adapter translates vendor responses into these types.
CPU is always MHz, memory and storage always MB. Vendor fields that have
no home here are dropped.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class PlatformType(str, Enum):
    """Supported platform tags."""

    VCD = "vcd"
    CLOUDSTACK = "cloudstack"
    PROXMOX = "proxmox"
    VEEAM = "veeam"


class SiteStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


# ─────────────────────────────────────────────
# RESOURCE METRICS
# ─────────────────────────────────────────────


class ResourceMetrics(BaseModel):
    """One compute dimension.

    `available` is usually `capacity - allocated`, but adapters pass vendor
    numbers through as reported, so consumers must not rely on the identity.
    """

    capacity: float = 0
    allocated: float = 0
    used: float = 0
    available: float = 0
    reserved: Optional[float] = None
    units: str = "MHz"


class StorageMetrics(BaseModel):
    """A single undivided storage pool (or the sum of all tiers)."""

    capacity: float = 0
    limit: float = 0
    used: float = 0
    available: float = 0
    units: str = "MB"


class StorageTier(BaseModel):
    """Named storage tier / profile, e.g. HPS, SPS, VVol."""

    name: str
    capacity: float = 0
    limit: float = 0
    used: float = 0
    available: float = 0
    units: str = "MB"


class NetworkMetrics(BaseModel):
    """Public IP counts aggregated from IP pools or edge gateways."""

    total_ips: int = 0
    allocated_ips: int = 0
    used_ips: int = 0
    free_ips: int = 0


# ─────────────────────────────────────────────
# SITES & TENANTS
# ─────────────────────────────────────────────


class SiteInfo(BaseModel):
    id: str
    name: str
    location: str
    url: str
    platform_type: PlatformType
    status: SiteStatus = SiteStatus.ONLINE


class SiteSummary(BaseModel):
    """Aggregated resources of one site, across every tenant."""

    site_id: str
    platform_type: PlatformType
    total_tenants: int = 0  # VDCs in VCD, Projects in CloudStack, nodes in Proxmox
    total_vms: int = 0
    running_vms: int = 0
    cpu: ResourceMetrics = Field(default_factory=lambda: ResourceMetrics(units="MHz"))
    memory: ResourceMetrics = Field(default_factory=lambda: ResourceMetrics(units="MB"))
    storage: StorageMetrics = Field(default_factory=StorageMetrics)
    storage_tiers: List[StorageTier] = []
    network: NetworkMetrics = Field(default_factory=NetworkMetrics)


class TenantAllocation(BaseModel):
    """One billing/isolation unit: Org VDC, CloudStack project or Proxmox node."""

    id: str
    name: str
    description: Optional[str] = None
    status: str = "active"
    cpu: ResourceMetrics = Field(default_factory=lambda: ResourceMetrics(units="MHz"))
    memory: ResourceMetrics = Field(default_factory=lambda: ResourceMetrics(units="MB"))
    storage: StorageMetrics = Field(default_factory=StorageMetrics)
    storage_tiers: List[StorageTier] = []
    vm_count: int = 0
    running_vm_count: int = 0
    allocated_ips: int = 0
    org_name: Optional[str] = None  # Used to cross-reference backup data
    org_full_name: Optional[str] = None


# ─────────────────────────────────────────────
# BACKUP REPORTING (Veeam ONE)
# ─────────────────────────────────────────────


class BackupMetrics(BaseModel):
    protected_vm_count: int = 0
    unprotected_vm_count: int = 0
    total_vm_count: int = 0
    protection_percentage: int = 0


class BackupRepository(BaseModel):
    id: str = ""
    name: str = "Unknown"
    capacity_gb: float = 0
    used_space_gb: float = 0
    free_space_gb: float = 0
    usage_percentage: int = 0


class BackupSiteSummary(BaseModel):
    site_id: str
    platform_type: PlatformType = PlatformType.VEEAM
    backup: BackupMetrics = Field(default_factory=BackupMetrics)
    repositories: List[BackupRepository] = []
    total_repository_capacity_gb: float = 0
    total_repository_used_gb: float = 0
    total_repository_free_gb: float = 0


# ─────────────────────────────────────────────
# SITE CONFIGURATION
# ─────────────────────────────────────────────


class SiteConfig(BaseModel):
    """Connection settings for one site, from env vars or the platform_sites table."""

    site_id: str
    platform_type: PlatformType
    name: str = ""
    location: str = "Unknown"
    url: str
    username: str = ""
    password: str = ""
    org: Optional[str] = None  # VCD
    api_key: Optional[str] = None  # CloudStack
    secret_key: Optional[str] = None  # CloudStack
    realm: Optional[str] = None  # Proxmox, e.g. 'pam' or 'pve'
    is_enabled: bool = True
    verify_ssl: Optional[bool] = None
    mhz_per_core: Optional[float] = None

    @property
    def composite_id(self) -> str:
        return f"{self.platform_type.value}:{self.site_id}"
