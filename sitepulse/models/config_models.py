"""SitePulse — Persisted Configuration Tables."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from sitepulse.models.report_models import CommitLevel
from sitepulse.models.resource_models import PlatformType, SiteConfig
from sitepulse.models.snapshot_models import utc_field

MB_PER_GB = 1024


class PlatformSite(SQLModel, table=True):
    """A site managed through the database instead of env vars."""

    __tablename__ = "platform_sites"

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(unique=True, index=True)
    platform_type: str
    name: str
    location: str = "Unknown"
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    org: Optional[str] = None
    api_key: Optional[str] = None
    secret_key: Optional[str] = None
    realm: Optional[str] = None
    is_enabled: bool = True
    created_at: datetime = utc_field()
    updated_at: datetime = utc_field()

    def to_site_config(self) -> SiteConfig:
        return SiteConfig(
            site_id=self.site_id,
            platform_type=PlatformType(self.platform_type),
            name=self.name,
            location=self.location,
            url=self.url,
            username=self.username or "",
            password=self.password or "",
            org=self.org,
            api_key=self.api_key,
            secret_key=self.secret_key,
            realm=self.realm,
            is_enabled=self.is_enabled,
        )


class TenantCommitLevel(SQLModel, table=True):
    """Contracted resources per tenant, entered in sales units (vCPU, GB)."""

    __tablename__ = "tenant_commit_levels"

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True)
    tenant_id: str = Field(index=True)
    tenant_name: str = ""
    business_id: Optional[str] = None
    business_name: Optional[str] = None
    vcpu_count: Optional[float] = None
    vcpu_speed_ghz: Optional[float] = None
    ram_gb: Optional[float] = None
    storage_hps_gb: Optional[float] = None
    storage_sps_gb: Optional[float] = None
    storage_vvol_gb: Optional[float] = None
    storage_other_gb: Optional[float] = None
    allocated_ips: Optional[int] = None
    notes: Optional[str] = None
    updated_at: datetime = utc_field()

    def to_commit_level(self, default_vcpu_mhz: float) -> CommitLevel:
        """vCPU × GHz → MHz and GB → MB. Unset values stay unset."""
        cpu_mhz = None
        if self.vcpu_count is not None:
            speed = self.vcpu_speed_ghz * 1000 if self.vcpu_speed_ghz else default_vcpu_mhz
            cpu_mhz = self.vcpu_count * speed

        tiers = {
            "hps": self.storage_hps_gb,
            "sps": self.storage_sps_gb,
            "vvol": self.storage_vvol_gb,
            "other": self.storage_other_gb,
        }
        return CommitLevel(
            cpu_mhz=cpu_mhz,
            ram_mb=self.ram_gb * MB_PER_GB if self.ram_gb is not None else None,
            storage_by_tier_mb={k: v * MB_PER_GB for k, v in tiers.items() if v is not None},
            ips=self.allocated_ips,
        )
