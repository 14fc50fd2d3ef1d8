"""SitePulse — Poll Snapshot Tables (Append-Only).

Rows are written once per cycle by the snapshot poller and only ever
deleted by the retention pruner. Reducers read the structured columns;
`raw_payload` is the opaque audit copy of what the adapter returned.
"""

import json
from datetime import datetime, timezone
from typing import Dict, List, Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from sitepulse.models.resource_models import SiteSummary, TenantAllocation


def utc_now() -> datetime:
    """Naive UTC timestamp. SQLite drops tzinfo, so every column stays naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_field(**kwargs):
    """Naive UTC column defaulting to now; the column type is pinned to naive."""
    return Field(default_factory=utc_now, sa_type=sa.DateTime(timezone=False), **kwargs)


class SitePollSnapshot(SQLModel, table=True):
    """One site's aggregate resources at one poll."""

    __tablename__ = "site_poll_snapshots"
    __table_args__ = (sa.Index("ix_site_poll_site_polled", "site_id", "polled_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True)
    platform_type: str
    polled_at: datetime = utc_field(index=True)

    total_tenants: int = 0
    total_vms: int = 0
    running_vms: int = 0
    cpu_capacity_mhz: float = 0
    cpu_allocated_mhz: float = 0
    cpu_used_mhz: float = 0
    ram_capacity_mb: float = 0
    ram_allocated_mb: float = 0
    ram_used_mb: float = 0
    storage_capacity_mb: float = 0
    storage_used_mb: float = 0
    total_ips: int = 0
    allocated_ips: int = 0

    raw_payload: str = Field(default="{}", description="Adapter output as JSON")

    @classmethod
    def from_summary(cls, summary: SiteSummary, polled_at: datetime) -> "SitePollSnapshot":
        return cls(
            site_id=summary.site_id,
            platform_type=summary.platform_type.value,
            polled_at=polled_at,
            total_tenants=summary.total_tenants,
            total_vms=summary.total_vms,
            running_vms=summary.running_vms,
            cpu_capacity_mhz=summary.cpu.capacity,
            cpu_allocated_mhz=summary.cpu.allocated,
            cpu_used_mhz=summary.cpu.used,
            ram_capacity_mb=summary.memory.capacity,
            ram_allocated_mb=summary.memory.allocated,
            ram_used_mb=summary.memory.used,
            storage_capacity_mb=summary.storage.capacity,
            storage_used_mb=summary.storage.used,
            total_ips=summary.network.total_ips,
            allocated_ips=summary.network.allocated_ips,
            raw_payload=summary.model_dump_json(),
        )


class TenantPollSnapshot(SQLModel, table=True):
    """One tenant's allocation at one poll."""

    __tablename__ = "tenant_poll_snapshots"
    __table_args__ = (
        sa.Index("ix_tenant_poll_tenant_polled", "tenant_id", "polled_at"),
        sa.Index("ix_tenant_poll_site_polled", "site_id", "polled_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True)
    platform_type: str
    tenant_id: str
    tenant_name: str = ""
    org_name: Optional[str] = None
    org_full_name: Optional[str] = None
    polled_at: datetime = utc_field(index=True)

    vm_count: int = 0
    running_vm_count: int = 0
    cpu_allocated_mhz: float = 0
    cpu_used_mhz: float = 0
    ram_allocated_mb: float = 0
    ram_used_mb: float = 0
    storage_limit_mb: float = 0
    storage_used_mb: float = 0
    allocated_ips: int = 0

    storage_tiers_json: str = Field(
        default="[]", description="List of {name, limit, used} in MB"
    )
    raw_payload: str = Field(default="{}", description="Adapter output as JSON")

    @classmethod
    def from_tenant(
        cls,
        tenant: TenantAllocation,
        site_id: str,
        platform_type: str,
        polled_at: datetime,
    ) -> "TenantPollSnapshot":
        tiers = [
            {"name": t.name, "limit": t.limit, "used": t.used} for t in tenant.storage_tiers
        ]
        return cls(
            site_id=site_id,
            platform_type=platform_type,
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            org_name=tenant.org_name,
            org_full_name=tenant.org_full_name,
            polled_at=polled_at,
            vm_count=tenant.vm_count,
            running_vm_count=tenant.running_vm_count,
            cpu_allocated_mhz=tenant.cpu.allocated,
            cpu_used_mhz=tenant.cpu.used,
            ram_allocated_mb=tenant.memory.allocated,
            ram_used_mb=tenant.memory.used,
            storage_limit_mb=tenant.storage.limit,
            storage_used_mb=tenant.storage.used,
            allocated_ips=tenant.allocated_ips,
            storage_tiers_json=json.dumps(tiers),
            raw_payload=tenant.model_dump_json(),
        )

    @property
    def storage_tiers(self) -> List[Dict]:
        try:
            return json.loads(self.storage_tiers_json or "[]")
        except json.JSONDecodeError:
            return []
