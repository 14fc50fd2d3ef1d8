"""Shared fixtures: in-memory database, fake adapters, HTTP mock helpers."""

import asyncio
from typing import Callable, List, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from sitepulse.connectors.base import PlatformClient
from sitepulse.models import config_models, snapshot_models  # noqa: F401
from sitepulse.models.resource_models import (
    PlatformType,
    ResourceMetrics,
    SiteConfig,
    SiteSummary,
    StorageMetrics,
    StorageTier,
    TenantAllocation,
)
from sitepulse.storage.snapshot_store import SnapshotStore


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> Callable[[], Session]:
    return lambda: Session(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def store(session_factory) -> SnapshotStore:
    return SnapshotStore(session_factory)


def make_config(platform_type: PlatformType, site_id: str = "site1", **overrides) -> SiteConfig:
    values = dict(
        site_id=site_id,
        platform_type=platform_type,
        name=f"{site_id} name",
        url=f"https://{site_id}.example.com",
        username="admin",
        password="secret",
    )
    values.update(overrides)
    return SiteConfig(**values)


def mock_transport(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


def no_retry_delay(client) -> None:
    """Keep retry back-off from slowing the tests down."""
    client.http.retry_base_delay = 0


def make_tenant(tenant_id: str, cpu_used: float = 0, ram_used: float = 0, **overrides) -> TenantAllocation:
    values = dict(
        id=tenant_id,
        name=f"{tenant_id} name",
        cpu=ResourceMetrics(capacity=10000, allocated=8000, used=cpu_used, units="MHz"),
        memory=ResourceMetrics(capacity=32768, allocated=16384, used=ram_used, units="MB"),
        storage=StorageMetrics(capacity=1024, limit=1024, used=512),
        storage_tiers=[StorageTier(name="HPS", limit=1024, used=512)],
        vm_count=3,
        running_vm_count=2,
        allocated_ips=1,
    )
    values.update(overrides)
    return TenantAllocation(**values)


class FakePlatformClient(PlatformClient):
    """Adapter double with canned data, an optional delay and an optional error."""

    def __init__(
        self,
        config: SiteConfig,
        tenants: Optional[List[TenantAllocation]] = None,
        delay: float = 0,
        error: Optional[Exception] = None,
    ):
        super().__init__(config)
        self.tenants = tenants if tenants is not None else [make_tenant("t1", 100, 200)]
        self.delay = delay
        self.error = error
        self.summary_calls = 0
        self.closed = False

    def platform_type(self) -> PlatformType:
        return self.config.platform_type

    async def authenticate(self) -> None:
        if self.error:
            raise self.error

    async def get_site_summary(self) -> SiteSummary:
        self.summary_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return SiteSummary(
            site_id=self.config.site_id,
            platform_type=self.config.platform_type,
            total_tenants=len(self.tenants),
            total_vms=sum(t.vm_count for t in self.tenants),
            running_vms=sum(t.running_vm_count for t in self.tenants),
        )

    async def get_tenant_allocations(self) -> List[TenantAllocation]:
        if self.error:
            raise self.error
        return list(self.tenants)

    async def get_tenant_allocation(self, tenant_id: str) -> Optional[TenantAllocation]:
        return next((t for t in self.tenants if t.id == tenant_id), None)

    async def close(self) -> None:
        self.closed = True
