import base64
import time

import httpx
import pytest

from conftest import make_config, mock_transport, no_retry_delay
from sitepulse.connectors.errors import AuthError
from sitepulse.connectors.vcd.client import VcdClient
from sitepulse.models.resource_models import PlatformType

VDC_ID = "urn:vcloud:vdc:aaa-111"


def _basic_user(request: httpx.Request) -> str:
    raw = request.headers.get("authorization", "").split(" ", 1)[1]
    return base64.b64decode(raw).decode().split(":", 1)[0]


class FakeVcd:
    """Minimal Cloud Director: one org, one VDC."""

    def __init__(self, accept_user="admin@System", legacy=False):
        self.accept_user = accept_user
        self.legacy = legacy
        self.session_attempts = []
        self.fail_paths = {}
        self.reject_token_once = False
        self.token = "tok-1"

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST":
            user = _basic_user(request)
            self.session_attempts.append((path, user))
            if path == "/api/sessions":
                if self.legacy and user == self.accept_user:
                    return httpx.Response(200, headers={"x-vcloud-authorization": "legacy-tok"})
                return httpx.Response(401)
            if not self.legacy and user == self.accept_user:
                return httpx.Response(
                    200, headers={"X-VMWARE-VCLOUD-ACCESS-TOKEN": self.token}, json={}
                )
            return httpx.Response(401)

        if self.reject_token_once:
            self.reject_token_once = False
            self.token = "tok-2"
            return httpx.Response(401)

        for fragment, status in self.fail_paths.items():
            if fragment in str(request.url):
                return httpx.Response(status, json={"message": "nope"})

        params = request.url.params
        if path == "/cloudapi/1.0.0/vdcs":
            return httpx.Response(
                200,
                json={
                    "values": [
                        {
                            "id": VDC_ID,
                            "name": "vdc-one",
                            "description": "first vdc",
                            "org": {"name": "acme", "id": "urn:vcloud:org:1"},
                        }
                    ],
                    "pageCount": 1,
                },
            )
        if path == f"/cloudapi/1.0.0/vdcs/{VDC_ID}":
            return httpx.Response(
                200, json={"id": VDC_ID, "name": "vdc-one", "org": {"name": "acme"}}
            )
        if path.startswith("/cloudapi/1.0.0/vdcs/"):
            return httpx.Response(404, json={"message": "not found"})
        if path == "/cloudapi/1.0.0/orgs":
            return httpx.Response(
                200, json={"values": [{"name": "acme", "displayName": "Acme Corp"}], "pageCount": 1}
            )
        if path == "/cloudapi/1.0.0/edgeGateways":
            return httpx.Response(
                200,
                json={
                    "values": [
                        {
                            "edgeGatewayUplinks": [
                                {"subnets": {"values": [{"totalIpCount": 4, "usedIpCount": 2}]}}
                            ]
                        }
                    ],
                    "pageCount": 1,
                },
            )
        if path == "/cloudapi/1.0.0/externalNetworks":
            return httpx.Response(
                200,
                json={
                    "values": [{"subnets": {"values": [{"totalIpCount": 16, "usedIpCount": 3}]}}],
                    "pageCount": 1,
                },
            )
        if path == "/api/admin/vdc/aaa-111":
            return httpx.Response(
                200,
                json={
                    "status": 1,
                    "computeCapacity": {
                        "cpu": {"allocated": 5000, "limit": 6000, "used": 1200, "reserved": 0},
                        "memory": {"allocated": 8192, "limit": 8192, "used": 2048, "reserved": 0},
                    },
                },
            )
        if path == "/api/query":
            qtype = params.get("type")
            if qtype == "adminOrgVdcStorageProfile":
                records = [{"name": "HPS", "storageLimitMB": 1000, "storageUsedMB": 400}]
            elif qtype == "adminVM":
                records = [
                    {"name": "web01", "status": "POWERED_ON", "isVAppTemplate": False},
                    {"name": "db01", "status": "POWERED_OFF", "isVAppTemplate": False},
                    {"name": "tmpl", "status": "POWERED_OFF", "isVAppTemplate": True},
                ]
            elif qtype == "providerVdc":
                records = [{"cpuLimitMhz": 100000, "memoryLimitMB": 65536, "storageLimitMB": 50000}]
            else:
                records = []
            return httpx.Response(200, json={"record": records, "total": len(records)})
        return httpx.Response(404, json={"message": f"unexpected {path}"})


def make_client(fake: FakeVcd, **overrides) -> VcdClient:
    client = VcdClient(
        make_config(PlatformType.VCD, **overrides), transport=mock_transport(fake.handler)
    )
    no_retry_delay(client)
    return client


async def test_auth_falls_back_to_username_at_org():
    fake = FakeVcd(accept_user="admin@System")
    client = make_client(fake)
    await client.authenticate()
    assert fake.session_attempts == [
        ("/cloudapi/1.0.0/sessions/provider", "admin"),
        ("/cloudapi/1.0.0/sessions/provider", "admin@System"),
    ]
    assert client._session.headers() == {"Authorization": "Bearer tok-1"}
    await client.close()


async def test_tenant_org_uses_tenant_session_endpoint():
    fake = FakeVcd(accept_user="admin")
    client = make_client(fake, org="acme")
    await client.authenticate()
    assert fake.session_attempts == [("/cloudapi/1.0.0/sessions", "admin")]
    await client.close()


async def test_auth_falls_back_to_legacy_sessions():
    fake = FakeVcd(accept_user="admin@System", legacy=True)
    client = make_client(fake)
    await client.authenticate()
    assert fake.session_attempts[-1] == ("/api/sessions", "admin@System")
    assert client._session.headers() == {"x-vcloud-authorization": "legacy-tok"}
    await client.close()


async def test_auth_failure_raises_and_connection_test_reports_false():
    fake = FakeVcd(accept_user="nobody")
    client = make_client(fake)
    with pytest.raises(AuthError):
        await client.authenticate()
    assert await client.test_connection() is False
    await client.close()


async def test_tenant_allocations_combine_sub_fetches():
    client = make_client(FakeVcd())
    tenants = await client.get_tenant_allocations()

    assert len(tenants) == 1
    t = tenants[0]
    assert t.id == VDC_ID
    assert t.name == "vdc-one"
    assert t.status == "active"
    assert t.cpu.allocated == 5000
    assert t.cpu.capacity == 6000
    assert t.cpu.used == 1200
    assert t.memory.used == 2048
    assert [tier.name for tier in t.storage_tiers] == ["HPS"]
    assert t.storage.used == 400
    assert (t.vm_count, t.running_vm_count) == (2, 1)
    assert t.allocated_ips == 4
    assert t.org_name == "acme"
    assert t.org_full_name == "Acme Corp"
    await client.close()


async def test_failed_secondary_fetch_yields_partial_tenant():
    fake = FakeVcd()
    fake.fail_paths = {"edgeGateways": 500, "adminOrgVdcStorageProfile": 403}
    client = make_client(fake)
    tenants = await client.get_tenant_allocations()

    t = tenants[0]
    assert t.allocated_ips == 0
    assert t.storage_tiers == []
    assert t.cpu.allocated == 5000
    await client.close()


async def test_missing_tenant_returns_none():
    client = make_client(FakeVcd())
    assert await client.get_tenant_allocation("urn:vcloud:vdc:does-not-exist") is None
    await client.close()


async def test_single_tenant_lookup_accepts_bare_uuid():
    client = make_client(FakeVcd())
    tenant = await client.get_tenant_allocation("aaa-111")
    assert tenant is not None
    assert tenant.id == VDC_ID
    await client.close()


async def test_rejected_token_triggers_one_relogin():
    fake = FakeVcd()
    client = make_client(fake)
    await client.authenticate()
    fake.reject_token_once = True

    vdcs = await client.get_org_vdcs()
    assert len(vdcs) == 1
    assert client._session.token == "tok-2"
    await client.close()


async def test_expired_session_logs_in_again_before_the_next_call():
    fake = FakeVcd(accept_user="admin")
    client = make_client(fake)
    await client.authenticate()
    assert len(fake.session_attempts) == 1
    client._session.expires_at = time.time() - 1

    vdcs = await client.get_org_vdcs()

    assert len(vdcs) == 1
    assert fake.session_attempts == [("/cloudapi/1.0.0/sessions/provider", "admin")] * 2
    assert not client._session.expired
    await client.close()


async def test_site_summary_uses_provider_capacity_and_external_networks():
    client = make_client(FakeVcd())
    summary = await client.get_site_summary()

    assert summary.platform_type == PlatformType.VCD
    assert summary.total_tenants == 1
    assert summary.cpu.capacity == 100000
    assert summary.cpu.allocated == 5000
    assert summary.network.total_ips == 16
    assert summary.network.allocated_ips == 4
    assert summary.network.free_ips == 12
    await client.close()
